import asyncio
from typing import Any

import pytest

from telecare.core.errors import NotFoundError, ValidationError
from telecare.modules.alerts.aggregator import AlertAggregator
from telecare.modules.alerts.classifier import ThresholdClassifier
from telecare.modules.alerts.policy import AlertPolicy
from telecare.modules.alerts.schemas import (
    Alert,
    AlertAcknowledgedEvent,
    AlertEvent,
    PatientStatusChangeEvent,
    VitalReadingEvent,
)
from telecare.shared.constants import AlertStatus, Tier
from tests.helpers import FakeClock, FakeWallClock, make_reading


def _alert_events(published: list[Any]) -> list[tuple[str, Tier]]:
    return [(event.type, event.alert.level) for event in published if isinstance(event, AlertEvent)]


@pytest.mark.asyncio
async def test_critical_reading_opens_new_alert(aggregator: AlertAggregator) -> None:
    event = await aggregator.ingest(make_reading(heart_rate=145))

    assert event is not None
    assert event.type == "new"
    assert event.alert.level is Tier.CRITICAL
    assert event.alert.patient_id == "patient-1"
    assert event.alert.status is AlertStatus.OPEN
    assert event.alert.vital_snapshot.heart_rate == 145
    assert "Heart rate 145 bpm (critical)" in event.alert.message
    assert [alert.id for alert in aggregator.list_active("patient-1")] == [event.alert.id]


@pytest.mark.asyncio
async def test_normal_reading_creates_nothing(aggregator: AlertAggregator, published: list[Any]) -> None:
    event = await aggregator.ingest(make_reading(temperature=36.5))

    assert event is None
    assert [event.type for event in published] == ["vital_reading"]
    assert aggregator.list_active() == []


@pytest.mark.asyncio
async def test_single_normal_reading_does_not_clear(
    aggregator: AlertAggregator, published: list[Any]
) -> None:
    opened = await aggregator.ingest(make_reading(heart_rate=110))
    assert opened is not None

    assert await aggregator.ingest(make_reading(heart_rate=75)) is None
    assert [alert.id for alert in aggregator.list_active()] == [opened.alert.id]

    # The clearing reading is normal, so the caller gets nothing back
    assert await aggregator.ingest(make_reading(heart_rate=75)) is None
    cleared = [event for event in published if isinstance(event, AlertEvent)][-1]
    assert cleared.type == "cleared"
    assert cleared.alert.id == opened.alert.id
    assert cleared.alert.status is AlertStatus.RESOLVED
    assert aggregator.list_active() == []


@pytest.mark.asyncio
async def test_abnormal_reading_resets_normal_streak(aggregator: AlertAggregator) -> None:
    await aggregator.ingest(make_reading(heart_rate=110))
    await aggregator.ingest(make_reading(heart_rate=75))
    await aggregator.ingest(make_reading(heart_rate=112))

    assert await aggregator.ingest(make_reading(heart_rate=75)) is None
    assert len(aggregator.list_active()) == 1


@pytest.mark.asyncio
async def test_escalation_emits_new_then_escalated(
    aggregator: AlertAggregator, published: list[Any]
) -> None:
    first = await aggregator.ingest(make_reading(heart_rate=110))
    second = await aggregator.ingest(make_reading(heart_rate=145))

    assert _alert_events(published) == [("new", Tier.WARNING), ("escalated", Tier.CRITICAL)]
    assert first is not None and second is not None
    assert second.alert.id != first.alert.id
    assert [alert.id for alert in aggregator.list_active()] == [second.alert.id]
    assert aggregator.get(first.alert.id).status is AlertStatus.SUPERSEDED


@pytest.mark.asyncio
async def test_updates_are_rate_limited(aggregator: AlertAggregator, clock: FakeClock) -> None:
    await aggregator.ingest(make_reading(heart_rate=145))

    clock.advance(1)
    assert await aggregator.ingest(make_reading(heart_rate=150)) is None
    # Suppressed readings still refresh the stored snapshot
    assert aggregator.list_active()[0].vital_snapshot.heart_rate == 150

    clock.advance(5)
    event = await aggregator.ingest(make_reading(heart_rate=155))
    assert event is not None
    assert event.type == "update"
    assert event.alert.vital_snapshot.heart_rate == 155


@pytest.mark.asyncio
async def test_clock_rollback_forces_update(aggregator: AlertAggregator, clock: FakeClock) -> None:
    await aggregator.ingest(make_reading(heart_rate=145))

    clock.advance(-300)
    event = await aggregator.ingest(make_reading(heart_rate=150))

    assert event is not None
    assert event.type == "update"


@pytest.mark.asyncio
async def test_reading_burst_stays_within_update_interval(
    aggregator: AlertAggregator, clock: FakeClock, published: list[Any]
) -> None:
    await aggregator.ingest(make_reading(heart_rate=145))

    # Ten readings per second for just under one interval
    for index in range(49):
        clock.advance(0.1)
        assert await aggregator.ingest(make_reading(heart_rate=146 + index % 3)) is None

    clock.advance(0.2)
    event = await aggregator.ingest(make_reading(heart_rate=150))

    assert event is not None
    assert event.type == "update"
    assert _alert_events(published) == [("new", Tier.CRITICAL), ("update", Tier.CRITICAL)]


@pytest.mark.asyncio
async def test_lower_severity_refreshes_without_downgrade(
    aggregator: AlertAggregator, clock: FakeClock
) -> None:
    opened = await aggregator.ingest(make_reading(heart_rate=145))
    clock.advance(10)

    event = await aggregator.ingest(make_reading(heart_rate=110))

    assert opened is not None and event is not None
    assert event.type == "update"
    assert event.alert.id == opened.alert.id
    assert event.alert.level is Tier.CRITICAL
    assert event.alert.vital_snapshot.heart_rate == 110


@pytest.mark.asyncio
async def test_cleared_critical_alert_stays_until_acknowledged(
    aggregator: AlertAggregator, published: list[Any]
) -> None:
    opened = await aggregator.ingest(make_reading(heart_rate=145))
    await aggregator.ingest(make_reading(heart_rate=75))
    await aggregator.ingest(make_reading(heart_rate=75))

    assert opened is not None
    assert _alert_events(published)[-1] == ("cleared", Tier.CRITICAL)
    active = aggregator.list_active()
    assert [alert.id for alert in active] == [opened.alert.id]
    assert active[0].status is AlertStatus.RESOLVED

    await aggregator.acknowledge(opened.alert.id, by_user_id="doc-1")
    assert aggregator.list_active() == []


@pytest.mark.asyncio
async def test_acknowledge_retires_alert(
    aggregator: AlertAggregator, wall_clock: FakeWallClock, published: list[Any]
) -> None:
    opened = await aggregator.ingest(make_reading(heart_rate=145))
    assert opened is not None
    wall_clock.advance(30)

    alert = await aggregator.acknowledge(opened.alert.id, by_user_id="doc-1")

    assert alert.acknowledged is True
    assert alert.acknowledged_by == "doc-1"
    assert alert.acknowledged_at == wall_clock.now
    assert aggregator.list_active("patient-1") == []
    assert isinstance(published[-1], AlertAcknowledgedEvent)
    assert published[-1].alert.id == opened.alert.id


@pytest.mark.asyncio
async def test_acknowledge_is_idempotent(aggregator: AlertAggregator, published: list[Any]) -> None:
    opened = await aggregator.ingest(make_reading(spo2=85))
    assert opened is not None

    first = await aggregator.acknowledge(opened.alert.id, by_user_id="doc-1")
    second = await aggregator.acknowledge(opened.alert.id, by_user_id="doc-2")

    assert second.model_dump() == first.model_dump()
    assert second.acknowledged_by == "doc-1"
    acknowledgements = [event for event in published if isinstance(event, AlertAcknowledgedEvent)]
    assert len(acknowledgements) == 1


@pytest.mark.asyncio
async def test_acknowledge_unknown_alert(aggregator: AlertAggregator) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        await aggregator.acknowledge("missing", by_user_id="doc-1")

    assert exc_info.value.context == {"alert_id": "missing"}


@pytest.mark.asyncio
async def test_reading_after_acknowledge_opens_new_alert(aggregator: AlertAggregator) -> None:
    opened = await aggregator.ingest(make_reading(heart_rate=145))
    assert opened is not None
    await aggregator.acknowledge(opened.alert.id, by_user_id="doc-1")

    event = await aggregator.ingest(make_reading(heart_rate=146))

    assert event is not None
    assert event.type == "new"
    assert event.alert.id != opened.alert.id


@pytest.mark.asyncio
async def test_list_active_is_newest_first_and_capped(
    aggregator: AlertAggregator, wall_clock: FakeWallClock
) -> None:
    ids = []
    for index in range(12):
        wall_clock.advance(1)
        event = await aggregator.ingest(make_reading(f"patient-{index}", heart_rate=145))
        assert event is not None
        ids.append(event.alert.id)

    assert [alert.id for alert in aggregator.list_active()] == list(reversed(ids))
    assert [alert.id for alert in aggregator.list_active(limit=10)] == list(reversed(ids))[:10]
    assert [alert.id for alert in aggregator.list_active("patient-3")] == [ids[3]]


@pytest.mark.asyncio
async def test_list_active_returns_copies(aggregator: AlertAggregator) -> None:
    await aggregator.ingest(make_reading(heart_rate=145))

    aggregator.list_active()[0].acknowledged = True

    assert aggregator.list_active()[0].acknowledged is False


@pytest.mark.asyncio
async def test_patient_status_changes_are_published(
    aggregator: AlertAggregator, published: list[Any]
) -> None:
    await aggregator.ingest(make_reading(heart_rate=75))
    await aggregator.ingest(make_reading(heart_rate=110))
    await aggregator.ingest(make_reading(heart_rate=145))
    await aggregator.ingest(make_reading(heart_rate=75))

    changes = [
        (event.old_status, event.new_status)
        for event in published
        if isinstance(event, PatientStatusChangeEvent)
    ]
    assert changes == [
        (Tier.NORMAL, Tier.WARNING),
        (Tier.WARNING, Tier.CRITICAL),
        (Tier.CRITICAL, Tier.NORMAL),
    ]


@pytest.mark.asyncio
async def test_alert_event_precedes_status_change(
    aggregator: AlertAggregator, published: list[Any]
) -> None:
    await aggregator.ingest(make_reading(heart_rate=145))

    assert [event.type for event in published] == ["vital_reading", "new", "patient_status_change"]


@pytest.mark.asyncio
async def test_invalid_reading_leaves_state_untouched(aggregator: AlertAggregator) -> None:
    with pytest.raises(ValidationError):
        await aggregator.ingest(make_reading(heart_rate=float("nan")))

    assert aggregator.list_active() == []


@pytest.mark.asyncio
async def test_concurrent_readings_for_one_patient_open_one_alert(
    aggregator: AlertAggregator, published: list[Any]
) -> None:
    await asyncio.gather(*(aggregator.ingest(make_reading(heart_rate=140 + i)) for i in range(5)))

    assert [event_type for event_type, _ in _alert_events(published)] == ["new"]
    assert len(aggregator.list_active()) == 1


@pytest.mark.asyncio
async def test_patients_are_independent(aggregator: AlertAggregator) -> None:
    await aggregator.ingest(make_reading("patient-a", heart_rate=110))
    event = await aggregator.ingest(make_reading("patient-b", heart_rate=145))

    assert event is not None
    assert event.type == "new"
    assert len(aggregator.list_active()) == 2


@pytest.mark.asyncio
async def test_retention_expires_old_alerts(
    classifier: ThresholdClassifier, clock: FakeClock, wall_clock: FakeWallClock
) -> None:
    aggregator = AlertAggregator(
        classifier, policy=AlertPolicy(retention_seconds=60), clock=clock, now=wall_clock
    )
    opened = await aggregator.ingest(make_reading(heart_rate=110))
    assert opened is not None

    wall_clock.advance(61)

    assert aggregator.list_active() == []
    # Expired alerts stay addressable for acknowledgment
    assert aggregator.get(opened.alert.id).id == opened.alert.id


class RecordingSink:
    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    def publish(self, alert: Alert) -> None:
        self.alerts.append(alert)


class FailingSink:
    def publish(self, alert: Alert) -> None:
        raise RuntimeError("history store down")


@pytest.mark.asyncio
async def test_history_sink_receives_retired_alerts(
    classifier: ThresholdClassifier, clock: FakeClock, wall_clock: FakeWallClock
) -> None:
    sink = RecordingSink()
    aggregator = AlertAggregator(classifier, history_sink=sink, clock=clock, now=wall_clock)
    opened = await aggregator.ingest(make_reading(heart_rate=110))
    escalated = await aggregator.ingest(make_reading(heart_rate=145))
    assert opened is not None and escalated is not None

    await aggregator.acknowledge(escalated.alert.id, by_user_id="doc-1")

    assert [(alert.id, alert.status) for alert in sink.alerts] == [
        (opened.alert.id, AlertStatus.SUPERSEDED),
        (escalated.alert.id, AlertStatus.OPEN),
    ]
    assert sink.alerts[-1].acknowledged is True


@pytest.mark.asyncio
async def test_history_sink_failure_does_not_affect_state(
    classifier: ThresholdClassifier, clock: FakeClock, wall_clock: FakeWallClock
) -> None:
    aggregator = AlertAggregator(classifier, history_sink=FailingSink(), clock=clock, now=wall_clock)
    opened = await aggregator.ingest(make_reading(heart_rate=145))
    assert opened is not None

    alert = await aggregator.acknowledge(opened.alert.id, by_user_id="doc-1")

    assert alert.acknowledged is True
    assert aggregator.list_active() == []


@pytest.mark.asyncio
async def test_publisher_failure_does_not_block_ingest(aggregator: AlertAggregator) -> None:
    def broken(event: object) -> None:
        raise RuntimeError("subscriber bug")

    aggregator.add_publisher(broken)

    event = await aggregator.ingest(make_reading(heart_rate=145))

    assert event is not None
    assert len(aggregator.list_active()) == 1


@pytest.mark.asyncio
async def test_every_reading_is_published_live(aggregator: AlertAggregator, published: list[Any]) -> None:
    await aggregator.ingest(make_reading(heart_rate=75, spo2=97))
    await aggregator.ingest(make_reading(heart_rate=145, temperature=float("nan")))

    live = [event for event in published if isinstance(event, VitalReadingEvent)]
    assert [event.overall for event in live] == [Tier.NORMAL, Tier.CRITICAL]
    assert live[0].reading.spo2 == 97
    # The rejected temperature is left out of the live snapshot
    assert live[1].reading.temperature is None
    assert live[1].reading.tiers == {"heart_rate": Tier.CRITICAL}
    assert published.index(live[1]) < published.index(
        next(event for event in published if isinstance(event, AlertEvent))
    )
