from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Literal, Protocol, Union

import structlog

from telecare.core.errors import NotFoundError
from telecare.modules.alerts.classifier import ThresholdClassifier
from telecare.modules.alerts.models import PatientAlertState, ReadingClassification
from telecare.modules.alerts.policy import AlertPolicy
from telecare.modules.alerts.schemas import (
    Alert,
    AlertAcknowledgedEvent,
    AlertEvent,
    PatientStatusChangeEvent,
    VitalReading,
    VitalReadingEvent,
    VitalSnapshot,
)
from telecare.shared.constants import AlertStatus, Tier
from telecare.shared.schemas import utc_now

log = structlog.get_logger()

PipelineEvent = Union[AlertEvent, AlertAcknowledgedEvent, PatientStatusChangeEvent, VitalReadingEvent]
Publisher = Callable[[PipelineEvent], None]

VITAL_LABELS = {
    "heart_rate": ("Heart rate", "bpm"),
    "spo2": ("SpO2", "%"),
    "temperature": ("Temperature", "°C"),
}


class AlertHistorySink(Protocol):
    """Durable store for retired alerts; must not block the caller."""

    def publish(self, alert: Alert) -> None: ...


class AlertAggregator:
    """
    Per-patient alert state machine.

    Readings for one patient are serialized behind that patient's lock; events are
    handed to publishers before the lock is released so downstream delivery keeps
    per-patient causal order.
    """

    def __init__(
        self,
        classifier: ThresholdClassifier,
        policy: AlertPolicy | None = None,
        history_sink: AlertHistorySink | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._classifier = classifier
        self._policy = policy or AlertPolicy()
        self._history_sink = history_sink
        self._clock = clock
        self._now = now
        self._publishers: list[Publisher] = []
        # Active set in creation order
        self._alerts: OrderedDict[str, Alert] = OrderedDict()
        self._archive: OrderedDict[str, Alert] = OrderedDict()
        self._states: dict[str, PatientAlertState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def policy(self) -> AlertPolicy:
        return self._policy

    def add_publisher(self, publisher: Publisher) -> None:
        self._publishers.append(publisher)

    async def ingest(self, reading: VitalReading) -> AlertEvent | None:
        classification = self._classifier.classify_reading(reading)
        if classification.invalid:
            log.warning(
                "reading has invalid vitals",
                patient_id=reading.patient_id,
                device_id=reading.device_id,
                invalid=classification.invalid,
            )

        async with self._lock_for(reading.patient_id):
            self._expire_retained()
            state = self._states.setdefault(reading.patient_id, PatientAlertState())
            status_event = self._track_status(reading.patient_id, state, classification.overall)
            self._publish(
                VitalReadingEvent(
                    patient_id=reading.patient_id,
                    reading=self._snapshot(reading, classification),
                    overall=classification.overall,
                )
            )

            if classification.overall is Tier.NORMAL:
                event = self._on_normal(state)
            else:
                event = self._on_abnormal(reading, classification, state)

            if event is not None:
                self._publish(event)
            if status_event is not None:
                self._publish(status_event)
            # A clear reaches consumers through the publishers only
            return None if classification.overall is Tier.NORMAL else event

    async def acknowledge(self, alert_id: str, by_user_id: str) -> Alert:
        alert = self._find(alert_id)
        if alert.acknowledged:
            return alert.model_copy(deep=True)

        async with self._lock_for(alert.patient_id):
            if alert.acknowledged:
                return alert.model_copy(deep=True)

            acknowledged_at = self._now()
            alert.acknowledged = True
            alert.acknowledged_by = by_user_id
            alert.acknowledged_at = acknowledged_at
            alert.updated_at = acknowledged_at

            state = self._states.get(alert.patient_id)
            if state is not None and state.open_alert_id == alert.id:
                self._close(state)
            self._retire(alert)

            log.info(
                "alert acknowledged",
                alert_id=alert.id,
                patient_id=alert.patient_id,
                level=alert.level.value,
                acknowledged_by=by_user_id,
            )
            snapshot = alert.model_copy(deep=True)
            self._publish(AlertAcknowledgedEvent(alert=snapshot))
            return snapshot

    def get(self, alert_id: str) -> Alert:
        return self._find(alert_id).model_copy(deep=True)

    def list_active(self, patient_id: str | None = None, limit: int | None = None) -> list[Alert]:
        self._expire_retained()
        alerts: list[Alert] = []
        for alert in reversed(self._alerts.values()):
            if patient_id is not None and alert.patient_id != patient_id:
                continue
            alerts.append(alert.model_copy(deep=True))
            if limit is not None and len(alerts) >= limit:
                break
        return alerts

    # ========== State Transitions ==========

    def _on_normal(self, state: PatientAlertState) -> AlertEvent | None:
        state.consecutive_normals += 1
        alert = self._open_alert(state)
        if alert is None:
            return None
        if state.consecutive_normals < self._policy.clear_after_normal_readings:
            return None

        alert.status = AlertStatus.RESOLVED
        alert.updated_at = self._now()
        self._close(state)
        # Unacknowledged critical alerts stay listed until someone acknowledges them
        if alert.level is not Tier.CRITICAL:
            self._retire(alert)
        log.info("alert cleared", alert_id=alert.id, patient_id=alert.patient_id, level=alert.level.value)
        return AlertEvent(type="cleared", alert=alert.model_copy(deep=True))

    def _on_abnormal(
        self,
        reading: VitalReading,
        classification: ReadingClassification,
        state: PatientAlertState,
    ) -> AlertEvent | None:
        state.consecutive_normals = 0
        level = classification.overall
        alert = self._open_alert(state)

        if alert is None:
            return self._open(reading, classification, state, "new")

        if level > alert.level:
            alert.status = AlertStatus.SUPERSEDED
            alert.updated_at = self._now()
            self._retire(alert)
            log.info(
                "alert escalated",
                alert_id=alert.id,
                patient_id=alert.patient_id,
                from_level=alert.level.value,
                to_level=level.value,
            )
            return self._open(reading, classification, state, "escalated")

        # Same or lower severity refreshes the open alert without downgrading it
        alert.vital_snapshot = self._snapshot(reading, classification)
        alert.message = self._build_message(reading, classification, alert.level)
        alert.updated_at = self._now()
        if not self._should_emit(state):
            return None
        return AlertEvent(type="update", alert=alert.model_copy(deep=True))

    def _open(
        self,
        reading: VitalReading,
        classification: ReadingClassification,
        state: PatientAlertState,
        event_type: Literal["new", "escalated"],
    ) -> AlertEvent:
        level = classification.overall
        created_at = self._now()
        alert = Alert(
            id=uuid.uuid4().hex,
            patient_id=reading.patient_id,
            level=level,
            title=f"{level.value.capitalize()} vital signs",
            message=self._build_message(reading, classification, level),
            vital_snapshot=self._snapshot(reading, classification),
            created_at=created_at,
            updated_at=created_at,
        )
        self._alerts[alert.id] = alert
        state.open_alert_id = alert.id
        state.last_emitted_at = self._clock()
        state.suppressed_updates = 0
        log.info(
            "alert opened",
            alert_id=alert.id,
            patient_id=alert.patient_id,
            level=level.value,
            event_type=event_type,
        )
        return AlertEvent(type=event_type, alert=alert.model_copy(deep=True))

    def _should_emit(self, state: PatientAlertState) -> bool:
        now = self._clock()
        last = state.last_emitted_at
        due = (
            last is None
            # A clock that moved backwards forces an update rather than a silence of unknown length
            or now < last
            or now - last >= self._policy.update_interval_seconds
        )
        if due:
            if state.suppressed_updates:
                log.debug("alert update coalesced", suppressed_updates=state.suppressed_updates)
            state.last_emitted_at = now
            state.suppressed_updates = 0
            return True
        state.suppressed_updates += 1
        return False

    def _track_status(
        self, patient_id: str, state: PatientAlertState, overall: Tier
    ) -> PatientStatusChangeEvent | None:
        previous = state.last_tier
        state.last_tier = overall
        if previous == overall:
            return None
        if previous is None and overall is Tier.NORMAL:
            return None
        return PatientStatusChangeEvent(
            patient_id=patient_id,
            old_status=previous,
            new_status=overall,
            timestamp=self._now(),
        )

    # ========== Bookkeeping ==========

    def _open_alert(self, state: PatientAlertState) -> Alert | None:
        if state.open_alert_id is None:
            return None
        alert = self._alerts.get(state.open_alert_id)
        if alert is None or alert.acknowledged:
            self._close(state)
            return None
        return alert

    @staticmethod
    def _close(state: PatientAlertState) -> None:
        state.open_alert_id = None
        state.last_emitted_at = None
        state.suppressed_updates = 0

    def _retire(self, alert: Alert) -> None:
        self._alerts.pop(alert.id, None)
        self._archive[alert.id] = alert
        self._archive.move_to_end(alert.id)
        while len(self._archive) > self._policy.archive_size:
            self._archive.popitem(last=False)

        if self._history_sink is None:
            return
        try:
            self._history_sink.publish(alert.model_copy(deep=True))
        except Exception:
            log.exception("alert history publish failed", alert_id=alert.id, patient_id=alert.patient_id)

    def _expire_retained(self) -> None:
        retention = self._policy.retention_seconds
        if retention is None:
            return
        cutoff = self._now() - timedelta(seconds=retention)
        expired = [alert for alert in self._alerts.values() if alert.created_at < cutoff]
        for alert in expired:
            state = self._states.get(alert.patient_id)
            if state is not None and state.open_alert_id == alert.id:
                self._close(state)
            self._retire(alert)
            log.info("alert expired", alert_id=alert.id, patient_id=alert.patient_id, level=alert.level.value)

    def _find(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id) or self._archive.get(alert_id)
        if alert is None:
            raise NotFoundError("alert not found", alert_id=alert_id)
        return alert

    def _lock_for(self, patient_id: str) -> asyncio.Lock:
        lock = self._locks.get(patient_id)
        if lock is None:
            lock = self._locks[patient_id] = asyncio.Lock()
        return lock

    def _publish(self, event: PipelineEvent) -> None:
        for publisher in self._publishers:
            try:
                publisher(event)
            except Exception:
                log.exception("event publish failed", event_type=event.type)

    # ========== Formatting ==========

    @staticmethod
    def _snapshot(reading: VitalReading, classification: ReadingClassification) -> VitalSnapshot:
        # Rejected vitals are left out so the snapshot only carries classified values
        values = {name: getattr(reading, name) for name in classification.tiers}
        return VitalSnapshot(
            device_id=reading.device_id,
            timestamp=reading.timestamp,
            tiers=dict(classification.tiers),
            **values,
        )

    @staticmethod
    def _build_message(
        reading: VitalReading, classification: ReadingClassification, level: Tier
    ) -> str:
        issues = []
        for vital_name, tier in classification.tiers.items():
            if tier is Tier.NORMAL:
                continue
            label, unit = VITAL_LABELS[vital_name]
            issues.append(f"{label} {getattr(reading, vital_name):g} {unit} ({tier.value})")
        return f"{level.value.capitalize()} vitals: {', '.join(issues)}"
