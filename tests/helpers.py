from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from telecare.core.security import create_access_token
from telecare.modules.alerts.schemas import VitalReading
from telecare.shared.constants import Role


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Manually advanced UTC clock for alert timestamps."""

    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_reading(patient_id: str = "patient-1", **vitals: Any) -> VitalReading:
    return VitalReading(patient_id=patient_id, device_id="device-1", **vitals)


def make_token(
    user_id: str,
    role: Role,
    name: str | None = None,
    patient_ids: Iterable[str] | None = None,
) -> str:
    return create_access_token(subject=user_id, role=role, name=name, patient_ids=patient_ids)


def auth_headers(
    user_id: str,
    role: Role,
    name: str | None = None,
    patient_ids: Iterable[str] | None = None,
) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role, name, patient_ids)}"}
