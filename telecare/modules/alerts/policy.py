from pydantic import Field

from telecare.core.config import Settings
from telecare.shared.schemas import CamelModel


class AlertPolicy(CamelModel):
    """Tunable aggregation parameters; defaults mirror the dashboard's expectations."""

    update_interval_seconds: float = Field(default=5.0, gt=0)
    clear_after_normal_readings: int = Field(default=2, ge=1)
    list_cap: int = Field(default=10, ge=1)
    archive_size: int = Field(default=1000, ge=1)
    retention_seconds: float | None = Field(default=None, gt=0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertPolicy":
        return cls(
            update_interval_seconds=settings.ALERT_UPDATE_INTERVAL_SECONDS,
            clear_after_normal_readings=settings.ALERT_CLEAR_AFTER_NORMAL_READINGS,
            list_cap=settings.ALERT_LIST_CAP,
            archive_size=settings.ALERT_ARCHIVE_SIZE,
            retention_seconds=settings.ALERT_RETENTION_SECONDS,
        )
