import asyncio
from datetime import datetime

import structlog
from beanie import Document
from pymongo import IndexModel

from telecare.modules.alerts.schemas import Alert
from telecare.shared.constants import AlertStatus, Tier

log = structlog.get_logger()


class AlertRecord(Document):
    """Retired alert kept for audit; the document id is the alert id."""

    id: str
    patient_id: str
    level: Tier
    status: AlertStatus
    title: str
    message: str
    vital_snapshot: dict
    created_at: datetime
    updated_at: datetime
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None

    class Settings:
        name = "alert_history"
        indexes = [
            IndexModel(
                [
                    ("patient_id", 1),
                    ("created_at", -1),
                ]
            )
        ]

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertRecord":
        return cls(
            id=alert.id,
            patient_id=alert.patient_id,
            level=alert.level,
            status=alert.status,
            title=alert.title,
            message=alert.message,
            vital_snapshot=alert.vital_snapshot.model_dump(mode="json"),
            created_at=alert.created_at,
            updated_at=alert.updated_at,
            acknowledged=alert.acknowledged,
            acknowledged_by=alert.acknowledged_by,
            acknowledged_at=alert.acknowledged_at,
        )


class MongoAlertHistorySink:
    """Fire-and-forget writer; a retired alert written twice is replaced, not duplicated."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    def publish(self, alert: Alert) -> None:
        task = asyncio.get_running_loop().create_task(self._save(AlertRecord.from_alert(alert)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    @staticmethod
    async def _save(record: AlertRecord) -> None:
        try:
            await record.save()
        except Exception:
            log.exception("alert history write failed", alert_id=record.id, patient_id=record.patient_id)
