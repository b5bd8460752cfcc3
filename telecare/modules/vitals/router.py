"""HTTP ingestion endpoint for device readings."""

import structlog
from fastapi import APIRouter, Depends, Header, status

from telecare.core.errors import AuthError
from telecare.modules.alerts.schemas import IngestResponse, VitalReading
from telecare.modules.alerts.service import AlertRuntime, get_runtime

router = APIRouter()
log = structlog.get_logger()


def require_ingest_key(
    x_ingest_key: str | None = Header(None),
    runtime: AlertRuntime = Depends(get_runtime),
) -> None:
    if runtime.ingest_api_key and x_ingest_key != runtime.ingest_api_key:
        raise AuthError("invalid ingest key")


@router.post(
    "/readings",
    response_model=IngestResponse,
    summary="Classify a vital reading and update alert state",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_ingest_key)],
)
async def ingest_reading(
    reading: VitalReading,
    runtime: AlertRuntime = Depends(get_runtime),
) -> IngestResponse:
    """
    Feed one reading through the classifier and the aggregator.

    Returns the alert event the reading produced, or ``null`` when it was
    absorbed (normal reading, suppressed update).
    """
    event = await runtime.aggregator.ingest(reading)
    log.debug(
        "reading ingested",
        patient_id=reading.patient_id,
        device_id=reading.device_id,
        event_type=event.type if event else None,
    )
    return IngestResponse(event=event)
