"""
Operator tooling for the alert service.

Usage:
    # Mint a development token (signed with SECRET_KEY)
    telecare-alerts issue-token --user-id doc-1 --role doctor --name "Dr. Lee"

    # Push a reading through the pipeline
    telecare-alerts send-reading --patient-id p-1 --heart-rate 145

    # Follow the realtime stream
    telecare-alerts listen --token <jwt> --patient-id p-1
"""

import asyncio
from datetime import timedelta
from typing import Any, Callable, List, Optional, Tuple

import httpx
import typer

from telecare.client.channels import EventChannel, ReconciliationSnapshot
from telecare.client.stream import AlertStreamClient
from telecare.core.config import settings
from telecare.core.errors import AlertingError
from telecare.core.security import create_access_token
from telecare.modules.alerts.schemas import (
    AlertAcknowledgedEvent,
    AlertEvent,
    DoctorStatusEvent,
    InitialCriticalAlertsEvent,
    PatientStatusChangeEvent,
    SystemNotificationEvent,
    VitalReadingEvent,
)
from telecare.shared.constants import ALL_CRITICAL, Role

app = typer.Typer(help="Telecare alert service tooling")

BASE_URL = "http://localhost:8000"


def _format_vitals(reading: Any) -> str:
    values = {"HR": reading.heart_rate, "SpO2": reading.spo2, "T": reading.temperature}
    return " ".join(f"{label}={value:g}" for label, value in values.items() if value is not None)


RENDERERS: List[Tuple[type, Callable[[Any], str]]] = [
    (AlertEvent, lambda e: f"{e.type}: [{e.alert.level.value}] {e.alert.patient_id} {e.alert.message}"),
    (AlertAcknowledgedEvent, lambda e: f"acknowledged: {e.alert.id} by {e.alert.acknowledged_by}"),
    (InitialCriticalAlertsEvent, lambda e: f"critical on connect: {len(e.alerts)}"),
    (PatientStatusChangeEvent, lambda e: f"status: {e.patient_id} {e.old_status} -> {e.new_status.value}"),
    (VitalReadingEvent, lambda e: f"vitals: {e.patient_id} [{e.overall.value}] {_format_vitals(e.reading)}"),
    (DoctorStatusEvent, lambda e: f"doctor {e.doctor_id} {e.status.value}"),
    (SystemNotificationEvent, lambda e: f"notice [{e.level}]: {e.message}"),
    (ReconciliationSnapshot, lambda e: f"snapshot {e.patient_id or 'all'}: {len(e.alerts)} active"),
]


@app.command()
def issue_token(
    user_id: str = typer.Option(..., help="Subject of the token"),
    role: Role = typer.Option(Role.DOCTOR, help="doctor, family or admin"),
    name: Optional[str] = typer.Option(None, help="Display name"),
    patient: Optional[List[str]] = typer.Option(None, help="Assigned patient id (repeatable)"),
    minutes: int = typer.Option(settings.ACCESS_TOKEN_EXPIRE_MINUTES, help="Lifetime in minutes"),
) -> None:
    """Print a signed access token for local testing."""
    token = create_access_token(
        subject=user_id,
        role=role,
        name=name,
        patient_ids=patient or None,
        expires_delta=timedelta(minutes=minutes),
    )
    typer.echo(token)


@app.command()
def send_reading(
    patient_id: str = typer.Option(..., help="Patient ID"),
    heart_rate: Optional[float] = typer.Option(None, help="Heart rate in bpm"),
    spo2: Optional[float] = typer.Option(None, help="SpO2 in %"),
    temperature: Optional[float] = typer.Option(None, help="Temperature in °C"),
    device_id: Optional[str] = typer.Option(None, help="Device ID"),
    base_url: str = typer.Option(BASE_URL, help="Service base URL"),
    ingest_key: Optional[str] = typer.Option(None, help="X-Ingest-Key header value"),
) -> None:
    """Send one reading to the ingestion endpoint."""
    payload = {
        "patientId": patient_id,
        "deviceId": device_id,
        "heartRate": heart_rate,
        "spo2": spo2,
        "temperature": temperature,
    }
    headers = {"X-Ingest-Key": ingest_key} if ingest_key else {}
    try:
        response = httpx.post(
            f"{base_url.rstrip('/')}{settings.API_V1_STR}/vitals/readings",
            json={key: value for key, value in payload.items() if value is not None},
            headers=headers,
            timeout=10.0,
        )
    except httpx.HTTPError as exc:
        typer.echo(f"Request failed: {exc}", err=True)
        raise typer.Exit(1) from exc

    if response.status_code >= 400:
        typer.echo(f"Rejected ({response.status_code}): {response.text}", err=True)
        raise typer.Exit(1)
    event = response.json().get("event")
    if event is None:
        typer.echo("No alert event")
    else:
        alert = event["alert"]
        typer.echo(f"{event['type']}: [{alert['level']}] {alert['message']} ({alert['id']})")


@app.command()
def listen(
    token: str = typer.Option(..., help="Access token"),
    patient_id: Optional[List[str]] = typer.Option(
        None, help=f"Patient to subscribe to (repeatable, '{ALL_CRITICAL}' for all critical)"
    ),
    url: str = typer.Option(f"ws://localhost:8000{settings.API_V1_STR}/alerts/ws", help="Stream URL"),
) -> None:
    """Follow the alert stream until interrupted."""
    try:
        asyncio.run(_listen(url, token, patient_id or []))
    except KeyboardInterrupt:
        typer.echo("Disconnected")
    except AlertingError as exc:
        typer.echo(f"{exc.code}: {exc.message}", err=True)
        raise typer.Exit(1) from exc


async def _listen(url: str, token: str, patient_ids: List[str]) -> None:
    client = AlertStreamClient(url, token)
    # Channels exist before the handshake so no early frame is missed
    channels = [(client.channel(event_type), render) for event_type, render in RENDERERS]
    async with client:
        await asyncio.gather(
            *(_echo(channel, render) for channel, render in channels),
            _subscribe_all(client, patient_ids),
        )


async def _subscribe_all(client: AlertStreamClient, patient_ids: List[str]) -> None:
    for patient_id in patient_ids:
        target = await client.subscribe(patient_id)
        typer.echo(f"subscribed: {target}")


async def _echo(channel: EventChannel[Any], render: Callable[[Any], str]) -> None:
    async for event in channel:
        typer.echo(render(event))


if __name__ == "__main__":
    app()
