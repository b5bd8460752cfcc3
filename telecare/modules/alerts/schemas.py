from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, Field, TypeAdapter, field_validator, model_validator

from telecare.shared.constants import (
    AlertStatus,
    NotificationAudience,
    PresenceStatus,
    Role,
    Tier,
    VITAL_NAMES,
)
from telecare.shared.schemas import CamelModel, FrozenCamelModel, ensure_utc, utc_now

# ========== Readings & Alerts ==========


class VitalReading(FrozenCamelModel):
    """A single multi-vital sample delivered by a monitoring device."""

    patient_id: str = Field(min_length=1)
    device_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    heart_rate: float | None = None
    spo2: float | None = Field(default=None, validation_alias=AliasChoices("spo2", "spO2", "SpO2"))
    temperature: float | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_epoch_timestamp(cls, value: object) -> object:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        return value

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    # A garbled sensor value becomes NaN so the classifier rejects that vital alone
    @field_validator("heart_rate", "spo2", "temperature", mode="before")
    @classmethod
    def coerce_sensor_value(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, bool):
            return float("nan")
        if isinstance(value, (int, float)):
            return value
        try:
            return float(str(value))
        except ValueError:
            return float("nan")

    @model_validator(mode="after")
    def require_a_vital(self) -> "VitalReading":
        if all(getattr(self, name) is None for name in VITAL_NAMES):
            raise ValueError("reading carries no vital values")
        return self

    def vitals(self) -> dict[str, float | None]:
        return {name: getattr(self, name) for name in VITAL_NAMES}


class VitalSnapshot(CamelModel):
    device_id: str | None = None
    timestamp: datetime
    heart_rate: float | None = None
    spo2: float | None = None
    temperature: float | None = None
    tiers: dict[str, Tier] = Field(default_factory=dict)


class Alert(CamelModel):
    id: str
    patient_id: str
    level: Tier
    title: str
    message: str
    vital_snapshot: VitalSnapshot
    created_at: datetime
    updated_at: datetime
    status: AlertStatus = AlertStatus.OPEN
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None


# ========== Server -> Client Frames ==========


class AlertEvent(CamelModel):
    type: Literal["new", "update", "escalated", "cleared"]
    alert: Alert


class AlertAcknowledgedEvent(CamelModel):
    type: Literal["alert_acknowledged"] = "alert_acknowledged"
    alert: Alert


class DoctorStatusEvent(CamelModel):
    type: Literal["doctor_status"] = "doctor_status"
    doctor_id: str
    name: str | None = None
    status: PresenceStatus
    timestamp: datetime = Field(default_factory=utc_now)


class PatientStatusChangeEvent(CamelModel):
    type: Literal["patient_status_change"] = "patient_status_change"
    patient_id: str
    old_status: Tier | None = None
    new_status: Tier
    timestamp: datetime = Field(default_factory=utc_now)


class VitalReadingEvent(CamelModel):
    """Live reading pushed to the patient's subscribers, normal or not."""

    type: Literal["vital_reading"] = "vital_reading"
    patient_id: str
    reading: VitalSnapshot
    overall: Tier


class SystemNotificationEvent(CamelModel):
    type: Literal["system_notification"] = "system_notification"
    level: Literal["info", "warning", "error"] = "info"
    message: str
    audience: NotificationAudience = NotificationAudience.ALL
    timestamp: datetime = Field(default_factory=utc_now)


class ConnectionEstablishedEvent(CamelModel):
    type: Literal["connection_established"] = "connection_established"
    connection_id: str
    user_id: str
    role: Role
    name: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class InitialCriticalAlertsEvent(CamelModel):
    type: Literal["initial_critical_alerts"] = "initial_critical_alerts"
    alerts: list[Alert]


class AuthFailedEvent(CamelModel):
    type: Literal["auth_failed"] = "auth_failed"
    reason: Literal["invalid_credential", "timeout", "protocol"]
    message: str


class PongEvent(CamelModel):
    type: Literal["pong"] = "pong"
    request_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class ResponseFrame(CamelModel):
    type: Literal["response"] = "response"
    request_id: str | None = None
    ok: bool = True
    data: Any = None


class ErrorDetail(CamelModel):
    code: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)


class ErrorFrame(CamelModel):
    type: Literal["error"] = "error"
    request_id: str | None = None
    error: ErrorDetail


ServerFrame = Annotated[
    Union[
        AlertEvent,
        AlertAcknowledgedEvent,
        DoctorStatusEvent,
        PatientStatusChangeEvent,
        VitalReadingEvent,
        SystemNotificationEvent,
        ConnectionEstablishedEvent,
        InitialCriticalAlertsEvent,
        AuthFailedEvent,
        PongEvent,
        ResponseFrame,
        ErrorFrame,
    ],
    Field(discriminator="type"),
]
server_frame_adapter: TypeAdapter[ServerFrame] = TypeAdapter(ServerFrame)


# ========== Client -> Server Requests ==========


class AuthenticateRequest(CamelModel):
    type: Literal["authenticate"]
    token: str


class SubscribeRequest(CamelModel):
    type: Literal["subscribe"]
    request_id: str | None = None
    patient_id: str = Field(min_length=1)


class UnsubscribeRequest(CamelModel):
    type: Literal["unsubscribe"]
    request_id: str | None = None
    patient_id: str = Field(min_length=1)


class AcknowledgeAlertRequest(CamelModel):
    type: Literal["acknowledge_alert"]
    request_id: str | None = None
    alert_id: str = Field(min_length=1)


class ListActiveRequest(CamelModel):
    type: Literal["list_active"]
    request_id: str | None = None
    patient_id: str | None = None
    limit: int | None = Field(default=None, ge=1)


class PingRequest(CamelModel):
    type: Literal["ping"]
    request_id: str | None = None


ClientRequest = Annotated[
    Union[
        AuthenticateRequest,
        SubscribeRequest,
        UnsubscribeRequest,
        AcknowledgeAlertRequest,
        ListActiveRequest,
        PingRequest,
    ],
    Field(discriminator="type"),
]
client_request_adapter: TypeAdapter[ClientRequest] = TypeAdapter(ClientRequest)


# ========== HTTP Bodies ==========


class IngestResponse(CamelModel):
    event: AlertEvent | None = None


class SystemNotificationRequest(CamelModel):
    message: str = Field(min_length=1)
    level: Literal["info", "warning", "error"] = "info"
    audience: NotificationAudience = NotificationAudience.ALL


class NotificationReceipt(CamelModel):
    delivered: int


class OnlineDoctor(CamelModel):
    doctor_id: str
    name: str | None = None
    connected_at: datetime
    connections: int
