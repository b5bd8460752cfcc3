"""WebSocket and HTTP endpoints for alert consumers and acknowledgments."""

import asyncio
import json
from typing import Any, List

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as SchemaValidationError

from telecare.core.errors import AlertingError, AuthError, ValidationError
from telecare.core.logging import bind_connection_context
from telecare.core.security import Identity
from telecare.modules.alerts.access import ensure_can_view, ensure_patient_access, visible_alerts
from telecare.modules.alerts.registry import normalize_target
from telecare.modules.alerts.schemas import (
    AcknowledgeAlertRequest,
    Alert,
    AuthenticateRequest,
    AuthFailedEvent,
    ClientRequest,
    ErrorDetail,
    ErrorFrame,
    ListActiveRequest,
    NotificationReceipt,
    OnlineDoctor,
    PingRequest,
    PongEvent,
    ResponseFrame,
    SubscribeRequest,
    SystemNotificationRequest,
    UnsubscribeRequest,
    client_request_adapter,
)
from telecare.modules.alerts.service import AlertRuntime, get_runtime
from telecare.shared import deps
from telecare.shared.constants import ALL_CRITICAL, Role, Tier

router = APIRouter()
log = structlog.get_logger()


class AuthRejected(Exception):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


# ========== Shared Queries ==========


def _list_for(
    runtime: AlertRuntime,
    identity: Identity,
    patient_id: str | None,
    limit: int | None,
    subscribed: set[str],
) -> list[Alert]:
    if patient_id is not None:
        ensure_patient_access(identity, patient_id)
        subscribed = subscribed | {patient_id}
    alerts = visible_alerts(identity, runtime.aggregator.list_active(patient_id), subscribed)
    return alerts if limit is None else alerts[:limit]


async def _acknowledge(
    runtime: AlertRuntime, identity: Identity, alert_id: str, subscribed: set[str]
) -> Alert:
    alert = runtime.aggregator.get(alert_id)
    ensure_can_view(identity, alert, subscribed)
    return await runtime.aggregator.acknowledge(alert_id, by_user_id=identity.user_id)


# ========== WebSocket Endpoint ==========


async def _authenticate_alert_websocket(
    websocket: WebSocket, runtime: AlertRuntime, token: str | None
) -> Identity:
    # The window covers waiting for the credential and verifying it
    try:
        return await asyncio.wait_for(
            _receive_and_verify(websocket, runtime, token), timeout=runtime.auth_timeout_seconds
        )
    except asyncio.TimeoutError:
        raise AuthRejected("timeout", "authentication timed out") from None


async def _receive_and_verify(
    websocket: WebSocket, runtime: AlertRuntime, token: str | None
) -> Identity:
    if not token:
        raw_message = await websocket.receive_text()
        try:
            request = client_request_adapter.validate_json(raw_message)
        except SchemaValidationError:
            raise AuthRejected("protocol", "first message must authenticate") from None
        if not isinstance(request, AuthenticateRequest):
            raise AuthRejected("protocol", "first message must authenticate")
        token = request.token

    try:
        return await runtime.verifier.verify_credential(token)
    except AuthError as exc:
        raise AuthRejected("invalid_credential", exc.message) from exc


async def _handle_request(
    request: ClientRequest, client_id: str, identity: Identity, runtime: AlertRuntime
) -> Any:
    registry = runtime.registry
    subscribed = {sub.target for sub in registry.subscriptions_for(client_id)}

    if isinstance(request, SubscribeRequest):
        target = normalize_target(request.patient_id)
        ensure_patient_access(identity, target)
        subscription = registry.subscribe(client_id, target)
        return {"patientId": subscription.target}
    if isinstance(request, UnsubscribeRequest):
        target = normalize_target(request.patient_id)
        registry.unsubscribe(client_id, target)
        return {"patientId": target}
    if isinstance(request, AcknowledgeAlertRequest):
        alert = await _acknowledge(runtime, identity, request.alert_id, subscribed)
        return alert.to_wire()
    if isinstance(request, ListActiveRequest):
        limit = request.limit or runtime.policy.list_cap
        patient_id = request.patient_id
        if patient_id is not None and normalize_target(patient_id) == ALL_CRITICAL:
            alerts = [
                alert
                for alert in _list_for(runtime, identity, None, None, subscribed)
                if alert.level is Tier.CRITICAL
            ][:limit]
        else:
            alerts = _list_for(runtime, identity, patient_id, limit, subscribed)
        return [alert.to_wire() for alert in alerts]
    if isinstance(request, AuthenticateRequest):
        raise ValidationError("connection is already authenticated", client_id=client_id)
    raise ValidationError("unsupported request", request_type=request.type)


async def _process_alert_message(
    raw_message: str, client_id: str, identity: Identity, runtime: AlertRuntime
) -> None:
    request_id: str | None = None
    try:
        data = json.loads(raw_message)
        if isinstance(data, dict):
            raw_request_id = data.get("requestId") or data.get("request_id")
            # A malformed id must not stop the error frame from going out
            request_id = raw_request_id if isinstance(raw_request_id, str) else None
        request = client_request_adapter.validate_python(data)
        if isinstance(request, PingRequest):
            runtime.hub.send(client_id, PongEvent(request_id=request.request_id))
            return
        result = await _handle_request(request, client_id, identity, runtime)
        reply: ResponseFrame | ErrorFrame = ResponseFrame(request_id=request_id, data=result)
    except json.JSONDecodeError:
        reply = _error_frame(request_id, ValidationError("message is not valid JSON"))
    except SchemaValidationError as exc:
        reply = _error_frame(
            request_id,
            ValidationError("message does not match any request", errors=exc.error_count()),
        )
    except AlertingError as exc:
        log.warning("alerts websocket request rejected", code=exc.code, error=exc.message, **exc.context)
        reply = _error_frame(request_id, exc)
    runtime.hub.send(client_id, reply)


def _error_frame(request_id: str | None, exc: AlertingError) -> ErrorFrame:
    return ErrorFrame(
        request_id=request_id,
        error=ErrorDetail(code=exc.code, message=exc.message, context=exc.context),
    )


@router.websocket("/ws")
async def websocket_alerts(
    websocket: WebSocket,
    token: str | None = None,
    runtime: AlertRuntime = Depends(get_runtime),
) -> None:
    """
    Realtime alert stream.

    The credential comes from the ``token`` query parameter or from a first
    ``authenticate`` message. After that the socket carries typed requests
    (subscribe, unsubscribe, acknowledge_alert, list_active, ping) and pushed
    alert, presence and notification frames.
    """
    hub = runtime.hub
    await websocket.accept()
    state = hub.open()
    bind_connection_context(state.client_id)
    hub.begin_authentication(state.client_id)

    try:
        identity = await _authenticate_alert_websocket(websocket, runtime, token)
    except AuthRejected as exc:
        log.warning("alerts websocket auth failed", reason=exc.reason, error=exc.message)
        hub.disconnect(state.client_id)
        await websocket.send_json(AuthFailedEvent(reason=exc.reason, message=exc.message).to_wire())
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    except WebSocketDisconnect:
        hub.disconnect(state.client_id)
        return

    bind_connection_context(state.client_id, user_id=identity.user_id, role=identity.role.value)
    initial_alerts = None
    if identity.role is Role.DOCTOR:
        initial_alerts = [
            alert for alert in runtime.aggregator.list_active() if alert.level is Tier.CRITICAL
        ]
    hub.connect(state.client_id, identity, websocket.send_json, initial_alerts=initial_alerts)

    try:
        while True:
            raw_message = await websocket.receive_text()
            hub.touch(state.client_id)
            await _process_alert_message(raw_message, state.client_id, identity, runtime)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(state.client_id)


# ========== HTTP Endpoints ==========


@router.get("/active", response_model=List[Alert])
async def list_active_alerts(
    patient_id: str | None = None,
    limit: int | None = Query(None, ge=1, description="Defaults to the bell-list cap"),
    audit: bool = Query(False, description="Unbounded listing, admins only"),
    identity: Identity = Depends(deps.get_current_identity),
    runtime: AlertRuntime = Depends(get_runtime),
) -> list[Alert]:
    """Pull the active alerts, newest first. Clients call this after every (re)connect."""
    if audit:
        deps.RoleChecker([Role.ADMIN])(identity)
        effective_limit = limit
    else:
        effective_limit = limit or runtime.policy.list_cap
    return _list_for(runtime, identity, patient_id, effective_limit, set())


@router.post("/{alert_id}/acknowledge", response_model=Alert)
async def acknowledge_alert(
    alert_id: str,
    identity: Identity = Depends(deps.get_current_identity),
    runtime: AlertRuntime = Depends(get_runtime),
) -> Alert:
    """Acknowledge an alert. Acknowledging twice returns the stored state."""
    return await _acknowledge(runtime, identity, alert_id, set())


@router.get("/presence/doctors", response_model=List[OnlineDoctor])
async def online_doctors(
    identity: Identity = Depends(deps.get_current_identity),
    runtime: AlertRuntime = Depends(get_runtime),
) -> list[OnlineDoctor]:
    return runtime.hub.online_doctors()


@router.post("/notifications", response_model=NotificationReceipt)
async def send_system_notification(
    notification: SystemNotificationRequest,
    identity: Identity = Depends(deps.RoleChecker([Role.ADMIN])),
    runtime: AlertRuntime = Depends(get_runtime),
) -> NotificationReceipt:
    delivered = runtime.hub.notify_system(
        notification.message,
        level=notification.level,
        audience=notification.audience,
    )
    log.info("system notification requested", user_id=identity.user_id, delivered=delivered)
    return NotificationReceipt(delivered=delivered)
