from __future__ import annotations

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Iterable, assert_never

import structlog

from telecare.core.security import Identity
from telecare.modules.alerts.aggregator import PipelineEvent
from telecare.modules.alerts.models import ConnectionState
from telecare.modules.alerts.registry import SubscriptionRegistry
from telecare.modules.alerts.schemas import (
    Alert,
    AlertAcknowledgedEvent,
    AlertEvent,
    ConnectionEstablishedEvent,
    DoctorStatusEvent,
    InitialCriticalAlertsEvent,
    OnlineDoctor,
    PatientStatusChangeEvent,
    SystemNotificationEvent,
    VitalReadingEvent,
)
from telecare.shared.constants import (
    ConnectionPhase,
    NotificationAudience,
    PresenceStatus,
    Role,
)
from telecare.shared.schemas import CamelModel, utc_now

log = structlog.get_logger()

SendFrame = Callable[[dict[str, Any]], Awaitable[None]]


class ConnectionHub:
    """
    Live realtime connections and their outbound queues.

    Fan-out only enqueues (never awaits), so frames published while a patient's
    aggregator lock is held land in every queue in causal order. One writer task
    per connection drains its queue onto the socket.
    """

    def __init__(self, registry: SubscriptionRegistry, queue_size: int = 100) -> None:
        self._registry = registry
        self._queue_size = queue_size
        self._connections: dict[str, ConnectionState] = {}

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    # ========== Lifecycle ==========

    def open(self) -> ConnectionState:
        now = utc_now()
        state = ConnectionState(client_id=uuid.uuid4().hex, connected_at=now, last_seen=now)
        self._connections[state.client_id] = state
        return state

    def begin_authentication(self, client_id: str) -> None:
        state = self._connections.get(client_id)
        if state is not None:
            state.phase = ConnectionPhase.AUTHENTICATING

    def connect(
        self,
        client_id: str,
        identity: Identity,
        send: SendFrame,
        initial_alerts: list[Alert] | None = None,
    ) -> ConnectionState:
        state = self._connections[client_id]
        first_doctor_session = identity.role is Role.DOCTOR and not self._sessions_of(identity.user_id)

        state.identity = identity
        state.phase = ConnectionPhase.CONNECTED
        state.outbound = asyncio.Queue(maxsize=self._queue_size)
        state.writer = asyncio.create_task(self._drain(state, send))
        self._registry.register(client_id, identity.role)

        self.send(
            client_id,
            ConnectionEstablishedEvent(
                connection_id=client_id,
                user_id=identity.user_id,
                role=identity.role,
                name=identity.name,
            ),
        )
        if initial_alerts:
            self.send(client_id, InitialCriticalAlertsEvent(alerts=initial_alerts))
        if first_doctor_session:
            self.broadcast(
                DoctorStatusEvent(
                    doctor_id=identity.user_id,
                    name=identity.name,
                    status=PresenceStatus.ONLINE,
                ),
                exclude={client_id},
            )
        log.info(
            "alerts websocket connected",
            client_id=client_id,
            user_id=identity.user_id,
            role=identity.role.value,
        )
        return state

    def disconnect(self, client_id: str) -> None:
        state = self._connections.pop(client_id, None)
        if state is None:
            return
        was_connected = state.is_connected
        state.phase = ConnectionPhase.DISCONNECTED
        self._registry.on_disconnect(client_id)
        if state.writer is not None and not state.writer.done():
            state.writer.cancel()

        identity = state.identity
        if not was_connected or identity is None:
            return
        if identity.role is Role.DOCTOR and not self._sessions_of(identity.user_id):
            self.broadcast(
                DoctorStatusEvent(
                    doctor_id=identity.user_id,
                    name=identity.name,
                    status=PresenceStatus.OFFLINE,
                )
            )
        log.info(
            "alerts websocket disconnected",
            client_id=client_id,
            user_id=identity.user_id,
            role=identity.role.value,
        )

    def touch(self, client_id: str) -> None:
        state = self._connections.get(client_id)
        if state is not None:
            state.last_seen = utc_now()

    def get(self, client_id: str) -> ConnectionState | None:
        return self._connections.get(client_id)

    # ========== Delivery ==========

    def publish(self, event: PipelineEvent) -> int:
        """Route a pipeline event to every interested connection."""
        if isinstance(event, (AlertEvent, AlertAcknowledgedEvent)):
            recipients = self._registry.resolve_for_alert(event.alert)
            context = {"alert_id": event.alert.id, "patient_id": event.alert.patient_id}
        elif isinstance(event, PatientStatusChangeEvent):
            recipients = self._registry.resolve_interested_clients(event.patient_id, event.new_status)
            context = {"patient_id": event.patient_id}
        elif isinstance(event, VitalReadingEvent):
            # Live readings go to explicit subscribers, never to the wildcard audience
            recipients = self._registry.subscribers_of(event.patient_id)
            context = {"patient_id": event.patient_id}
        else:
            assert_never(event)
        return self._deliver(recipients, event, **context)

    def send(self, client_id: str, frame: CamelModel) -> bool:
        return self._deliver([client_id], frame) == 1

    def broadcast(self, frame: CamelModel, exclude: Iterable[str] = ()) -> int:
        excluded = set(exclude)
        recipients = [
            client_id
            for client_id, state in list(self._connections.items())
            if state.is_connected and client_id not in excluded
        ]
        return self._deliver(recipients, frame)

    def notify_system(
        self,
        message: str,
        level: str = "info",
        audience: NotificationAudience = NotificationAudience.ALL,
    ) -> int:
        event = SystemNotificationEvent(message=message, level=level, audience=audience)
        if audience is NotificationAudience.ALL:
            recipients = self._connected_ids()
        elif audience is NotificationAudience.DOCTORS:
            recipients = self._connected_ids(Role.DOCTOR)
        elif audience is NotificationAudience.FAMILIES:
            recipients = self._connected_ids(Role.FAMILY)
        else:
            assert_never(audience)
        delivered = self._deliver(recipients, event)
        log.info("system notification sent", audience=audience.value, delivered=delivered)
        return delivered

    def online_doctors(self) -> list[OnlineDoctor]:
        doctors: dict[str, OnlineDoctor] = {}
        for state in list(self._connections.values()):
            identity = state.identity
            if not state.is_connected or identity is None or identity.role is not Role.DOCTOR:
                continue
            current = doctors.get(identity.user_id)
            if current is None:
                doctors[identity.user_id] = OnlineDoctor(
                    doctor_id=identity.user_id,
                    name=identity.name,
                    connected_at=state.connected_at,
                    connections=1,
                )
            else:
                current.connections += 1
                current.connected_at = min(current.connected_at, state.connected_at)
        return list(doctors.values())

    # ========== Internals ==========

    def _deliver(self, recipients: Iterable[str], frame: CamelModel, **context: Any) -> int:
        payload = frame.to_wire()
        delivered = 0
        for client_id in recipients:
            state = self._connections.get(client_id)
            if state is None or state.outbound is None or not state.is_connected:
                continue
            try:
                state.outbound.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                # Client reconciles through list_active after it catches up
                log.warning(
                    "outbound queue full, frame dropped",
                    client_id=client_id,
                    frame_type=payload.get("type"),
                    **context,
                )
        return delivered

    async def _drain(self, state: ConnectionState, send: SendFrame) -> None:
        assert state.outbound is not None
        while True:
            payload = await state.outbound.get()
            try:
                await send(payload)
            except Exception as exc:
                log.warning("alerts websocket send failed", client_id=state.client_id, error=str(exc))
                return

    def _connected_ids(self, role: Role | None = None) -> list[str]:
        return [
            client_id
            for client_id, state in list(self._connections.items())
            if state.is_connected and (role is None or state.role is role)
        ]

    def _sessions_of(self, user_id: str) -> list[str]:
        return [
            client_id
            for client_id, state in list(self._connections.items())
            if state.is_connected and state.identity is not None and state.identity.user_id == user_id
        ]
