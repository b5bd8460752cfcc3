"""Reconnecting WebSocket client for the realtime alert stream."""

import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import structlog
import websockets
from pydantic import ValidationError as SchemaValidationError
from websockets.exceptions import WebSocketException

from telecare.client.backoff import Backoff
from telecare.client.channels import EventChannel, ReconciliationSnapshot
from telecare.core.errors import AlertingError, AuthError, TransportError, error_from_payload
from telecare.modules.alerts.schemas import (
    AcknowledgeAlertRequest,
    Alert,
    AuthenticateRequest,
    AuthFailedEvent,
    ConnectionEstablishedEvent,
    ErrorFrame,
    ListActiveRequest,
    PingRequest,
    PongEvent,
    ResponseFrame,
    SubscribeRequest,
    UnsubscribeRequest,
    server_frame_adapter,
)
from telecare.shared.constants import ConnectionPhase
from telecare.shared.schemas import CamelModel

log = structlog.get_logger()

EventT = TypeVar("EventT")

NETWORK_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class WebSocketLike(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[WebSocketLike]]


class AlertStreamClient:
    """
    Client side of ``/api/v1/alerts/ws``.

    Usage::

        async with AlertStreamClient(url, token) as client:
            alerts = client.channel(AlertEvent)
            await client.subscribe("patient-1")
            async for event in alerts:
                ...

    After every successful (re)connect the client replays its subscriptions and
    publishes a ReconciliationSnapshot per subscription. Authentication failures
    raise AuthError and are never retried; ``close()`` never reconnects.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        connect: Connector | None = None,
        backoff: Backoff | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        request_timeout: float = 10.0,
        auth_timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._token = token
        self._connect = connect or websockets.connect
        self._backoff = backoff or Backoff()
        self._sleep = sleep
        self._request_timeout = request_timeout
        self._auth_timeout = auth_timeout

        self.phase = ConnectionPhase.DISCONNECTED
        self.connection: ConnectionEstablishedEvent | None = None
        self.auth_error: AuthError | None = None

        self._ws: WebSocketLike | None = None
        self._closed = False
        self._channels: dict[type, list[EventChannel[Any]]] = {}
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._subscriptions: set[str] = set()
        self._supervisor: asyncio.Task | None = None
        self._resync: asyncio.Task | None = None

    # ========== Lifecycle ==========

    async def open(self) -> "AlertStreamClient":
        if self._closed:
            raise TransportError("client is closed", url=self._url)
        await self._establish()
        self._supervisor = asyncio.create_task(self._supervise())
        self._start_resync()
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in (self._resync, self._supervisor):
            if task is not None and not task.done():
                task.cancel()
        await self._drop_connection()
        self._fail_pending(TransportError("client closed"))
        self._close_channels()
        log.info("alert stream closed", url=self._url)

    async def __aenter__(self) -> "AlertStreamClient":
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def subscriptions(self) -> frozenset[str]:
        return frozenset(self._subscriptions)

    def channel(self, event_type: type[EventT]) -> EventChannel[EventT]:
        """Receive only frames of ``event_type`` (e.g. AlertEvent, DoctorStatusEvent)."""
        channel: EventChannel[EventT] = EventChannel(event_type)
        if self._closed:
            channel.close()
        self._channels.setdefault(event_type, []).append(channel)
        return channel

    # ========== Requests ==========

    async def subscribe(self, patient_id: str) -> str:
        data = await self._request(
            SubscribeRequest(type="subscribe", request_id=self._next_id(), patient_id=patient_id)
        )
        target = data["patientId"]
        self._subscriptions.add(target)
        return target

    async def unsubscribe(self, patient_id: str) -> None:
        data = await self._request(
            UnsubscribeRequest(type="unsubscribe", request_id=self._next_id(), patient_id=patient_id)
        )
        self._subscriptions.discard(data["patientId"])

    async def acknowledge_alert(self, alert_id: str) -> Alert:
        data = await self._request(
            AcknowledgeAlertRequest(type="acknowledge_alert", request_id=self._next_id(), alert_id=alert_id)
        )
        return Alert.model_validate(data)

    async def list_active(self, patient_id: str | None = None, limit: int | None = None) -> list[Alert]:
        data = await self._request(
            ListActiveRequest(
                type="list_active",
                request_id=self._next_id(),
                patient_id=patient_id,
                limit=limit,
            )
        )
        return [Alert.model_validate(item) for item in data]

    async def ping(self) -> None:
        await self._request(PingRequest(type="ping", request_id=self._next_id()))

    async def _request(self, request: CamelModel) -> Any:
        ws = self._ws
        if ws is None or self.phase is not ConnectionPhase.CONNECTED:
            raise TransportError("not connected", url=self._url)

        request_id = getattr(request, "request_id")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(json.dumps(request.to_wire()))
            return await asyncio.wait_for(future, timeout=self._request_timeout)
        except asyncio.TimeoutError:
            raise TransportError("request timed out", request_id=request_id) from None
        except (OSError, WebSocketException) as exc:
            raise TransportError("request failed", request_id=request_id, error=str(exc)) from exc
        finally:
            self._pending.pop(request_id, None)

    # ========== Connection Management ==========

    async def _establish(self) -> None:
        self.phase = ConnectionPhase.CONNECTING
        try:
            ws = await self._connect(self._url)
        except NETWORK_ERRORS as exc:
            self.phase = ConnectionPhase.DISCONNECTED
            raise TransportError("connect failed", url=self._url, error=str(exc)) from exc

        self.phase = ConnectionPhase.AUTHENTICATING
        try:
            await ws.send(json.dumps(AuthenticateRequest(type="authenticate", token=self._token).to_wire()))
            raw = await asyncio.wait_for(ws.recv(), timeout=self._auth_timeout)
            frame = server_frame_adapter.validate_json(raw)
        except (*NETWORK_ERRORS, SchemaValidationError) as exc:
            await self._safe_close(ws)
            self.phase = ConnectionPhase.DISCONNECTED
            raise TransportError("handshake failed", url=self._url, error=str(exc)) from exc

        if isinstance(frame, AuthFailedEvent):
            await self._safe_close(ws)
            self.phase = ConnectionPhase.DISCONNECTED
            raise AuthError(frame.message, reason=frame.reason)
        if not isinstance(frame, ConnectionEstablishedEvent):
            await self._safe_close(ws)
            self.phase = ConnectionPhase.DISCONNECTED
            raise TransportError("unexpected handshake frame", frame_type=frame.type)

        self._ws = ws
        self.connection = frame
        self.phase = ConnectionPhase.CONNECTED
        log.info(
            "alert stream connected",
            url=self._url,
            connection_id=frame.connection_id,
            user_id=frame.user_id,
        )
        self._publish(frame)

    async def _supervise(self) -> None:
        while not self._closed:
            await self._read_until_closed()
            if self._closed:
                return
            self.phase = ConnectionPhase.DISCONNECTED
            self._fail_pending(TransportError("connection lost", url=self._url))
            try:
                await self._reconnect()
            except AuthError as exc:
                log.error("alert stream reauthentication failed", url=self._url, error=exc.message)
                self.auth_error = exc
                self._closed = True
                self._close_channels()
                return
            self._start_resync()

    async def _read_until_closed(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            while True:
                raw = await ws.recv()
                self._dispatch(raw)
        except NETWORK_ERRORS as exc:
            if not self._closed:
                log.warning("alert stream disconnected", url=self._url, error=str(exc) or type(exc).__name__)
        await self._drop_connection()

    async def _reconnect(self) -> None:
        while not self._closed:
            delay = self._backoff.next_delay()
            log.info("alert stream reconnecting", url=self._url, delay=delay, attempt=self._backoff.attempt)
            await self._sleep(delay)
            if self._closed:
                return
            try:
                await self._establish()
            except TransportError as exc:
                log.warning("alert stream reconnect failed", url=self._url, error=exc.message, **exc.context)
                continue
            self._backoff.reset()
            return

    def _start_resync(self) -> None:
        if self._resync is not None and not self._resync.done():
            self._resync.cancel()
        self._resync = asyncio.create_task(self._replay_and_reconcile())

    async def _replay_and_reconcile(self) -> None:
        targets = sorted(self._subscriptions)
        try:
            for target in targets:
                await self.subscribe(target)
            for target in targets or [None]:
                alerts = await self.list_active(target)
                self._publish(ReconciliationSnapshot(patient_id=target, alerts=alerts))
        except TransportError as exc:
            # The next successful reconnect runs the replay again
            log.warning("alert stream resync interrupted", error=exc.message)
        except AlertingError as exc:
            log.warning("alert stream resync rejected", code=exc.code, error=exc.message, **exc.context)

    async def _drop_connection(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await self._safe_close(ws)

    @staticmethod
    async def _safe_close(ws: WebSocketLike) -> None:
        try:
            await ws.close()
        except NETWORK_ERRORS:
            pass

    # ========== Dispatch ==========

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            frame = server_frame_adapter.validate_json(raw)
        except SchemaValidationError as exc:
            log.warning("alert stream frame ignored", error_count=exc.error_count())
            return

        if isinstance(frame, (ResponseFrame, ErrorFrame, PongEvent)) and frame.request_id in self._pending:
            future = self._pending[frame.request_id]
            if future.done():
                return
            if isinstance(frame, ErrorFrame):
                future.set_exception(error_from_payload(frame.error.model_dump()))
            elif isinstance(frame, ResponseFrame):
                future.set_result(frame.data)
            else:
                future.set_result(None)
            return
        self._publish(frame)

    def _publish(self, event: object) -> None:
        for channel in self._channels.get(type(event), ()):
            channel.put(event)

    def _fail_pending(self, error: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    def _close_channels(self) -> None:
        for channels in self._channels.values():
            for channel in channels:
                channel.close()

    @staticmethod
    def _next_id() -> str:
        return uuid.uuid4().hex
