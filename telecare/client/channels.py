import asyncio
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import Field

from telecare.modules.alerts.schemas import Alert
from telecare.shared.schemas import CamelModel, utc_now

EventT = TypeVar("EventT")

_CLOSED = object()


class ReconciliationSnapshot(CamelModel):
    """Authoritative active alerts pulled after a (re)connect; replaces local state."""

    patient_id: str | None = None
    alerts: list[Alert] = Field(default_factory=list)
    taken_at: datetime = Field(default_factory=utc_now)


class EventChannel(Generic[EventT]):
    """Async iterator over one event type; ends when the client closes."""

    def __init__(self, event_type: type[EventT]) -> None:
        self.event_type = event_type
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def put(self, event: EventT) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "EventChannel[EventT]":
        return self

    async def __anext__(self) -> EventT:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker so later readers also stop
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item
