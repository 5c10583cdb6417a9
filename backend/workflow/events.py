"""Lifecycle event stream for the job queue.

The queue publishes typed LifecycleEvent records. Consumers either
subscribe to a channel (an async iterator backed by a bounded
asyncio.Queue) or register a synchronous observer:

    subscription = queue.events.subscribe({EventType.JOB_FAILED})
    async for event in subscription:
        alert(event.job)

Events are delivered to every subscriber in publish order.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import structlog

from workflow.models import JobStatus, WorkflowJob

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Names of queue lifecycle events."""
    JOB_ENQUEUED = "job:enqueued"
    JOB_STARTED = "job:started"
    JOB_COMPLETED = "job:completed"
    JOB_FAILED = "job:failed"
    JOB_RETRY = "job:retry"
    JOB_CANCELLED = "job:cancelled"
    WORKFLOW_REGISTERED = "workflow:registered"
    WORKFLOW_UNREGISTERED = "workflow:unregistered"
    QUEUE_CLEANED = "queue:cleaned"


@dataclass(frozen=True)
class LifecycleEvent:
    type: EventType
    job: Optional[WorkflowJob] = None
    workflow_name: Optional[str] = None
    # Job status at publish time; the job object itself keeps changing
    status: Optional[JobStatus] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Observer = Callable[[LifecycleEvent], None]

_CLOSED = object()


class Subscription:
    """A channel of lifecycle events for one consumer."""

    def __init__(self, stream: "EventStream", types: Optional[set[EventType]], maxsize: int):
        self._stream = stream
        self._types = types
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def accepts(self, event: LifecycleEvent) -> bool:
        return not self._closed and (self._types is None or event.type in self._types)

    def _deliver(self, event: Any) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event subscriber is full, dropping event", dropped=self.dropped)

    async def get(self, timeout: Optional[float] = None) -> LifecycleEvent:
        """Next event. Raises asyncio.TimeoutError if none arrives in time."""
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def drain(self) -> list[LifecycleEvent]:
        """All events currently buffered, without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                events.append(item)
        return events

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stream.unsubscribe(self)
        # Sentinel may be dropped if the buffer is full; iteration then ends on drain
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> LifecycleEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.get()


class EventStream:
    """Fan-out of lifecycle events to subscriptions and observers."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._observers: list[Observer] = []

    def subscribe(
        self,
        types: Optional[Iterable[EventType]] = None,
        maxsize: int = 1000,
    ) -> Subscription:
        subscription = Subscription(self, set(types) if types else None, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def publish(self, event: LifecycleEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning("Event observer failed", event_type=event.type.value, error=str(e))

        for subscription in list(self._subscriptions):
            if subscription.accepts(event):
                subscription._deliver(event)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
