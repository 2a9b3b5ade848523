"""
Sync Events - In-memory pub/sub for reconciliation activity.

Applies, prunes, drift corrections, conflicts and cycle outcomes are
published here and streamed to API clients as Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventType(Enum):
    """Kinds of sync activity."""

    APPLIED = "APPLIED"
    PRUNED = "PRUNED"
    UNMANAGED = "UNMANAGED"
    DRIFT_CORRECTED = "DRIFT_CORRECTED"
    CONFLICT = "CONFLICT"
    SYNCED = "SYNCED"
    SYNC_FAILED = "SYNC_FAILED"


@dataclass
class SyncEvent:
    """One unit of sync activity."""

    event_type: EventType
    scope: str
    resource: str = ""
    kind: str = ""
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "scope": self.scope,
            "resource": self.resource,
            "kind": self.kind,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict(), default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def for_resource(
        cls,
        event_type: EventType,
        scope: str,
        resource_id: Any,
        message: str = "",
    ) -> "SyncEvent":
        return cls(
            event_type=event_type,
            scope=scope,
            resource=str(resource_id),
            kind=getattr(resource_id, "kind", ""),
            message=message,
        )

    @classmethod
    def for_cycle(
        cls,
        event_type: EventType,
        scope: str,
        revision: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> "SyncEvent":
        return cls(
            event_type=event_type,
            scope=scope,
            message=f"revision {revision}",
            data=data or {},
        )


class EventSubscription:
    """
    Async iterator over one subscriber's queue.

    A ``None`` sentinel stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[SyncEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[SyncEvent]:
        return self

    async def __anext__(self) -> SyncEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub bus for sync events.

    Keeps an ``asyncio.Queue`` per subscriber. Publishing never blocks:
    events for a subscriber whose queue is full are dropped with a warning.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: SyncEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} event for subscriber "
                    f"{subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[SyncEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate; only matching events are yielded

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber and end its iterator."""
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is None:
            return
        # Make room for the sentinel; pending events are discarded.
        while queue.full():
            queue.get_nowait()
        queue.put_nowait(None)
        logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)
