"""
Event Streaming - In-memory pub/sub for reconciliation lifecycle events.

Reconcilers record named events (object created, object updated, reconcile
failed, ...) which are fanned out to subscribers such as the SSE endpoint.
Recording is best-effort and never blocks a reconcile.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of reconciliation events."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    RECONCILED = "RECONCILED"
    REQUEUED = "REQUEUED"
    FAILED = "FAILED"


@dataclass
class ReconcileEvent:
    """Event emitted during a reconcile invocation."""

    event_type: EventType
    kind: str
    namespace: str
    name: str
    reason: str
    message: str
    timestamp: str

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return f"event: {self.event_type.value}\ndata: {json.dumps(data)}\n\n"

    @classmethod
    def create(
        cls,
        event_type: EventType,
        kind: str,
        namespace: str,
        name: str,
        reason: str,
        message: str = "",
    ) -> "ReconcileEvent":
        """Create an event stamped with the current UTC time."""
        timestamp = datetime.now(timezone.utc).replace(tzinfo=None)
        return cls(
            event_type=event_type,
            kind=kind,
            namespace=namespace,
            name=name,
            reason=reason,
            message=message,
            timestamp=timestamp.isoformat() + "Z",
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ReconcileEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ReconcileEvent"]:
        return self

    async def __anext__(self) -> "ReconcileEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped so that a slow
    subscriber never applies back-pressure to reconcilers.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}

    def publish(self, event: ReconcileEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Events are dropped for subscribers whose queues are full.

        Args:
            event: The event to publish.
        """
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    def subscribe(
        self,
        filter_fn: Optional[Callable[[ReconcileEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


class EventRecorder:
    """Write-only event sink handed to reconcilers."""

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus

    def record(
        self,
        event_type: EventType,
        kind: str,
        namespace: str,
        name: str,
        reason: str,
        message: str = "",
    ) -> None:
        """Record an event. A recorder without a bus discards everything."""
        if self.bus is None:
            return
        try:
            self.bus.publish(
                ReconcileEvent.create(event_type, kind, namespace, name, reason, message)
            )
        except Exception as e:
            logger.warning(f"Failed to record {reason} event for {namespace}/{name}: {e}")
