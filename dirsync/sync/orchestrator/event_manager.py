"""
Event Manager Module.

Publishes sync lifecycle events to in-process subscribers and to the
audit logger, keeping a bounded in-memory history.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from dirsync.sync.entities import format_datetime, parse_datetime, utcnow
from dirsync.system.logging_config import log_sync_event

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Sync event types."""
    # Task events
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_PAUSED = "task.paused"
    TASK_RESUMED = "task.resumed"
    TASK_RECOVERY_REQUIRED = "task.recovery_required"

    # Step events
    STEP_COMPLETED = "step.completed"

    # Operation events
    OPERATION_FAILED = "operation.failed"

    # Conflict events
    CONFLICT_DETECTED = "conflict.detected"
    CONFLICT_RESOLVED = "conflict.resolved"


class EventPriority(str, Enum):
    """Event priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    EventPriority.LOW: logging.DEBUG,
    EventPriority.NORMAL: logging.INFO,
    EventPriority.HIGH: logging.WARNING,
    EventPriority.CRITICAL: logging.ERROR,
}


@dataclass
class Event:
    """Represents a sync event."""
    id: str
    type: EventType
    source: str
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    priority: EventPriority = EventPriority.NORMAL
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "source": self.source,
            "timestamp": format_datetime(self.timestamp),
            "data": self.data,
            "priority": self.priority.value,
            "correlation_id": self.correlation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Create event from dictionary."""
        return cls(
            id=data["id"],
            type=EventType(data["type"]),
            source=data["source"],
            timestamp=parse_datetime(data["timestamp"]),
            data=data.get("data", {}),
            priority=EventPriority(data.get("priority", "normal")),
            correlation_id=data.get("correlation_id"),
        )


@dataclass
class Subscription:
    """Event subscription configuration."""
    id: str
    event_types: Set[EventType]
    handler: Callable
    filter_fn: Optional[Callable[[Event], bool]] = None
    priority: int = 0  # Higher priority handlers execute first
    async_handler: bool = True


class EventStore:
    """Bounded in-memory event history."""

    def __init__(self, max_events: int = 10000):
        self._events: List[Event] = []
        self._max_events = max_events

    def store(self, event: Event) -> None:
        if len(self._events) >= self._max_events:
            # Drop the oldest tenth
            self._events = self._events[self._max_events // 10 or 1:]
        self._events.append(event)

    def query(
        self,
        event_types: Optional[List[EventType]] = None,
        correlation_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        limit: int = 100
    ) -> List[Event]:
        """Newest-first events matching the filters."""
        results = []
        for event in reversed(self._events):
            if len(results) >= limit:
                break
            if event_types and event.type not in event_types:
                continue
            if correlation_id and event.correlation_id != correlation_id:
                continue
            if start_time and event.timestamp < start_time:
                continue
            results.append(event)
        return results


class EventManager:
    """
    Event Manager for pub/sub event handling.

    Features:
    - Subscription with filters
    - Priority-based handler execution
    - Audit log line per published event
    - Dead letter list for failing handlers

    Without a running worker, events are dispatched inline on publish.
    """

    def __init__(self, store: Optional[EventStore] = None):
        """
        Initialize event manager.

        Args:
            store: Event history (optional)
        """
        self._subscriptions: Dict[str, Subscription] = {}
        self._type_subscriptions: Dict[EventType, Set[str]] = {}
        self._store = store or EventStore()
        self._dead_letter: List[tuple] = []
        self._running = False
        self._queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background dispatch worker."""
        if self._running:
            return

        self._queue = asyncio.Queue()
        self._running = True
        self._worker_task = asyncio.create_task(self._process_events())
        logger.info("Event manager started")

    async def stop(self) -> None:
        """Stop the worker after draining queued events."""
        if not self._running:
            return
        self._running = False

        if self._queue is not None:
            while not self._queue.empty():
                await self._dispatch_event(self._queue.get_nowait())

        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        logger.info("Event manager stopped")

    def subscribe(
        self,
        event_types: List[EventType],
        handler: Callable,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        priority: int = 0,
        subscription_id: Optional[str] = None
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: List of event types to subscribe to
            handler: Handler function (sync or async)
            filter_fn: Optional filter function
            priority: Handler priority (higher = first)
            subscription_id: Optional subscription ID

        Returns:
            Subscription ID
        """
        sub_id = subscription_id or f"sub_{uuid.uuid4().hex[:8]}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_fn=filter_fn,
            priority=priority,
            async_handler=asyncio.iscoroutinefunction(handler)
        )
        for event_type in event_types:
            self._type_subscriptions.setdefault(event_type, set()).add(sub_id)

        logger.debug(f"Subscription created: {sub_id}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False

        for event_type in subscription.event_types:
            self._type_subscriptions.get(event_type, set()).discard(subscription_id)
        logger.debug(f"Subscription removed: {subscription_id}")
        return True

    async def publish(
        self,
        event_type: EventType,
        source: str,
        data: Optional[Dict[str, Any]] = None,
        priority: EventPriority = EventPriority.NORMAL,
        correlation_id: Optional[str] = None,
        tenant: Optional[str] = None,
        wait: bool = False
    ) -> str:
        """
        Publish an event.

        Args:
            event_type: Type of event
            source: Publishing component
            data: Event data
            priority: Event priority, also selects the audit log level
            correlation_id: Task id the event belongs to
            tenant: Scope key written to the audit log
            wait: Dispatch to handlers before returning

        Returns:
            Event ID
        """
        event = Event(
            id=f"evt_{uuid.uuid4().hex}",
            type=EventType(event_type),
            source=source,
            timestamp=utcnow(),
            data=data or {},
            priority=priority,
            correlation_id=correlation_id,
        )

        self._store.store(event)
        log_sync_event(
            event.type.value,
            tenant=tenant,
            task_id=correlation_id,
            data=event.data,
            level=_LOG_LEVELS[priority],
        )

        if wait or not self._running:
            await self._dispatch_event(event)
        else:
            await self._queue.put(event)

        logger.debug(f"Published event: {event.type.value} ({event.id})")
        return event.id

    def query_events(
        self,
        event_types: Optional[List[EventType]] = None,
        correlation_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        limit: int = 100
    ) -> List[Event]:
        return self._store.query(
            event_types=event_types,
            correlation_id=correlation_id,
            start_time=start_time,
            limit=limit
        )

    def get_dead_letter_events(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get events whose handlers failed."""
        return [
            {
                "event": event.to_dict(),
                "error": error,
                "failed_at": format_datetime(failed_at)
            }
            for event, error, failed_at in self._dead_letter[-limit:]
        ]

    async def _process_events(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self._dispatch_event(event)

    async def _dispatch_event(self, event: Event) -> None:
        """Dispatch event to subscribed handlers."""
        subscription_ids = self._type_subscriptions.get(event.type, set())
        if not subscription_ids:
            return

        subscriptions = [
            self._subscriptions[sid]
            for sid in subscription_ids
            if sid in self._subscriptions
        ]
        subscriptions.sort(key=lambda s: s.priority, reverse=True)

        for subscription in subscriptions:
            if subscription.filter_fn:
                try:
                    if not subscription.filter_fn(event):
                        continue
                except Exception as e:
                    logger.warning(f"Filter error: {e}")
                    continue

            try:
                if subscription.async_handler:
                    await subscription.handler(event)
                else:
                    subscription.handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.type.value}: {e}")
                self._dead_letter.append((event, str(e), utcnow()))

                if len(self._dead_letter) > 1000:
                    self._dead_letter = self._dead_letter[-500:]


__all__ = [
    "EventManager",
    "EventStore",
    "Event",
    "EventType",
    "EventPriority",
    "Subscription",
]
