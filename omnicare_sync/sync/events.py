"""Publish/subscribe notifications for sync and network state.

Listeners get an explicit Subscription handle back and call
``unsubscribe()`` when done; nothing is registered ambiently.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from omnicare_sync.models.sync import utcnow
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)


class SyncEventType(str, Enum):
    """Events published on the bus."""

    SYNC_STARTED = "sync_started"
    SYNC_PROGRESS = "sync_progress"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    OPERATION_QUEUED = "operation_queued"
    OPERATION_SYNCED = "operation_synced"
    OPERATION_FAILED = "operation_failed"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    NETWORK_ONLINE = "network_online"
    NETWORK_OFFLINE = "network_offline"
    QUALITY_CHANGED = "quality_changed"


class SyncEvent(BaseModel):
    """An event delivered to subscribers."""

    type: SyncEventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


Handler = Callable[[SyncEvent], Union[None, Awaitable[None]]]

_ALL = "*"


class Subscription:
    """Handle for a registered listener."""

    def __init__(self, bus: "EventBus", topics: List[str], handler: Handler) -> None:
        self._bus = bus
        self._topics = topics
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.active:
            self._bus._remove(self)  # pylint: disable=protected-access
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class EventBus:
    """In-process event bus with topic routing."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)
        self._history: List[SyncEvent] = []
        self.history_limit = 200

    def subscribe(
        self,
        handler: Handler,
        event_types: Optional[Iterable[SyncEventType]] = None,
    ) -> Subscription:
        """Register a handler for some event types, or for all when omitted."""
        topics = [t.value for t in event_types] if event_types else [_ALL]
        subscription = Subscription(self, topics, handler)
        for topic in topics:
            self._subscribers[topic].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        for topic in subscription._topics:  # pylint: disable=protected-access
            subscribers = self._subscribers.get(topic, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

    def subscriber_count(self, event_type: Optional[SyncEventType] = None) -> int:
        """Number of live subscriptions that would see an event type."""
        count = len(self._subscribers.get(_ALL, []))
        if event_type is not None:
            count += len(self._subscribers.get(event_type.value, []))
        return count

    async def publish(self, event_type: SyncEventType, **data: Any) -> SyncEvent:
        """Deliver an event to every matching subscriber in registration order."""
        event = SyncEvent(type=event_type, data=data)
        self._history.append(event)
        if len(self._history) > self.history_limit:
            del self._history[0]

        subscriptions = list(self._subscribers.get(event_type.value, []))
        subscriptions.extend(self._subscribers.get(_ALL, []))
        for subscription in subscriptions:
            if not subscription.active:
                continue
            try:
                result = subscription.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:  # pylint: disable=broad-exception-caught
                logger.error(
                    "event_handler_failed", event_type=event_type.value, exc_info=True
                )
        return event

    def recent(self, event_type: Optional[SyncEventType] = None) -> List[SyncEvent]:
        """Recently published events, oldest first."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.type == event_type]
