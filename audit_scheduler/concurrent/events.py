"""
Typed publish/subscribe surface for queue state changes.

The set of event kinds is closed; every kind has exactly one payload class.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional

from audit_scheduler.utils.logging import get_structured_logger
from .models import QueueStats


class EventKind(Enum):
    """Event kinds published by the scheduler."""
    TASK_ADDED = "task-added"
    TASK_STARTED = "task-started"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"
    TASK_RETRYING = "task-retrying"
    QUEUE_EMPTY = "queue-empty"
    PROGRESS_UPDATE = "progress-update"
    ERROR = "error"


@dataclass(frozen=True)
class TaskAddedEvent:
    kind: ClassVar[EventKind] = EventKind.TASK_ADDED
    url: str
    priority: int
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TaskStartedEvent:
    kind: ClassVar[EventKind] = EventKind.TASK_STARTED
    url: str
    attempt: int
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TaskCompletedEvent:
    kind: ClassVar[EventKind] = EventKind.TASK_COMPLETED
    url: str
    result: Any
    attempts: int
    duration: Optional[float]
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TaskFailedEvent:
    kind: ClassVar[EventKind] = EventKind.TASK_FAILED
    url: str
    error: str
    attempts: int
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TaskRetryingEvent:
    kind: ClassVar[EventKind] = EventKind.TASK_RETRYING
    url: str
    error: str
    attempts: int
    delay: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class QueueEmptyEvent:
    kind: ClassVar[EventKind] = EventKind.QUEUE_EMPTY
    completed: int
    failed: int
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ProgressUpdateEvent:
    kind: ClassVar[EventKind] = EventKind.PROGRESS_UPDATE
    stats: QueueStats
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ErrorEvent:
    kind: ClassVar[EventKind] = EventKind.ERROR
    message: str
    source: str
    url: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by EventBus.subscribe()."""

    def __init__(self, bus: "EventBus", kind: EventKind, handler: Handler):
        self._bus = bus
        self.kind = kind
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop delivering events to the handler. Safe to call twice."""
        if self._active:
            self._active = False
            self._bus._remove(self)

    def __call__(self) -> None:
        self.unsubscribe()


class EventBus:
    """
    Observer list per event kind.

    Handlers run synchronously on the publishing thread in subscription
    order. A handler that raises is logged and reported as an ERROR event;
    the remaining handlers still run.
    """

    def __init__(self):
        self._subscriptions: Dict[EventKind, List[Subscription]] = {kind: [] for kind in EventKind}
        self._lock = threading.Lock()
        self._log = get_structured_logger(__name__)

    def subscribe(self, kind: EventKind, handler: Handler) -> Subscription:
        """
        Register a handler for one event kind.

        Args:
            kind: Event kind (an EventKind or its string value)
            handler: Callable receiving the typed payload

        Returns:
            Subscription whose unsubscribe() detaches the handler
        """
        kind = EventKind(kind)
        subscription = Subscription(self, kind, handler)
        with self._lock:
            self._subscriptions[kind].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            handlers = self._subscriptions[subscription.kind]
            if subscription in handlers:
                handlers.remove(subscription)

    def subscriber_count(self, kind: EventKind) -> int:
        with self._lock:
            return len(self._subscriptions[EventKind(kind)])

    def publish(self, event) -> None:
        """Deliver an event payload to every handler of its kind."""
        with self._lock:
            handlers = list(self._subscriptions[event.kind])

        for subscription in handlers:
            if not subscription.active:
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                self._log.warning(
                    "event_handler_failed",
                    kind=event.kind.value,
                    handler=getattr(subscription.handler, "__name__", repr(subscription.handler)),
                    error=str(e),
                )
                if event.kind is not EventKind.ERROR:
                    self.publish(ErrorEvent(
                        message=f"Handler for {event.kind.value} failed: {e}",
                        source="event_bus",
                        url=getattr(event, "url", None),
                    ))

    def publish_all(self, events) -> None:
        for event in events:
            self.publish(event)

    def clear(self) -> None:
        """Detach every handler."""
        with self._lock:
            for handlers in self._subscriptions.values():
                for subscription in handlers:
                    subscription._active = False
                handlers.clear()
