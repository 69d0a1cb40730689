"""
Concurrent probe scheduling.

This module provides the bounded, prioritized, retrying probe runner:
- Priority task queue with de-duplication and archives
- Worker pool with blocking admission and per-probe timeouts
- Fixed-delay retry policy
- Typed event bus with rate-limited progress updates
- On-demand process resource sampling

Main Components:
- ConcurrentProbeController: Caller-facing facade
- TaskQueue: Task state transitions and statistics
- Dispatcher: Worker thread lifecycle
- RetryPolicy: Retry decisions
- EventBus: Publish/subscribe for state changes
- ProgressReporter / StatusTicker: Progress events and status lines
- ResourceMonitor: Memory and CPU sampling
"""

from .models import (
    QueueConfig,
    PriorityPattern,
    Task,
    TaskStatus,
    QueueStats,
    CompletedResult,
    FailedResult,
    RunSummary,
    WorkerState,
    WorkerStatus
)

from .events import (
    EventBus,
    EventKind,
    Subscription,
    TaskAddedEvent,
    TaskStartedEvent,
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskRetryingEvent,
    QueueEmptyEvent,
    ProgressUpdateEvent,
    ErrorEvent
)

from .retry_policy import RetryPolicy
from .scheduler import TaskQueue
from .thread_pool import Dispatcher, WorkerThread, RunCallbacks
from .monitoring import ProgressReporter, StatusTicker, format_status_line
from .resource_monitor import ResourceMonitor, ResourceLimits, ResourceSample, ResourceAlert
from .controller import ConcurrentProbeController

__all__ = [
    # Core models
    'QueueConfig',
    'PriorityPattern',
    'Task',
    'TaskStatus',
    'QueueStats',
    'CompletedResult',
    'FailedResult',
    'RunSummary',
    'WorkerState',
    'WorkerStatus',

    # Events
    'EventBus',
    'EventKind',
    'Subscription',
    'TaskAddedEvent',
    'TaskStartedEvent',
    'TaskCompletedEvent',
    'TaskFailedEvent',
    'TaskRetryingEvent',
    'QueueEmptyEvent',
    'ProgressUpdateEvent',
    'ErrorEvent',

    # Main components
    'ConcurrentProbeController',
    'TaskQueue',
    'RetryPolicy',
    'Dispatcher',
    'WorkerThread',
    'RunCallbacks',

    # Monitoring
    'ProgressReporter',
    'StatusTicker',
    'format_status_line',
    'ResourceMonitor',
    'ResourceLimits',
    'ResourceSample',
    'ResourceAlert'
]
