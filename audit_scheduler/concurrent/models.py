"""
Data models for the concurrent probe scheduler.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple, Union
from datetime import datetime
from enum import Enum

from audit_scheduler.utils.errors import MisuseError


class TaskStatus(Enum):
    """Task execution status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def is_live(self) -> bool:
        return not self.is_terminal


class WorkerState(Enum):
    """Worker thread state."""
    STARTING = "starting"
    IDLE = "idle"
    WORKING = "working"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PriorityPattern:
    """Substring rule assigning a priority to matching URLs."""
    pattern: str
    priority: int

    def matches(self, url: str) -> bool:
        return self.pattern in url


PatternLike = Union[PriorityPattern, Tuple[str, int], Dict[str, Any]]


def to_priority_pattern(rule: PatternLike) -> PriorityPattern:
    """
    Normalize a pattern rule given as a PriorityPattern, a (pattern, priority)
    pair, a {"pattern": ..., "priority": ...} dict or a single-entry
    {pattern: priority} dict.
    """
    if isinstance(rule, PriorityPattern):
        return rule
    if isinstance(rule, dict):
        if "pattern" in rule:
            return PriorityPattern(pattern=rule["pattern"], priority=rule.get("priority", 1))
        if len(rule) == 1:
            pattern, priority = next(iter(rule.items()))
            return PriorityPattern(pattern=pattern, priority=priority)
        raise MisuseError("Invalid priority pattern", {"pattern": rule})
    if isinstance(rule, (tuple, list)) and len(rule) == 2:
        return PriorityPattern(pattern=rule[0], priority=rule[1])
    raise MisuseError("Invalid priority pattern", {"pattern": rule})


@dataclass
class QueueConfig:
    """Configuration for the task queue and worker pool. Durations are seconds."""
    max_concurrent: int = 3
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_factor: float = 1.0
    max_retry_delay: float = 60.0
    priority_patterns: List[PriorityPattern] = field(default_factory=list)
    default_priority: int = 1
    probe_timeout: Optional[float] = 30.0
    progress_update_interval: float = 1.0
    status_update_interval: float = 2.0
    enable_short_status: bool = True
    idle_wait: float = 0.1

    def __post_init__(self):
        """Normalize pattern rules and validate."""
        self.priority_patterns = [to_priority_pattern(p) for p in (self.priority_patterns or [])]
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration parameters.

        Raises:
            MisuseError: If configuration is invalid
        """
        errors = []

        if not isinstance(self.max_concurrent, int) or isinstance(self.max_concurrent, bool) \
                or self.max_concurrent < 1:
            errors.append("max_concurrent must be an integer >= 1")

        if not isinstance(self.max_retries, int) or isinstance(self.max_retries, bool) \
                or self.max_retries < 0:
            errors.append("max_retries must be an integer >= 0")

        if self.retry_delay < 0:
            errors.append("retry_delay must be >= 0")

        if self.backoff_factor < 1.0:
            errors.append("backoff_factor must be >= 1.0")

        if self.max_retry_delay < self.retry_delay:
            errors.append("max_retry_delay must be >= retry_delay")

        if self.probe_timeout is not None and self.probe_timeout <= 0:
            errors.append("probe_timeout must be positive or None")

        if self.progress_update_interval < 0:
            errors.append("progress_update_interval must be >= 0")

        if self.status_update_interval <= 0:
            errors.append("status_update_interval must be positive")

        if self.idle_wait <= 0:
            errors.append("idle_wait must be positive")

        for rule in self.priority_patterns:
            if not isinstance(rule.pattern, str) or not rule.pattern:
                errors.append(f"priority pattern must be a non-empty string: {rule.pattern!r}")
            if not isinstance(rule.priority, int) or isinstance(rule.priority, bool):
                errors.append(f"priority for {rule.pattern!r} must be an integer")

        if errors:
            raise MisuseError(
                "Invalid queue configuration",
                {"errors": errors}
            )


@dataclass
class Task:
    """A single URL to probe plus its scheduling metadata."""
    url: str
    priority: int = 1
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    result: Any = None
    error: Optional[str] = None
    last_error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Transition helpers below are only called by TaskQueue under its lock.

    def start_attempt(self) -> None:
        self.status = TaskStatus.IN_PROGRESS
        self.started_at = datetime.now()
        self.attempts += 1

    def complete(self, result: Any) -> None:
        self.status = TaskStatus.COMPLETED
        self.completed_at = datetime.now()
        self.result = result
        self.last_error = None

    def schedule_retry(self, error: str) -> None:
        self.status = TaskStatus.RETRYING
        self.last_error = error

    def release_for_retry(self) -> None:
        self.status = TaskStatus.PENDING

    def fail(self, error: str) -> None:
        self.status = TaskStatus.FAILED
        self.completed_at = datetime.now()
        self.error = error
        self.last_error = error

    @property
    def duration(self) -> Optional[float]:
        """Seconds spent on the final attempt, once terminal."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
        }


@dataclass
class WorkerStatus:
    """Status information for a worker thread."""
    worker_id: str
    state: WorkerState = WorkerState.STARTING
    current_url: Optional[str] = None
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_execution_time: float = 0.0
    last_activity: datetime = field(default_factory=datetime.now)

    def start_task(self, url: str) -> None:
        self.state = WorkerState.WORKING
        self.current_url = url
        self.last_activity = datetime.now()

    def finish_task(self, succeeded: bool, execution_time: float) -> None:
        self.state = WorkerState.IDLE
        self.current_url = None
        if succeeded:
            self.tasks_completed += 1
        else:
            self.tasks_failed += 1
        self.total_execution_time += execution_time
        self.last_activity = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "state": self.state.value,
            "current_url": self.current_url,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "total_execution_time": round(self.total_execution_time, 3),
            "last_activity": self.last_activity.isoformat(),
        }


@dataclass(frozen=True)
class CompletedResult:
    """Archived outcome of a successful task."""
    url: str
    result: Any
    attempts: int
    duration: Optional[float]


@dataclass(frozen=True)
class FailedResult:
    """Archived outcome of a task that exhausted its retries."""
    url: str
    error: str
    attempts: int


@dataclass(frozen=True)
class QueueStats:
    """Point-in-time aggregate view of the queue."""
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    retrying: int = 0
    completed: int = 0
    failed: int = 0
    progress: float = 0.0
    average_duration: float = 0.0
    estimated_time_remaining: float = 0.0
    active_workers: int = 0
    max_concurrent: int = 1
    memory_usage: float = 0.0
    cpu_usage: float = 0.0
    cpu_percent: float = 0.0
    throughput: float = 0.0
    elapsed: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    @property
    def remaining(self) -> int:
        return self.total - self.finished

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "retrying": self.retrying,
            "completed": self.completed,
            "failed": self.failed,
            "progress": self.progress,
            "average_duration": self.average_duration,
            "estimated_time_remaining": self.estimated_time_remaining,
            "active_workers": self.active_workers,
            "max_concurrent": self.max_concurrent,
            "memory_usage": self.memory_usage,
            "cpu_usage": self.cpu_usage,
            "cpu_percent": self.cpu_percent,
            "throughput": self.throughput,
            "elapsed": self.elapsed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class RunSummary:
    """Overall result of one run. Returned even when every task failed."""
    results: List[CompletedResult]
    failed: List[FailedResult]
    stats: QueueStats
    started_at: datetime
    completed_at: Optional[datetime] = None
    cancelled: bool = False
    cancelled_urls: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def get_success_rate(self) -> float:
        """Completed share of finished tasks as a percentage."""
        finished = len(self.results) + len(self.failed)
        if finished == 0:
            return 0.0
        return (len(self.results) / finished) * 100.0
