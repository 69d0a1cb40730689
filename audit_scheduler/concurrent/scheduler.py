"""
Priority task queue for the concurrent probe scheduler.
Owns every task state transition, the active set and the archives.
"""

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from audit_scheduler.utils.logging import get_logger
from audit_scheduler.utils.errors import MisuseError
from .models import (
    CompletedResult,
    FailedResult,
    QueueConfig,
    QueueStats,
    Task,
    TaskStatus,
)
from .events import (
    EventBus,
    QueueEmptyEvent,
    TaskAddedEvent,
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskRetryingEvent,
    TaskStartedEvent,
)
from .retry_policy import RetryPolicy
from .resource_monitor import ResourceMonitor


logger = get_logger(__name__)


class TaskQueue:
    """
    Priority queue of probe tasks with bounded admission.

    Live tasks (Pending, InProgress, Retrying) are kept in dispatch order:
    descending priority, submission order among equals. Terminal tasks move
    to the completed or failed archive. All mutation happens under one
    re-entrant lock; events are published after it is released.
    """

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        event_bus: Optional[EventBus] = None,
        retry_policy: Optional[RetryPolicy] = None,
        resource_monitor: Optional[ResourceMonitor] = None,
        progress_hook: Optional[Callable[[], None]] = None
    ):
        """
        Initialize task queue.

        Args:
            config: Queue configuration
            event_bus: Bus receiving state-change events
            retry_policy: Retry decision (defaults to one built from config)
            resource_monitor: Optional sampler consulted by stats()
            progress_hook: Called after every state mutation
        """
        self.config = config or QueueConfig()
        self.event_bus = event_bus or EventBus()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.resource_monitor = resource_monitor
        self.progress_hook = progress_hook
        self.logger = get_logger(__name__)

        self._lock = threading.RLock()
        self._capacity = threading.Condition(self._lock)

        self._live: List[Task] = []
        self._index: Dict[str, Task] = {}
        self._active: Set[str] = set()
        self._completed: List[Task] = []
        self._failed: List[Task] = []
        self._archived_urls: Set[str] = set()
        self._cancelled_urls: List[str] = []
        self._retry_timers: Dict[str, threading.Timer] = {}

        self._paused = False
        self._cancelled = False
        self._drain_emitted = False
        self._started_at: Optional[datetime] = None
        self._finished_at: Optional[datetime] = None

    @property
    def max_concurrent(self) -> int:
        return self.config.max_concurrent

    def compute_priority(self, url: str) -> int:
        """First matching pattern wins; no match gives the default priority."""
        for rule in self.config.priority_patterns:
            if rule.matches(url):
                return rule.priority
        return self.config.default_priority

    # Run lifecycle

    def begin_run(self) -> None:
        """Reset archives and run markers. Live tasks are kept."""
        with self._lock:
            if self._active:
                raise MisuseError("Cannot begin a run while tasks are in progress",
                                  {"active": sorted(self._active)})
            self._completed.clear()
            self._failed.clear()
            self._archived_urls.clear()
            self._cancelled_urls.clear()
            self._cancelled = False
            self._drain_emitted = False
            self._started_at = datetime.now()
            self._finished_at = None

    def end_run(self) -> None:
        """Lift a cancellation once the run's workers have exited."""
        with self._lock:
            self._cancelled = False

    def submit(self, urls: Iterable[str]) -> List[Task]:
        """
        Add URLs to the queue.

        URLs already live or archived in the current run, and repeats within
        the batch, are skipped. After cancel() new URLs are recorded as
        cancelled and never become live.

        Args:
            urls: URLs to probe

        Returns:
            Newly created tasks

        Raises:
            MisuseError: If an entry is not a non-empty string
        """
        urls = list(urls)
        invalid = [u for u in urls if not isinstance(u, str) or not u.strip()]
        if invalid:
            raise MisuseError("URLs must be non-empty strings", {"invalid": invalid})

        added: List[Task] = []
        refused: List[str] = []
        with self._lock:
            for url in urls:
                if url in self._index or url in self._archived_urls:
                    self.logger.debug(f"URL {url} already queued, skipping")
                    continue
                if self._cancelled:
                    if url not in self._cancelled_urls:
                        self._cancelled_urls.append(url)
                        refused.append(url)
                    continue
                task = Task(url=url, priority=self.compute_priority(url))
                self._index[url] = task
                self._live.append(task)
                added.append(task)

            if added:
                self._live.sort(key=lambda t: -t.priority)
                self._capacity.notify_all()

        if refused:
            self.logger.warning(f"Queue is cancelled, {len(refused)} submitted URLs recorded as cancelled")
        if added:
            self.logger.info(f"Added {len(added)}/{len(urls)} URLs to queue")
            self.event_bus.publish_all(TaskAddedEvent(url=t.url, priority=t.priority) for t in added)
            self._offer_progress()
        return added

    def dequeue_next(self) -> Optional[Task]:
        """
        Take the highest-priority Pending task if a worker slot is free.

        Returns:
            The task, now InProgress, or None when saturated, paused,
            cancelled or nothing is Pending
        """
        with self._lock:
            task = self._dequeue_locked()
            snapshot = replace(task) if task is not None else None
        if snapshot is not None:
            self._announce_start(snapshot)
        return snapshot

    def wait_for_task(self, timeout: float) -> Optional[Task]:
        """
        Block until a task can be dequeued, the queue drains, or timeout.

        Waiters are woken on every transition that can free a slot or make a
        task Pending.
        """
        deadline = time.monotonic() + timeout
        with self._capacity:
            while True:
                task = self._dequeue_locked()
                if task is not None or self._is_drained_locked():
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._capacity.wait(remaining)
            snapshot = replace(task) if task is not None else None
        if snapshot is not None:
            self._announce_start(snapshot)
        return snapshot

    def mark_completed(self, url: str, result: Any = None) -> Task:
        """
        Record a successful attempt.

        Raises:
            MisuseError: If the task is not InProgress
        """
        with self._lock:
            task = self._require_in_progress(url)
            task.complete(result)
            self._archive(task, self._completed)
            drained = self._check_drain_locked()
            self._capacity.notify_all()
            snapshot = replace(task)

        self.logger.debug(f"Task {url} completed after {snapshot.attempts} attempts")
        self.event_bus.publish(TaskCompletedEvent(
            url=url, result=result, attempts=snapshot.attempts, duration=snapshot.duration
        ))
        self._offer_progress()
        if drained:
            self._announce_drain()
        return snapshot

    def mark_failed(self, url: str, error: str, retry: bool = True) -> Task:
        """
        Record a failed attempt.

        Retries after the policy delay while retries remain; otherwise the
        task is archived as Failed. After cancel() the task is dropped
        instead of retried.

        Raises:
            MisuseError: If the task is not InProgress
        """
        error = str(error)
        retry_event = None
        failed_event = None
        drained = False

        with self._lock:
            task = self._require_in_progress(url)
            self._active.discard(url)

            if self._cancelled:
                self._drop_live(task)
                self._cancelled_urls.append(url)
                drained = self._check_drain_locked()
            elif retry and self.retry_policy.should_retry(task.attempts):
                delay = self.retry_policy.delay_for(task.attempts)
                task.schedule_retry(error)
                self._start_retry_timer(url, delay)
                retry_event = TaskRetryingEvent(url=url, error=error, attempts=task.attempts, delay=delay)
            else:
                task.fail(error)
                self._archive(task, self._failed)
                drained = self._check_drain_locked()
                failed_event = TaskFailedEvent(url=url, error=error, attempts=task.attempts)

            self._capacity.notify_all()
            snapshot = replace(task)

        if retry_event is not None:
            self.logger.info(f"Task {url} queued for retry in {retry_event.delay:.2f}s "
                             f"(attempt {snapshot.attempts}/{self.retry_policy.max_retries + 1}): {error}")
            self.event_bus.publish(retry_event)
        elif failed_event is not None:
            self.logger.warning(f"Task {url} permanently failed after {snapshot.attempts} attempts: {error}")
            self.event_bus.publish(failed_event)
        else:
            self.logger.info(f"Task {url} dropped after cancellation: {error}")

        self._offer_progress()
        if drained:
            self._announce_drain()
        return snapshot

    def stats(self) -> QueueStats:
        """Compute aggregate statistics. Samples resources outside the lock."""
        with self._lock:
            pending = sum(1 for t in self._live if t.status is TaskStatus.PENDING)
            in_progress = sum(1 for t in self._live if t.status is TaskStatus.IN_PROGRESS)
            retrying = sum(1 for t in self._live if t.status is TaskStatus.RETRYING)
            completed = len(self._completed)
            failed = len(self._failed)
            durations = [t.duration for t in self._completed if t.duration is not None]
            active = len(self._active)
            started_at = self._started_at
            finished_at = self._finished_at

        total = pending + in_progress + retrying + completed + failed
        finished = completed + failed
        progress = round(finished / total * 100, 2) if total else 0.0
        average_duration = sum(durations) / len(durations) if durations else 0.0
        remaining = total - finished
        estimated = remaining * average_duration / self.max_concurrent

        elapsed = 0.0
        if started_at is not None:
            elapsed = ((finished_at or datetime.now()) - started_at).total_seconds()
        throughput = finished / (elapsed / 60.0) if elapsed > 0 else 0.0

        memory_usage = cpu_usage = cpu_percent = 0.0
        if self.resource_monitor is not None:
            sample = self.resource_monitor.sample()
            memory_usage = sample.memory_mb
            cpu_usage = sample.cpu_seconds
            cpu_percent = sample.cpu_percent

        return QueueStats(
            total=total,
            pending=pending,
            in_progress=in_progress,
            retrying=retrying,
            completed=completed,
            failed=failed,
            progress=progress,
            average_duration=round(average_duration, 3),
            estimated_time_remaining=round(estimated, 3),
            active_workers=active,
            max_concurrent=self.max_concurrent,
            memory_usage=memory_usage,
            cpu_usage=cpu_usage,
            cpu_percent=cpu_percent,
            throughput=round(throughput, 2),
            elapsed=round(elapsed, 3),
            started_at=started_at,
            finished_at=finished_at,
        )

    # Drain

    def is_drained(self) -> bool:
        with self._lock:
            return self._is_drained_locked()

    def check_drain(self) -> bool:
        """Publish queue-empty if drained and not yet published this run."""
        with self._lock:
            drained = self._check_drain_locked()
            if drained:
                self._capacity.notify_all()
        if drained:
            self._announce_drain()
        return drained

    # Flow control

    def pause(self) -> None:
        """Stop handing out tasks. In-flight tasks continue."""
        with self._lock:
            self._paused = True
        self.logger.info("Task queue paused")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
            self._capacity.notify_all()
        self.logger.info("Task queue resumed")

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def cancel(self) -> List[str]:
        """
        Stop future dispatch for the current run.

        Pending and Retrying tasks are dropped; in-flight tasks may still
        complete, but a failure no longer schedules a retry.

        Returns:
            URLs dropped by this call
        """
        with self._lock:
            self._cancelled = True
            dropped = [t for t in self._live if t.status is not TaskStatus.IN_PROGRESS]
            for task in dropped:
                self._drop_live(task)
                self._cancel_retry_timer(task.url)
                self._cancelled_urls.append(task.url)
            drained = self._check_drain_locked()
            self._capacity.notify_all()

        urls = [t.url for t in dropped]
        self.logger.info(f"Task queue cancelled, dropped {len(urls)} queued tasks")
        self._offer_progress()
        if drained:
            self._announce_drain()
        return urls

    def clear(self) -> None:
        """
        Drop every task and archive.

        Raises:
            MisuseError: If tasks are in progress
        """
        with self._lock:
            if self._active:
                raise MisuseError("Cannot clear queue while tasks are in progress",
                                  {"active": sorted(self._active)})
            for url in list(self._retry_timers):
                self._cancel_retry_timer(url)
            self._live.clear()
            self._index.clear()
            self._completed.clear()
            self._failed.clear()
            self._archived_urls.clear()
            self._cancelled_urls.clear()
            self._drain_emitted = False
            self._started_at = None
            self._finished_at = None
            self._capacity.notify_all()
        self.logger.info("Task queue cleared")

    # Read access

    def get_task(self, url: str) -> Optional[Task]:
        """Copy of the task for a URL, live or archived."""
        with self._lock:
            task = self._index.get(url)
            if task is None:
                for archived in self._completed + self._failed:
                    if archived.url == url:
                        task = archived
                        break
            return replace(task) if task is not None else None

    def get_completed_results(self) -> List[CompletedResult]:
        """Completed tasks in completion order."""
        with self._lock:
            return [
                CompletedResult(url=t.url, result=t.result, attempts=t.attempts, duration=t.duration)
                for t in self._completed
            ]

    def get_failed_results(self) -> List[FailedResult]:
        """Failed tasks with their final error and attempt count."""
        with self._lock:
            return [FailedResult(url=t.url, error=t.error, attempts=t.attempts) for t in self._failed]

    def get_cancelled_urls(self) -> List[str]:
        with self._lock:
            return list(self._cancelled_urls)

    def active_urls(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    def pending_urls(self) -> List[str]:
        """Pending URLs in dispatch order."""
        with self._lock:
            return [t.url for t in self._live if t.status is TaskStatus.PENDING]

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)

    # Internals (caller holds the lock unless noted)

    def _dequeue_locked(self) -> Optional[Task]:
        if self._paused or self._cancelled or len(self._active) >= self.max_concurrent:
            return None
        for task in self._live:
            if task.status is TaskStatus.PENDING:
                task.start_attempt()
                self._active.add(task.url)
                return task
        return None

    def _is_drained_locked(self) -> bool:
        return not self._live and not self._active

    def _check_drain_locked(self) -> bool:
        if self._is_drained_locked() and not self._drain_emitted:
            self._drain_emitted = True
            self._finished_at = datetime.now()
            return True
        return False

    def _require_in_progress(self, url: str) -> Task:
        task = self._index.get(url)
        if task is None or task.status is not TaskStatus.IN_PROGRESS:
            raise MisuseError(
                f"Task {url} is not in progress",
                {"url": url, "status": task.status.value if task else None}
            )
        return task

    def _archive(self, task: Task, archive: List[Task]) -> None:
        self._drop_live(task)
        self._active.discard(task.url)
        archive.append(task)
        self._archived_urls.add(task.url)

    def _drop_live(self, task: Task) -> None:
        self._index.pop(task.url, None)
        self._live.remove(task)

    def _start_retry_timer(self, url: str, delay: float) -> None:
        timer = threading.Timer(delay, self._release_retry, args=(url,))
        timer.name = f"RetryTimer-{url}"
        timer.daemon = True
        self._retry_timers[url] = timer
        timer.start()

    def _cancel_retry_timer(self, url: str) -> None:
        timer = self._retry_timers.pop(url, None)
        if timer is not None:
            timer.cancel()

    def _release_retry(self, url: str) -> None:
        """Timer callback: Retrying -> Pending. Takes the lock itself."""
        with self._lock:
            self._retry_timers.pop(url, None)
            task = self._index.get(url)
            if task is None or task.status is not TaskStatus.RETRYING:
                return
            task.release_for_retry()
            self._capacity.notify_all()
        self.logger.debug(f"Task {url} eligible for retry")
        self._offer_progress()

    def _announce_start(self, task: Task) -> None:
        self.logger.debug(f"Dispatching {task.url} (attempt {task.attempts})")
        self.event_bus.publish(TaskStartedEvent(url=task.url, attempt=task.attempts))
        self._offer_progress()

    def _announce_drain(self) -> None:
        with self._lock:
            completed, failed = len(self._completed), len(self._failed)
        self.logger.info(f"Queue drained: {completed} completed, {failed} failed")
        self.event_bus.publish(QueueEmptyEvent(completed=completed, failed=failed))

    def _offer_progress(self) -> None:
        if self.progress_hook is not None:
            self.progress_hook()
