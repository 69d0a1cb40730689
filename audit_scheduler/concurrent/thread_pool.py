"""
Worker pool for the concurrent probe scheduler.
"""

import threading
import time
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from audit_scheduler.utils.logging import get_logger
from audit_scheduler.utils.errors import MisuseError, ProbeTimeoutError, handle_error
from audit_scheduler.probers.base import BaseProber, ProbeContext, as_prober
from .models import QueueConfig, QueueStats, RunSummary, Task, WorkerState, WorkerStatus
from .events import ErrorEvent
from .scheduler import TaskQueue


logger = get_logger(__name__)


@dataclass
class RunCallbacks:
    """Optional per-run hooks. Exceptions raised by hooks are logged and ignored."""
    on_result: Optional[Callable[[str, Any], None]] = None
    on_error: Optional[Callable[[str, str, int], None]] = None
    on_short_status: Optional[Callable[[str], None]] = None
    on_progress: Optional[Callable[[QueueStats], None]] = None


class WorkerThread(threading.Thread):
    """Worker loop pulling tasks from the queue until it drains."""

    def __init__(
        self,
        worker_id: str,
        task_queue: TaskQueue,
        prober: BaseProber,
        callbacks: RunCallbacks,
        cancel_event: threading.Event,
        probe_timeout: Optional[float],
        idle_wait: float
    ):
        """
        Initialize worker thread.

        Args:
            worker_id: Unique identifier for this worker
            task_queue: Queue to take tasks from
            prober: Prober invoked for each task
            callbacks: Per-run hooks
            cancel_event: Set when the run is cancelled
            probe_timeout: Seconds allowed per probe, None for no limit
            idle_wait: Longest single wait for a dispatchable task
        """
        super().__init__(name=f"ProbeWorker-{worker_id}", daemon=True)

        self.worker_id = worker_id
        self.task_queue = task_queue
        self.prober = prober
        self.callbacks = callbacks
        self.cancel_event = cancel_event
        self.probe_timeout = probe_timeout
        self.idle_wait = idle_wait

        self.status = WorkerStatus(worker_id=worker_id)
        self.logger = get_logger(f"{__name__}.{worker_id}")

    def run(self) -> None:
        """Main worker loop."""
        self.logger.debug(f"Worker {self.worker_id} starting")
        self.status.state = WorkerState.IDLE

        try:
            while not self.task_queue.is_drained():
                try:
                    task = self.task_queue.wait_for_task(self.idle_wait)
                    if task is None:
                        continue
                    self._process_task(task)
                except Exception as e:
                    self._handle_worker_exception(e)
        finally:
            self.status.state = WorkerState.STOPPED
            self.logger.debug(f"Worker {self.worker_id} stopped")

    def _process_task(self, task: Task) -> None:
        """Probe one task and record the outcome."""
        started = time.monotonic()
        self.status.start_task(task.url)
        context = ProbeContext(
            task.url,
            attempt=task.attempts,
            timeout=self.probe_timeout,
            run_cancelled=self.cancel_event,
        )

        try:
            result = self._invoke_prober(task.url, context)
        except BaseException as e:
            # SystemExit and friends fail the task without a retry
            retryable = isinstance(e, Exception)
            error_message = str(e) or type(e).__name__
            if not retryable:
                error_message = f"{type(e).__name__}: {error_message}"
            self.status.finish_task(False, time.monotonic() - started)
            self.logger.debug(f"Worker {self.worker_id} attempt {task.attempts} on {task.url} failed: {error_message}")
            self.task_queue.mark_failed(task.url, error_message, retry=retryable)
            self._notify(self.callbacks.on_error, task.url, error_message, task.attempts)
            if isinstance(e, KeyboardInterrupt):
                raise
        else:
            self.status.finish_task(True, time.monotonic() - started)
            self.task_queue.mark_completed(task.url, result)
            self._notify(self.callbacks.on_result, task.url, result)

    def _invoke_prober(self, url: str, context: ProbeContext) -> Any:
        """
        Call the prober, enforcing the timeout when one is set.

        With a timeout the call runs on a helper thread. When it does not
        settle in time the context is cancelled and the attempt fails; the
        helper keeps running until the prober returns.

        The abandoned helper does not hold a worker slot. A prober that
        ignores its context can therefore still be running when the retry
        starts, and the number of live prober calls may exceed
        ``max_concurrent`` (up to ``max_retries + 1`` per URL).
        """
        if self.probe_timeout is None:
            return self.prober.probe(url, context)

        outcome: Future = Future()

        def call() -> None:
            if not outcome.set_running_or_notify_cancel():
                return
            try:
                outcome.set_result(self.prober.probe(url, context))
            except BaseException as e:
                outcome.set_exception(e)

        threading.Thread(target=call, name=f"{self.name}-probe", daemon=True).start()

        try:
            return outcome.result(timeout=self.probe_timeout)
        except FuturesTimeoutError:
            if outcome.done():
                return outcome.result()
            context.cancel("timeout")
            raise ProbeTimeoutError(
                f"Probe timed out after {self.probe_timeout}s",
                {"url": url, "timeout": self.probe_timeout}
            )

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"Callback {getattr(callback, '__name__', callback)} failed: {e}")

    def _handle_worker_exception(self, exception: Exception) -> None:
        handle_error(exception, self.logger, {"worker_id": self.worker_id}, reraise=False)
        self.task_queue.event_bus.publish(ErrorEvent(
            message=f"Worker {self.worker_id} error: {exception}",
            source=self.worker_id,
            url=self.status.current_url,
        ))
        self.status.state = WorkerState.IDLE

    def get_stats(self) -> Dict[str, Any]:
        stats = self.status.to_dict()
        stats["is_alive"] = self.is_alive()
        return stats


class Dispatcher:
    """
    Runs exactly ``max_concurrent`` workers over a TaskQueue.

    Admission is bounded by the queue: a worker blocks on the queue's
    capacity condition until a slot is free and a task is Pending.
    """

    def __init__(self, task_queue: TaskQueue, config: Optional[QueueConfig] = None):
        self.task_queue = task_queue
        self.config = config or task_queue.config
        self.logger = get_logger(__name__)

        self._workers: List[WorkerThread] = []
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._running = False

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def run(self, urls: Iterable[str], prober, callbacks: Optional[RunCallbacks] = None) -> RunSummary:
        """
        Submit URLs and process the queue until it drains.

        Args:
            urls: URLs to add before dispatching
            prober: BaseProber or callable ``fn(url, context)``
            callbacks: Optional per-run hooks

        Returns:
            Summary of the run; results are in completion order

        Raises:
            MisuseError: If a run is already active
        """
        prober = as_prober(prober)
        callbacks = callbacks or RunCallbacks()

        with self._lock:
            if self._running:
                raise MisuseError("Dispatcher is already running")
            self._running = True
            self._cancel_event = threading.Event()

        started_at = datetime.now()
        try:
            self.task_queue.begin_run()
            self.task_queue.submit(urls)
            self.task_queue.check_drain()

            self._workers = self._create_workers(prober, callbacks)
            self.logger.info(f"Starting {len(self._workers)} workers for {len(self.task_queue)} queued tasks")
            for worker in self._workers:
                worker.start()
            for worker in self._workers:
                worker.join()
        finally:
            self.task_queue.end_run()
            with self._lock:
                self._running = False

        summary = RunSummary(
            results=self.task_queue.get_completed_results(),
            failed=self.task_queue.get_failed_results(),
            stats=self.task_queue.stats(),
            started_at=started_at,
            completed_at=datetime.now(),
            cancelled=self._cancel_event.is_set(),
            cancelled_urls=self.task_queue.get_cancelled_urls(),
        )
        self.logger.info(
            f"Run finished in {summary.duration:.2f}s: {len(summary.results)} completed, "
            f"{len(summary.failed)} failed, {len(summary.cancelled_urls)} cancelled"
        )
        return summary

    def _create_workers(self, prober: BaseProber, callbacks: RunCallbacks) -> List[WorkerThread]:
        return [
            WorkerThread(
                worker_id=f"worker_{i}",
                task_queue=self.task_queue,
                prober=prober,
                callbacks=callbacks,
                cancel_event=self._cancel_event,
                probe_timeout=self.config.probe_timeout,
                idle_wait=self.config.idle_wait,
            )
            for i in range(self.config.max_concurrent)
        ]

    def cancel(self) -> List[str]:
        """
        Stop dispatching and signal in-flight probes to abort.

        Returns:
            URLs that were dropped before being dispatched again
        """
        dropped = self.task_queue.cancel()
        self._cancel_event.set()
        self.logger.info(f"Dispatcher cancelled, {len(dropped)} queued tasks dropped")
        return dropped

    def get_pool_stats(self) -> Dict[str, Any]:
        workers = list(self._workers)
        return {
            "running": self.is_running(),
            "max_workers": self.config.max_concurrent,
            "alive_workers": sum(1 for w in workers if w.is_alive()),
            "workers": [w.get_stats() for w in workers],
        }
