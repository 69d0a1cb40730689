"""
Main concurrent probe controller.
Wires the queue, worker pool, event bus, progress reporting and resource
monitoring into the caller-facing API.
"""

import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from audit_scheduler.utils.logging import get_logger
from audit_scheduler.utils.errors import FatalStartupError, MisuseError
from audit_scheduler.probers.base import BaseProber, as_prober
from .models import QueueConfig, QueueStats, RunSummary, Task
from .events import EventBus, EventKind, Subscription
from .scheduler import TaskQueue
from .thread_pool import Dispatcher, RunCallbacks
from .monitoring import ProgressReporter, StatusTicker
from .resource_monitor import ResourceMonitor


logger = get_logger(__name__)


class ConcurrentProbeController:
    """Caller-facing facade over the probe scheduler."""

    def __init__(
        self,
        config: Optional[QueueConfig] = None,
        prober=None,
        event_bus: Optional[EventBus] = None,
        resource_monitor: Optional[ResourceMonitor] = None
    ):
        """
        Initialize controller.

        Args:
            config: Queue and pool configuration
            prober: Default prober (BaseProber or callable ``fn(url, context)``)
            event_bus: Shared event bus, created if omitted
            resource_monitor: Resource sampler, created if omitted
        """
        self.config = config or QueueConfig()
        self.logger = get_logger(__name__)

        self.event_bus = event_bus or EventBus()
        self.resource_monitor = resource_monitor or ResourceMonitor()
        self.task_queue = TaskQueue(
            config=self.config,
            event_bus=self.event_bus,
            resource_monitor=self.resource_monitor,
            progress_hook=self._offer_progress,
        )
        self.progress_reporter = ProgressReporter(
            stats_supplier=self.task_queue.stats,
            event_bus=self.event_bus,
            interval=self.config.progress_update_interval,
        )
        self.dispatcher = Dispatcher(self.task_queue, self.config)
        self.status_ticker: Optional[StatusTicker] = None

        self.prober: Optional[BaseProber] = as_prober(prober) if prober is not None else None
        self._initialized_probers: List[BaseProber] = []
        self._last_summary: Optional[RunSummary] = None

        self._lock = threading.Lock()
        self._running = False

    # Caller-facing API

    def submit(self, urls: Iterable[str]) -> List[Task]:
        """Queue URLs for the next run (or the current one)."""
        return self.task_queue.submit(urls)

    def stats(self) -> QueueStats:
        return self.task_queue.stats()

    def subscribe(self, kind: EventKind, handler: Callable[[Any], None]) -> Subscription:
        return self.event_bus.subscribe(kind, handler)

    def initialize(self, prober=None) -> BaseProber:
        """
        Initialize a prober before dispatch.

        Raises:
            FatalStartupError: If the prober cannot be initialized
            MisuseError: If no prober is available
        """
        prober = self._resolve_prober(prober)
        if prober in self._initialized_probers:
            return prober

        try:
            prober.initialize()
        except Exception as e:
            self.logger.error(f"Prober {prober.name} failed to initialize: {e}")
            raise FatalStartupError(
                f"Failed to initialize prober {prober.name}: {e}",
                {"prober": prober.name, "error_type": type(e).__name__}
            ) from e

        self._initialized_probers.append(prober)
        self.logger.info(f"Prober {prober.name} initialized")
        return prober

    def run(
        self,
        urls: Iterable[str],
        prober=None,
        callbacks: Optional[RunCallbacks] = None
    ) -> RunSummary:
        """
        Probe the given URLs (plus anything already submitted) to completion.

        Args:
            urls: URLs to probe
            prober: Prober for this run, defaults to the controller's
            callbacks: Optional per-run hooks

        Returns:
            Run summary, also when every task failed

        Raises:
            FatalStartupError: If the prober fails to initialize; nothing is dispatched
            MisuseError: If a run is already active or no prober is available
        """
        callbacks = callbacks or RunCallbacks()
        prober = self._resolve_prober(prober)

        with self._lock:
            if self._running:
                raise MisuseError("A run is already in progress")
            self._running = True

        subscriptions: List[Subscription] = []
        try:
            self.initialize(prober)

            if callbacks.on_progress is not None:
                on_progress = callbacks.on_progress
                subscriptions.append(self.event_bus.subscribe(
                    EventKind.PROGRESS_UPDATE, lambda event: on_progress(event.stats)
                ))

            self.progress_reporter.reset()
            self._start_status_ticker(callbacks)

            summary = self.dispatcher.run(urls, prober, callbacks)

            self.progress_reporter.flush()
            if not summary.cancelled:
                self._emit_final_status()

            self._last_summary = summary
            return summary

        finally:
            self._stop_status_ticker()
            for subscription in subscriptions:
                subscription.unsubscribe()
            self._cleanup_probers()
            with self._lock:
                self._running = False

    def cancel(self) -> List[str]:
        """Stop dispatch and signal in-flight probes. Returns dropped URLs."""
        self.logger.info("Cancelling probe run")
        dropped = self.dispatcher.cancel()
        self._stop_status_ticker()
        return dropped

    def pause(self) -> None:
        self.task_queue.pause()

    def resume(self) -> None:
        self.task_queue.resume()

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def last_summary(self) -> Optional[RunSummary]:
        return self._last_summary

    def get_status(self) -> Dict[str, Any]:
        """Current run status as a plain dictionary."""
        return {
            "running": self.is_running(),
            "paused": self.task_queue.is_paused(),
            "cancelled": self.task_queue.is_cancelled(),
            "stats": self.stats().to_dict(),
            "pool": self.dispatcher.get_pool_stats(),
            "active_urls": self.task_queue.active_urls(),
            "resource_alerts": len(self.resource_monitor.get_alerts()),
        }

    def cleanup(self) -> None:
        """Cancel any active run and release prober resources."""
        if self.is_running():
            self.cancel()
        self._stop_status_ticker()
        self._cleanup_probers()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with automatic cleanup."""
        self.cleanup()
        return False

    # Internals

    def _resolve_prober(self, prober) -> BaseProber:
        if prober is not None:
            return as_prober(prober)
        if self.prober is None:
            raise MisuseError("No prober configured for this run")
        return self.prober

    def _offer_progress(self) -> None:
        self.progress_reporter.offer()

    def _start_status_ticker(self, callbacks: RunCallbacks) -> None:
        if not self.config.enable_short_status:
            return
        on_status = callbacks.on_short_status or self._log_status
        self.status_ticker = StatusTicker(
            stats_supplier=self.task_queue.stats,
            on_status=on_status,
            interval=self.config.status_update_interval,
        )
        self.status_ticker.start()

    def _stop_status_ticker(self) -> None:
        if self.status_ticker is not None:
            self.status_ticker.stop()

    def _emit_final_status(self) -> None:
        if self.status_ticker is None:
            return
        try:
            self.status_ticker.tick()
        except Exception as e:
            self.logger.error(f"Final status update failed: {e}")

    def _log_status(self, line: str) -> None:
        self.logger.info(line)

    def _cleanup_probers(self) -> None:
        while self._initialized_probers:
            prober = self._initialized_probers.pop()
            try:
                prober.cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up prober {prober.name}: {e}")
