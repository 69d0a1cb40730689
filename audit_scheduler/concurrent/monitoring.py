"""
Progress reporting for the concurrent probe scheduler.
Provides rate-limited progress events and a periodic short status line.
"""

import threading
import time
from typing import Callable, Optional

from audit_scheduler.utils.logging import get_logger
from .models import QueueStats
from .events import EventBus, ProgressUpdateEvent


StatsSupplier = Callable[[], QueueStats]


def format_duration(seconds: float) -> str:
    """Compact human duration, e.g. 45s, 3m12s, 1h05m."""
    seconds = max(0, int(round(seconds)))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


def format_status_line(stats: QueueStats) -> str:
    """
    Render a one-line status suitable for overwriting in a terminal.

    Example: ``62.5% | 5/8 done | workers 2/3 | mem 48.2MB | eta 12s | 7.4/min``
    """
    eta = format_duration(stats.estimated_time_remaining) if stats.remaining else "0s"
    return (
        f"{stats.progress:.1f}% | {stats.finished}/{stats.total} done"
        f" | workers {stats.active_workers}/{stats.max_concurrent}"
        f" | mem {stats.memory_usage:.1f}MB"
        f" | eta {eta}"
        f" | {stats.throughput:.1f}/min"
    )


class ProgressReporter:
    """
    Rate-limited publisher of progress-update events.

    Every queue mutation calls offer(); an update is only computed and
    published if ``interval`` seconds have passed since the last one. The
    first offer always publishes.
    """

    def __init__(
        self,
        stats_supplier: StatsSupplier,
        event_bus: EventBus,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.stats_supplier = stats_supplier
        self.event_bus = event_bus
        self.interval = interval
        self._clock = clock
        self._lock = threading.RLock()
        self._last_emitted: Optional[float] = None
        self._emitted_count = 0

    @property
    def emitted_count(self) -> int:
        return self._emitted_count

    def offer(self) -> bool:
        """
        Publish a progress update if the interval has elapsed.

        Returns:
            True if an update was published
        """
        # Another thread is mid-publish; that update covers this offer.
        if not self._lock.acquire(blocking=False):
            return False
        try:
            now = self._clock()
            if self._last_emitted is not None and now - self._last_emitted < self.interval:
                return False
            self._last_emitted = now
            self._publish()
            return True
        finally:
            self._lock.release()

    def flush(self) -> None:
        """Publish an update regardless of the interval."""
        with self._lock:
            self._last_emitted = self._clock()
            self._publish()

    def reset(self) -> None:
        with self._lock:
            self._last_emitted = None

    def _publish(self) -> None:
        # Stats are computed and published under the reporter lock so
        # subscribers see snapshots in computation order.
        stats = self.stats_supplier()
        self._emitted_count += 1
        self.event_bus.publish(ProgressUpdateEvent(stats=stats))


class StatusTicker:
    """Background thread producing a short status line every interval."""

    def __init__(
        self,
        stats_supplier: StatsSupplier,
        on_status: Callable[[str], None],
        interval: float = 2.0
    ):
        self.stats_supplier = stats_supplier
        self.on_status = on_status
        self.interval = interval
        self.logger = get_logger(__name__)

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._ticks = 0

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        """Start ticking. No-op if already running."""
        if self.is_running():
            self.logger.warning("Status ticker is already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._ticker_loop, name="StatusTicker", daemon=True)
        self._thread.start()
        self.logger.debug(f"Status ticker started (interval={self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop ticking and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        self.logger.debug("Status ticker stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> str:
        """Emit one status line now."""
        line = format_status_line(self.stats_supplier())
        self._ticks += 1
        self.on_status(line)
        return line

    def _ticker_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                self.logger.error(f"Error in status ticker: {e}")
