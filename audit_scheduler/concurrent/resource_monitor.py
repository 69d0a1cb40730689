"""
Process resource sampling for queue statistics.

Sampling is pull-based: nothing runs in the background, a sample is taken
whenever statistics are computed. Limits only raise alerts; they never
throttle dispatch.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, List, Optional

import psutil

from audit_scheduler.utils.logging import get_logger, get_structured_logger


@dataclass(frozen=True)
class ResourceSample:
    """Single reading of process resources."""
    memory_mb: float
    cpu_seconds: float
    cpu_percent: float
    system_memory_percent: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ResourceLimits:
    """Alert thresholds. None disables a check."""
    max_memory_mb: Optional[float] = None
    max_cpu_percent: Optional[float] = None
    max_system_memory_percent: Optional[float] = None
    warning_ratio: float = 0.8


@dataclass(frozen=True)
class ResourceAlert:
    """Threshold crossing recorded by the monitor."""
    level: str  # 'warning' or 'critical'
    metric: str
    value: float
    limit: float
    message: str
    timestamp: datetime = field(default_factory=datetime.now)


class ResourceMonitor:
    """Reads memory and CPU usage of the current process via psutil."""

    def __init__(self, limits: Optional[ResourceLimits] = None, max_alerts: int = 100):
        self.limits = limits or ResourceLimits()
        self.logger = get_logger(__name__)
        self._log = get_structured_logger(__name__)
        self._process = psutil.Process()
        self._lock = threading.Lock()
        self._alerts: Deque[ResourceAlert] = deque(maxlen=max_alerts)
        self._last_sample: Optional[ResourceSample] = None

    def sample(self) -> ResourceSample:
        """
        Take one reading of the current process.

        Returns:
            ResourceSample with RSS memory in MB and accumulated CPU seconds
        """
        with self._lock:
            try:
                memory_mb = self._process.memory_info().rss / (1024 * 1024)
                cpu_times = self._process.cpu_times()
                cpu_percent = self._process.cpu_percent()
                system_memory_percent = psutil.virtual_memory().percent
            except psutil.Error as e:
                self.logger.warning(f"Failed to sample process resources: {e}")
                return self._last_sample or ResourceSample(0.0, 0.0, 0.0, 0.0)

            sample = ResourceSample(
                memory_mb=round(memory_mb, 2),
                cpu_seconds=round(cpu_times.user + cpu_times.system, 3),
                cpu_percent=cpu_percent,
                system_memory_percent=system_memory_percent,
            )
            self._last_sample = sample

        self._check_limits(sample)
        return sample

    @property
    def last_sample(self) -> Optional[ResourceSample]:
        return self._last_sample

    def _check_limits(self, sample: ResourceSample) -> List[ResourceAlert]:
        alerts = []
        checks = (
            ("memory_mb", sample.memory_mb, self.limits.max_memory_mb),
            ("cpu_percent", sample.cpu_percent, self.limits.max_cpu_percent),
            ("system_memory_percent", sample.system_memory_percent, self.limits.max_system_memory_percent),
        )

        for metric, value, limit in checks:
            if limit is None:
                continue
            if value > limit:
                level = "critical"
            elif value > limit * self.limits.warning_ratio:
                level = "warning"
            else:
                continue

            alert = ResourceAlert(
                level=level,
                metric=metric,
                value=value,
                limit=limit,
                message=f"{metric} at {value:.1f} (limit {limit:.1f})",
            )
            alerts.append(alert)
            self._log.warning("resource_alert", level=level, metric=metric, value=value, limit=limit)

        if alerts:
            with self._lock:
                self._alerts.extend(alerts)
        return alerts

    def get_alerts(self, level: Optional[str] = None) -> List[ResourceAlert]:
        """Recent alerts, oldest first, optionally filtered by level."""
        with self._lock:
            alerts = list(self._alerts)
        if level is not None:
            alerts = [a for a in alerts if a.level == level]
        return alerts

    def clear_alerts(self) -> None:
        with self._lock:
            self._alerts.clear()
