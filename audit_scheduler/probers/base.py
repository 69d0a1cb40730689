"""
Abstract base classes and interfaces for probers.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Type

from audit_scheduler.utils.logging import get_business_logger
from audit_scheduler.utils.errors import MisuseError, ProbeCancelledError


class ProbeContext:
    """
    Per-attempt context handed to a prober.

    Carries the attempt deadline and a cancellation flag. The flag is set
    when the attempt times out or the whole run is cancelled; probers are
    expected to check it between slow steps.
    """

    def __init__(
        self,
        url: str,
        attempt: int = 1,
        timeout: Optional[float] = None,
        run_cancelled: Optional[threading.Event] = None
    ):
        self.url = url
        self.attempt = attempt
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self._cancelled = threading.Event()
        self._run_cancelled = run_cancelled
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._run_cancelled is not None and self._run_cancelled.is_set()

    @property
    def reason(self) -> Optional[str]:
        if self._reason is not None:
            return self._reason
        if self._run_cancelled is not None and self._run_cancelled.is_set():
            return "cancelled"
        return None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled.is_set():
            self._reason = reason
            self._cancelled.set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a timeout."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ProbeCancelledError(
                f"Probe of {self.url} cancelled: {self.reason}",
                {"url": self.url, "reason": self.reason}
            )

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, waking early on cancellation.

        Returns:
            True if cancelled while waiting
        """
        end = time.monotonic() + seconds
        while not self.cancelled:
            remaining = end - time.monotonic()
            if remaining <= 0:
                return False
            self._cancelled.wait(min(remaining, 0.05))
        return True


class BaseProber(ABC):
    """Abstract base class for all probers."""

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None):
        """
        Initialize prober with a name and configuration.

        Args:
            name: Prober name (e.g., 'http')
            config: Optional prober-specific configuration
        """
        self.name = name
        self.config = config or {}
        self.logger = get_business_logger(f"prober_{name}")

    def initialize(self) -> None:
        """Acquire shared resources before any probe. Errors abort the run."""
        pass

    @abstractmethod
    def probe(self, url: str, context: ProbeContext) -> Any:
        """
        Check a single URL.

        Args:
            url: Target URL
            context: Attempt context (deadline, cancellation)

        Returns:
            Opaque result stored with the completed task

        Raises:
            Exception: Any error fails the attempt
        """
        pass

    def cleanup(self) -> None:
        """Release resources acquired by initialize()."""
        pass


class FunctionProber(BaseProber):
    """Adapts a plain callable ``fn(url, context)`` to the prober interface."""

    def __init__(self, func: Callable[[str, ProbeContext], Any], name: Optional[str] = None):
        super().__init__(name or getattr(func, "__name__", "function"))
        self.func = func

    def probe(self, url: str, context: ProbeContext) -> Any:
        return self.func(url, context)


def as_prober(prober) -> BaseProber:
    """Return a BaseProber for a prober instance or a callable."""
    if isinstance(prober, BaseProber):
        return prober
    if callable(prober):
        return FunctionProber(prober)
    raise MisuseError("Prober must be a BaseProber or a callable", {"prober": repr(prober)})


class ProberRegistry:
    """Registry mapping names to prober classes and their default config."""

    def __init__(self):
        self._probers: Dict[str, Type[BaseProber]] = {}
        self._configs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def register(self, name: str, prober_class: Type[BaseProber],
                 config: Optional[Dict[str, Any]] = None) -> None:
        """
        Register a prober class.

        Raises:
            MisuseError: If the class is not a BaseProber subclass
        """
        if not (isinstance(prober_class, type) and issubclass(prober_class, BaseProber)):
            raise MisuseError(f"{prober_class!r} is not a BaseProber subclass", {"name": name})
        with self._lock:
            self._probers[name] = prober_class
            self._configs[name] = dict(config or {})

    def unregister(self, name: str) -> None:
        with self._lock:
            self._probers.pop(name, None)
            self._configs.pop(name, None)

    def create(self, name: str, config: Optional[Dict[str, Any]] = None) -> BaseProber:
        """
        Instantiate a registered prober, merging config over the defaults.

        Raises:
            MisuseError: If no prober is registered under the name
        """
        with self._lock:
            if name not in self._probers:
                raise MisuseError(f"Unknown prober: {name}", {"available": sorted(self._probers)})
            prober_class = self._probers[name]
            merged = {**self._configs[name], **(config or {})}
        return prober_class(config=merged)

    def list_probers(self) -> List[str]:
        with self._lock:
            return sorted(self._probers)

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._probers
