"""
Logging setup for the audit scheduler.

Queue, pool and prober code log through standard-library loggers; structlog
renders the key/value records (handler failures, resource alerts) as JSON
through the same handlers. File logs roll over at midnight and a daily job
prunes rotated files past the retention window.
"""

import logging
import logging.handlers
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Union

import schedule
import structlog


CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(threadName)s %(funcName)s:%(lineno)d %(message)s"
CLEANUP_TIME = "02:00"

_cleanup_scheduler: Optional[schedule.Scheduler] = None
_cleanup_lock = threading.Lock()


def _structlog_processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=False),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(sort_keys=True),
    ]


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    retention_days: int = 7
) -> None:
    """
    Configure structlog and the root logger's handlers.

    Replaces any handlers already installed on the root logger, so calling
    it again reconfigures logging rather than duplicating output.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path of the rotating log file; console only when omitted
        retention_days: Rotated files kept by the handler and the cleanup job
    """
    structlog.configure(
        processors=_structlog_processors(),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: List[logging.Handler] = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers.append(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.TimedRotatingFileHandler(
            path, when="midnight", backupCount=retention_days, encoding="utf-8"
        )
        rotating.suffix = "%Y-%m-%d"
        rotating.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(rotating)

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(_level(log_level))

    if log_file:
        _start_log_cleanup_scheduler(Path(log_file).parent, retention_days)


def get_logger(name: str) -> logging.Logger:
    """Standard logger, usually called with ``__name__``."""
    return logging.getLogger(name)


def get_structured_logger(name: str):
    """structlog logger for key/value records."""
    return structlog.get_logger(name)


def get_business_logger(business_name: str, log_level: str = "INFO") -> logging.Logger:
    """
    Logger under the ``business.`` namespace for one pluggable component,
    e.g. ``get_business_logger("prober_http")``.

    The level is only set the first time, so later callers cannot lower it.
    """
    logger = logging.getLogger(f"business.{business_name}")
    if logger.level == logging.NOTSET:
        logger.setLevel(_level(log_level))
    return logger


def _start_log_cleanup_scheduler(logs_dir: Path, retention_days: int) -> schedule.Scheduler:
    """Register the daily cleanup job; the runner thread starts once per process."""
    global _cleanup_scheduler

    with _cleanup_lock:
        first_call = _cleanup_scheduler is None
        if first_call:
            _cleanup_scheduler = schedule.Scheduler()
        scheduler = _cleanup_scheduler
        scheduler.clear("log-cleanup")
        scheduler.every().day.at(CLEANUP_TIME).do(
            cleanup_old_logs, logs_dir, retention_days
        ).tag("log-cleanup")

    if first_call:
        def run_pending_forever():
            while True:
                scheduler.run_pending()
                time.sleep(60)

        threading.Thread(target=run_pending_forever, name="LogCleanup", daemon=True).start()
    return scheduler


def cleanup_old_logs(logs_dir: Optional[Union[str, Path]] = None, retention_days: int = 7) -> int:
    """
    Delete ``*.log*`` files last modified before the retention window.

    Args:
        logs_dir: Directory to scan, ``./logs`` by default
        retention_days: Age in days after which a file is removed

    Returns:
        Number of files deleted
    """
    directory = Path(logs_dir) if logs_dir is not None else Path("logs")
    if not directory.is_dir():
        return 0

    logger = get_logger(__name__)
    threshold = (datetime.now() - timedelta(days=retention_days)).timestamp()
    removed = 0

    for candidate in sorted(directory.glob("*.log*")):
        if not candidate.is_file() or candidate.stat().st_mtime >= threshold:
            continue
        try:
            candidate.unlink()
        except OSError as e:
            logger.warning(f"Could not delete expired log {candidate.name}: {e}")
            continue
        removed += 1
        logger.info(f"Deleted expired log {candidate.name}")

    if removed:
        logger.info(f"Log cleanup removed {removed} file(s) from {directory}")
    return removed
