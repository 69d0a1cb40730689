"""
Exception hierarchy for the audit scheduler and a helper for logging errors.

TaskFailure and its subclasses describe one failed probe attempt and never
escape the worker pool. FatalStartupError and MisuseError are raised to the
caller.
"""

import traceback
from typing import Any, Dict, Optional


class AuditSchedulerError(Exception):
    """Root of every error raised by this package."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details) if details else {}


class TaskFailure(AuditSchedulerError):
    """A single probe attempt failed."""


class ProbeError(TaskFailure):
    """The prober ran but the target did not pass the check."""


class ProbeTimeoutError(TaskFailure):
    """The probe did not settle within its time limit."""


class ProbeCancelledError(TaskFailure):
    """The prober stopped because its context was cancelled."""


class FatalStartupError(AuditSchedulerError):
    """The prober could not be initialized; nothing was dispatched."""


class MisuseError(AuditSchedulerError):
    """Invalid configuration, invalid input or an illegal call sequence."""


class ConfigurationError(MisuseError):
    """Settings failed schema validation or could not be parsed."""


def handle_error(
    error: Exception,
    logger,
    context: Optional[Dict[str, Any]] = None,
    reraise: bool = True
) -> None:
    """
    Log an exception with its details and caller context.

    Args:
        error: Exception being handled
        logger: Logger receiving the record
        context: Extra key/value pairs describing where it happened
        reraise: Raise the exception again after logging
    """
    fields: Dict[str, Any] = {"error_type": type(error).__name__, "error_message": str(error)}
    fields.update(context or {})
    if isinstance(error, AuditSchedulerError):
        fields.update(error.details)

    logger.error("Error occurred: %s", ", ".join(f"{key}={value}" for key, value in fields.items()))
    logger.debug("Traceback: %s", "".join(traceback.format_exception(type(error), error, error.__traceback__)))

    if reraise:
        raise error
