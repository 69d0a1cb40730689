"""
Configuration management for the audit scheduler.

Settings come from built-in defaults, then a caller-supplied dictionary, then
environment variables. Every layer is validated against CONFIG_SCHEMA.
"""

import os
import threading
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Mapping, Optional

from jsonschema import validate, ValidationError

from audit_scheduler.utils.errors import ConfigurationError
from audit_scheduler.concurrent.models import QueueConfig, PriorityPattern


# Configuration schema for validation
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "max_concurrent": {"type": "integer", "minimum": 1, "maximum": 100},
        "max_retries": {"type": "integer", "minimum": 0, "maximum": 20},
        "retry_delay": {"type": "number", "minimum": 0, "maximum": 3600},
        "backoff_factor": {"type": "number", "minimum": 1.0, "maximum": 10.0},
        "max_retry_delay": {"type": "number", "minimum": 0, "maximum": 86400},
        "priority_patterns": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "minLength": 1},
                    "priority": {"type": "integer"}
                },
                "required": ["pattern", "priority"],
                "additionalProperties": False
            }
        },
        "default_priority": {"type": "integer"},
        "probe_timeout": {"type": ["number", "null"], "exclusiveMinimum": 0},
        "progress_update_interval": {"type": "number", "minimum": 0, "maximum": 3600},
        "status_update_interval": {"type": "number", "exclusiveMinimum": 0, "maximum": 3600},
        "enable_short_status": {"type": "boolean"},
        "idle_wait": {"type": "number", "exclusiveMinimum": 0, "maximum": 60},
        "log_level": {
            "type": "string",
            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        },
        "log_file": {"type": ["string", "null"]}
    },
    "additionalProperties": False
}


# Environment variable -> (config key, parser)
ENV_OVERRIDES: Dict[str, tuple] = {
    "AUDIT_MAX_CONCURRENT": ("max_concurrent", int),
    "AUDIT_MAX_RETRIES": ("max_retries", int),
    "AUDIT_RETRY_DELAY": ("retry_delay", float),
    "AUDIT_PROBE_TIMEOUT": ("probe_timeout", lambda v: None if v.lower() in ("", "none", "null") else float(v)),
    "AUDIT_ENABLE_SHORT_STATUS": ("enable_short_status", lambda v: v.strip().lower() in ("1", "true", "yes", "on")),
    "AUDIT_LOG_LEVEL": ("log_level", lambda v: v.strip().upper()),
    "AUDIT_LOG_FILE": ("log_file", str),
}


@dataclass
class SchedulerSettings:
    """Complete settings: queue configuration plus logging options."""
    queue: QueueConfig = field(default_factory=QueueConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None


ChangeListener = Callable[[SchedulerSettings, SchedulerSettings], None]


class ConfigManager:
    """Builds validated settings from defaults, a dictionary and the environment."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = environ if environ is not None else os.environ
        self._settings: Optional[SchedulerSettings] = None
        self._overrides: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._change_listeners: List[ChangeListener] = []

    def add_change_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            self._change_listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            if listener in self._change_listeners:
                self._change_listeners.remove(listener)

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """Validate configuration data against schema."""
        try:
            validate(instance=config_data, schema=CONFIG_SCHEMA)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.message}",
                {"path": list(e.absolute_path)}
            )

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> SchedulerSettings:
        """
        Build settings from defaults, ``overrides`` and environment variables.

        Raises:
            ConfigurationError: If any layer fails validation
        """
        with self._lock:
            if overrides is not None:
                self.validate_config(overrides)
                self._overrides = dict(overrides)

            data = dict(self._overrides)
            env_data = self._read_env()
            self.validate_config(env_data)
            data.update(env_data)

            self._settings = self._dict_to_settings(data)
            logging.getLogger(__name__).debug(f"Configuration loaded: {sorted(data)}")
            return self._settings

    def get_settings(self) -> SchedulerSettings:
        with self._lock:
            return self._settings or self.load()

    def update(self, changes: Dict[str, Any]) -> SchedulerSettings:
        """Apply changes on top of the current overrides and notify listeners."""
        with self._lock:
            old_settings = self.get_settings()
            merged = {**self._overrides, **changes}
            new_settings = self.load(merged)
            listeners = list(self._change_listeners)

        for listener in listeners:
            try:
                listener(old_settings, new_settings)
            except Exception as e:
                logging.getLogger(__name__).error(f"Error notifying config change listener: {e}")
        return new_settings

    def export_config(self) -> Dict[str, Any]:
        """Export current settings in the CONFIG_SCHEMA shape."""
        settings = self.get_settings()
        data = asdict(settings.queue)
        data["priority_patterns"] = [
            {"pattern": rule.pattern, "priority": rule.priority}
            for rule in settings.queue.priority_patterns
        ]
        data["log_level"] = settings.log_level
        data["log_file"] = settings.log_file
        return data

    def _read_env(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for env_name, (key, parser) in ENV_OVERRIDES.items():
            raw = self._environ.get(env_name)
            if raw is None:
                continue
            try:
                data[key] = parser(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {env_name}: {raw!r}",
                    {"variable": env_name, "error": str(e)}
                )
        return data

    def _dict_to_settings(self, data: Dict[str, Any]) -> SchedulerSettings:
        queue_fields = {k: v for k, v in data.items() if k not in ("log_level", "log_file")}
        if "priority_patterns" in queue_fields:
            queue_fields["priority_patterns"] = [
                PriorityPattern(pattern=p["pattern"], priority=p["priority"])
                for p in queue_fields["priority_patterns"]
            ]
        return SchedulerSettings(
            queue=QueueConfig(**queue_fields),
            log_level=data.get("log_level", "INFO"),
            log_file=data.get("log_file"),
        )


def load_settings(overrides: Optional[Dict[str, Any]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> SchedulerSettings:
    """Convenience wrapper building settings in one call."""
    return ConfigManager(environ=environ).load(overrides)
