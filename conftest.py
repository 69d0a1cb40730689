"""
Pytest configuration and fixtures for audit scheduler tests.
"""

import logging
import os

import pytest
from hypothesis import settings, Verbosity

from audit_scheduler.concurrent import EventBus, QueueConfig, TaskQueue

# Configure Hypothesis for faster test runs
settings.register_profile("fast", max_examples=10, deadline=None, verbosity=Verbosity.quiet)
settings.register_profile("thorough", max_examples=100, deadline=None, verbosity=Verbosity.normal)

settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture
def event_bus():
    """Fresh event bus per test."""
    return EventBus()


@pytest.fixture
def fast_config():
    """Queue configuration with short delays for worker-pool tests."""
    return QueueConfig(
        max_concurrent=2,
        max_retries=1,
        retry_delay=0.05,
        probe_timeout=5.0,
        progress_update_interval=0.0,
        status_update_interval=0.05,
        enable_short_status=False,
        idle_wait=0.02,
    )


@pytest.fixture
def task_queue(fast_config, event_bus):
    """Task queue with retry timers cleaned up after the test."""
    queue = TaskQueue(config=fast_config, event_bus=event_bus)
    yield queue
    if queue.active_urls():
        queue.cancel()
    else:
        queue.clear()


def pytest_configure(config):
    """Configure pytest with custom settings."""
    logging.getLogger("audit_scheduler").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Mark property-based and integration tests."""
    for item in items:
        if hasattr(getattr(item, "obj", None), "hypothesis"):
            item.add_marker(pytest.mark.property)

        if "integration" in item.fspath.basename:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
