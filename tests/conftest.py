"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from nodestack.adapters.mock import MockContainerDriver
from nodestack.core.config.catalog_loader import default_catalog
from nodestack.core.engine.task_monitor import BackgroundTaskMonitor
from nodestack.core.models.profile import Catalog
from nodestack.core.persistence.state_store import InstallationStateStore
from nodestack.core.services.event_bus import EventBus


def _wait_for(condition: Callable[[], object], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``condition`` until truthy or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return bool(condition())


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Polling helper for assertions on background threads."""
    return _wait_for


@pytest.fixture
def catalog() -> Catalog:
    """The bundled profile catalog."""
    return default_catalog()


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store(tmp_state_dir: Path) -> Iterator[InstallationStateStore]:
    s = InstallationStateStore(tmp_state_dir)
    yield s
    s.close()


@pytest.fixture
def event_bus() -> EventBus:
    """A private bus so tests never see each other's events."""
    return EventBus()


@pytest.fixture
def driver() -> MockContainerDriver:
    return MockContainerDriver()


@pytest.fixture
def monitor(store: InstallationStateStore, event_bus: EventBus) -> Iterator[BackgroundTaskMonitor]:
    m = BackgroundTaskMonitor(store, event_bus, default_interval_s=0.02, heartbeat_ticks=3)
    yield m
    m.shutdown()
