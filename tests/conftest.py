"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.alert_engine.scheduler import VirtualScheduler  # noqa: E402
from src.alert_engine.store import AlertStore  # noqa: E402


@pytest.fixture
def scheduler():
    """Virtual clock starting Monday 2024-01-01 12:00 UTC."""
    return VirtualScheduler()


@pytest.fixture
def store(scheduler):
    alert_store = AlertStore(scheduler=scheduler)
    yield alert_store
    alert_store.shutdown()
