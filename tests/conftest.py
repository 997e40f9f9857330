"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from datetime import date, time
from pathlib import Path
from typing import Dict, Optional, Tuple

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from event_calendar_sync.models import Event  # noqa: E402


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class InMemorySecretStore:
    """Dict-backed secret store for provider tests."""

    def __init__(self):
        self.values: Dict[Tuple[str, str], str] = {}

    def get(self, namespace: str, key: str) -> Optional[str]:
        return self.values.get((namespace, key))

    def set(self, namespace: str, key: str, value: str) -> bool:
        self.values[(namespace, key)] = value
        return True

    def delete(self, namespace: str, key: str) -> bool:
        return self.values.pop((namespace, key), None) is not None


@pytest.fixture
def secret_store():
    """Empty in-memory secret store."""
    return InMemorySecretStore()


@pytest.fixture
def sample_event():
    """Timed event with notes, location and a source link."""
    return Event(
        id="evt-1",
        name="Team Dinner",
        event_date=date(2025, 3, 14),
        start_time=time(19, 0),
        location="Cafe Central",
        notes="Bring cake",
        url_link="https://events.example.com/e/1",
    )


@pytest.fixture
def all_day_event():
    """Event without a start time."""
    return Event(
        id="evt-2",
        name="Conference",
        event_date=date(2025, 3, 14),
    )
