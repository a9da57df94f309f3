"""
Shared fixtures: a controllable clock and a fully wired core per test.
"""

from datetime import datetime, timedelta

import pytest

from lorekeeper.core.records import InMemoryRecordStore
from lorekeeper.services import build_services


class FakeClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    """Fresh in-memory record store for each test."""
    return InMemoryRecordStore()


@pytest.fixture
def services(store, clock):
    """All four components wired around one in-memory store."""
    return build_services(store=store, clock=clock)
