"""Ortak test yardımcıları."""

from datetime import datetime, timedelta

import pytest

from src.ledger.backends import InMemoryBackend
from src.ledger.config import LedgerConfig
from src.ledger.count_session import CountSessionEngine
from src.ledger.ledger_store import LedgerStore


class FixedClock:
    """Elle ilerletilen saat."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 10, 9, 0, 0))


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def ledger(backend, clock):
    return LedgerStore(backend=backend, config=LedgerConfig(lock_timeout_seconds=0.2), clock=clock)


@pytest.fixture
def engine(ledger):
    return CountSessionEngine(ledger)
