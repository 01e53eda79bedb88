"""
Shared test configuration.

Ensures the repo root is on sys.path so `paper_trader` is importable
even without pip install, and provides ledger fixtures.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add repo root to path
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from paper_trader.data.store import LedgerStore  # noqa: E402
from paper_trader.ledger.engine import LedgerEngine  # noqa: E402
from paper_trader.ledger.models import Account  # noqa: E402


class FakeClock:
    """Deterministic clock; advance() moves time forward."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 4, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = LedgerStore(str(tmp_path / "ledger.db"))
    yield s
    s.close()


@pytest.fixture
def engine(store, clock):
    return LedgerEngine(store, clock=clock)


@pytest.fixture
def account(engine):
    """A fresh tenant account with the default 1000.00 balance."""
    return engine.open_account(Account(user_id="u-1", username="alice"))
