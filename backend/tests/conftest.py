"""
Pytest fixtures for the test suite.
"""
import pytest
import random
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from account import AccountState
from account_store import AccountStore
from config import (
    AscendingBetConfig,
    EscalatingCrashConfig,
    LedgerConfig,
    PriceEngineConfig,
    SimulatorConfig,
)
from ledger import Position


class ScriptedRandom(random.Random):
    """
    Random source that replays scripted values for random() and falls
    back to a seeded generator when the script runs out.
    """

    def __init__(self, values=None, seed=0):
        super().__init__(seed)
        self.values = list(values or [])

    def random(self):
        if self.values:
            return self.values.pop(0)
        return super().random()


@pytest.fixture
def rng():
    """Seeded random source."""
    return random.Random(1234)


@pytest.fixture
def account():
    """Account with $1,000 cash and no holdings."""
    return AccountState(account_id="tester", position=Position(cash_balance=1000.0))


@pytest.fixture
def account_store(tmp_path):
    """SQLite store in a temp directory."""
    return AccountStore(str(tmp_path / "simulator.db"))


@pytest.fixture
def fast_config():
    """Simulator config with short timers for async tests."""
    return SimulatorConfig(
        price=PriceEngineConfig(tick_delay_min_sec=0.01, tick_delay_max_sec=0.02),
        ledger=LedgerConfig(settlement_delay_sec=0.05, persist_debounce_sec=0.02),
        ascending=AscendingBetConfig(duration_sec=0.1, sample_interval_sec=0.01),
        crash=EscalatingCrashConfig(pre_roll_sec=0.05, tick_interval_sec=0.01),
    )
