"""
Wager Base Classes

Shared types for the timed wager games. Engines are explicit state
machines driven by one tick source each: the caller advances them with
on_tick(dt) and they report samples and a terminal outcome through
callbacks. Engines never schedule their own timers.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Optional

from account import AccountState

logger = logging.getLogger(__name__)


class WagerMode(Enum):
    """Wager engine types"""
    ASCENDING_BET = "ascending_bet"
    ESCALATING_CRASH = "escalating_crash"


class WagerStatus(Enum):
    """Superset of both engines' states"""
    IDLE = "idle"
    PENDING_START = "pending_start"  # crash pre-roll, stake not yet at risk
    RUNNING = "running"
    RESOLVED = "resolved"  # ascending bet finished
    BLASTED = "blasted"
    WITHDRAWN = "withdrawn"


class Direction(Enum):
    UP = "up"
    DOWN = "down"


ACTIVE_STATUSES = {WagerStatus.PENDING_START, WagerStatus.RUNNING}
TERMINAL_STATUSES = {WagerStatus.RESOLVED, WagerStatus.BLASTED, WagerStatus.WITHDRAWN}


@dataclass
class WagerSession:
    """One run of a wager game."""
    id: str
    mode: WagerMode
    status: WagerStatus
    stake: float
    created_at: int
    direction: Optional[Direction] = None
    accumulated_gain_percent: Optional[float] = None
    is_high_risk_variant: Optional[bool] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "status": self.status.value,
            "stake": round(self.stake, 2),
            "created_at": self.created_at,
            "direction": self.direction.value if self.direction else None,
            "accumulated_gain_percent": (
                round(self.accumulated_gain_percent, 2)
                if self.accumulated_gain_percent is not None else None
            ),
            "is_high_risk_variant": self.is_high_risk_variant,
        }


@dataclass
class WagerOutcome:
    """Terminal result of a wager, reported to the ledger and presentation."""
    session_id: str
    mode: WagerMode
    status: WagerStatus
    stake: float
    is_win: bool
    payout: float  # amount credited back to cash, 0 on loss
    detail: dict

    @property
    def profit(self) -> float:
        return self.payout - self.stake

    def to_dict(self) -> dict:
        d = asdict(self)
        d["mode"] = self.mode.value
        d["status"] = self.status.value
        d["profit"] = round(self.profit, 2)
        return d


class WagerEngine(ABC):
    """
    Base class for the wager games.

    Subclasses own a single WagerSession at a time and move it through
    their state machine on each on_tick().
    """

    mode: WagerMode
    tick_interval_sec: float = 0.1

    def __init__(self, account: AccountState, rng: Optional[random.Random] = None):
        self.account = account
        self.rng = rng or random.Random()
        self.session: Optional[WagerSession] = None

        # Callbacks
        self.on_update: Optional[Callable[[dict], None]] = None
        self.on_outcome: Optional[Callable[[WagerOutcome], None]] = None

    @property
    def status(self) -> WagerStatus:
        return self.session.status if self.session else WagerStatus.IDLE

    @property
    def is_active(self) -> bool:
        """True while the engine needs ticks"""
        return self.status in ACTIVE_STATUSES

    @abstractmethod
    def on_tick(self, dt: float) -> Optional[WagerOutcome]:
        """Advance by dt seconds. Returns the outcome on the tick that resolves."""
        pass

    @abstractmethod
    def reset(self) -> None:
        """Acknowledge a finished session and return to Idle."""
        pass

    @abstractmethod
    def get_status(self) -> dict:
        """Current state for presentation"""
        pass

    def _emit_update(self, payload: dict) -> None:
        if self.on_update:
            try:
                self.on_update(payload)
            except Exception as e:
                logger.error(f"Error in wager update callback: {e}")

    def _emit_outcome(self, outcome: WagerOutcome) -> None:
        if self.on_outcome:
            try:
                self.on_outcome(outcome)
            except Exception as e:
                logger.error(f"Error in wager outcome callback: {e}")
