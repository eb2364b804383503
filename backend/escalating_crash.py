"""
Escalating Crash - repeating-tick wager.

After a pre-roll delay the stake is debited and every tick adds a random
gain. Each tick also rolls a blast whose chance is looked up from the
accumulated gain in a step table. The user can withdraw at any point
before the blast and is paid stake * (1 + gain%).

States: IDLE -> PENDING_START -> RUNNING -> {BLASTED | WITHDRAWN} -> IDLE

A finished session must be reset() before a new stake is accepted.
"""

import logging
import random
import time
import uuid
from typing import Any, Optional

from account import AccountState
from config import EscalatingCrashConfig
from errors import SimulatorError, SessionConflict
from wager_base import (
    TERMINAL_STATUSES,
    WagerEngine,
    WagerMode,
    WagerOutcome,
    WagerSession,
    WagerStatus,
)

logger = logging.getLogger(__name__)


# ============================================================================
# BLAST STEP TABLES
# ============================================================================

# (gain upper bound %, blast chance) evaluated top-down; first gain < bound wins.
# The per-tick blast probability is chance / blast_divisor.
STANDARD_BLAST_TABLE: list[tuple[float, float]] = [
    (15.0, 0.035),
    (30.0, 0.22),
    (70.0, 0.43),
    (90.0, 0.55),
    (float("inf"), 0.99),
]

TURBO_BLAST_TABLE: list[tuple[float, float]] = [
    (80.0, 0.0),
    (90.0, 0.25),
    (float("inf"), 1.0),
]


def blast_chance(gain_percent: float, table: list[tuple[float, float]]) -> float:
    for upper_bound, chance in table:
        if gain_percent < upper_bound:
            return chance
    return table[-1][1]


def blast_probability(gain_percent: float, turbo: bool = False, divisor: float = 20.0) -> float:
    """Per-tick blast probability at the given accumulated gain."""
    table = TURBO_BLAST_TABLE if turbo else STANDARD_BLAST_TABLE
    return blast_chance(gain_percent, table) / divisor


def roll_blast(gain_percent: float, turbo: bool, rng: random.Random, divisor: float = 20.0) -> bool:
    return rng.random() < blast_probability(gain_percent, turbo, divisor)


class EscalatingCrashEngine(WagerEngine):
    """Gain accumulator with a gain-dependent blast hazard."""

    mode = WagerMode.ESCALATING_CRASH

    def __init__(
        self,
        account: AccountState,
        config: Optional[EscalatingCrashConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(account, rng)
        self.config = config or EscalatingCrashConfig()
        self.tick_interval_sec = self.config.tick_interval_sec

        self.pre_roll_left_sec = 0.0
        self.tick_count = 0
        self.last_outcome: Optional[WagerOutcome] = None

    @property
    def gain_percent(self) -> float:
        if not self.session or self.session.accumulated_gain_percent is None:
            return 0.0
        return self.session.accumulated_gain_percent

    @property
    def is_turbo(self) -> bool:
        return bool(self.session and self.session.is_high_risk_variant)

    # -------------------------------------------------------------------------
    # COMMANDS
    # -------------------------------------------------------------------------

    def start(self, stake: Any) -> WagerSession:
        """
        Accept a stake and begin the pre-roll. Nothing is debited until the
        pre-roll ends.
        """
        if self.status in TERMINAL_STATUSES:
            raise SessionConflict(
                f"Previous crash session is {self.status.value}; reset before placing a new stake"
            )
        if self.is_active:
            raise SessionConflict("A crash session is already in progress")

        stake = self.account.check_stake(stake)

        self.session = WagerSession(
            id=f"crash_{uuid.uuid4().hex[:12]}",
            mode=self.mode,
            status=WagerStatus.PENDING_START,
            stake=stake,
            created_at=int(time.time()),
            accumulated_gain_percent=0.0,
            is_high_risk_variant=False,
        )
        self.pre_roll_left_sec = self.config.pre_roll_sec
        self.tick_count = 0

        logger.info(f"Crash session pending: {self.session.id} | ${stake:,.2f} | pre-roll {self.config.pre_roll_sec}s")
        self._emit_update({"type": "pending", "session_id": self.session.id, "pre_roll_sec": self.pre_roll_left_sec})
        return self.session

    def withdraw(self) -> Optional[WagerOutcome]:
        """
        Cash out before the blast.

        During the pre-roll this cancels the session without any balance
        change and returns None.
        """
        if self.status == WagerStatus.PENDING_START:
            logger.info(f"Crash session cancelled during pre-roll: {self.session.id}")
            self._clear()
            self._emit_update({"type": "cancelled"})
            return None

        if self.status != WagerStatus.RUNNING:
            raise SessionConflict(f"Nothing to withdraw (status: {self.status.value})")

        session = self.session
        gain = self.gain_percent
        payout = session.stake + session.stake * (gain / 100)
        self.account.credit(payout)
        session.status = WagerStatus.WITHDRAWN

        logger.info(f"Crash withdrawn: {session.id} | Gain: {gain:.2f}% | Payout: ${payout:,.2f}")
        return self._finish(is_win=True, payout=payout)

    def reset(self) -> None:
        if self.is_active:
            raise SessionConflict("Cannot reset a crash session in progress; withdraw first")
        self._clear()

    def _clear(self) -> None:
        self.session = None
        self.pre_roll_left_sec = 0.0
        self.tick_count = 0

    # -------------------------------------------------------------------------
    # TICKS
    # -------------------------------------------------------------------------

    def on_tick(self, dt: float) -> Optional[WagerOutcome]:
        if self.status == WagerStatus.PENDING_START:
            self.pre_roll_left_sec -= dt
            if self.pre_roll_left_sec <= 1e-9:
                self._begin()
            return None

        if self.status != WagerStatus.RUNNING:
            return None

        session = self.session
        session.accumulated_gain_percent += self.rng.uniform(0, self.config.max_gain_step_pct)
        self.tick_count += 1

        if roll_blast(session.accumulated_gain_percent, self.is_turbo, self.rng, self.config.blast_divisor):
            session.status = WagerStatus.BLASTED
            logger.info(
                f"Crash BLASTED: {session.id} | Gain: {session.accumulated_gain_percent:.2f}% | "
                f"Lost ${session.stake:,.2f}{' (turbo)' if self.is_turbo else ''}"
            )
            return self._finish(is_win=False, payout=0.0)

        self._emit_update({
            "type": "gain",
            "session_id": session.id,
            "accumulated_gain_percent": round(session.accumulated_gain_percent, 2),
        })
        return None

    def _begin(self) -> None:
        """End of pre-roll: debit the stake and roll the turbo flag."""
        session = self.session
        try:
            self.account.debit_stake(session.stake)
        except SimulatorError as e:
            # Cash was spent elsewhere during the pre-roll
            logger.warning(f"Crash session {session.id} aborted at start: {e.message}")
            self._clear()
            self._emit_update({"type": "aborted", "error": e.message, "error_type": e.error_type})
            return

        session.is_high_risk_variant = self.rng.random() < self.config.turbo_probability
        session.status = WagerStatus.RUNNING
        self.pre_roll_left_sec = 0.0

        logger.info(f"Crash session running: {session.id}{' | TURBO' if session.is_high_risk_variant else ''}")
        self._emit_update({"type": "running", "session_id": session.id, "turbo": session.is_high_risk_variant})

    def _finish(self, is_win: bool, payout: float) -> WagerOutcome:
        session = self.session
        outcome = WagerOutcome(
            session_id=session.id,
            mode=self.mode,
            status=session.status,
            stake=session.stake,
            is_win=is_win,
            payout=payout,
            detail={
                "accumulated_gain_percent": round(self.gain_percent, 4),
                "turbo": self.is_turbo,
                "ticks": self.tick_count,
            },
        )
        self.last_outcome = outcome
        self._emit_outcome(outcome)
        return outcome

    def get_status(self) -> dict:
        return {
            "mode": self.mode.value,
            "status": self.status.value,
            "session": self.session.to_dict() if self.session else None,
            "pre_roll_left_sec": round(max(0.0, self.pre_roll_left_sec), 2),
            "blast_probability": (
                blast_probability(self.gain_percent, self.is_turbo, self.config.blast_divisor)
                if self.status == WagerStatus.RUNNING else None
            ),
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }
