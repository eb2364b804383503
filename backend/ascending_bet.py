"""
Ascending Bet - single-shot timed wager.

The user picks a direction and stakes an amount. A biased coin decides,
at start, whether the flight goes up or down; the timed phase then only
plays out that path. When the duration elapses, the final altitude is
compared with the threshold and a win pays stake * payout_rate.

States: IDLE -> RUNNING -> RESOLVED -> IDLE
"""

import logging
import math
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

from account import AccountState
from config import AscendingBetConfig
from errors import InvalidAmount, SessionConflict
from wager_base import (
    Direction,
    WagerEngine,
    WagerMode,
    WagerOutcome,
    WagerSession,
    WagerStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AltitudeSample:
    progress: float  # 0..1
    altitude: float  # 0..100
    in_profit: bool  # altitude on the user's side of the threshold

    def to_dict(self) -> dict:
        return {
            "progress": round(self.progress, 3),
            "altitude": round(self.altitude, 2),
            "in_profit": self.in_profit,
        }


def parse_direction(direction: Any) -> Direction:
    if isinstance(direction, Direction):
        return direction
    try:
        return Direction(str(direction).lower())
    except ValueError:
        raise InvalidAmount(f"Invalid direction: {direction!r}")


class AscendingBetEngine(WagerEngine):
    """Timed flight whose outcome is drawn before the flight starts."""

    mode = WagerMode.ASCENDING_BET

    def __init__(
        self,
        account: AccountState,
        config: Optional[AscendingBetConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(account, rng)
        self.config = config or AscendingBetConfig()
        self.tick_interval_sec = self.config.sample_interval_sec

        self.predetermined: Optional[Direction] = None  # path the flight will take
        self.elapsed_sec = 0.0
        self.altitude = self.config.start_altitude
        self.path: deque[AltitudeSample] = deque(maxlen=self.config.path_length)
        self.last_outcome: Optional[WagerOutcome] = None

    # -------------------------------------------------------------------------
    # COMMANDS
    # -------------------------------------------------------------------------

    def start(self, stake: Any, direction: Any) -> WagerSession:
        """
        Commit a stake. The stake is debited immediately and is not
        refundable once the flight starts.
        """
        if self.status == WagerStatus.RUNNING:
            raise SessionConflict("An ascending bet is already running")

        direction = parse_direction(direction)
        stake = self.account.debit_stake(stake)

        if self.status == WagerStatus.RESOLVED:
            self._clear()

        # Outcome is fixed here, not measured from the flight
        is_win_draw = self.rng.random() < self.config.win_probability
        if direction == Direction.UP:
            self.predetermined = Direction.UP if is_win_draw else Direction.DOWN
        else:
            self.predetermined = Direction.DOWN if is_win_draw else Direction.UP

        self.session = WagerSession(
            id=f"asc_{uuid.uuid4().hex[:12]}",
            mode=self.mode,
            status=WagerStatus.RUNNING,
            stake=stake,
            created_at=int(time.time()),
            direction=direction,
        )
        self.elapsed_sec = 0.0
        self.altitude = self.config.start_altitude
        self.path.clear()
        self.path.append(AltitudeSample(0.0, self.altitude, False))

        logger.info(
            f"Ascending bet started: {self.session.id} | {direction.value.upper()} "
            f"${stake:,.2f} | path {self.predetermined.value}"
        )
        return self.session

    def reset(self) -> None:
        if self.status == WagerStatus.RUNNING:
            raise SessionConflict("Cannot reset a running ascending bet")
        self._clear()

    def _clear(self) -> None:
        self.session = None
        self.predetermined = None
        self.elapsed_sec = 0.0
        self.altitude = self.config.start_altitude
        self.path.clear()

    # -------------------------------------------------------------------------
    # TIMED PHASE
    # -------------------------------------------------------------------------

    @property
    def progress(self) -> float:
        # Absorb float drift from summing tick intervals
        if self.elapsed_sec >= self.config.duration_sec - 1e-9:
            return 1.0
        return self.elapsed_sec / self.config.duration_sec

    def altitude_at(self, progress: float) -> float:
        """Altitude along the predetermined path. Jitter is zero at the end."""
        sign = 1.0 if self.predetermined == Direction.UP else -1.0
        base = self.config.start_altitude + sign * self.config.altitude_swing * math.pow(progress, 1.5)
        jitter = self.rng.uniform(-1.0, 1.0) * self.config.altitude_jitter * (1.0 - progress)
        return max(0.0, min(100.0, base + jitter))

    def _in_profit(self, altitude: float) -> bool:
        threshold = self.config.threshold_altitude
        if self.session.direction == Direction.UP:
            return altitude > threshold
        return altitude < threshold

    def on_tick(self, dt: float) -> Optional[WagerOutcome]:
        if self.status != WagerStatus.RUNNING:
            return None

        self.elapsed_sec += dt
        progress = self.progress
        self.altitude = self.altitude_at(progress)
        sample = AltitudeSample(progress, self.altitude, self._in_profit(self.altitude))
        self.path.append(sample)
        self._emit_update({"type": "altitude", "session_id": self.session.id, **sample.to_dict()})

        if progress >= 1.0:
            return self._resolve()
        return None

    def _resolve(self) -> WagerOutcome:
        session = self.session
        final_altitude = self.altitude
        is_win = self._in_profit(final_altitude)
        payout = session.stake * self.config.payout_rate if is_win else 0.0

        if payout:
            # Full payout; the stake was already debited at start
            self.account.credit(payout)

        session.status = WagerStatus.RESOLVED
        outcome = WagerOutcome(
            session_id=session.id,
            mode=self.mode,
            status=WagerStatus.RESOLVED,
            stake=session.stake,
            is_win=is_win,
            payout=payout,
            detail={
                "direction": session.direction.value,
                "path": self.predetermined.value,
                "final_altitude": round(final_altitude, 2),
                "payout_rate": self.config.payout_rate,
            },
        )
        self.last_outcome = outcome

        logger.info(
            f"Ascending bet resolved: {session.id} | {'WIN' if is_win else 'LOSS'} | "
            f"Payout: ${payout:,.2f} | Altitude: {final_altitude:.1f}"
        )
        self._emit_outcome(outcome)
        return outcome

    def get_status(self) -> dict:
        return {
            "mode": self.mode.value,
            "status": self.status.value,
            "session": self.session.to_dict() if self.session else None,
            "progress": round(self.progress, 3) if self.session else 0.0,
            "altitude": round(self.altitude, 2),
            "path": [s.to_dict() for s in self.path],
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }
