"""
Market Regimes - static configuration for the simulated asset.

Each regime is a price band with a per-tick probability of leaving it and
the regime(s) it can move to. MID is the consolidation regime; only there
does the Trend sub-state bias the walk.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Regime(Enum):
    """Market regimes"""
    LOW = "LOW"
    MID = "MID"      # Consolidation
    HIGH = "HIGH"


class Trend(Enum):
    """Directional bias, only meaningful while the regime is MID"""
    UP = "UP"
    DOWN = "DOWN"
    SIDEWAYS = "SIDEWAYS"


@dataclass(frozen=True)
class RegimeSpec:
    """Immutable description of one regime."""
    regime: Regime
    price_min: float
    price_max: float
    leave_probability: float
    successors: tuple  # one Regime, or two Regimes resolved by a weighted draw

    @property
    def price_band(self) -> tuple:
        return (self.price_min, self.price_max)

    def contains(self, price: float) -> bool:
        return self.price_min <= price <= self.price_max

    def to_dict(self) -> dict:
        return {
            "regime": self.regime.value,
            "price_band": [self.price_min, self.price_max],
            "leave_probability": self.leave_probability,
            "successors": [s.value for s in self.successors],
        }


# ============================================================================
# REGIME TABLE
# ============================================================================

REGIME_TABLE: dict[Regime, RegimeSpec] = {
    Regime.LOW: RegimeSpec(
        regime=Regime.LOW,
        price_min=40000.0,
        price_max=55000.0,
        leave_probability=0.02,
        successors=(Regime.MID,),
    ),
    Regime.MID: RegimeSpec(
        regime=Regime.MID,
        price_min=55000.0,
        price_max=75000.0,
        leave_probability=0.05,
        successors=(Regime.LOW, Regime.HIGH),
    ),
    Regime.HIGH: RegimeSpec(
        regime=Regime.HIGH,
        price_min=75000.0,
        price_max=95000.0,
        leave_probability=0.02,
        successors=(Regime.MID,),
    ),
}

# Secondary draw when leaving MID: (regime, cumulative threshold)
# 10% LOW, 10% HIGH, 80% stay in MID
MID_EXIT_WEIGHTS: list[tuple[Regime, float]] = [
    (Regime.LOW, 0.10),
    (Regime.HIGH, 0.20),
    (Regime.MID, 1.0),
]

# Trend selection: cumulative thresholds 0.45 / 0.90 / 1.0
TREND_WEIGHTS: list[tuple[Trend, float]] = [
    (Trend.UP, 0.45),
    (Trend.DOWN, 0.90),
    (Trend.SIDEWAYS, 1.0),
]

PRICE_FLOOR_FACTOR = 0.9


def price_floor() -> float:
    """Absolute price floor: 90% of the LOW band minimum."""
    return PRICE_FLOOR_FACTOR * REGIME_TABLE[Regime.LOW].price_min


def _pick_cumulative(weights: list, u: float):
    for value, threshold in weights:
        if u < threshold:
            return value
    return weights[-1][0]


def resolve_successor(spec: RegimeSpec, rng: random.Random) -> Regime:
    """
    Pick the regime to move to once the leave roll succeeded.

    A single successor is deterministic. A pair goes through the weighted
    MID exit draw, which may also keep the current regime.
    """
    if len(spec.successors) == 1:
        return spec.successors[0]
    return _pick_cumulative(MID_EXIT_WEIGHTS, rng.random())


def pick_trend(rng: random.Random) -> Trend:
    return _pick_cumulative(TREND_WEIGHTS, rng.random())


def regime_for_price(price: Optional[float]) -> Regime:
    """Regime whose band contains `price` (MID when none does)."""
    if price is None:
        return Regime.MID
    for spec in REGIME_TABLE.values():
        if spec.contains(price):
            # Band edges are shared, prefer MID on the boundary
            if spec.regime != Regime.MID and REGIME_TABLE[Regime.MID].contains(price):
                return Regime.MID
            return spec.regime
    return Regime.MID
