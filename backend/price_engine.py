"""
Price Tick Engine - regime-switching random walk for the simulated asset.

Each tick:
1. Maybe leave the current regime (MID exits go through a weighted draw)
2. Refresh or count down the Trend sub-state (MID only)
3. Draw a base move from a calm / volatile / spike mixture
4. Add the trend bias
5. Drag the price down in proportion to the user's paper profit
6. Softly pull the price back into the regime band
7. Apply the absolute floor

tick() is pure apart from the injected random source. PriceTickEngine
owns the state and drives tick() from its own timer stream.
"""

import asyncio
import logging
import math
import random
import time
from collections import deque
from dataclasses import dataclass, asdict, replace
from typing import Callable, Optional

from config import PriceEngineConfig
from ledger import PositionSnapshot
from market_regimes import (
    REGIME_TABLE,
    Regime,
    RegimeSpec,
    Trend,
    pick_trend,
    price_floor,
    regime_for_price,
    resolve_successor,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceState:
    """Owned by the price engine; everything else reads it."""
    current_price: float
    regime: Regime = Regime.MID
    trend: Trend = Trend.SIDEWAYS
    trend_ticks_left: int = 0

    @property
    def spec(self) -> RegimeSpec:
        return REGIME_TABLE[self.regime]

    def to_dict(self) -> dict:
        return {
            "current_price": round(self.current_price, 2),
            "regime": self.regime.value,
            "trend": self.trend.value,
            "trend_ticks_left": self.trend_ticks_left,
        }


def initial_state(price: Optional[float] = None, config: Optional[PriceEngineConfig] = None) -> PriceState:
    """Starting state, optionally restored from a persisted last price."""
    config = config or PriceEngineConfig()
    if price is None or price <= 0:
        price = config.initial_price
    return PriceState(current_price=max(price, price_floor()), regime=regime_for_price(price))


# ============================================================================
# TICK STEPS
# ============================================================================

def transition_regime(state: PriceState, rng: random.Random) -> PriceState:
    """Step 1: regime transition. A change resets the trend."""
    spec = state.spec
    if rng.random() >= spec.leave_probability:
        return state

    successor = resolve_successor(spec, rng)
    if successor == state.regime:
        return state

    logger.info(f"Regime change: {state.regime.value} -> {successor.value} @ ${state.current_price:,.2f}")
    return replace(state, regime=successor, trend=Trend.SIDEWAYS, trend_ticks_left=0)


def refresh_trend(state: PriceState, rng: random.Random, config: PriceEngineConfig) -> PriceState:
    """Step 2: trend sub-state, only active in MID."""
    if state.regime != Regime.MID:
        if state.trend == Trend.SIDEWAYS:
            return state
        return replace(state, trend=Trend.SIDEWAYS)

    if state.trend_ticks_left <= 0:
        trend = pick_trend(rng)
        ticks = rng.randrange(config.trend_duration_min, config.trend_duration_max)
        logger.debug(f"Trend: {trend.value} for {ticks} ticks")
        return replace(state, trend=trend, trend_ticks_left=ticks)

    return replace(state, trend_ticks_left=state.trend_ticks_left - 1)


def base_pct_change(rng: random.Random, config: PriceEngineConfig) -> float:
    """Step 3: calm 90%, volatile 8%, spike 2%."""
    u = rng.random()
    if u < config.calm_probability:
        return rng.uniform(-config.calm_pct, config.calm_pct)
    if u < config.volatile_probability:
        return rng.uniform(-config.volatile_pct, config.volatile_pct)
    sign = 1.0 if rng.random() < 0.5 else -1.0
    return sign * rng.uniform(config.spike_min_pct, config.spike_max_pct)


def trend_bias(state: PriceState, rng: random.Random, config: PriceEngineConfig) -> float:
    """Step 4: additive directional term while consolidating."""
    if state.regime != Regime.MID or state.trend == Trend.SIDEWAYS:
        return 0.0
    term = state.current_price * config.trend_bias_pct * rng.random()
    return term if state.trend == Trend.UP else -term


def whale_drag(
    price: float,
    position: Optional[PositionSnapshot],
    rng: random.Random,
    config: PriceEngineConfig,
) -> float:
    """
    Step 5: downward pull that grows with the user's unrealized profit.

    Returns the (non-negative) amount to subtract from the price.
    """
    if position is None or position.asset_balance <= 0:
        return 0.0
    unrealized = (price - position.avg_cost) * position.asset_balance
    if unrealized <= 0:
        return 0.0
    return price * (math.log1p(unrealized) * config.whale_drag_factor / 1000) * rng.random()


def pull_back(price: float, spec: RegimeSpec) -> float:
    """
    Step 6: soft clamp. Outside the band, move back towards the violated
    bound by min(0.5, relative overshoot) of the overshoot.
    """
    if price > spec.price_max:
        overshoot = price - spec.price_max
        return price - overshoot * min(0.5, overshoot / spec.price_max)
    if price < spec.price_min:
        overshoot = spec.price_min - price
        return price + overshoot * min(0.5, overshoot / spec.price_min)
    return price


def tick(
    state: PriceState,
    rng: Optional[random.Random] = None,
    position: Optional[PositionSnapshot] = None,
    config: Optional[PriceEngineConfig] = None,
) -> PriceState:
    """Advance the price by one tick. Always returns a finite price above the floor."""
    rng = rng or random.Random()
    config = config or PriceEngineConfig()

    state = transition_regime(state, rng)
    state = refresh_trend(state, rng, config)

    price = state.current_price
    change = price * base_pct_change(rng, config)
    change += trend_bias(state, rng, config)
    change -= whale_drag(price, position, rng, config)

    new_price = pull_back(price + change, state.spec)
    new_price = max(new_price, price_floor())

    return replace(state, current_price=new_price)


# ============================================================================
# PRICE HISTORY
# ============================================================================

@dataclass(frozen=True)
class PricePoint:
    timestamp: float
    price: float

    def to_dict(self) -> dict:
        return {"time": self.timestamp, "price": round(self.price, 2)}


@dataclass(frozen=True)
class Candle:
    timestamp: float  # first point of the bucket
    open: float
    high: float
    low: float
    close: float

    def to_dict(self) -> dict:
        return {k: round(v, 2) if k != "timestamp" else v for k, v in asdict(self).items()}


class PriceHistory:
    """Rolling window of recent prices with an OHLC view"""

    def __init__(self, max_length: int = 400, candle_interval: int = 5):
        self.candle_interval = candle_interval
        self._points: deque[PricePoint] = deque(maxlen=max_length)

    def __len__(self) -> int:
        return len(self._points)

    def append(self, price: float, timestamp: Optional[float] = None) -> PricePoint:
        point = PricePoint(timestamp=timestamp if timestamp is not None else time.time(), price=price)
        self._points.append(point)
        return point

    def points(self, limit: Optional[int] = None) -> list[PricePoint]:
        points = list(self._points)
        return points[-limit:] if limit else points

    def candles(self) -> list[Candle]:
        """Group consecutive points into buckets; the incomplete tail is dropped."""
        points = list(self._points)
        n = self.candle_interval
        candles = []
        for i in range(0, len(points) - n + 1, n):
            bucket = [p.price for p in points[i:i + n]]
            candles.append(Candle(
                timestamp=points[i].timestamp,
                open=bucket[0],
                high=max(bucket),
                low=min(bucket),
                close=bucket[-1],
            ))
        return candles

    def clear(self) -> None:
        self._points.clear()


# ============================================================================
# TIMER STREAM
# ============================================================================

class PriceTickEngine:
    """
    Drives tick() on a randomized schedule.

    The position is read through `position_reader`, which must return a
    snapshot copy; a value one tick stale is fine.
    """

    def __init__(
        self,
        config: Optional[PriceEngineConfig] = None,
        rng: Optional[random.Random] = None,
        position_reader: Optional[Callable[[], PositionSnapshot]] = None,
        start_price: Optional[float] = None,
    ):
        self.config = config or PriceEngineConfig()
        self.rng = rng or random.Random()
        self.position_reader = position_reader
        self.state = initial_state(start_price, self.config)
        self.history = PriceHistory(self.config.history_length, self.config.candle_interval)
        self.tick_count = 0
        self._running = False

        # Callback (state) after every tick
        self.on_tick: Optional[Callable[[PriceState], None]] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_price(self) -> float:
        return self.state.current_price

    def next_delay(self) -> float:
        return self.rng.uniform(self.config.tick_delay_min_sec, self.config.tick_delay_max_sec)

    def step(self) -> PriceState:
        """Run one tick now."""
        snapshot = self.position_reader() if self.position_reader else None
        self.state = tick(self.state, self.rng, snapshot, self.config)
        self.history.append(self.state.current_price)
        self.tick_count += 1

        if self.on_tick:
            try:
                self.on_tick(self.state)
            except Exception as e:
                logger.error(f"Error in price tick callback: {e}")

        return self.state

    async def run(self) -> None:
        """Tick until stop() or cancellation."""
        self._running = True
        logger.info(f"Price engine started @ ${self.state.current_price:,.2f} ({self.state.regime.value})")
        try:
            while self._running:
                await asyncio.sleep(self.next_delay())
                if not self._running:
                    break
                self.step()
        finally:
            self._running = False
            logger.info(f"Price engine stopped after {self.tick_count} ticks")

    def stop(self) -> None:
        self._running = False

    def get_status(self) -> dict:
        return {
            **self.state.to_dict(),
            "regime_band": list(self.state.spec.price_band),
            "tick_count": self.tick_count,
            "running": self._running,
        }
