"""
Configuration for the trading simulator.
Contains engine timing constants, wager parameters and logging setup.
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional

# ============================================================================
# PATHS / ENVIRONMENT
# ============================================================================

ENV = os.getenv("ENV", "development").lower()
DB_PATH = os.getenv("SIM_DB_PATH", "simulator.db")
LOG_DIR = os.getenv("SIM_LOG_DIR", "logs")
API_KEY = os.getenv("API_KEY")
SERVER_HOST = os.getenv("SIM_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SIM_PORT", "8000"))

# ============================================================================
# PRICE ENGINE
# ============================================================================

INITIAL_PRICE = 65000.0
PRICE_HISTORY_LENGTH = 400
CANDLESTICK_INTERVAL = 5


@dataclass
class PriceEngineConfig:
    """Price tick engine timing and volatility parameters"""
    initial_price: float = INITIAL_PRICE
    tick_delay_min_sec: float = 1.0
    tick_delay_max_sec: float = 1.5

    # Base volatility mixture
    calm_probability: float = 0.90  # u < 0.90 -> calm move
    volatile_probability: float = 0.98  # 0.90 <= u < 0.98 -> volatile move
    calm_pct: float = 0.005  # +/- 0.5%
    volatile_pct: float = 0.02  # +/- 2%
    spike_min_pct: float = 0.04
    spike_max_pct: float = 0.08

    # Directional bias inside consolidation
    trend_bias_pct: float = 0.0015
    trend_duration_min: int = 50
    trend_duration_max: int = 150  # exclusive

    # Anti-whale dampening: log(1 + unrealized) * factor / 1000
    whale_drag_factor: float = 0.1

    history_length: int = PRICE_HISTORY_LENGTH
    candle_interval: int = CANDLESTICK_INTERVAL

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PriceEngineConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ============================================================================
# LEDGER
# ============================================================================

DUST_THRESHOLD = 1e-8


@dataclass
class LedgerConfig:
    """Account and settlement parameters"""
    starting_balance: float = 1000.0
    settlement_delay_sec: float = 2.0  # T+2 style realization lag
    persist_debounce_sec: float = 1.0  # lastPrice save debounce after ticks
    dust_threshold: float = DUST_THRESHOLD
    min_account_id_length: int = 2

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ============================================================================
# WAGER ENGINES
# ============================================================================

@dataclass
class AscendingBetConfig:
    """Ascending bet (single-shot timed flight)"""
    win_probability: float = 0.60  # observed 0.60-0.70, tunable
    payout_rate: float = 1.4
    duration_sec: float = 5.0
    sample_interval_sec: float = 0.1
    start_altitude: float = 50.0
    threshold_altitude: float = 50.0
    altitude_swing: float = 40.0  # final altitude = start +/- swing
    altitude_jitter: float = 4.0
    path_length: int = 50  # samples kept for presentation

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AscendingBetConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class EscalatingCrashConfig:
    """Escalating crash (repeating-tick gain accumulator)"""
    pre_roll_sec: float = 3.0
    tick_interval_sec: float = 0.05
    max_gain_step_pct: float = 0.5
    turbo_probability: float = 0.08
    blast_divisor: float = 20.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EscalatingCrashConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class SimulatorConfig:
    """All engine configs for one simulator session"""
    price: PriceEngineConfig = field(default_factory=PriceEngineConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    ascending: AscendingBetConfig = field(default_factory=AscendingBetConfig)
    crash: EscalatingCrashConfig = field(default_factory=EscalatingCrashConfig)

    def to_dict(self) -> dict:
        return {
            "price": self.price.to_dict(),
            "ledger": self.ledger.to_dict(),
            "ascending": self.ascending.to_dict(),
            "crash": self.crash.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SimulatorConfig":
        return cls(
            price=PriceEngineConfig.from_dict(data.get("price", {})),
            ledger=LedgerConfig.from_dict(data.get("ledger", {})),
            ascending=AscendingBetConfig.from_dict(data.get("ascending", {})),
            crash=EscalatingCrashConfig.from_dict(data.get("crash", {})),
        )


DEFAULT_CONFIG = SimulatorConfig()


# ============================================================================
# LOGGING
# ============================================================================

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'


def setup_logging(
    log_dir: Optional[str] = LOG_DIR, level: int = logging.INFO
) -> logging.Logger:
    """
    Setup logging for the simulator.

    Installs on the root logger:
    - a daily file with everything at DEBUG
    - a trades file fed by the ledger/session loggers
    - console output at `level`

    With log_dir=None only the console handler is installed.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console_handler)

    if log_dir is None:
        return root

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    today = datetime.now().strftime('%Y%m%d')

    # File handler - all logs
    file_handler = logging.FileHandler(f"{log_dir}/simulator_{today}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Trade-specific log
    trade_handler = logging.FileHandler(f"{log_dir}/trades_{today}.log")
    trade_handler.setLevel(logging.INFO)
    trade_handler.setFormatter(logging.Formatter('%(asctime)s | %(message)s'))
    trade_handler.addFilter(
        lambda record: record.name in ("session_orchestrator", "settlement", "account_store")
    )

    root.addHandler(file_handler)
    root.addHandler(trade_handler)

    return root
