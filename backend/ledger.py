"""
Position Ledger - weighted-average cost basis accounting.

Pure functions: a trade intent plus the current Position produce a new
Position and a TradeResult. Nothing is mutated, so a rejected trade
leaves the caller's state untouched.

Buys move the average cost. Sells realize P&L against the existing
average and never change it, except when the holding drops to dust,
where the average resets to 0.
"""

import math
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from config import DUST_THRESHOLD
from errors import InsufficientFunds, InvalidAmount


class TradeType(Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Position:
    """Cash, asset holding, cost basis and realized-but-unsettled P&L"""
    cash_balance: float
    asset_balance: float = 0.0
    avg_cost: float = 0.0
    unsettled_pl: float = 0.0

    def unrealized_pnl(self, price: float) -> float:
        if self.asset_balance <= DUST_THRESHOLD:
            return 0.0
        return (price - self.avg_cost) * self.asset_balance

    def market_value(self, price: float) -> float:
        return self.cash_balance + self.asset_balance * price

    def to_dict(self) -> dict:
        return {
            "cash_balance": round(self.cash_balance, 2),
            "asset_balance": round(self.asset_balance, 8),
            "avg_cost": round(self.avg_cost, 2),
            "unsettled_pl": round(self.unsettled_pl, 2),
        }


@dataclass(frozen=True)
class PositionSnapshot:
    """Read-only view of the holding, used by the price engine."""
    asset_balance: float = 0.0
    avg_cost: float = 0.0


@dataclass(frozen=True)
class Trade:
    """One buy/sell request, consumed once"""
    type: TradeType
    usd_amount: float
    price_at_execution: float
    id: str = ""
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "usd_amount": self.usd_amount,
            "price_at_execution": self.price_at_execution,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class TradeResult:
    """Outcome of folding one Trade into a Position"""
    trade: Trade
    asset_amount: float  # asset bought or sold
    trade_pl: float  # realized P&L, 0 for buys
    position: Position  # position after the trade

    def to_dict(self) -> dict:
        return {
            "trade": self.trade.to_dict(),
            "asset_amount": self.asset_amount,
            "trade_pl": round(self.trade_pl, 2),
            "position": self.position.to_dict(),
        }


def validate_amount(amount: Any, label: str = "amount") -> float:
    """Coerce to a finite positive float or raise InvalidAmount."""
    if isinstance(amount, bool):
        raise InvalidAmount(f"Invalid {label}: {amount!r}")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmount(f"Invalid {label}: {amount!r}")
    if not math.isfinite(value) or value <= 0:
        raise InvalidAmount(f"{label.capitalize()} must be positive, got {amount!r}")
    return value


def apply_trade(
    position: Position,
    trade_type: TradeType,
    usd_amount: Any,
    price: float,
    dust_threshold: float = DUST_THRESHOLD,
) -> tuple[Position, TradeResult]:
    """
    Apply a buy or sell specified in USD at `price`.

    Raises:
        InvalidAmount: usd_amount or price not a positive number
        InsufficientFunds: buy above cash, or sell above the held asset

    Returns:
        (new_position, trade_result)
    """
    usd_amount = validate_amount(usd_amount)
    price = validate_amount(price, "price")
    trade_type = TradeType(trade_type)

    trade = Trade(
        type=trade_type,
        usd_amount=usd_amount,
        price_at_execution=price,
        id=f"{trade_type.value}_{uuid.uuid4().hex[:12]}",
        timestamp=int(time.time()),
    )

    if trade_type == TradeType.BUY:
        if usd_amount > position.cash_balance:
            raise InsufficientFunds(
                f"Insufficient cash balance: ${position.cash_balance:,.2f} available, "
                f"${usd_amount:,.2f} requested",
                {"available": position.cash_balance, "requested": usd_amount},
            )

        asset_bought = usd_amount / price
        new_asset = position.asset_balance + asset_bought
        new_cost = position.asset_balance * position.avg_cost + usd_amount

        new_position = replace(
            position,
            cash_balance=position.cash_balance - usd_amount,
            asset_balance=new_asset,
            avg_cost=new_cost / new_asset if new_asset > 0 else 0.0,
        )
        return new_position, TradeResult(trade, asset_bought, 0.0, new_position)

    # Sell - amount is USD-equivalent, not asset units
    asset_sold = usd_amount / price
    if asset_sold > position.asset_balance:
        raise InsufficientFunds(
            f"Insufficient asset balance: you only have {position.asset_balance:.8f}",
            {"available": position.asset_balance, "requested": asset_sold},
        )

    proceeds = usd_amount  # asset_sold * price
    cost_basis_sold = asset_sold * position.avg_cost
    trade_pl = proceeds - cost_basis_sold
    new_asset = position.asset_balance - asset_sold

    new_position = replace(
        position,
        cash_balance=position.cash_balance + proceeds,
        asset_balance=new_asset,
        avg_cost=0.0 if new_asset < dust_threshold else position.avg_cost,
        unsettled_pl=position.unsettled_pl + trade_pl,
    )
    return new_position, TradeResult(trade, asset_sold, trade_pl, new_position)
