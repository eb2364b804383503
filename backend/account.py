"""
Account state for one logged-in user.

Wraps the immutable Position with the daily gain/loss counters and the
stake debit/credit used by the wager engines. All mutations replace the
Position in one assignment, after validation, so a rejection never
leaves a half-applied change behind.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from config import DUST_THRESHOLD
from errors import InsufficientFunds
from ledger import (
    Position,
    PositionSnapshot,
    TradeResult,
    TradeType,
    apply_trade,
    validate_amount,
)

logger = logging.getLogger(__name__)


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


@dataclass
class AccountState:
    """Account state owned by a single simulator session"""
    account_id: str
    position: Position = field(default_factory=lambda: Position(cash_balance=0.0))
    daily_gain: float = 0.0
    daily_loss: float = 0.0
    last_login_date: str = ""
    dust_threshold: float = DUST_THRESHOLD

    @property
    def cash_balance(self) -> float:
        return self.position.cash_balance

    @property
    def todays_pnl(self) -> float:
        return self.daily_gain - self.daily_loss

    def snapshot(self) -> PositionSnapshot:
        """Copy of the holding for cross-component reads."""
        return PositionSnapshot(
            asset_balance=self.position.asset_balance,
            avg_cost=self.position.avg_cost,
        )

    # -------------------------------------------------------------------------
    # TRADES
    # -------------------------------------------------------------------------

    def apply_trade(self, trade_type: TradeType, usd_amount: Any, price: float) -> TradeResult:
        """Fold a trade into the position and update the daily counters."""
        new_position, result = apply_trade(
            self.position, trade_type, usd_amount, price, self.dust_threshold
        )
        self.position = new_position

        if result.trade.type == TradeType.SELL:
            if result.trade_pl > 0:
                self.daily_gain += result.trade_pl
            else:
                self.daily_loss += abs(result.trade_pl)

        return result

    def restore(self, position: Position, daily_gain: float, daily_loss: float) -> None:
        """Roll back to a previously captured state"""
        self.position = position
        self.daily_gain = daily_gain
        self.daily_loss = daily_loss

    # -------------------------------------------------------------------------
    # SETTLEMENT
    # -------------------------------------------------------------------------

    def settle(self, amount: float) -> None:
        """Move `amount` of unsettled P&L into the cash balance."""
        self.position = replace(
            self.position,
            cash_balance=self.position.cash_balance + amount,
            unsettled_pl=self.position.unsettled_pl - amount,
        )

    # -------------------------------------------------------------------------
    # WAGER STAKES
    # -------------------------------------------------------------------------

    def check_stake(self, stake: Any) -> float:
        """Validate a stake against the cash balance without debiting it."""
        stake = validate_amount(stake, "stake")
        if stake > self.position.cash_balance:
            raise InsufficientFunds(
                f"Insufficient cash balance for stake: ${self.position.cash_balance:,.2f} available, "
                f"${stake:,.2f} requested",
                {"available": self.position.cash_balance, "requested": stake},
            )
        return stake

    def debit_stake(self, stake: Any) -> float:
        stake = self.check_stake(stake)
        self.position = replace(self.position, cash_balance=self.position.cash_balance - stake)
        logger.debug(f"{self.account_id}: stake debited ${stake:,.2f}")
        return stake

    def credit(self, amount: float) -> None:
        self.position = replace(self.position, cash_balance=self.position.cash_balance + amount)
        logger.debug(f"{self.account_id}: credited ${amount:,.2f}")

    # -------------------------------------------------------------------------
    # DAILY RESET
    # -------------------------------------------------------------------------

    def check_daily_reset(self, today: Optional[str] = None) -> bool:
        """Zero the daily counters when the login date changed. Returns True on reset."""
        today = today or utc_today()
        if self.last_login_date == today:
            return False
        self.daily_gain = 0.0
        self.daily_loss = 0.0
        self.last_login_date = today
        return True

    # -------------------------------------------------------------------------
    # SERIALIZATION
    # -------------------------------------------------------------------------

    def to_record(self) -> dict:
        """Unrounded fields for the account store"""
        return {
            "cash_balance": self.position.cash_balance,
            "asset_balance": self.position.asset_balance,
            "avg_cost": self.position.avg_cost,
            "daily_gain": self.daily_gain,
            "daily_loss": self.daily_loss,
            "last_login_date": self.last_login_date,
        }

    def to_dict(self, price: Optional[float] = None) -> dict:
        d = {
            "account_id": self.account_id,
            **self.position.to_dict(),
            "daily_gain": round(self.daily_gain, 2),
            "daily_loss": round(self.daily_loss, 2),
            "todays_pnl": round(self.todays_pnl, 2),
        }
        if price is not None:
            d["portfolio_value"] = round(self.position.market_value(price), 2)
            d["unrealized_pnl"] = round(self.position.unrealized_pnl(price), 2)
        return d

    @classmethod
    def from_record(cls, account_id: str, record: dict) -> "AccountState":
        return cls(
            account_id=account_id,
            position=Position(
                cash_balance=float(record.get("cash_balance", 0.0)),
                asset_balance=float(record.get("asset_balance", 0.0)),
                avg_cost=float(record.get("avg_cost", 0.0)),
            ),
            daily_gain=float(record.get("daily_gain", 0.0)),
            daily_loss=float(record.get("daily_loss", 0.0)),
            last_login_date=record.get("last_login_date") or "",
        )
