"""
Account Store - SQLite-based persistence for simulator accounts.

Holds balances and last price per account plus an audit trail of trades
and wagers. The simulator core only talks to it through load_account()
and save_account(); the history tables are for reporting.
"""

import sqlite3
import logging
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from errors import AccountNotFound


logger = logging.getLogger(__name__)


# ============================================================================
# RECORDS
# ============================================================================

# Columns save_account() may update
ACCOUNT_FIELDS = (
    "cash_balance",
    "asset_balance",
    "avg_cost",
    "last_price",
    "daily_gain",
    "daily_loss",
    "last_login_date",
)


@dataclass
class TradeRecord:
    """One executed buy or sell"""
    id: str
    account_id: str
    type: str                       # "buy" or "sell"
    usd_amount: float
    price: float
    asset_amount: float
    trade_pl: float                 # 0 for buys
    cash_after: float
    asset_after: float
    avg_cost_after: float
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WagerRecord:
    """One resolved wager"""
    id: str
    account_id: str
    mode: str                       # "ascending_bet" or "escalating_crash"
    status: str                     # resolved / blasted / withdrawn
    stake: float
    payout: float
    is_win: bool
    detail: str                     # JSON
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# ACCOUNT STORE
# ============================================================================

class AccountStore:
    """
    SQLite persistence collaborator.

    Write methods log and return False on failure instead of raising, so
    a storage problem never takes down a timer stream.
    """

    def __init__(self, db_path: str = "simulator.db"):
        self.db_path = db_path
        self._init_database()
        logger.info(f"AccountStore initialized: {db_path}")

    def _init_database(self):
        """Create tables if they don't exist"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    cash_balance REAL NOT NULL DEFAULT 0,
                    asset_balance REAL NOT NULL DEFAULT 0,
                    avg_cost REAL NOT NULL DEFAULT 0,
                    last_price REAL,
                    daily_gain REAL NOT NULL DEFAULT 0,
                    daily_loss REAL NOT NULL DEFAULT 0,
                    last_login_date TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    usd_amount REAL NOT NULL,
                    price REAL NOT NULL,
                    asset_amount REAL NOT NULL,
                    trade_pl REAL NOT NULL,
                    cash_after REAL NOT NULL,
                    asset_after REAL NOT NULL,
                    avg_cost_after REAL NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_account ON trades(account_id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS wagers (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    status TEXT NOT NULL,
                    stake REAL NOT NULL,
                    payout REAL NOT NULL,
                    is_win INTEGER NOT NULL,
                    detail TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wagers_account ON wagers(account_id)")

            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable dict-like access
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # ACCOUNT OPERATIONS
    # -------------------------------------------------------------------------

    def create_account(
        self,
        account_id: str,
        cash_balance: float = 1000.0,
        last_price: Optional[float] = None,
    ) -> bool:
        """
        Create a new account.

        Returns:
            True if created, False if it already exists
        """
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO accounts (
                        id, cash_balance, asset_balance, avg_cost, last_price,
                        daily_gain, daily_loss, last_login_date, created_at, updated_at
                    ) VALUES (?, ?, 0, 0, ?, 0, 0, ?, ?, ?)
                """, (account_id, cash_balance, last_price, now[:10], now, now))
                conn.commit()

            logger.info(f"Created account: {account_id} with balance ${cash_balance:,.2f}")
            return True

        except sqlite3.IntegrityError:
            logger.debug(f"Account already exists: {account_id}")
            return False
        except Exception as e:
            logger.error(f"Failed to create account: {e}")
            return False

    def load_account(self, account_id: str) -> Dict[str, Any]:
        """
        Load persisted account fields.

        Raises:
            AccountNotFound: no such account
        """
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()

        if row is None:
            raise AccountNotFound(f"Account not found: {account_id}", {"account_id": account_id})
        return dict(row)

    def account_exists(self, account_id: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute("SELECT 1 FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return row is not None

    def save_account(self, account_id: str, **fields) -> bool:
        """
        Update a subset of account fields.

        Unknown field names are ignored.
        """
        updates = {k: v for k, v in fields.items() if k in ACCOUNT_FIELDS}
        if not updates:
            return True

        updates["updated_at"] = datetime.now(timezone.utc).isoformat()
        assignments = ", ".join(f"{k} = ?" for k in updates)

        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE accounts SET {assignments} WHERE id = ?",
                    (*updates.values(), account_id),
                )
                conn.commit()

            if cursor.rowcount == 0:
                logger.warning(f"save_account: no such account {account_id}")
                return False
            return True

        except Exception as e:
            logger.error(f"Failed to save account {account_id}: {e}")
            return False

    def list_accounts(self) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM accounts ORDER BY id").fetchall()
        return [dict(r) for r in rows]

    # -------------------------------------------------------------------------
    # AUDIT TRAIL
    # -------------------------------------------------------------------------

    def record_trade(self, trade: TradeRecord) -> bool:
        if not trade.created_at:
            trade.created_at = datetime.now(timezone.utc).isoformat()

        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO trades (
                        id, account_id, type, usd_amount, price, asset_amount, trade_pl,
                        cash_after, asset_after, avg_cost_after, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    trade.id, trade.account_id, trade.type, trade.usd_amount, trade.price,
                    trade.asset_amount, trade.trade_pl, trade.cash_after, trade.asset_after,
                    trade.avg_cost_after, trade.created_at,
                ))
                conn.commit()

            logger.info(
                f"Recorded trade: {trade.id} | {trade.account_id} {trade.type.upper()} "
                f"${trade.usd_amount:,.2f} @ ${trade.price:,.2f} | P&L: ${trade.trade_pl:+.2f}"
            )
            return True

        except sqlite3.IntegrityError:
            logger.warning(f"Trade already exists: {trade.id}")
            return False
        except Exception as e:
            logger.error(f"Failed to record trade: {e}")
            return False

    def record_wager(self, wager: WagerRecord) -> bool:
        if not wager.created_at:
            wager.created_at = datetime.now(timezone.utc).isoformat()

        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO wagers (
                        id, account_id, mode, status, stake, payout, is_win, detail, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    wager.id, wager.account_id, wager.mode, wager.status, wager.stake,
                    wager.payout, 1 if wager.is_win else 0, wager.detail, wager.created_at,
                ))
                conn.commit()

            logger.info(
                f"Recorded wager: {wager.id} | {wager.account_id} {wager.mode} {wager.status} | "
                f"Stake: ${wager.stake:,.2f} Payout: ${wager.payout:,.2f}"
            )
            return True

        except sqlite3.IntegrityError:
            logger.warning(f"Wager already exists: {wager.id}")
            return False
        except Exception as e:
            logger.error(f"Failed to record wager: {e}")
            return False

    def get_trades(self, account_id: str, limit: int = 50) -> List[TradeRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (account_id, limit),
            ).fetchall()
        return [TradeRecord(**dict(r)) for r in rows]

    def get_wagers(self, account_id: str, limit: int = 50) -> List[WagerRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM wagers WHERE account_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (account_id, limit),
            ).fetchall()

        records = []
        for r in rows:
            d = dict(r)
            d["is_win"] = bool(d["is_win"])
            records.append(WagerRecord(**d))
        return records

    def get_pnl_summary(self, account_id: str) -> Dict[str, Any]:
        """Realized trade P&L and wager net for an account"""
        with self._get_connection() as conn:
            trades = conn.execute("""
                SELECT COUNT(*) AS count,
                       COALESCE(SUM(CASE WHEN type = 'sell' THEN trade_pl ELSE 0 END), 0) AS realized_pnl,
                       COALESCE(SUM(CASE WHEN type = 'sell' AND trade_pl > 0 THEN 1 ELSE 0 END), 0) AS winning_sells,
                       COALESCE(SUM(CASE WHEN type = 'sell' THEN 1 ELSE 0 END), 0) AS sells
                FROM trades WHERE account_id = ?
            """, (account_id,)).fetchone()

            wagers = conn.execute("""
                SELECT COUNT(*) AS count,
                       COALESCE(SUM(payout - stake), 0) AS net,
                       COALESCE(SUM(is_win), 0) AS wins
                FROM wagers WHERE account_id = ?
            """, (account_id,)).fetchone()

        return {
            "account_id": account_id,
            "trades": trades["count"],
            "realized_pnl": round(trades["realized_pnl"], 2),
            "sell_win_rate": round(trades["winning_sells"] / trades["sells"] * 100, 1) if trades["sells"] else 0.0,
            "wagers": wagers["count"],
            "wager_net": round(wagers["net"], 2),
            "wager_win_rate": round(wagers["wins"] / wagers["count"] * 100, 1) if wagers["count"] else 0.0,
        }
