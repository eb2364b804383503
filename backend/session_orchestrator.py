"""
Session Orchestrator - owns one logged-in simulator session.

This is the central coordinator that:
1. Loads the account and restores the price from the store on login
2. Runs the price engine and the wager engines as independent timer streams
3. Exposes the command surface (buy, sell, wagers) with typed rejections
4. Persists balances after trades and the last price on a debounce
5. Forwards state changes to presentation callbacks

Everything runs on one asyncio loop. Each piece of state is written only
by its own timer stream or by a command; cross-reads use snapshots.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass, asdict
from typing import Any, Callable, Optional

from account import AccountState, utc_today
from account_store import AccountStore, TradeRecord, WagerRecord
from ascending_bet import AscendingBetEngine
from config import SimulatorConfig
from errors import (
    InvalidAccountId,
    PersistenceFailed,
    SessionConflict,
    SimulatorError,
)
from escalating_crash import EscalatingCrashEngine
from ledger import TradeType
from price_engine import PriceState, PriceTickEngine
from settlement import PendingSettlement, SettlementQueue
from wager_base import WagerEngine, WagerMode, WagerOutcome, WagerStatus

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of one command. Rejections carry the error type."""
    success: bool
    command: str
    error: Optional[str] = None
    error_type: Optional[str] = None
    data: Optional[dict] = None

    @classmethod
    def ok(cls, command: str, data: Optional[dict] = None) -> "CommandResult":
        return cls(success=True, command=command, data=data or {})

    @classmethod
    def fail(cls, command: str, error: SimulatorError) -> "CommandResult":
        return cls(
            success=False,
            command=command,
            error=error.message,
            error_type=error.error_type,
            data=error.details or None,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_account_id(account_id: Any, min_length: int = 2) -> str:
    """Trim and validate a user-supplied account id."""
    if not isinstance(account_id, str):
        raise InvalidAccountId(f"Account id must be a string, got {type(account_id).__name__}")
    account_id = account_id.strip()
    if len(account_id) < min_length:
        raise InvalidAccountId(
            f"Account id must be at least {min_length} characters",
            {"min_length": min_length},
        )
    return account_id


class SimulatorSession:
    """
    Manages ONE logged-in account.
    No hidden logic - explicit control flow.
    """

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        store: Optional[AccountStore] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or SimulatorConfig()
        self.store = store
        self.rng = rng or random.Random()

        self.account: Optional[AccountState] = None
        self.price_engine: Optional[PriceTickEngine] = None
        self.settlements: Optional[SettlementQueue] = None
        self.ascending: Optional[AscendingBetEngine] = None
        self.crash: Optional[EscalatingCrashEngine] = None

        self._price_task: Optional[asyncio.Task] = None
        self._wager_tasks: dict[WagerMode, asyncio.Task] = {}
        self._price_save_handle: Optional[asyncio.TimerHandle] = None

        # Presentation callbacks, each receives a message dict
        self._on_price_tick: Optional[Callable[[dict], None]] = None
        self._on_wager_update: Optional[Callable[[dict], None]] = None
        self._on_account_update: Optional[Callable[[dict], None]] = None
        self._on_settlement: Optional[Callable[[dict], None]] = None

    def set_callbacks(
        self,
        on_price_tick: Optional[Callable[[dict], None]] = None,
        on_wager_update: Optional[Callable[[dict], None]] = None,
        on_account_update: Optional[Callable[[dict], None]] = None,
        on_settlement: Optional[Callable[[dict], None]] = None,
    ) -> None:
        """Set presentation callbacks. Presentation only observes."""
        self._on_price_tick = on_price_tick
        self._on_wager_update = on_wager_update
        self._on_account_update = on_account_update
        self._on_settlement = on_settlement

    @property
    def is_logged_in(self) -> bool:
        return self.account is not None

    @property
    def current_price(self) -> Optional[float]:
        return self.price_engine.current_price if self.price_engine else None

    # =========================================================================
    # LOGIN / LOGOUT
    # =========================================================================

    async def create_account(self, account_id: Any) -> CommandResult:
        """Create a new account with the starting balance and log into it."""
        command = "create_account"
        try:
            account_id = normalize_account_id(account_id, self.config.ledger.min_account_id_length)
            if self.store is not None:
                created = self.store.create_account(
                    account_id,
                    cash_balance=self.config.ledger.starting_balance,
                    last_price=self.config.price.initial_price,
                )
                if not created:
                    raise SessionConflict(f"Account already exists: {account_id}", {"account_id": account_id})
        except SimulatorError as e:
            logger.warning(f"{command} rejected: {e.message}")
            return CommandResult.fail(command, e)

        result = await self.login(account_id)
        result.command = command
        return result

    async def login(self, account_id: Any) -> CommandResult:
        """
        Load an account and start the price stream.

        A missing account is reported as not_found; creating it is the
        caller's decision.
        """
        command = "login"
        try:
            account_id = normalize_account_id(account_id, self.config.ledger.min_account_id_length)

            if self.store is not None:
                record = self.store.load_account(account_id)
            else:
                record = {
                    "cash_balance": self.config.ledger.starting_balance,
                    "last_price": self.config.price.initial_price,
                    "last_login_date": utc_today(),
                }
        except SimulatorError as e:
            logger.warning(f"{command} rejected: {e.message}")
            return CommandResult.fail(command, e)

        if self.account is not None:
            # Logout flushes settlements and wagers into the account; read it again
            previous = self.account
            closed = await self.logout()
            if self.store is not None:
                record = self.store.load_account(account_id)
            elif previous.account_id == account_id:
                record = {**previous.to_record(), "last_price": closed.data["last_price"]}

        account = AccountState.from_record(account_id, record)
        account.dust_threshold = self.config.ledger.dust_threshold
        if account.check_daily_reset():
            logger.info(f"{account_id}: daily gain/loss reset for {account.last_login_date}")
            self._save(account, daily_gain=0.0, daily_loss=0.0, last_login_date=account.last_login_date)

        self.account = account
        self._start_streams(record.get("last_price"))

        logger.info(
            f"Session started: {account_id} | Cash: ${account.cash_balance:,.2f} | "
            f"Asset: {account.position.asset_balance:.8f} @ ${self.current_price:,.2f}"
        )
        return CommandResult.ok(command, self.get_status())

    async def logout(self) -> CommandResult:
        """
        End the session.

        Order: finish open wagers, stop every timer stream, flush pending
        settlements, then persist the final state.
        """
        command = "logout"
        if self.account is None:
            return CommandResult.fail(command, SessionConflict("Not logged in"))

        account = self.account
        self._finish_open_wagers()
        await self._stop_streams()

        flushed = self.settlements.flush()
        price = self.current_price
        self._save(account, last_price=price, **account.to_record())

        summary = {
            **account.to_dict(price),
            "last_price": round(price, 2),
            "settlements_flushed": len(flushed),
        }
        logger.info(f"Session stopped: {account.account_id} | Cash: ${account.cash_balance:,.2f}")

        self.account = None
        self.price_engine = None
        self.settlements = None
        self.ascending = None
        self.crash = None
        return CommandResult.ok(command, summary)

    def _start_streams(self, last_price: Optional[float]) -> None:
        account = self.account

        self.price_engine = PriceTickEngine(
            config=self.config.price,
            rng=self.rng,
            position_reader=account.snapshot,
            start_price=last_price,
        )
        self.price_engine.on_tick = self._handle_price_tick

        self.settlements = SettlementQueue(account, delay_sec=self.config.ledger.settlement_delay_sec)
        self.settlements.on_settled = self._handle_settled

        self.ascending = AscendingBetEngine(account, self.config.ascending, self.rng)
        self.crash = EscalatingCrashEngine(account, self.config.crash, self.rng)
        for engine in (self.ascending, self.crash):
            engine.on_update = self._handle_wager_update
            engine.on_outcome = self._handle_wager_outcome

        self._price_task = asyncio.create_task(self.price_engine.run())

    async def _stop_streams(self) -> None:
        if self._price_save_handle is not None:
            self._price_save_handle.cancel()
            self._price_save_handle = None

        if self.price_engine:
            self.price_engine.stop()

        tasks = list(self._wager_tasks.values())
        if self._price_task:
            tasks.append(self._price_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._price_task = None
        self._wager_tasks.clear()

    def _finish_open_wagers(self) -> None:
        """Settle wagers still in flight so no stake is left hanging."""
        if self.ascending and self.ascending.status == WagerStatus.RUNNING:
            # The outcome was drawn at start; play it out to the end
            remaining = self.config.ascending.duration_sec - self.ascending.elapsed_sec
            logger.info(f"Resolving ascending bet {self.ascending.session.id} at logout")
            self.ascending.on_tick(max(remaining, 0.0))

        if self.crash and self.crash.is_active:
            logger.info(f"Withdrawing crash session {self.crash.session.id} at logout")
            self.crash.withdraw()

    # =========================================================================
    # TRADING COMMANDS
    # =========================================================================

    async def buy(self, usd_amount: Any) -> CommandResult:
        return self._trade(TradeType.BUY, usd_amount)

    async def sell(self, usd_amount: Any) -> CommandResult:
        return self._trade(TradeType.SELL, usd_amount)

    def _trade(self, trade_type: TradeType, usd_amount: Any) -> CommandResult:
        command = trade_type.value
        try:
            account = self._require_account()
            price = self.current_price

            before = (account.position, account.daily_gain, account.daily_loss)
            result = account.apply_trade(trade_type, usd_amount, price)

            if not self._save(account, last_price=price, **account.to_record()):
                account.restore(*before)
                raise PersistenceFailed(
                    f"Could not save account {account.account_id}; {command} rolled back",
                    {"trade_id": result.trade.id},
                )
        except SimulatorError as e:
            logger.warning(f"{command} rejected: {e.message}")
            return CommandResult.fail(command, e)

        trade = result.trade
        if trade_type == TradeType.SELL:
            self.settlements.schedule(trade.id, result.trade_pl)

        position = result.position
        if self.store is not None:
            self.store.record_trade(TradeRecord(
                id=trade.id,
                account_id=account.account_id,
                type=trade.type.value,
                usd_amount=trade.usd_amount,
                price=trade.price_at_execution,
                asset_amount=result.asset_amount,
                trade_pl=result.trade_pl,
                cash_after=position.cash_balance,
                asset_after=position.asset_balance,
                avg_cost_after=position.avg_cost,
            ))

        logger.info(
            f"TRADE: {account.account_id} {command.upper()} ${trade.usd_amount:,.2f} @ "
            f"${trade.price_at_execution:,.2f} | Asset: {result.asset_amount:.8f} | "
            f"P&L: ${result.trade_pl:+.2f}"
        )
        self._emit_account_update()
        return CommandResult.ok(command, {
            "trade": result.to_dict(),
            "account": account.to_dict(price),
        })

    # =========================================================================
    # WAGER COMMANDS
    # =========================================================================

    async def start_ascending_bet(self, stake: Any, direction: Any) -> CommandResult:
        command = "start_ascending_bet"
        try:
            account = self._require_account()
            if self.crash.is_active:
                raise SessionConflict("An escalating crash session is in progress")

            session = self.ascending.start(stake, direction)
        except SimulatorError as e:
            logger.warning(f"{command} rejected: {e.message}")
            return CommandResult.fail(command, e)

        self._save(account, cash_balance=account.cash_balance)
        self._emit_account_update()
        self._drive(self.ascending)
        return CommandResult.ok(command, {"session": session.to_dict()})

    async def start_escalating_crash(self, stake: Any) -> CommandResult:
        command = "start_escalating_crash"
        try:
            self._require_account()
            if self.ascending.status == WagerStatus.RUNNING:
                raise SessionConflict("An ascending bet is in progress")

            session = self.crash.start(stake)
        except SimulatorError as e:
            logger.warning(f"{command} rejected: {e.message}")
            return CommandResult.fail(command, e)

        self._drive(self.crash)
        return CommandResult.ok(command, {
            "session": session.to_dict(),
            "pre_roll_sec": self.config.crash.pre_roll_sec,
        })

    async def withdraw_crash(self) -> CommandResult:
        command = "withdraw_crash"
        try:
            self._require_account()
            outcome = self.crash.withdraw()
        except SimulatorError as e:
            logger.warning(f"{command} rejected: {e.message}")
            return CommandResult.fail(command, e)

        if outcome is None:
            return CommandResult.ok(command, {"cancelled": True})
        return CommandResult.ok(command, {"cancelled": False, "outcome": outcome.to_dict()})

    async def reset_wager(self, mode: Optional[str] = None) -> CommandResult:
        """Return finished engines to Idle. Without a mode, both are reset."""
        command = "reset_wager"
        try:
            self._require_account()
            if mode is None:
                engines = [e for e in (self.ascending, self.crash) if e.session is not None]
            else:
                try:
                    wager_mode = WagerMode(mode)
                except ValueError:
                    raise SessionConflict(f"Unknown wager mode: {mode!r}")
                engines = [self._engine_for(wager_mode)]

            busy = [e.mode.value for e in engines if e.is_active]
            if busy:
                raise SessionConflict(f"Cannot reset while a wager is in progress: {', '.join(busy)}", {"busy": busy})

            for engine in engines:
                engine.reset()
        except SimulatorError as e:
            logger.warning(f"{command} rejected: {e.message}")
            return CommandResult.fail(command, e)

        self._emit(self._on_wager_update, {"type": "wager_update", "data": {"type": "reset", "mode": mode}})
        return CommandResult.ok(command, {"wagers": self.get_wager_status()})

    def _engine_for(self, mode: WagerMode) -> WagerEngine:
        return self.ascending if mode == WagerMode.ASCENDING_BET else self.crash

    def _drive(self, engine: WagerEngine) -> None:
        """Start the tick stream for an engine that just became active."""
        existing = self._wager_tasks.get(engine.mode)
        if existing and not existing.done():
            existing.cancel()
        self._wager_tasks[engine.mode] = asyncio.create_task(self._wager_loop(engine))

    async def _wager_loop(self, engine: WagerEngine) -> None:
        interval = engine.tick_interval_sec
        while engine.is_active:
            await asyncio.sleep(interval)
            engine.on_tick(interval)
        logger.debug(f"{engine.mode.value} tick stream ended ({engine.status.value})")

    # =========================================================================
    # TIMER STREAM HANDLERS
    # =========================================================================

    def _handle_price_tick(self, state: PriceState) -> None:
        self._schedule_price_save()
        message = {
            "type": "price_tick",
            "data": {
                **state.to_dict(),
                "tick": self.price_engine.tick_count,
                "portfolio_value": (
                    round(self.account.position.market_value(state.current_price), 2)
                    if self.account else None
                ),
            },
        }
        self._emit(self._on_price_tick, message)

    def _schedule_price_save(self) -> None:
        """Debounced lastPrice save; each tick pushes the save back."""
        if self.store is None:
            return
        if self._price_save_handle is not None:
            self._price_save_handle.cancel()
        loop = asyncio.get_running_loop()
        self._price_save_handle = loop.call_later(
            self.config.ledger.persist_debounce_sec, self._save_last_price
        )

    def _save_last_price(self) -> None:
        self._price_save_handle = None
        if self.account and self.price_engine:
            self._save(self.account, last_price=self.price_engine.current_price)

    def _handle_settled(self, entry: PendingSettlement, account: AccountState) -> None:
        self._save(account, cash_balance=account.cash_balance)
        self._emit(self._on_settlement, {
            "type": "settlement",
            "data": {
                **entry.to_dict(),
                "cash_balance": round(account.cash_balance, 2),
                "unsettled_pl": round(account.position.unsettled_pl, 2),
            },
        })
        self._emit_account_update()

    def _handle_wager_update(self, payload: dict) -> None:
        if payload.get("type") == "running" and self.account:
            # Crash pre-roll ended and the stake was debited
            self._save(self.account, cash_balance=self.account.cash_balance)
            self._emit_account_update()
        self._emit(self._on_wager_update, {"type": "wager_update", "data": payload})

    def _handle_wager_outcome(self, outcome: WagerOutcome) -> None:
        account = self.account
        if account is None:
            return

        self._save(account, cash_balance=account.cash_balance)
        if self.store is not None:
            self.store.record_wager(WagerRecord(
                id=outcome.session_id,
                account_id=account.account_id,
                mode=outcome.mode.value,
                status=outcome.status.value,
                stake=outcome.stake,
                payout=outcome.payout,
                is_win=outcome.is_win,
                detail=json.dumps(outcome.detail),
            ))

        logger.info(
            f"WAGER: {account.account_id} {outcome.mode.value} {outcome.status.value} | "
            f"Stake: ${outcome.stake:,.2f} | Payout: ${outcome.payout:,.2f} | "
            f"Net: ${outcome.profit:+.2f}"
        )
        self._emit(self._on_wager_update, {"type": "wager_update", "data": {"type": "outcome", **outcome.to_dict()}})
        self._emit_account_update()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require_account(self) -> AccountState:
        if self.account is None:
            raise SessionConflict("Not logged in")
        return self.account

    def _save(self, account: AccountState, **fields) -> bool:
        if self.store is None:
            return True
        return self.store.save_account(account.account_id, **fields)

    def _emit(self, callback: Optional[Callable[[dict], None]], message: dict) -> None:
        if callback is None:
            return
        try:
            callback(message)
        except Exception as e:
            logger.error(f"Error in {message.get('type')} callback: {e}")

    def _emit_account_update(self) -> None:
        if self.account:
            self._emit(self._on_account_update, {
                "type": "account_update",
                "data": self.account.to_dict(self.current_price),
            })

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_wager_status(self) -> dict:
        if not self.account:
            return {}
        return {
            WagerMode.ASCENDING_BET.value: self.ascending.get_status(),
            WagerMode.ESCALATING_CRASH.value: self.crash.get_status(),
        }

    def get_price_history(self, limit: Optional[int] = None) -> dict:
        if not self.price_engine:
            return {"points": [], "candles": []}
        history = self.price_engine.history
        return {
            "points": [p.to_dict() for p in history.points(limit)],
            "candles": [c.to_dict() for c in history.candles()],
        }

    def get_status(self) -> dict:
        if not self.account:
            return {"logged_in": False}
        return {
            "logged_in": True,
            "account": self.account.to_dict(self.current_price),
            "price": self.price_engine.get_status(),
            "pending_settlements": [s.to_dict() for s in self.settlements.pending],
            "wagers": self.get_wager_status(),
        }
