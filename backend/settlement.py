"""
Deferred settlement of realized P&L.

Every sell schedules exactly one settlement of its own trade P&L after a
fixed delay. Settlements for one account are applied strictly in FIFO
order and each moves only the amount recorded with its trade, so
overlapping sells can never settle the same P&L twice.

On session end, flush() applies everything still pending synchronously.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from account import AccountState

logger = logging.getLogger(__name__)


@dataclass
class PendingSettlement:
    """One sell's P&L waiting to be credited"""
    trade_id: str
    amount: float
    due_at: float  # clock time

    def to_dict(self) -> dict:
        return asdict(self)


class SettlementQueue:
    """
    Per-account FIFO of pending settlements.

    Timers come from the running asyncio loop when there is one; without
    a loop (synchronous callers) entries wait for settle_due() or flush().
    """

    def __init__(
        self,
        account: AccountState,
        delay_sec: float = 2.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.account = account
        self.delay_sec = delay_sec
        self._clock = clock
        self._pending: deque[PendingSettlement] = deque()
        self._handles: dict[str, asyncio.TimerHandle] = {}

        # Callback (settlement, account) after each applied settlement
        self.on_settled: Optional[Callable[[PendingSettlement, AccountState], None]] = None

    @property
    def pending(self) -> list[PendingSettlement]:
        return list(self._pending)

    @property
    def pending_total(self) -> float:
        return sum(s.amount for s in self._pending)

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return time.monotonic()

    def schedule(self, trade_id: str, amount: float) -> PendingSettlement:
        """Queue one trade's P&L for settlement after the configured delay."""
        entry = PendingSettlement(trade_id=trade_id, amount=amount, due_at=self._now() + self.delay_sec)
        self._pending.append(entry)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            self._handles[trade_id] = loop.call_later(self.delay_sec, self._on_timer, entry)

        logger.debug(f"{self.account.account_id}: settlement queued {trade_id} ${amount:+.2f}")
        return entry

    def settle_due(self, now: Optional[float] = None) -> list[PendingSettlement]:
        """Apply every pending settlement whose delay has elapsed, oldest first."""
        now = self._now() if now is None else now
        applied = []
        while self._pending and self._pending[0].due_at <= now:
            applied.append(self._apply(self._pending.popleft()))
        return applied

    def _on_timer(self, entry: PendingSettlement) -> None:
        self._handles.pop(entry.trade_id, None)
        # The loop may fire a timer up to one clock resolution early
        self.settle_due(now=max(self._now(), entry.due_at))

    def flush(self) -> list[PendingSettlement]:
        """Apply all pending settlements immediately (session end)."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

        applied = []
        while self._pending:
            applied.append(self._apply(self._pending.popleft()))

        if applied:
            logger.info(f"{self.account.account_id}: flushed {len(applied)} pending settlement(s)")
        return applied

    def _apply(self, entry: PendingSettlement) -> PendingSettlement:
        self.account.settle(entry.amount)
        logger.info(
            f"Settled {entry.trade_id} for {self.account.account_id}: ${entry.amount:+.2f} | "
            f"Cash: ${self.account.cash_balance:,.2f}"
        )
        if self.on_settled:
            try:
                self.on_settled(entry, self.account)
            except Exception as e:
                logger.error(f"Error in settlement callback: {e}")
        return entry
