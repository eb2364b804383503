"""
Tests for the Session Orchestrator (session_orchestrator.py).

Tests cover:
- Login / account creation / logout
- Trade commands, persistence and rollback
- Deferred settlement and flush on logout
- Wager commands and cross-engine exclusivity
- Presentation callbacks and debounced last-price saves
"""
import asyncio
import random
from dataclasses import replace

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from session_orchestrator import CommandResult, SimulatorSession, normalize_account_id
from errors import InvalidAccountId
from wager_base import WagerStatus


@pytest.fixture
def quiet_config(fast_config):
    """Fast wagers and settlements, but a price that does not move during a test."""
    return replace(
        fast_config,
        price=replace(fast_config.price, tick_delay_min_sec=30.0, tick_delay_max_sec=31.0),
        crash=replace(fast_config.crash, blast_divisor=1e12),
    )


@pytest.fixture
def session(quiet_config, account_store):
    return SimulatorSession(quiet_config, account_store, random.Random(42))


class TestCommandResult:
    """Tests for CommandResult."""

    def test_fail_carries_error_type(self):
        result = CommandResult.fail("login", InvalidAccountId("too short", {"min_length": 2}))
        data = result.to_dict()
        assert data["success"] is False
        assert data["error_type"] == "invalid_account_id"
        assert data["data"] == {"min_length": 2}

    def test_normalize_account_id(self):
        assert normalize_account_id("  alice ") == "alice"
        with pytest.raises(InvalidAccountId):
            normalize_account_id(" a ")
        with pytest.raises(InvalidAccountId):
            normalize_account_id(None)


class TestLogin:
    """Tests for the session lifecycle."""

    @pytest.mark.asyncio
    async def test_missing_account_is_not_found(self, session):
        result = await session.login("alice")
        assert result.success is False
        assert result.error_type == "not_found"
        assert not session.is_logged_in

    @pytest.mark.asyncio
    async def test_create_account_logs_in(self, session, account_store):
        result = await session.create_account(" alice ")
        try:
            assert result.success is True
            assert result.command == "create_account"
            assert result.data["account"]["cash_balance"] == 1000.0
            assert session.is_logged_in
            assert session.current_price == 65000.0
            assert account_store.account_exists("alice")
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_duplicate_account_rejected(self, session, account_store):
        account_store.create_account("alice")
        result = await session.create_account("alice")
        assert result.success is False
        assert result.error_type == "session_conflict"

    @pytest.mark.asyncio
    async def test_short_account_id_rejected(self, session):
        result = await session.create_account("a")
        assert result.error_type == "invalid_account_id"

    @pytest.mark.asyncio
    async def test_restores_last_price(self, session, account_store):
        account_store.create_account("alice", 1000.0, 80000.0)
        await session.login("alice")
        try:
            assert session.current_price == 80000.0
            assert session.price_engine.state.regime.value == "HIGH"
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_daily_reset_on_new_day(self, session, account_store):
        account_store.create_account("alice")
        account_store.save_account("alice", daily_gain=50.0, daily_loss=5.0, last_login_date="2000-01-01")

        await session.login("alice")
        try:
            assert session.account.daily_gain == 0.0
            record = account_store.load_account("alice")
            assert record["daily_gain"] == 0.0
            assert record["last_login_date"] != "2000-01-01"
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_logout_when_not_logged_in(self, session):
        result = await session.logout()
        assert result.error_type == "session_conflict"

    @pytest.mark.asyncio
    async def test_commands_require_login(self, session):
        for result in (
            await session.buy(10),
            await session.sell(10),
            await session.start_ascending_bet(10, "up"),
            await session.start_escalating_crash(10),
            await session.withdraw_crash(),
            await session.reset_wager(),
        ):
            assert result.success is False
            assert result.error_type == "session_conflict"


class TestTrading:
    """Tests for buy/sell through the session."""

    @pytest.mark.asyncio
    async def test_buy_persists_and_records(self, session, account_store):
        await session.create_account("alice")
        try:
            result = await session.buy(650)
            assert result.success is True
            assert session.account.cash_balance == 350.0
            assert session.account.position.asset_balance == pytest.approx(0.01)

            record = account_store.load_account("alice")
            assert record["cash_balance"] == 350.0
            assert record["avg_cost"] == pytest.approx(65000.0)

            trades = account_store.get_trades("alice")
            assert len(trades) == 1
            assert trades[0].type == "buy"
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_rejections(self, session):
        await session.create_account("alice")
        try:
            too_much = await session.buy(5000)
            assert too_much.error_type == "insufficient_funds"

            invalid = await session.buy("lots")
            assert invalid.error_type == "invalid_amount"

            oversell = await session.sell(10)
            assert oversell.error_type == "insufficient_funds"

            assert session.account.cash_balance == 1000.0
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_failed_save_rolls_back(self, session, account_store, monkeypatch):
        await session.create_account("alice")
        try:
            monkeypatch.setattr(account_store, "save_account", lambda *args, **kwargs: False)
            result = await session.buy(100)

            assert result.success is False
            assert result.error_type == "persistence_failed"
            assert session.account.cash_balance == 1000.0
            assert session.account.position.asset_balance == 0.0
            assert account_store.get_trades("alice") == []
        finally:
            monkeypatch.undo()
            await session.logout()

    @pytest.mark.asyncio
    async def test_sell_settles_after_delay(self, session, account_store):
        await session.create_account("alice")
        try:
            await session.buy(650)
            # Move the price up so the sell realizes a profit
            session.price_engine.state = replace(session.price_engine.state, current_price=71500.0)

            result = await session.sell(143)
            trade_pl = 143 - (143 / 71500.0) * 65000.0
            assert result.success is True
            assert session.account.position.unsettled_pl == pytest.approx(trade_pl)
            cash_after_sell = session.account.cash_balance
            assert cash_after_sell == pytest.approx(350.0 + 143.0)

            await asyncio.sleep(0.2)

            assert session.account.position.unsettled_pl == pytest.approx(0.0)
            assert session.account.cash_balance == pytest.approx(cash_after_sell + trade_pl)
            assert account_store.load_account("alice")["cash_balance"] == pytest.approx(cash_after_sell + trade_pl)
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_logout_flushes_pending_settlements(self, session, account_store):
        await session.create_account("alice")
        await session.buy(650)
        session.price_engine.state = replace(session.price_engine.state, current_price=71500.0)
        await session.sell(143)

        result = await session.logout()

        trade_pl = 143 - (143 / 71500.0) * 65000.0
        assert result.data["settlements_flushed"] == 1
        record = account_store.load_account("alice")
        assert record["cash_balance"] == pytest.approx(350.0 + 143.0 + trade_pl)
        assert record["last_price"] == 71500.0

    @pytest.mark.asyncio
    async def test_relogin_keeps_pending_settlement(self, session, account_store):
        await session.create_account("alice")
        await session.buy(650)
        session.price_engine.state = replace(session.price_engine.state, current_price=71500.0)
        await session.sell(143)

        result = await session.login("alice")
        try:
            trade_pl = 143 - (143 / 71500.0) * 65000.0
            expected = 350.0 + 143.0 + trade_pl
            assert result.success is True
            assert session.account.cash_balance == pytest.approx(expected)
            assert session.account.position.unsettled_pl == pytest.approx(0.0)
            assert account_store.load_account("alice")["cash_balance"] == pytest.approx(expected)
        finally:
            await session.logout()

        assert account_store.load_account("alice")["cash_balance"] == pytest.approx(expected)


class TestWagers:
    """Tests for wager commands through the session."""

    @pytest.mark.asyncio
    async def test_ascending_bet_runs_to_resolution(self, session, account_store):
        await session.create_account("alice")
        updates = []
        session.set_callbacks(on_wager_update=updates.append)
        try:
            result = await session.start_ascending_bet(100, "up")
            assert result.success is True
            assert session.account.cash_balance == 900.0

            await asyncio.sleep(0.4)

            assert session.ascending.status == WagerStatus.RESOLVED
            outcome = session.ascending.last_outcome
            expected_cash = 900.0 + outcome.payout
            assert session.account.cash_balance == pytest.approx(expected_cash)
            assert account_store.load_account("alice")["cash_balance"] == pytest.approx(expected_cash)
            assert len(account_store.get_wagers("alice")) == 1
            assert any(u["data"]["type"] == "outcome" for u in updates)
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_crash_withdraw(self, session, account_store):
        await session.create_account("alice")
        try:
            result = await session.start_escalating_crash(100)
            assert result.success is True
            assert session.account.cash_balance == 1000.0

            await asyncio.sleep(0.2)
            assert session.crash.status == WagerStatus.RUNNING
            assert session.account.cash_balance == 900.0

            withdrawn = await session.withdraw_crash()
            assert withdrawn.success is True
            payout = withdrawn.data["outcome"]["payout"]
            assert payout > 100.0
            assert session.account.cash_balance == pytest.approx(900.0 + payout)

            wagers = account_store.get_wagers("alice")
            assert wagers[0].status == "withdrawn"
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_crash_cancel_during_pre_roll(self, session):
        await session.create_account("alice")
        try:
            await session.start_escalating_crash(100)
            result = await session.withdraw_crash()

            assert result.success is True
            assert result.data["cancelled"] is True
            assert session.crash.status == WagerStatus.IDLE
            assert session.account.cash_balance == 1000.0
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_engines_are_mutually_exclusive(self, session):
        await session.create_account("alice")
        try:
            await session.start_escalating_crash(100)
            conflict = await session.start_ascending_bet(100, "up")
            assert conflict.error_type == "session_conflict"
            assert session.account.cash_balance == 1000.0

            await session.withdraw_crash()
            await session.start_ascending_bet(100, "up")
            conflict = await session.start_escalating_crash(100)
            assert conflict.error_type == "session_conflict"
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_reset_wager(self, session):
        await session.create_account("alice")
        try:
            await session.start_escalating_crash(100)
            await asyncio.sleep(0.2)

            busy = await session.reset_wager("escalating_crash")
            assert busy.error_type == "session_conflict"

            await session.withdraw_crash()
            again = await session.start_escalating_crash(100)
            assert again.error_type == "session_conflict"

            reset = await session.reset_wager("escalating_crash")
            assert reset.success is True
            assert session.crash.status == WagerStatus.IDLE
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_logout_withdraws_running_crash(self, session, account_store):
        await session.create_account("alice")
        await session.start_escalating_crash(100)
        await asyncio.sleep(0.2)
        assert session.account.cash_balance == 900.0

        await session.logout()

        record = account_store.load_account("alice")
        assert record["cash_balance"] >= 1000.0
        assert account_store.get_wagers("alice")[0].status == "withdrawn"

    @pytest.mark.asyncio
    async def test_relogin_keeps_withdrawn_crash_payout(self, session, account_store):
        await session.create_account("alice")
        await session.start_escalating_crash(100)
        await asyncio.sleep(0.2)
        assert session.crash.status == WagerStatus.RUNNING

        await session.login("alice")
        try:
            payout = account_store.get_wagers("alice")[0].payout
            assert payout > 100.0
            assert session.account.cash_balance == pytest.approx(900.0 + payout)
            assert account_store.load_account("alice")["cash_balance"] == pytest.approx(900.0 + payout)
            assert session.crash.status == WagerStatus.IDLE
        finally:
            await session.logout()

    @pytest.mark.asyncio
    async def test_reset_all_is_all_or_nothing(self, session):
        await session.create_account("alice")
        try:
            await session.start_ascending_bet(100, "up")
            await asyncio.sleep(0.4)
            assert session.ascending.status == WagerStatus.RESOLVED

            await session.start_escalating_crash(100)
            result = await session.reset_wager()

            assert result.error_type == "session_conflict"
            assert session.ascending.status == WagerStatus.RESOLVED
            assert session.crash.status == WagerStatus.PENDING_START

            await session.withdraw_crash()
            assert (await session.reset_wager()).success is True
            assert session.ascending.status == WagerStatus.IDLE
        finally:
            await session.logout()


class TestPriceStream:
    """Tests for the price stream wiring."""

    @pytest.mark.asyncio
    async def test_ticks_reach_presentation_and_store(self, fast_config, account_store):
        session = SimulatorSession(fast_config, account_store, random.Random(42))
        ticks = []
        session.set_callbacks(on_price_tick=ticks.append)

        await session.create_account("alice")
        await asyncio.sleep(0.2)
        result = await session.logout()

        assert len(ticks) > 0
        assert ticks[-1]["type"] == "price_tick"
        assert {"current_price", "regime", "trend"} <= set(ticks[-1]["data"])
        assert account_store.load_account("alice")["last_price"] == pytest.approx(result.data["last_price"], abs=0.01)

    @pytest.mark.asyncio
    async def test_last_price_saved_after_debounce(self, session, account_store, monkeypatch):
        await session.create_account("alice")
        price_saves = []
        save_account = account_store.save_account

        def recording_save(account_id, **fields):
            if set(fields) == {"last_price"}:
                price_saves.append(fields["last_price"])
            return save_account(account_id, **fields)

        monkeypatch.setattr(account_store, "save_account", recording_save)
        try:
            # Three ticks inside one debounce window
            for _ in range(3):
                session.price_engine.step()
            assert price_saves == []
            assert account_store.load_account("alice")["last_price"] == 65000.0

            await asyncio.sleep(0.1)

            assert price_saves == [session.current_price]
            assert session.is_logged_in
            assert account_store.load_account("alice")["last_price"] == pytest.approx(session.current_price)
        finally:
            monkeypatch.undo()
            await session.logout()

    @pytest.mark.asyncio
    async def test_status(self, session):
        assert session.get_status() == {"logged_in": False}
        await session.create_account("alice")
        try:
            status = session.get_status()
            assert status["logged_in"] is True
            assert status["price"]["current_price"] == 65000.0
            assert set(status["wagers"]) == {"ascending_bet", "escalating_crash"}
        finally:
            await session.logout()
