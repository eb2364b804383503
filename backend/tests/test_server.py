"""
Tests for REST API Endpoints (server.py).

Tests cover:
- Read endpoints
- API key protection on command endpoints
- Mapping of rejection types to HTTP status codes
- WebSocket init and ping
"""
import pytest
import secrets
from fastapi.testclient import TestClient
from unittest.mock import MagicMock, AsyncMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from routes import deps
from session_orchestrator import CommandResult
from server import app


# Test API key for authentication
TEST_API_KEY = secrets.token_urlsafe(32)


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setattr(deps, "API_KEY", TEST_API_KEY)
    yield


@pytest.fixture
def auth_headers():
    """Return auth headers for protected endpoints."""
    return {"X-API-Key": TEST_API_KEY}


@pytest.fixture
def mock_session():
    """Create mock simulator session."""
    mock = MagicMock()
    mock.is_logged_in = True
    mock.get_status = MagicMock(return_value={"logged_in": True, "account": {"cash_balance": 1000.0}})
    mock.get_price_history = MagicMock(return_value={"points": [], "candles": []})
    mock.get_wager_status = MagicMock(return_value={"ascending_bet": {}, "escalating_crash": {}})
    mock.price_engine.get_status = MagicMock(return_value={"current_price": 65000.0})
    mock.config.to_dict = MagicMock(return_value={"price": {}})
    mock.buy = AsyncMock(return_value=CommandResult.ok("buy", {"trade": {"id": "buy_1"}}))
    mock.sell = AsyncMock(return_value=CommandResult(
        success=False, command="sell", error="Insufficient asset balance", error_type="insufficient_funds",
    ))
    mock.login = AsyncMock(return_value=CommandResult(
        success=False, command="login", error="Account not found: bob", error_type="not_found",
    ))
    mock.create_account = AsyncMock(return_value=CommandResult.ok("create_account", {"logged_in": True}))
    mock.logout = AsyncMock(return_value=CommandResult.ok("logout", {}))
    mock.start_ascending_bet = AsyncMock(return_value=CommandResult(
        success=False, command="start_ascending_bet", error="busy", error_type="session_conflict",
    ))
    mock.start_escalating_crash = AsyncMock(return_value=CommandResult(
        success=False, command="start_escalating_crash", error="Stake must be positive", error_type="invalid_amount",
    ))
    mock.withdraw_crash = AsyncMock(return_value=CommandResult.ok("withdraw_crash", {"cancelled": True}))
    mock.reset_wager = AsyncMock(return_value=CommandResult.ok("reset_wager", {"wagers": {}}))
    return mock


@pytest.fixture
def mock_store():
    mock = MagicMock()
    mock.get_trades = MagicMock(return_value=[])
    mock.get_wagers = MagicMock(return_value=[])
    mock.account_exists = MagicMock(side_effect=lambda account_id: account_id == "alice")
    mock.get_pnl_summary = MagicMock(return_value={"account_id": "alice", "trades": 0})
    return mock


@pytest.fixture
def client(mock_session, mock_store):
    deps.set_state("session", mock_session)
    deps.set_state("account_store", mock_store)
    yield TestClient(app)
    deps.set_state("session", None)
    deps.set_state("account_store", None)


class TestReadEndpoints:
    """Tests for open endpoints."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_status(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        assert response.json()["logged_in"] is True

    def test_price(self, client):
        assert client.get("/api/price").json()["current_price"] == 65000.0

    def test_price_when_logged_out(self, client, mock_session):
        mock_session.is_logged_in = False
        response = client.get("/api/price")
        assert response.status_code == 409

    def test_price_history(self, client, mock_session):
        response = client.get("/api/price/history?limit=10")
        assert response.status_code == 200
        mock_session.get_price_history.assert_called_once_with(10)

    def test_wagers_and_config(self, client):
        assert set(client.get("/api/wagers").json()) == {"ascending_bet", "escalating_crash"}
        assert "price" in client.get("/api/config").json()

    def test_account_history(self, client, mock_store):
        assert client.get("/api/accounts/alice/trades").json() == {"trades": []}
        assert client.get("/api/accounts/alice/wagers?limit=5").json() == {"wagers": []}
        mock_store.get_wagers.assert_called_once_with("alice", 5)

    def test_account_summary(self, client):
        assert client.get("/api/accounts/alice/summary").status_code == 200
        assert client.get("/api/accounts/nobody/summary").status_code == 404

    def test_not_initialized(self):
        deps.set_state("session", None)
        response = TestClient(app).get("/api/status")
        assert response.status_code == 503


class TestCommandEndpoints:
    """Tests for API-key protected commands."""

    def test_requires_api_key(self, client, mock_session):
        response = client.post("/api/trade/buy", json={"usd_amount": 100})
        assert response.status_code == 403
        mock_session.buy.assert_not_called()

    def test_wrong_api_key(self, client):
        response = client.post("/api/trade/buy", json={"usd_amount": 100}, headers={"X-API-Key": "nope"})
        assert response.status_code == 403

    def test_buy(self, client, mock_session, auth_headers):
        response = client.post("/api/trade/buy", json={"usd_amount": 100}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["success"] is True
        mock_session.buy.assert_awaited_once_with(100)

    @pytest.mark.parametrize("path,body,status,error_type", [
        ("/api/trade/sell", {"usd_amount": 5}, 400, "insufficient_funds"),
        ("/api/session/login", {"account_id": "bob"}, 404, "not_found"),
        ("/api/wagers/ascending/start", {"stake": 10, "direction": "up"}, 409, "session_conflict"),
        ("/api/wagers/crash/start", {"stake": 0}, 400, "invalid_amount"),
    ])
    def test_rejection_status_codes(self, client, auth_headers, path, body, status, error_type):
        response = client.post(path, json=body, headers=auth_headers)
        assert response.status_code == status
        data = response.json()
        assert data["success"] is False
        assert data["error_type"] == error_type
        assert data["error"]

    def test_persistence_failure_is_503(self, client, mock_session, auth_headers):
        mock_session.buy.return_value = CommandResult(
            success=False, command="buy", error="save failed", error_type="persistence_failed",
        )
        response = client.post("/api/trade/buy", json={"usd_amount": 100}, headers=auth_headers)
        assert response.status_code == 503

    def test_create_account(self, client, mock_session, auth_headers):
        response = client.post("/api/accounts", json={"account_id": "alice"}, headers=auth_headers)
        assert response.status_code == 200
        mock_session.create_account.assert_awaited_once_with("alice")

    def test_wager_commands(self, client, mock_session, auth_headers):
        assert client.post("/api/wagers/crash/withdraw", headers=auth_headers).json()["data"] == {"cancelled": True}
        assert client.post("/api/wagers/reset", json={"mode": "escalating_crash"}, headers=auth_headers).status_code == 200
        mock_session.reset_wager.assert_awaited_once_with("escalating_crash")
        mock_session.start_ascending_bet.assert_not_awaited()

    def test_logout(self, client, mock_session, auth_headers):
        assert client.post("/api/session/logout", headers=auth_headers).status_code == 200
        mock_session.logout.assert_awaited_once()


class TestWebSocket:
    """Tests for the WebSocket feed."""

    def test_init_and_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            init = ws.receive_json()
            assert init["type"] == "init"
            assert init["status"]["logged_in"] is True

            ws.send_text('{"type": "ping"}')
            assert ws.receive_json() == {"type": "pong"}

    def test_history_request(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text('{"type": "get_history", "limit": 20}')
            reply = ws.receive_json()
            assert reply["type"] == "history_snapshot"
            assert reply["history"] == {"points": [], "candles": []}
