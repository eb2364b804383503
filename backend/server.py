#!/usr/bin/env python3
"""
HTTP + WebSocket server for the trading simulator.
Exposes the command surface and streams engine state to the frontend.
"""

import asyncio
import json
import logging
from typing import Optional, Set

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from account_store import AccountStore
from config import DB_PATH, DEFAULT_CONFIG, SERVER_HOST, SERVER_PORT, setup_logging
from routes.deps import get_account_store, get_session, set_state, verify_api_key
from session_orchestrator import CommandResult, SimulatorSession

logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Trading Simulator API",
    description="Simulated price feed, paper trading and timed wager games",
    version="1.0.0",
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rejection type -> HTTP status
ERROR_STATUS = {
    "invalid_amount": 400,
    "invalid_account_id": 400,
    "insufficient_funds": 400,
    "session_conflict": 409,
    "not_found": 404,
    "persistence_failed": 503,
}

# WebSocket clients
ws_clients: Set[WebSocket] = set()


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def startup():
    """Open the store and wire the session to the WebSocket feed"""
    store = AccountStore(DB_PATH)
    session = SimulatorSession(DEFAULT_CONFIG, store)

    def forward(message: dict):
        asyncio.create_task(broadcast(message))

    session.set_callbacks(
        on_price_tick=forward,
        on_wager_update=forward,
        on_account_update=forward,
        on_settlement=forward,
    )

    set_state("account_store", store)
    set_state("session", session)
    logger.info(f"[Server] Started with store {DB_PATH}")


@app.on_event("shutdown")
async def shutdown():
    """Log out so pending settlements are flushed and state is saved"""
    session = get_session()
    if session and session.is_logged_in:
        await session.logout()
    logger.info("[Server] Shutdown complete")


# ============================================================================
# BROADCAST HELPERS
# ============================================================================

async def broadcast(message: dict):
    """Broadcast message to all connected WebSocket clients"""
    if not ws_clients:
        return

    data = json.dumps(message)
    disconnected = set()

    for ws in list(ws_clients):
        try:
            await ws.send_text(data)
        except Exception:
            disconnected.add(ws)

    # Clean up disconnected clients
    for ws in disconnected:
        ws_clients.discard(ws)


def command_response(result: CommandResult):
    """Successful results pass through; rejections get an HTTP status."""
    if result.success:
        return result.to_dict()
    return JSONResponse(result.to_dict(), status_code=ERROR_STATUS.get(result.error_type, 400))


def not_ready():
    return JSONResponse({"error": "Simulator not initialized", "error_type": "not_ready"}, status_code=503)


# ============================================================================
# READ ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    return {"status": "ok", "service": "Trading Simulator API"}


@app.get("/api/status")
async def get_status():
    """Account, price, settlements and wagers for the logged-in session"""
    session = get_session()
    if not session:
        return not_ready()
    return session.get_status()


@app.get("/api/price")
async def get_price():
    session = get_session()
    if not session:
        return not_ready()
    if not session.is_logged_in:
        return JSONResponse({"error": "Not logged in", "error_type": "session_conflict"}, status_code=409)
    return session.price_engine.get_status()


@app.get("/api/price/history")
async def get_price_history(limit: Optional[int] = None):
    """Recent price points and the candlestick view"""
    session = get_session()
    if not session:
        return not_ready()
    return session.get_price_history(limit)


@app.get("/api/wagers")
async def get_wagers():
    session = get_session()
    if not session:
        return not_ready()
    return session.get_wager_status()


@app.get("/api/config")
async def get_config():
    session = get_session()
    if not session:
        return not_ready()
    return session.config.to_dict()


@app.get("/api/accounts/{account_id}/trades")
async def get_account_trades(account_id: str, limit: int = 50):
    store = get_account_store()
    if not store:
        return not_ready()
    return {"trades": [t.to_dict() for t in store.get_trades(account_id, limit)]}


@app.get("/api/accounts/{account_id}/wagers")
async def get_account_wagers(account_id: str, limit: int = 50):
    store = get_account_store()
    if not store:
        return not_ready()
    return {"wagers": [w.to_dict() for w in store.get_wagers(account_id, limit)]}


@app.get("/api/accounts/{account_id}/summary")
async def get_account_summary(account_id: str):
    store = get_account_store()
    if not store:
        return not_ready()
    if not store.account_exists(account_id):
        return JSONResponse({"error": f"Account not found: {account_id}", "error_type": "not_found"}, status_code=404)
    return store.get_pnl_summary(account_id)


# ============================================================================
# COMMAND ENDPOINTS (X-API-Key required)
# ============================================================================

@app.post("/api/accounts", dependencies=[Depends(verify_api_key)])
async def create_account(body: dict):
    """Create an account and log into it"""
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.create_account(body.get("account_id")))


@app.post("/api/session/login", dependencies=[Depends(verify_api_key)])
async def login(body: dict):
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.login(body.get("account_id")))


@app.post("/api/session/logout", dependencies=[Depends(verify_api_key)])
async def logout():
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.logout())


@app.post("/api/trade/buy", dependencies=[Depends(verify_api_key)])
async def buy(body: dict):
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.buy(body.get("usd_amount")))


@app.post("/api/trade/sell", dependencies=[Depends(verify_api_key)])
async def sell(body: dict):
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.sell(body.get("usd_amount")))


@app.post("/api/wagers/ascending/start", dependencies=[Depends(verify_api_key)])
async def start_ascending_bet(body: dict):
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.start_ascending_bet(body.get("stake"), body.get("direction")))


@app.post("/api/wagers/crash/start", dependencies=[Depends(verify_api_key)])
async def start_escalating_crash(body: dict):
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.start_escalating_crash(body.get("stake")))


@app.post("/api/wagers/crash/withdraw", dependencies=[Depends(verify_api_key)])
async def withdraw_crash():
    session = get_session()
    if not session:
        return not_ready()
    return command_response(await session.withdraw_crash())


@app.post("/api/wagers/reset", dependencies=[Depends(verify_api_key)])
async def reset_wager(body: Optional[dict] = None):
    session = get_session()
    if not session:
        return not_ready()
    mode = body.get("mode") if body else None
    return command_response(await session.reset_wager(mode))


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """
    WebSocket endpoint for real-time data.

    Clients receive:
    - price_tick: price, regime and trend after every tick
    - wager_update: altitude samples, crash gain, outcomes
    - account_update: balances after trades, stakes and payouts
    - settlement: deferred P&L credited to cash
    """
    await ws.accept()
    ws_clients.add(ws)
    logger.info(f"[WS] Client connected. Total: {len(ws_clients)}")

    try:
        session = get_session()
        await ws.send_json({
            "type": "init",
            "status": session.get_status() if session else None,
            "history": session.get_price_history() if session else None,
        })

        # Keep connection alive
        while True:
            try:
                data = await asyncio.wait_for(ws.receive_text(), timeout=30)
                msg = json.loads(data)

                if msg.get("type") == "ping":
                    await ws.send_json({"type": "pong"})

                elif msg.get("type") == "get_history":
                    session = get_session()
                    await ws.send_json({
                        "type": "history_snapshot",
                        "history": session.get_price_history(msg.get("limit")) if session else None,
                    })

            except asyncio.TimeoutError:
                # Send keepalive ping
                await ws.send_json({"type": "ping"})

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"[WS] Error: {e}")
    finally:
        ws_clients.discard(ws)
        logger.info(f"[WS] Client disconnected. Total: {len(ws_clients)}")


# ============================================================================
# MAIN
# ============================================================================

def main():
    """Run the server"""
    setup_logging()
    uvicorn.run(
        "server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()
