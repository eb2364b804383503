"""
Shared dependencies for the server.

This module provides API key security and access to the global session
and store objects.
"""

import logging
import secrets
import sys

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from config import API_KEY as CONFIGURED_API_KEY, ENV

logger = logging.getLogger(__name__)

# =============================================================================
# SECURITY: API Key Authentication
# =============================================================================

API_KEY = CONFIGURED_API_KEY

if not API_KEY:
    if ENV == "production":
        logger.critical("[Security] FATAL: API_KEY environment variable not set.")
        sys.exit(1)
    else:
        API_KEY = secrets.token_urlsafe(32)
        logger.warning(f"[Security] Generated temporary key: {API_KEY}")

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)) -> str:
    """Verify API key for mutating endpoints"""
    if not api_key or api_key != API_KEY:
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key. Include X-API-Key header."
        )
    return api_key


# =============================================================================
# GLOBAL STATE ACCESSORS
# =============================================================================

# These are set by server.py at startup
_state = {
    "session": None,
    "account_store": None,
}


def set_state(key: str, value):
    """Set a global state value (called from server.py)"""
    _state[key] = value


def get_session():
    return _state["session"]


def get_account_store():
    return _state["account_store"]
