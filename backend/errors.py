"""
Typed rejections raised by the simulator core.

Every command either succeeds or raises one of these before touching any
state. The session layer catches them at the command boundary and turns
them into a CommandResult for the caller.
"""

from typing import Optional


class SimulatorError(Exception):
    """Base class for all recoverable simulator rejections."""

    error_type: str = "simulator_error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "error_type": self.error_type,
            "details": self.details,
        }


class InsufficientFunds(SimulatorError):
    """Buy, sell or wager stake exceeds the available balance."""

    error_type = "insufficient_funds"


class InvalidAmount(SimulatorError):
    """Non-positive or non-numeric trade amount or stake."""

    error_type = "invalid_amount"


class SessionConflict(SimulatorError):
    """Wager already running, or a state transition that is not allowed."""

    error_type = "session_conflict"


class AccountNotFound(SimulatorError):
    """Persistence lookup miss. The caller decides on account creation."""

    error_type = "not_found"


class PersistenceFailed(SimulatorError):
    """The account store rejected a write; the command was rolled back."""

    error_type = "persistence_failed"


class InvalidAccountId(SimulatorError):
    """Account id empty or too short after trimming."""

    error_type = "invalid_account_id"
