"""Error codes returned by the ledger, the session store and the game engine."""

from enum import Enum


class ErrorCode(str, Enum):
    """Distinguishable failure kinds reported to the presentation layer."""
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_BET_RANGE = "INVALID_BET_RANGE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    SESSION_ALREADY_ACTIVE = "SESSION_ALREADY_ACTIVE"
    NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
