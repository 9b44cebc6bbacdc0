"""
Kestrel Errors

Exception hierarchy for the ledger, alert monitor and watchlist.

Rejected operations are terminal for the call that raised them and leave
state untouched. Transient errors come from the network or the store and
are logged and absorbed by the component that owns the boundary.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Distinguishable error kinds surfaced to callers."""
    INSTRUMENT_UNKNOWN = "InstrumentUnknown"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    INSUFFICIENT_HOLDINGS = "InsufficientHoldings"
    NO_POSITION = "NoPosition"
    INVALID_THRESHOLD = "InvalidThreshold"
    INVALID_ORDER = "InvalidOrder"
    NOT_FOUND = "NotFound"
    WATCHLIST_FULL = "WatchlistFull"
    FETCH_ERROR = "FetchError"
    PERSISTENCE_ERROR = "PersistenceError"


class KestrelError(Exception):
    """Base class for every error raised by Kestrel components."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RejectedOperationError(KestrelError):
    """A user command failed validation; nothing was changed."""


class TransientError(KestrelError):
    """A network or storage failure that a later attempt may not repeat."""


class InstrumentUnknownError(RejectedOperationError):
    kind = ErrorKind.INSTRUMENT_UNKNOWN

    def __init__(self, instrument_id: str):
        super().__init__(f"Unknown instrument: {instrument_id}")
        self.instrument_id = instrument_id


class InsufficientFundsError(RejectedOperationError):
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, required, available):
        super().__init__(
            f"Insufficient funds: trade costs ${required:,.2f}, balance is ${available:,.2f}"
        )
        self.required = required
        self.available = available


class InsufficientHoldingsError(RejectedOperationError):
    kind = ErrorKind.INSUFFICIENT_HOLDINGS

    def __init__(self, instrument_id: str, requested, held):
        super().__init__(
            f"Insufficient holdings of {instrument_id}: requested {requested}, held {held}"
        )
        self.instrument_id = instrument_id
        self.requested = requested
        self.held = held


class NoPositionError(RejectedOperationError):
    kind = ErrorKind.NO_POSITION

    def __init__(self, instrument_id: str, book: str):
        super().__init__(f"No {book} position in {instrument_id}")
        self.instrument_id = instrument_id
        self.book = book


class InvalidThresholdError(RejectedOperationError):
    kind = ErrorKind.INVALID_THRESHOLD

    def __init__(self, target_price, message: Optional[str] = None):
        super().__init__(message or f"Target price must be greater than 0, got {target_price}")
        self.target_price = target_price


class InvalidOrderError(RejectedOperationError):
    """Quantity or leverage outside the accepted range."""

    kind = ErrorKind.INVALID_ORDER


class RuleNotFoundError(RejectedOperationError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, rule_id: str):
        super().__init__(f"Alert rule not found: {rule_id}")
        self.rule_id = rule_id


class WatchlistFullError(RejectedOperationError):
    kind = ErrorKind.WATCHLIST_FULL

    def __init__(self, limit: int):
        super().__init__(f"You can only add up to {limit} coins to your watchlist.")
        self.limit = limit


class FetchError(TransientError):
    kind = ErrorKind.FETCH_ERROR

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class PersistenceError(TransientError):
    kind = ErrorKind.PERSISTENCE_ERROR

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key
