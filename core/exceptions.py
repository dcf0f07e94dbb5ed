"""Shared exception types for reconciliation and hedge decision logic."""

from typing import Optional


class VenueUnavailable(RuntimeError):
    """Raised when a venue snapshot cannot be fetched safely (error or timeout)."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class LedgerConflict(RuntimeError):
    """Raised when a ledger mutation would violate identity invariants."""

    def __init__(self, position_id: str, reason: str):
        super().__init__(f"{position_id}: {reason}")
        self.position_id = position_id
        self.reason = reason


# Name used by the ledger contract
ConflictError = LedgerConflict


class AggregationInconsistency(ValueError):
    """Raised when an exposure component is negative, NaN or infinite."""

    def __init__(self, symbol: str, source: str, value: float):
        super().__init__(f"{symbol} {source} exposure is invalid: {value!r}")
        self.symbol = symbol
        self.source = source
        self.value = value


class DecisionConfigInvalid(ValueError):
    """Raised at configuration load when hedge parameters are out of range."""
