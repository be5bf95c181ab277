"""Shared exception types for the trade lifecycle."""

from typing import Any, Dict, Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required account or store data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class TradeValidationError(RuntimeError):
    """A capital, position-count or duplicate check refused a new trade."""

    def __init__(self, reason: str, code: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code
        self.details = details or {}


class AllocationRejected(TradeValidationError):
    """The store refused a conditional capital allocation."""


class QuoteUnavailable(RuntimeError):
    """A price quote could not be fetched or parsed."""

    def __init__(self, symbol: str, original: Optional[Exception] = None):
        super().__init__(f"Quote unavailable for {symbol}")
        self.symbol = symbol
        self.original = original


class DataIntegrityError(RuntimeError):
    """A store write could not be applied."""


class ConfigurationError(ValueError):
    """Unknown market or missing required constant."""
