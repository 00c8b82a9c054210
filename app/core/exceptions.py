"""
Exception hierarchy for market data ingestion and price persistence.
"""
from typing import Any, Dict, Optional


class PriceWatchError(Exception):
    """Base exception. Carries an optional context dict for structured logging."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class ProviderError(PriceWatchError):
    """A market data provider could not serve the request."""

    def __init__(self, message: str, provider: str = "", context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.provider = provider


class ProviderRateLimited(ProviderError):
    """Provider answered with HTTP 429 or a throttle notice.

    Policy: fall back to the next provider or skip the stock this tick.
    """


class ProviderUnavailable(ProviderError):
    """Network failure, 5xx, timeout or an unusable key.

    Policy: log and skip.
    """


class NoCapacity(ProviderError):
    """Every credential for the provider is exhausted, blocked or expired.

    Policy: skip immediately. Retrying cannot succeed before a quota window rolls over.
    """


class InvalidSymbol(ProviderError):
    """Provider does not know the symbol. Adapters turn this into a None result."""


class PersistenceFailure(PriceWatchError):
    """A storage transaction was rolled back.

    Policy: the previous latest price stays authoritative. Log and continue.
    """
