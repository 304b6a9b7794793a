"""Exception hierarchy for the quote engine.

Provider and cache errors are raised inside adapters and handled there;
only validation and unrecoverable conversion failures reach callers as an
unsuccessful result.
"""

from typing import Any


class QuoteEngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ConfigurationError(QuoteEngineError):
    """Invalid configuration value or data table."""


class ValidationError(QuoteEngineError):
    """Calculation request failed validation."""

    def __init__(self, message: str, issues: list[Any] | None = None):
        super().__init__(message, {"issues": issues or []})
        self.issues = issues or []


class ProviderError(QuoteEngineError):
    """A rate source could not answer."""

    def __init__(self, message: str, provider: str = "unknown"):
        super().__init__(message, {"provider": provider})
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """A rate source did not answer within its timeout."""


class ProviderUnavailableError(ProviderError):
    """A rate source returned an error or an unusable response."""


class CacheMissError(QuoteEngineError):
    """No cached value exists and the refresh failed."""

    def __init__(self, key: str, cause: BaseException | None = None):
        super().__init__(f"No value available for cache key '{key}'", {"key": key})
        self.key = key
        self.cause = cause


class UnrecoverableConversionError(QuoteEngineError):
    """No conversion path exists between two currencies."""

    def __init__(self, from_currency: str, to_currency: str):
        super().__init__(
            f"No exchange rate available for {from_currency}/{to_currency}",
            {"from_currency": from_currency, "to_currency": to_currency},
        )
        self.from_currency = from_currency
        self.to_currency = to_currency
