"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class AllSourcesUnavailable(CriticalDataUnavailable):
    """Raised by the price feed when every configured source failed."""

    def __init__(self, attempted: Optional[list] = None, original: Optional[Exception] = None):
        super().__init__("price", original)
        self.attempted = list(attempted or [])

    def __str__(self) -> str:
        names = ", ".join(self.attempted) or "none configured"
        return f"All price sources failed ({names})"


class ConfigurationError(ValueError):
    """Raised at startup when required configuration or credentials are missing."""

    def __init__(self, errors: list):
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {len(self.errors)} error(s) found")


class OrderSubmissionError(RuntimeError):
    """Order placement was refused by the order book API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SigningError(RuntimeError):
    """The signing capability could not produce a signature."""
