"""Custom exception classes for the ingestion pipeline."""

from typing import Optional


class PriceWatchException(Exception):
    """Base exception for all PriceWatch errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(PriceWatchException):
    """Raised when a source is unknown, inactive or has no usable adapter."""


class TransientFetchError(PriceWatchException):
    """Raised for failures worth retrying: timeouts, blocks, 5xx responses."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(TransientFetchError):
    """Raised when a source answers with HTTP 429."""

    def __init__(self, source: str, url: Optional[str] = None):
        super().__init__(f"Rate limit exceeded for {source}", url=url, status_code=429)


class ParseError(PriceWatchException, ValueError):
    """Raised when a single listing has an unexpected shape."""


class PersistenceError(PriceWatchException):
    """Raised when a batch statement fails and the batch must be retried per record."""


class FatalInitError(PriceWatchException):
    """Raised when an adapter cannot acquire its resources."""

    def __init__(self, adapter_id: str, message: str):
        self.adapter_id = adapter_id
        super().__init__(f"Failed to initialize {adapter_id}: {message}")
