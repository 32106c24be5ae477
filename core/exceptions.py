"""Shared exception types for core trading logic."""

from typing import Optional


class TraderError(Exception):
    """Base class for errors raised by the trading core."""


class ConfigurationError(TraderError):
    """Raised when credentials or configuration are missing or invalid.

    Fatal for the component that raised it; never retried.
    """


class ApiError(TraderError):
    """Raised when an exchange or LLM call fails transiently."""

    def __init__(self, message: str, original: Optional[Exception] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.original = original
        self.status_code = status_code


class RateLimitError(ApiError):
    """Raised when a remote API rejects a call because of rate limits."""


class WriteNotSupported(TraderError):
    """Raised by exchange write paths that are not implemented yet."""

    def __init__(self, operation: str):
        super().__init__(f"Exchange write operation not supported: {operation}")
        self.operation = operation


class InvalidTransition(ValueError):
    """Raised when a record is asked to move to a state it cannot reach."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Invalid {entity} transition: {current} → {target}")
        self.entity = entity
        self.current = current
        self.target = target


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original
