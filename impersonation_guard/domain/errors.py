"""Exceptions raised by the impersonation rate limiter."""

from __future__ import annotations

from .rate_limits import RateLimitCheckResult


class RateLimitError(Exception):
    """Base class for rate limiter failures."""


class InvalidIdentifierError(RateLimitError, ValueError):
    """Raised when an identifier or reason is missing or malformed."""

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"{field} must be a non-empty string")


class ImpersonationRateLimitExceeded(RateLimitError):
    """Raised when a start is rejected while committing the session."""

    def __init__(self, result: RateLimitCheckResult) -> None:
        self.result = result
        super().__init__(result.reason or "Impersonation rate limit exceeded")


class RateLimitBackendUnavailable(RateLimitError):
    """Raised when the session store cannot be reached."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Rate limit backend unavailable during {operation}")
