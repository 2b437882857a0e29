"""Typed errors raised by the upstream client."""

from __future__ import annotations

from typing import Optional


class FetchError(Exception):
    """Base class for a failed page fetch."""

    outcome = "transient"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientFetchError(FetchError):
    """Network error, timeout or 5xx. Retried with backoff."""


class RateLimitedError(FetchError):
    """HTTP 429. Retried after ``retry_after`` seconds when the API sent one."""

    outcome = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class PermanentFetchError(FetchError):
    """Unknown account, invalid or revoked token, other 4xx. Polling stops."""

    outcome = "permanent"
