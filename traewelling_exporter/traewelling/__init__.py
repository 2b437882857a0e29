"""Traewelling API client."""

from .client import Page, TraewellingClient, UpstreamClient, parse_retry_after
from .errors import FetchError, PermanentFetchError, RateLimitedError, TransientFetchError

__all__ = [
    "Page",
    "TraewellingClient",
    "UpstreamClient",
    "parse_retry_after",
    "FetchError",
    "PermanentFetchError",
    "RateLimitedError",
    "TransientFetchError",
]
