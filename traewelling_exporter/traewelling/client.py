"""HTTP client for the Traewelling API.

Only the capability the poller needs is implemented: fetch one page of an
account's statuses, newest first.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from traewelling_exporter import __version__
from traewelling_exporter.aggregation.models import CheckIn
from traewelling_exporter.common.config import DEFAULT_API_BASE_URL, AccountConfig

from .errors import PermanentFetchError, RateLimitedError, TransientFetchError
from .models import StatusPage, parse_status

logger = logging.getLogger(__name__)

USER_AGENT = f"traewelling-exporter/{__version__}"


@dataclass(frozen=True)
class Page:
    checkins: List[CheckIn]
    next_cursor: Optional[int]


class UpstreamClient(ABC):
    """Source of check-in pages for one account."""

    @abstractmethod
    def fetch_page(self, account: AccountConfig, cursor: int) -> Page:
        """Fetch page ``cursor`` (1 = newest) of an account's check-ins.

        Raises:
            TransientFetchError: timeouts, transport errors, 5xx
            RateLimitedError: the API answered 429
            PermanentFetchError: unknown account, bad credentials, other 4xx
        """

    def close(self) -> None:
        pass


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class TraewellingClient(UpstreamClient):
    """Blocking Traewelling client; one instance is shared by all poll threads."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        default_token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._default_token = default_token
        self._client = httpx.Client(
            timeout=timeout_seconds,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def fetch_page(self, account: AccountConfig, cursor: int) -> Page:
        url = f"{self._base_url}/user/{quote(account.account_id, safe='')}/statuses"
        headers = {}
        token = account.token or self._default_token
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self._client.get(url, params={"page": cursor}, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"timeout fetching page {cursor}: {e}")
        except httpx.TransportError as e:
            raise TransientFetchError(f"transport error fetching page {cursor}: {e}")
        except httpx.HTTPError as e:
            # Decoding errors, redirect loops and the like
            raise TransientFetchError(f"request failed for page {cursor}: {e}")

        self._raise_for_status(response, cursor)

        try:
            page = StatusPage.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransientFetchError(f"undecodable response for page {cursor}: {e}")

        checkins = [parse_status(raw) for raw in page.data]
        next_cursor = cursor + 1 if page.links.next and checkins else None

        logger.debug(
            "FETCH account=%s page=%d records=%d has_next=%s",
            account.account_id, cursor, len(checkins), next_cursor is not None,
        )
        return Page(checkins=checkins, next_cursor=next_cursor)

    def _raise_for_status(self, response: httpx.Response, cursor: int) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"HTTP {status} for page {cursor}: {response.text[:200]}"
        if status == 429:
            raise RateLimitedError(
                message, retry_after=parse_retry_after(response.headers.get("Retry-After"))
            )
        if status >= 500 or status == 408:
            raise TransientFetchError(message, status_code=status)
        raise PermanentFetchError(message, status_code=status)
