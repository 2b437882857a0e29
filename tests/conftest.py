"""Shared fixtures for exporter tests."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from traewelling_exporter.aggregation.merge import MergeEngine
from traewelling_exporter.aggregation.models import CheckIn
from traewelling_exporter.aggregation.registry import MetricsRegistry
from traewelling_exporter.common.config import AccountConfig, Settings
from traewelling_exporter.traewelling.client import Page, UpstreamClient

BASE_TIME = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def make_checkin(checkin_id, **overrides) -> CheckIn:
    """Check-in whose timestamp grows with its id."""
    fields = dict(
        id=checkin_id,
        created_at=BASE_TIME + timedelta(minutes=checkin_id if isinstance(checkin_id, int) else 0),
        trip=1000 + (checkin_id if isinstance(checkin_id, int) else 0),
        category="regional",
        line_name="RE 1",
        number="RE 4711",
        origin="Hannover Hbf",
        destination="Braunschweig Hbf",
        distance_meters=1000,
        duration_minutes=10,
        points=5,
        speed_kmh=60.0,
    )
    fields.update(overrides)
    return CheckIn(**fields)


def make_settings(accounts, **overrides) -> Settings:
    fields = dict(
        api_base_url="https://traewelling.test/api/v1",
        api_token=None,
        accounts=tuple(accounts),
        listen_host="127.0.0.1",
        listen_port=3000,
        poll_interval_seconds=1.0,
        max_pages_per_cycle=10,
        max_backoff_seconds=60.0,
        backoff_jitter=False,
        request_timeout_seconds=5.0,
        shutdown_timeout_seconds=5.0,
        log_level="INFO",
    )
    fields.update(overrides)
    return Settings(**fields)


class StubClient(UpstreamClient):
    """Upstream stub fed with scripted pages or exceptions per account."""

    def __init__(self):
        self._scripts: Dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()
        self.calls: List[tuple] = []

    def script(self, account_id: str, *responses) -> "StubClient":
        self._scripts[account_id].extend(responses)
        return self

    def calls_for(self, account_id: str) -> List[int]:
        return [cursor for acc, cursor in self.calls if acc == account_id]

    def fetch_page(self, account: AccountConfig, cursor: int) -> Page:
        with self._lock:
            self.calls.append((account.account_id, cursor))
            script = self._scripts[account.account_id]
            response = script.popleft() if script else Page(checkins=[], next_cursor=None)
        if isinstance(response, Exception):
            raise response
        return response


def page(ids, next_cursor=None) -> Page:
    return Page(checkins=[make_checkin(i) for i in ids], next_cursor=next_cursor)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def accounts() -> List[AccountConfig]:
    return [
        AccountConfig(account_id="alice", label="alice"),
        AccountConfig(account_id="bob", label="Bob"),
    ]


@pytest.fixture
def registry(accounts) -> MetricsRegistry:
    return MetricsRegistry(accounts)


@pytest.fixture
def engine(registry) -> MergeEngine:
    return MergeEngine(registry)


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient()
