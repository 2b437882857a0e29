"""Metrics registry and snapshot store.

Holds the current AggregateState and PollStatus of every configured account
and renders them in the Prometheus text exposition format.

Writers replace whole immutable values under a short lock; ``render`` copies
the references under that same lock and formats outside of it, so scrapes
never observe a half-applied merge and never wait on a merge in progress.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Iterable, Iterator, Optional

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, InfoMetricFamily
from prometheus_client.registry import Collector

from traewelling_exporter import __version__
from traewelling_exporter.common.config import AccountConfig

from .models import AccountSnapshot, AggregateState, PollStatus, Snapshot

logger = logging.getLogger(__name__)

METRIC_PREFIX = "traewelling"


class UnknownAccountError(KeyError):
    """Update for an account that was not configured at startup."""


class MetricsRegistry:
    """Owned store of per-account aggregate state.

    Usage:
        registry = MetricsRegistry(settings.accounts)
        registry.record_update("alice", new_state)
        text = registry.render()
    """

    def __init__(self, accounts: Iterable[AccountConfig]):
        self._lock = threading.Lock()
        self._labels: Dict[str, str] = {}
        self._states: Dict[str, AggregateState] = {}
        self._statuses: Dict[str, PollStatus] = {}

        # Every configured account is visible from the first scrape on.
        for account in accounts:
            self._labels[account.account_id] = account.label
            self._states[account.account_id] = AggregateState(account_id=account.account_id)
            self._statuses[account.account_id] = PollStatus(account_id=account.account_id)

        self._collector_registry = CollectorRegistry(auto_describe=False)
        self._collector_registry.register(SnapshotCollector(self))

    @property
    def account_ids(self) -> list:
        return sorted(self._labels)

    def get_state(self, account_id: str) -> AggregateState:
        with self._lock:
            try:
                return self._states[account_id]
            except KeyError:
                raise UnknownAccountError(account_id)

    def get_status(self, account_id: str) -> PollStatus:
        with self._lock:
            try:
                return self._statuses[account_id]
            except KeyError:
                raise UnknownAccountError(account_id)

    def record_update(self, account_id: str, state: AggregateState) -> None:
        """Publish a new aggregate state for an account (called after each merge)."""
        with self._lock:
            if account_id not in self._states:
                raise UnknownAccountError(account_id)
            self._states[account_id] = state

    def record_status(self, account_id: str, status: PollStatus) -> None:
        with self._lock:
            if account_id not in self._statuses:
                raise UnknownAccountError(account_id)
            self._statuses[account_id] = status

    def snapshot(self) -> Snapshot:
        """Copy the current entry of every account."""
        with self._lock:
            accounts = {
                account_id: AccountSnapshot(
                    label=self._labels[account_id],
                    state=self._states[account_id],
                    status=self._statuses[account_id],
                )
                for account_id in self._labels
            }
        return Snapshot(taken_at=time.time(), accounts=accounts)

    def render(self) -> str:
        """Render the current state in the Prometheus text format."""
        return generate_latest(self._collector_registry).decode("utf-8")


class SnapshotCollector(Collector):
    """prometheus_client collector backed by a single registry snapshot."""

    def __init__(self, registry: MetricsRegistry):
        self._registry = registry

    def collect(self) -> Iterator:
        snapshot = self._registry.snapshot()
        entries = [snapshot.accounts[a] for a in sorted(snapshot.accounts)]
        yield from build_metric_families(entries)


def _counter(name: str, documentation: str, labels: list) -> CounterMetricFamily:
    return CounterMetricFamily(f"{METRIC_PREFIX}_{name}", documentation, labels=labels)


def _gauge(name: str, documentation: str, labels: list) -> GaugeMetricFamily:
    return GaugeMetricFamily(f"{METRIC_PREFIX}_{name}", documentation, labels=labels)


def _or_zero(value: Optional[float]) -> float:
    return 0.0 if value is None else float(value)


def build_metric_families(entries: list) -> list:
    """Build every metric family for the given account snapshots.

    Entries must already be in a stable order; label values inside each
    breakdown are emitted sorted so identical state renders identical text.
    """
    info = InfoMetricFamily(f"{METRIC_PREFIX}_exporter", "Exporter build information")
    info.add_metric([], {"version": __version__})

    checkins = _counter("checkins", "Check-ins merged", ["account"])
    distance = _counter("distance_meters", "Distance travelled in meters", ["account"])
    duration = _counter("duration_seconds", "Time travelled in seconds", ["account"])
    points = _counter("points", "Points earned", ["account"])
    by_category = _counter("checkins_by_category", "Check-ins per train category", ["account", "category"])
    by_line = _counter("checkins_by_line", "Check-ins per line", ["account", "line"])
    delayed = _counter("delayed_checkins", "Check-ins with a delayed stop", ["account", "kind"])
    cancelled = _counter("cancelled_checkins", "Check-ins on cancelled trips", ["account"])
    events = _counter("event_checkins", "Check-ins attached to an event", ["account"])
    invalid = _counter("invalid_records", "Upstream records skipped as malformed", ["account"])
    requests = _counter("requests", "HTTP requests sent to the Traewelling API", ["account", "outcome"])

    last_checkin = _gauge(
        "last_checkin_timestamp_seconds", "Creation time of the newest check-in", ["account"]
    )
    watermark = _gauge("checkin_watermark", "Highest check-in id merged", ["account"])
    errored = _gauge("account_errored", "1 when polling stopped on a permanent error", ["account"])
    last_success = _gauge(
        "last_successful_poll_timestamp_seconds", "Time of the last fully successful poll", ["account"]
    )
    backoff = _gauge("poll_backoff_seconds", "Delay before the next poll of this account", ["account"])

    for entry in entries:
        label = entry.label
        state = entry.state
        status = entry.status

        checkins.add_metric([label], state.checkins_total)
        distance.add_metric([label], state.distance_meters_total)
        duration.add_metric([label], state.duration_seconds_total)
        points.add_metric([label], state.points_total)
        for category in sorted(state.by_category):
            by_category.add_metric([label, category], state.by_category[category])
        for line in sorted(state.by_line):
            by_line.add_metric([label, line], state.by_line[line])
        delayed.add_metric([label, "arrival"], state.delayed_arrivals_total)
        delayed.add_metric([label, "departure"], state.delayed_departures_total)
        cancelled.add_metric([label], state.cancelled_total)
        events.add_metric([label], state.event_checkins_total)
        invalid.add_metric([label], state.invalid_records_total)
        for outcome in sorted(status.requests):
            requests.add_metric([label, outcome], status.requests[outcome])

        last_checkin.add_metric([label], _or_zero(state.last_checkin_timestamp))
        watermark.add_metric([label], state.highest_checkin_id)
        errored.add_metric([label], 1 if status.errored else 0)
        last_success.add_metric([label], _or_zero(status.last_success_timestamp))
        backoff.add_metric([label], status.next_delay_seconds)

    return [
        info,
        checkins,
        distance,
        duration,
        points,
        by_category,
        by_line,
        delayed,
        cancelled,
        events,
        invalid,
        requests,
        last_checkin,
        watermark,
        errored,
        last_success,
        backoff,
    ]
