"""Deduplication and merge engine.

Folds fetched check-ins into the per-account AggregateState held by the
registry. Identity is the upstream status id: a record that was already
merged is skipped, so merging the same batch twice is a no-op.

Merges for one account are serialized by a per-account lock; merges for
different accounts run concurrently without contention.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, Set

from .models import AggregateState, CheckIn, MergeResult
from .registry import MetricsRegistry

logger = logging.getLogger(__name__)


class MergeEngine:
    """Deduplicating merge of check-ins into the registry.

    Batch order policy: batches are expected newest-first but any order is
    tolerated. The watermark only ever moves up and gauges only move to a
    strictly newer check-in, so an unsorted batch cannot regress either.
    """

    def __init__(self, registry: MetricsRegistry):
        self._registry = registry
        self._locks: Dict[str, threading.Lock] = {}
        self._seen: Dict[str, Set[int]] = {}
        # Ids of malformed records already counted as invalid
        self._rejected: Dict[str, Set[int]] = {}
        for account_id in registry.account_ids:
            self._locks[account_id] = threading.Lock()
            self._seen[account_id] = set()
            self._rejected[account_id] = set()

    def is_known(self, account_id: str, checkin_id: int) -> bool:
        with self._locks[account_id]:
            return checkin_id in self._seen[account_id]

    def merge(self, account_id: str, checkins: Iterable[CheckIn]) -> MergeResult:
        """Merge a batch of check-ins for one account.

        Args:
            account_id: Configured account the batch belongs to
            checkins: Fetched records, newest-first

        Returns:
            MergeResult with the number of new, duplicate and invalid records
            and the resulting watermark
        """
        lock = self._locks.get(account_id)
        if lock is None:
            raise KeyError(f"Unknown account: {account_id}")

        with lock:
            seen = self._seen[account_id]
            rejected = self._rejected[account_id]
            current = self._registry.get_state(account_id)
            builder = _StateBuilder(current)
            new_ids: Set[int] = set()
            new_rejected: Set[int] = set()
            duplicates = 0
            invalid = 0

            for checkin in checkins:
                problem = checkin.validation_error()
                if problem is not None:
                    # A malformed record with a usable id is counted once, not
                    # on every re-fetch of its page.
                    key = checkin.trackable_id
                    if key is not None and (
                        key in seen or key in new_ids or key in rejected or key in new_rejected
                    ):
                        duplicates += 1
                        continue
                    if key is not None:
                        new_rejected.add(key)
                    invalid += 1
                    logger.warning(
                        "INVALID_CHECKIN account=%s id=%r reason=%s",
                        account_id, checkin.id, problem,
                    )
                    continue

                if checkin.id in seen or checkin.id in new_ids or checkin.id in new_rejected:
                    duplicates += 1
                    continue

                builder.add(checkin)
                new_ids.add(checkin.id)

            builder.invalid += invalid
            state = builder.build()

            # Publish first; the seen set must never get ahead of the state.
            if state != current:
                self._registry.record_update(account_id, state)
            seen.update(new_ids)
            rejected.update(new_rejected)

        result = MergeResult(
            account_id=account_id,
            merged=len(new_ids),
            duplicates=duplicates,
            invalid=invalid,
            watermark=state.highest_checkin_id,
        )
        logger.debug(
            "MERGE account=%s merged=%d duplicates=%d invalid=%d watermark=%d",
            account_id, result.merged, duplicates, invalid, result.watermark,
        )
        return result


class _StateBuilder:
    """Accumulates a batch on top of an existing state without touching it."""

    def __init__(self, base: AggregateState):
        self._base = base
        self.checkins = 0
        self.distance = 0.0
        self.duration_seconds = 0.0
        self.points = 0
        self.delayed_arrivals = 0
        self.delayed_departures = 0
        self.cancelled = 0
        self.events = 0
        self.invalid = 0
        self.by_category: Dict[str, int] = dict(base.by_category)
        self.by_line: Dict[str, int] = dict(base.by_line)
        self.highest_id = base.highest_checkin_id
        self.newest = None

    def add(self, checkin: CheckIn) -> None:
        self.checkins += 1
        self.distance += checkin.distance_meters
        self.duration_seconds += checkin.duration_minutes * 60
        self.points += checkin.points
        if checkin.arrival_delayed:
            self.delayed_arrivals += 1
        if checkin.departure_delayed:
            self.delayed_departures += 1
        if checkin.cancelled:
            self.cancelled += 1
        if checkin.event_name:
            self.events += 1

        self.by_category[checkin.category] = self.by_category.get(checkin.category, 0) + 1
        self.by_line[checkin.line_name] = self.by_line.get(checkin.line_name, 0) + 1

        self.highest_id = max(self.highest_id, checkin.id)

        if self.newest is None or _is_newer(checkin, self.newest):
            self.newest = checkin

    def build(self) -> AggregateState:
        base = self._base
        if self.checkins == 0 and self.invalid == 0:
            return base

        state = replace(
            base,
            checkins_total=base.checkins_total + self.checkins,
            distance_meters_total=base.distance_meters_total + self.distance,
            duration_seconds_total=base.duration_seconds_total + self.duration_seconds,
            points_total=base.points_total + self.points,
            delayed_arrivals_total=base.delayed_arrivals_total + self.delayed_arrivals,
            delayed_departures_total=base.delayed_departures_total + self.delayed_departures,
            cancelled_total=base.cancelled_total + self.cancelled,
            event_checkins_total=base.event_checkins_total + self.events,
            invalid_records_total=base.invalid_records_total + self.invalid,
            by_category=self.by_category,
            by_line=self.by_line,
            highest_checkin_id=self.highest_id,
        )

        newest = self.newest
        if newest is not None:
            ts = newest.created_at.timestamp()
            if state.last_checkin_timestamp is None or ts > state.last_checkin_timestamp:
                state = replace(
                    state,
                    last_checkin_id=newest.id,
                    last_checkin_timestamp=ts,
                    last_line=newest.line_name,
                    last_category=newest.category,
                )
        return state


def _is_newer(candidate: CheckIn, current: CheckIn) -> bool:
    if candidate.created_at != current.created_at:
        return candidate.created_at > current.created_at
    return candidate.id > current.id
