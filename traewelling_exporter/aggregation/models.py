"""Data models for check-in aggregation.

All models are immutable: merges build a new AggregateState and publish it
with a single reference swap, so readers never see half-applied updates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class CheckIn:
    """A single Traewelling status (check-in)."""

    id: Any
    created_at: Optional[datetime]

    trip: Optional[int] = None
    category: str = "unknown"
    line_name: str = "unknown"
    number: str = ""
    origin: str = ""
    destination: str = ""

    distance_meters: float = 0
    duration_minutes: float = 0
    points: int = 0
    speed_kmh: float = 0.0

    # Flags
    arrival_delayed: bool = False
    departure_delayed: bool = False
    cancelled: bool = False
    event_name: Optional[str] = None

    # Set by the client when the raw record could not be decoded
    parse_error: Optional[str] = None

    def validation_error(self) -> Optional[str]:
        """Return why this record cannot be merged, or None if it is valid."""
        if self.parse_error:
            return self.parse_error
        if self.trackable_id is None:
            return f"invalid id {self.id!r}"
        if self.created_at is None:
            return "missing timestamp"
        if self.distance_meters < 0:
            return f"negative distance {self.distance_meters}"
        if self.duration_minutes < 0:
            return f"negative duration {self.duration_minutes}"
        if self.points < 0:
            return f"negative points {self.points}"
        return None

    @property
    def trackable_id(self) -> Optional[int]:
        """The status id if it can identify the record, even when malformed."""
        if isinstance(self.id, bool) or not isinstance(self.id, int) or self.id <= 0:
            return None
        return self.id

    @classmethod
    def malformed(cls, raw_id: Any, reason: str) -> "CheckIn":
        return cls(id=raw_id, created_at=None, parse_error=reason)


@dataclass(frozen=True)
class AggregateState:
    """Folded view of every check-in merged so far for one account."""

    account_id: str

    # Counters (never decrease)
    checkins_total: int = 0
    distance_meters_total: float = 0
    duration_seconds_total: float = 0
    points_total: int = 0
    delayed_arrivals_total: int = 0
    delayed_departures_total: int = 0
    cancelled_total: int = 0
    event_checkins_total: int = 0
    invalid_records_total: int = 0
    by_category: Mapping[str, int] = field(default_factory=dict)
    by_line: Mapping[str, int] = field(default_factory=dict)

    # Watermark
    highest_checkin_id: int = 0

    # Gauges (overwritten by newer records)
    last_checkin_id: Optional[int] = None
    last_checkin_timestamp: Optional[float] = None
    last_line: Optional[str] = None
    last_category: Optional[str] = None


@dataclass(frozen=True)
class MergeResult:
    account_id: str
    merged: int
    duplicates: int
    invalid: int
    watermark: int

    @property
    def received(self) -> int:
        return self.merged + self.duplicates + self.invalid

    @property
    def caught_up(self) -> bool:
        """True when the batch held already-merged records and nothing new."""
        return self.merged == 0 and self.duplicates > 0


@dataclass(frozen=True)
class PollStatus:
    """Scheduler-side health of one account."""

    account_id: str
    errored: bool = False
    error_reason: Optional[str] = None
    consecutive_failures: int = 0
    next_delay_seconds: float = 0.0
    last_success_timestamp: Optional[float] = None
    requests: Mapping[str, int] = field(
        default_factory=lambda: {
            "success": 0,
            "transient": 0,
            "rate_limited": 0,
            "permanent": 0,
        }
    )


@dataclass(frozen=True)
class AccountSnapshot:
    label: str
    state: AggregateState
    status: PollStatus


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time copy of every account entry, keyed by account id."""

    taken_at: float
    accounts: Dict[str, AccountSnapshot]

    def get(self, account_id: str) -> Optional[AccountSnapshot]:
        return self.accounts.get(account_id)
