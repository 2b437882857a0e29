"""Check-in aggregation: models, merge engine and metrics registry."""

from .models import (
    AccountSnapshot,
    AggregateState,
    CheckIn,
    MergeResult,
    PollStatus,
    Snapshot,
)
from .registry import MetricsRegistry, UnknownAccountError
from .merge import MergeEngine

__all__ = [
    "AccountSnapshot",
    "AggregateState",
    "CheckIn",
    "MergeResult",
    "PollStatus",
    "Snapshot",
    "MetricsRegistry",
    "UnknownAccountError",
    "MergeEngine",
]
