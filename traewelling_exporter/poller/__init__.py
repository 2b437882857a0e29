"""Poll scheduling and process entry point."""

from .backoff import BackoffPolicy
from .scheduler import PollCursor, PollOutcome, PollScheduler

__all__ = [
    "BackoffPolicy",
    "PollCursor",
    "PollOutcome",
    "PollScheduler",
]
