"""Poll scheduler: one independent polling loop per configured account.

Each cycle walks the account's statuses newest-first, merging every page
before fetching the next, until it catches up with already-merged check-ins,
runs out of pages, or hits the per-cycle page limit.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from traewelling_exporter.aggregation.merge import MergeEngine
from traewelling_exporter.aggregation.registry import MetricsRegistry
from traewelling_exporter.common.config import AccountConfig, Settings
from traewelling_exporter.traewelling.client import UpstreamClient
from traewelling_exporter.traewelling.errors import FetchError, PermanentFetchError, RateLimitedError

from .backoff import BackoffPolicy

logger = logging.getLogger(__name__)

# Cycle results
STATUS_OK = "ok"
STATUS_TRANSIENT = "transient"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_PERMANENT = "permanent"

# Why pagination stopped
STOP_CAUGHT_UP = "caught_up"
STOP_EXHAUSTED = "exhausted"
STOP_PAGE_LIMIT = "page_limit"
STOP_SHUTDOWN = "shutdown"
STOP_ERROR = "error"


@dataclass
class PollCursor:
    """Resume point of an account. ``None`` means start from the newest page."""

    resume_page: Optional[int] = None

    @property
    def start_page(self) -> int:
        return self.resume_page or 1


@dataclass(frozen=True)
class PollOutcome:
    account_id: str
    status: str
    pages_fetched: int
    merged: int
    stop_reason: str
    next_delay_seconds: float
    retry_after: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class PollScheduler:
    """Drives periodic fetch cycles for every configured account.

    Usage:
        scheduler = PollScheduler(settings, client, engine, registry)
        scheduler.start()
        ...
        scheduler.stop(timeout=10)
    """

    def __init__(
        self,
        settings: Settings,
        client: UpstreamClient,
        engine: MergeEngine,
        registry: MetricsRegistry,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self._settings = settings
        self._client = client
        self._engine = engine
        self._registry = registry
        self._backoff = backoff or BackoffPolicy(
            max_delay=settings.max_backoff_seconds,
            jitter=settings.backoff_jitter,
        )

        self._accounts: Dict[str, AccountConfig] = {a.account_id: a for a in settings.accounts}
        self._cursors: Dict[str, PollCursor] = {a: PollCursor() for a in self._accounts}
        self._cycle_locks: Dict[str, threading.Lock] = {a: threading.Lock() for a in self._accounts}
        self._halted: set = set()

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def halted_accounts(self) -> set:
        return set(self._halted)

    def cursor(self, account_id: str) -> PollCursor:
        return replace(self._cursors[account_id])

    # ------------------------------------------------------------------
    # Single cycle
    # ------------------------------------------------------------------

    def poll_once(self, account: AccountConfig) -> PollOutcome:
        """Run one fetch-and-merge cycle for an account."""
        with self._cycle_locks[account.account_id]:
            return self._poll_locked(account)

    def _poll_locked(self, account: AccountConfig) -> PollOutcome:
        account_id = account.account_id
        cursor = self._cursors[account_id]
        page = cursor.start_page
        pages_fetched = 0
        merged = 0
        max_pages = self._settings.max_pages_per_cycle

        while True:
            try:
                result_page = self._client.fetch_page(account, page)
            except FetchError as e:
                return self._finish_failed(account, e, pages_fetched, merged)

            pages_fetched += 1
            result = self._engine.merge(account_id, result_page.checkins)
            merged += result.merged

            if not result_page.checkins or result_page.next_cursor is None:
                stop_reason = STOP_EXHAUSTED
                cursor.resume_page = None
                break
            if result.caught_up:
                stop_reason = STOP_CAUGHT_UP
                cursor.resume_page = None
                break
            if pages_fetched >= max_pages:
                stop_reason = STOP_PAGE_LIMIT
                cursor.resume_page = result_page.next_cursor
                break
            if self._stop.is_set():
                stop_reason = STOP_SHUTDOWN
                cursor.resume_page = result_page.next_cursor
                break

            page = result_page.next_cursor

        return self._finish_ok(account, pages_fetched, merged, stop_reason)

    def _finish_ok(
        self, account: AccountConfig, pages_fetched: int, merged: int, stop_reason: str
    ) -> PollOutcome:
        account_id = account.account_id
        interval = self._settings.interval_for(account)
        status = self._registry.get_status(account_id)

        requests = dict(status.requests)
        requests["success"] = requests.get("success", 0) + pages_fetched

        self._registry.record_status(
            account_id,
            replace(
                status,
                requests=requests,
                consecutive_failures=0,
                next_delay_seconds=interval,
                last_success_timestamp=(
                    time.time() if stop_reason != STOP_SHUTDOWN else status.last_success_timestamp
                ),
            ),
        )

        logger.info(
            "POLL_OK account=%s pages=%d merged=%d stop=%s next_in=%.1fs",
            account_id, pages_fetched, merged, stop_reason, interval,
        )
        return PollOutcome(
            account_id=account_id,
            status=STATUS_OK,
            pages_fetched=pages_fetched,
            merged=merged,
            stop_reason=stop_reason,
            next_delay_seconds=interval,
        )

    def _finish_failed(
        self, account: AccountConfig, error: FetchError, pages_fetched: int, merged: int
    ) -> PollOutcome:
        account_id = account.account_id
        interval = self._settings.interval_for(account)
        status = self._registry.get_status(account_id)

        requests = dict(status.requests)
        requests["success"] = requests.get("success", 0) + pages_fetched
        requests[error.outcome] = requests.get(error.outcome, 0) + 1

        retry_after: Optional[float] = None

        if isinstance(error, PermanentFetchError):
            self._halted.add(account_id)
            self._registry.record_status(
                account_id,
                replace(
                    status,
                    requests=requests,
                    errored=True,
                    error_reason=str(error),
                    next_delay_seconds=0.0,
                ),
            )
            logger.error(
                "POLL_HALTED account=%s status_code=%s err=%s",
                account_id, error.status_code, error,
            )
            return PollOutcome(
                account_id=account_id,
                status=STATUS_PERMANENT,
                pages_fetched=pages_fetched,
                merged=merged,
                stop_reason=STOP_ERROR,
                next_delay_seconds=0.0,
                error=str(error),
            )

        failures = status.consecutive_failures + 1
        delay = self._backoff.calculate_delay(interval, failures)
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            retry_after = error.retry_after
            delay = retry_after

        self._registry.record_status(
            account_id,
            replace(
                status,
                requests=requests,
                consecutive_failures=failures,
                next_delay_seconds=delay,
            ),
        )

        logger.warning(
            "POLL_FAILED account=%s outcome=%s attempt=%d next_in=%.1fs err=%s",
            account_id, error.outcome, failures, delay, error,
        )
        return PollOutcome(
            account_id=account_id,
            status=STATUS_RATE_LIMITED if isinstance(error, RateLimitedError) else STATUS_TRANSIENT,
            pages_fetched=pages_fetched,
            merged=merged,
            stop_reason=STOP_ERROR,
            next_delay_seconds=delay,
            retry_after=retry_after,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def run_cycle(self) -> Dict[str, PollOutcome]:
        """Poll every active account once, in parallel."""
        accounts = [a for a in self._accounts.values() if a.account_id not in self._halted]
        if not accounts:
            return {}

        outcomes: Dict[str, PollOutcome] = {}
        with ThreadPoolExecutor(max_workers=len(accounts)) as pool:
            futures = {pool.submit(self.poll_once, a): a.account_id for a in accounts}
            for fut, account_id in futures.items():
                try:
                    outcomes[account_id] = fut.result()
                except Exception as e:
                    logger.exception("POLL_CRASHED account=%s", account_id)
                    outcomes[account_id] = PollOutcome(
                        account_id=account_id,
                        status=STATUS_TRANSIENT,
                        pages_fetched=0,
                        merged=0,
                        stop_reason=STOP_ERROR,
                        next_delay_seconds=self._settings.interval_for(self._accounts[account_id]),
                        error=str(e),
                    )
        return outcomes

    def start(self) -> None:
        """Start one polling thread per account."""
        if self._threads:
            raise RuntimeError("Scheduler already started")

        self._stop.clear()
        for account in self._accounts.values():
            thread = threading.Thread(
                target=self._run_account,
                args=(account,),
                name=f"poller-{account.account_id}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Poll scheduler started: accounts=%d", len(self._threads))

    def stop(self, timeout: float = 10.0) -> None:
        """Signal every loop to stop and wait for in-flight cycles to finish."""
        self._stop.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            remaining = max(0.0, deadline - time.monotonic())
            thread.join(remaining)
            if thread.is_alive():
                logger.warning("POLLER_STOP_TIMEOUT thread=%s", thread.name)
        self._threads = []
        logger.info("Poll scheduler stopped")

    def _run_account(self, account: AccountConfig) -> None:
        account_id = account.account_id
        interval = self._settings.interval_for(account)
        logger.info("POLLER_START account=%s interval=%.1fs", account_id, interval)
        crashes = 0

        while not self._stop.is_set():
            try:
                outcome = self.poll_once(account)
                crashes = 0
                delay = outcome.next_delay_seconds
                if outcome.status == STATUS_PERMANENT:
                    break
            except Exception:
                crashes += 1
                delay = self._backoff.calculate_delay(interval, crashes)
                logger.exception("POLL_CRASHED account=%s next_in=%.1fs", account_id, delay)

            if self._stop.wait(delay):
                break

        logger.info("POLLER_EXIT account=%s", account_id)
