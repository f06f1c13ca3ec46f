"""
Cost aggregation.

A timer-driven cycle that polls the billing API for the window since the
last checkpoint and merges the result into the cost ledger.

Cycle states:
    IDLE -> FETCHING -> MERGING -> IDLE
    FETCHING -> FAILED -> (backoff) -> FETCHING

Guarantees:
1. Cycles never overlap - a trigger that arrives mid-cycle is skipped
2. The checkpoint only advances after the whole window has been merged
3. Merging is keyed, so re-fetching a window after a crash is harmless
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from ..config.loader import AggregationConfig
from ..storage.models import AggregationCheckpoint, CostSample, Credential, utc_now
from ..storage.repository import StateRepository
from .errors import BillingError, BillingNotConfigured, RefreshTooSoon, RemoteRejected
from .ledger import CostLedger
from .pool import CredentialPool

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class AggregatorState(Enum):
    """Where the aggregation cycle currently is."""
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    FAILED = "failed"


class CycleOutcome(Enum):
    """How a single cycle ended."""
    COMPLETED = "completed"
    SKIPPED = "skipped"      # Another cycle running, or billing not configured
    ABORTED = "aborted"      # Retry budget exhausted or request rejected
    CANCELLED = "cancelled"  # Shutdown while in flight


@dataclass(frozen=True)
class CycleResult:
    """Summary of one aggregation cycle."""
    outcome: CycleOutcome
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    pages: int = 0
    rows_fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    unattributed: int = 0
    message: str = ""


@dataclass(frozen=True)
class AggregationStatus:
    """Aggregator state as shown to operators.

    ``stale`` is set when the latest cycle gave up after its retry budget,
    and cleared by the next successful cycle.
    """
    state: AggregatorState
    checkpoint: Optional[datetime]
    last_success_at: Optional[datetime]
    last_error: Optional[str]
    consecutive_failures: int
    stale: bool


class CycleCancelled(Exception):
    """Raised inside a cycle when shutdown was requested."""


def billing_targets(credentials: Iterable[Credential]) -> Dict[str, str]:
    """Map every identifier a cost row may carry to the credential value.

    A workspace shared by several keys is left out: its rows cannot be
    split between them.
    """
    credentials = list(credentials)
    shared = Counter(c.workspace_id for c in credentials if c.workspace_id)
    targets: Dict[str, str] = {}
    for credential in credentials:
        for identifier in credential.billing_ids:
            if identifier == credential.workspace_id and shared[identifier] > 1:
                continue
            targets[identifier] = credential.value
    return targets


def floor_to_bucket(moment: datetime, bucket: timedelta) -> datetime:
    """Round ``moment`` down to the start of its report bucket (UTC aligned)."""
    moment = moment.astimezone(timezone.utc)
    return _EPOCH + ((moment - _EPOCH) // bucket) * bucket


class CostAggregator:
    """Polls billing for Active and Retired credentials and merges the costs."""

    def __init__(
        self,
        pool: CredentialPool,
        ledger: CostLedger,
        client_provider: Callable,
        config: Optional[AggregationConfig] = None,
        repository: Optional[StateRepository] = None,
        clock: Callable = utc_now,
        after_cycle: Optional[Callable[[CycleResult], None]] = None,
    ):
        """Create the aggregator.

        Args:
            pool: Source of the credentials to attribute costs to
            ledger: Destination of merged cost samples
            client_provider: Returns the billing client; raises BillingNotConfigured
                when no admin secret is set
            config: Cadence, retry and window settings
            repository: Where the checkpoint is persisted
            clock: Returns the current aware datetime
            after_cycle: Called with the result of every cycle that ran
        """
        self.config = config or AggregationConfig()
        self._pool = pool
        self._ledger = ledger
        self._client_provider = client_provider
        self._repository = repository
        self._clock = clock
        self._after_cycle = after_cycle

        self._cycle_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._stop = threading.Event()

        self._checkpoint = AggregationCheckpoint()
        self._state = AggregatorState.IDLE
        self._last_success_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._consecutive_failures = 0
        self._stale = False

    def load(self, checkpoint: AggregationCheckpoint) -> None:
        with self._status_lock:
            self._checkpoint = checkpoint

    @property
    def checkpoint(self) -> AggregationCheckpoint:
        with self._status_lock:
            return self._checkpoint

    def status(self) -> AggregationStatus:
        with self._status_lock:
            return AggregationStatus(
                state=self._state,
                checkpoint=self._checkpoint.last_successful_bucket_end,
                last_success_at=self._last_success_at,
                last_error=self._last_error,
                consecutive_failures=self._consecutive_failures,
                stale=self._stale,
            )

    def stop(self) -> None:
        """Abandon any in-flight cycle at its next suspension point."""
        self._stop.set()

    def resume(self) -> None:
        """Allow cycles to run again after :meth:`stop`."""
        self._stop.clear()

    def reset_history(self) -> None:
        """Clear the cost ledger and the checkpoint, waiting out a running cycle."""
        with self._cycle_lock:
            self._ledger.clear()
            with self._status_lock:
                self._checkpoint = AggregationCheckpoint()
                self._stale = False

    def run_manual_cycle(self) -> CycleResult:
        """Run a cycle on operator request.

        Raises:
            RefreshTooSoon: If the last success is within the configured minimum interval
        """
        min_interval = self.config.min_manual_interval_seconds
        last = self.status().last_success_at
        if min_interval > 0 and last is not None:
            if self._clock() - last < timedelta(seconds=min_interval):
                raise RefreshTooSoon(last)
        return self.run_cycle(trigger="manual")

    def run_cycle(self, trigger: str = "scheduled") -> CycleResult:
        """Run one fetch-and-merge cycle unless one is already in progress."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Skipping %s cost aggregation: previous cycle still running", trigger)
            return CycleResult(CycleOutcome.SKIPPED, message="Aggregation already in progress")

        try:
            result = self._run_locked(trigger)
        finally:
            self._set_state(AggregatorState.IDLE)
            self._cycle_lock.release()

        if self._after_cycle is not None and result.outcome != CycleOutcome.SKIPPED:
            try:
                self._after_cycle(result)
            except Exception:
                logger.exception("Post-aggregation hook failed")
        return result

    def _run_locked(self, trigger: str) -> CycleResult:
        try:
            client = self._client_provider()
        except BillingNotConfigured as exc:
            logger.info("Skipping %s cost aggregation: %s", trigger, exc)
            return CycleResult(CycleOutcome.SKIPPED, message=str(exc))

        bucket = self.config.bucket
        window_end = floor_to_bucket(self._clock(), bucket)
        window_start = self.checkpoint.last_successful_bucket_end
        if window_start is None:
            window_start = window_end - timedelta(days=self.config.lookback_days)

        if window_start >= window_end:
            logger.debug("No complete report bucket since %s", window_start.isoformat())
            self._record_success()
            return CycleResult(CycleOutcome.COMPLETED, window_start, window_end)

        # Billing id -> credential value, snapshotted once for the cycle.
        targets = billing_targets(self._pool.queryable())

        try:
            self._set_state(AggregatorState.FETCHING)
            rows, pages = self._fetch_window(client, window_start, window_end)

            self._set_state(AggregatorState.MERGING)
            samples, unattributed = self._to_samples(rows, targets)
            if self._stop.is_set():
                raise CycleCancelled()
            inserted, duplicates = self._ledger.merge(samples)
            self._advance_checkpoint(window_end)
        except CycleCancelled:
            logger.warning("Cost aggregation cancelled; checkpoint left at %s", window_start.isoformat())
            return CycleResult(
                CycleOutcome.CANCELLED, window_start, window_end, message="Cancelled by shutdown"
            )
        except BillingError as exc:
            self._record_failure(str(exc))
            logger.warning(
                "Cost aggregation for %s -> %s aborted: %s",
                window_start.isoformat(),
                window_end.isoformat(),
                exc,
            )
            return CycleResult(CycleOutcome.ABORTED, window_start, window_end, message=str(exc))

        self._record_success()
        logger.info(
            "Cost aggregation (%s) merged %d new samples, %d duplicates, %d unattributed; "
            "checkpoint now %s",
            trigger,
            inserted,
            duplicates,
            unattributed,
            window_end.isoformat(),
        )
        return CycleResult(
            CycleOutcome.COMPLETED,
            window_start,
            window_end,
            pages=pages,
            rows_fetched=len(rows),
            inserted=inserted,
            duplicates=duplicates,
            unattributed=unattributed,
            message=f"Costs refreshed successfully. Added {inserted} cost records",
        )

    def _fetch_window(self, client, start: datetime, end: datetime):
        """Follow the pagination cursor until the window is exhausted."""
        rows: List = []
        pages = 0
        cursor: Optional[str] = None
        while True:
            page = self._call_with_retry(
                lambda: client.fetch_cost_report(
                    starting_at=start,
                    ending_at=end,
                    bucket_width=self.config.bucket_width,
                    page=cursor,
                )
            )
            pages += 1
            rows.extend(page.rows)
            if not page.has_more or not page.next_page:
                return rows, pages
            cursor = page.next_page

    def _call_with_retry(self, call: Callable):
        attempt = 0
        while True:
            if self._stop.is_set():
                raise CycleCancelled()
            attempt += 1
            try:
                result = call()
                self._set_state(AggregatorState.FETCHING)
                return result
            except RemoteRejected:
                raise
            except BillingError as exc:
                self._set_state(AggregatorState.FAILED)
                if attempt >= self.config.max_attempts:
                    raise
                delay = min(
                    self.config.backoff_base_seconds * (2 ** (attempt - 1)),
                    self.config.backoff_max_seconds,
                )
                logger.warning(
                    "Cost report request failed (attempt %d/%d): %s; retrying in %.1fs",
                    attempt,
                    self.config.max_attempts,
                    exc,
                    delay,
                )
                if self._stop.wait(delay):
                    raise CycleCancelled()
                self._set_state(AggregatorState.FETCHING)

    @staticmethod
    def _to_samples(rows, targets: Dict[str, str]):
        samples: List[CostSample] = []
        unattributed = 0
        for row in rows:
            if row.amount == 0:
                continue
            value = targets.get(row.credential_id) if row.credential_id else None
            if value is None:
                unattributed += 1
                logger.debug("Unattributed cost row for %s: %s", row.credential_id, row.description)
                continue
            samples.append(CostSample(
                credential=value,
                bucket_start=row.starting_at,
                bucket_end=row.ending_at,
                amount=row.amount,
                currency=row.currency,
                description=row.description,
            ))
        return samples, unattributed

    def _advance_checkpoint(self, window_end: datetime) -> None:
        checkpoint = AggregationCheckpoint(last_successful_bucket_end=window_end)
        if self._repository is not None:
            self._repository.save_checkpoint(checkpoint)
        with self._status_lock:
            self._checkpoint = checkpoint

    def _set_state(self, state: AggregatorState) -> None:
        with self._status_lock:
            self._state = state

    def _record_success(self) -> None:
        with self._status_lock:
            self._last_success_at = self._clock()
            self._last_error = None
            self._consecutive_failures = 0
            self._stale = False

    def _record_failure(self, message: str) -> None:
        with self._status_lock:
            self._last_error = message
            self._consecutive_failures += 1
            self._stale = True
