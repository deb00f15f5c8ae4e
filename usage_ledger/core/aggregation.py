"""
Bucket aggregation by recomputation.

A summary is always rebuilt from the immutable event store and written with
one replacing upsert. Nothing is ever added to a running total, so replays,
duplicates and late events cannot double-count.
"""

import itertools
import sqlite3
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import structlog
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from usage_ledger.config.loader import AggregationConfig
from usage_ledger.errors import OperationCancelled
from usage_ledger.storage.models import BucketState, UsageSummary, Watermark
from usage_ledger.storage.repository import (
    EventRepository,
    SummaryRepository,
    WatermarkRepository,
)

from .periods import bucket_start_for, ensure_utc, period_bounds, utc_now

logger = structlog.get_logger(__name__)

SummaryKey = Tuple[str, str, datetime]

_LOCK_STRIPES = 64
_RESULT_CACHE_SIZE = 4096


class AggregationEngine:
    """Recomputes per-tenant, per-event-type, per-bucket usage summaries.

    Concurrent requests for one key inside a process are deduplicated: a
    caller waiting on the key's lock reuses the result of any recompute that
    started after it asked. Across processes the compare-and-swap on
    ``computed_at`` keeps the freshest summary.
    """

    def __init__(
        self,
        config: AggregationConfig,
        events: EventRepository,
        summaries: SummaryRepository,
        watermarks: WatermarkRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.events = events
        self.summaries = summaries
        self.watermarks = watermarks
        self.clock = clock
        self._tickets = itertools.count(1)
        self._mutex = threading.Lock()
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self._recent: "OrderedDict[SummaryKey, Tuple[int, UsageSummary]]" = OrderedDict()

    def recompute(
        self,
        tenant_id: str,
        event_type: str,
        bucket_start: datetime,
        cancel: Optional[threading.Event] = None,
    ) -> UsageSummary:
        """Rebuild one bucket's summary from the event store.

        Args:
            tenant_id: Tenant owning the bucket
            event_type: Event type of the bucket
            bucket_start: Any moment inside the bucket; aligned automatically
            cancel: Optional token; when set the job stops before writing

        Returns:
            The summary now stored for the bucket

        Raises:
            OperationCancelled: If cancelled; the stored summary is untouched
            sqlite3.OperationalError: If storage stays unavailable after retries
        """
        bucket_start = bucket_start_for(bucket_start, self.config.bucket_seconds)
        key = (tenant_id, event_type, bucket_start)
        ticket = self._next_ticket()

        with self._stripes[hash(key) % _LOCK_STRIPES]:
            with self._mutex:
                recent = self._recent.get(key)
            if recent is not None and recent[0] > ticket:
                return recent[1]

            started = self._next_ticket()
            summary = self._with_retry(tenant_id, event_type, bucket_start, cancel)

            with self._mutex:
                self._recent[key] = (started, summary)
                self._recent.move_to_end(key)
                while len(self._recent) > _RESULT_CACHE_SIZE:
                    self._recent.popitem(last=False)
            return summary

    def recompute_due(self, now: Optional[datetime] = None) -> List[UsageSummary]:
        """Scheduled pass: recompute every unstable bucket that is due.

        A bucket is due when it has no summary, when events arrived after its
        last computation, or when its summary is older than the recompute
        interval while the bucket is still open. Failures are logged and left
        for the next pass; the previous summary stays in place.
        """
        now = ensure_utc(now or self.clock())
        interval = timedelta(seconds=self.config.recompute_interval_seconds)
        unstable = self.watermarks.list_by_states(
            [BucketState.OPEN, BucketState.CLOSING, BucketState.REOPENED]
        )

        results = []
        for watermark in unstable:
            current = self.summaries.get(
                watermark.tenant_id, watermark.event_type, watermark.bucket_start
            )
            if not _is_due(watermark, current, now, interval):
                continue
            try:
                results.append(self.recompute(
                    watermark.tenant_id, watermark.event_type, watermark.bucket_start
                ))
            except sqlite3.OperationalError:
                logger.exception(
                    "Scheduled recompute failed, keeping previous summary",
                    tenant_id=watermark.tenant_id,
                    event_type=watermark.event_type,
                    bucket_start=watermark.bucket_start.isoformat(),
                )
        return results

    def recompute_period(self, tenant_id: str, billing_period: str) -> List[UsageSummary]:
        """Recompute every tracked bucket of a tenant's billing period."""
        start, end = period_bounds(billing_period)
        return [
            self.recompute(w.tenant_id, w.event_type, w.bucket_start)
            for w in self.watermarks.list_for_period(tenant_id, start, end)
        ]

    def _next_ticket(self) -> int:
        with self._mutex:
            return next(self._tickets)

    def _with_retry(
        self,
        tenant_id: str,
        event_type: str,
        bucket_start: datetime,
        cancel: Optional[threading.Event],
    ) -> UsageSummary:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(multiplier=self.config.retry_backoff_seconds, max=30),
            retry=retry_if_exception_type(sqlite3.OperationalError),
            before_sleep=lambda state: logger.warning(
                "Recompute failed, retrying",
                tenant_id=tenant_id,
                event_type=event_type,
                bucket_start=bucket_start.isoformat(),
                attempt=state.attempt_number,
            ),
            reraise=True,
        )
        return retrying(self._recompute_once, tenant_id, event_type, bucket_start, cancel)

    def _recompute_once(
        self,
        tenant_id: str,
        event_type: str,
        bucket_start: datetime,
        cancel: Optional[threading.Event],
    ) -> UsageSummary:
        computed_at = ensure_utc(self.clock())
        bucket_end = bucket_start + timedelta(seconds=self.config.bucket_seconds)

        def check_cancelled() -> None:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(
                    "recompute",
                    tenant_id=tenant_id,
                    event_type=event_type,
                    bucket_start=bucket_start.isoformat(),
                )

        total_quantity = 0
        event_count = 0
        for event in self.events.events_in_range(tenant_id, event_type, bucket_start, bucket_end):
            check_cancelled()
            total_quantity += event.quantity
            event_count += 1
        check_cancelled()

        summary = UsageSummary(
            tenant_id=tenant_id,
            event_type=event_type,
            bucket_start=bucket_start,
            bucket_end=bucket_end,
            total_quantity=total_quantity,
            event_count=event_count,
            computed_at=computed_at,
        )
        if self.summaries.upsert(summary):
            logger.debug(
                "Summary recomputed",
                tenant_id=tenant_id,
                event_type=event_type,
                bucket_start=bucket_start.isoformat(),
                total_quantity=total_quantity,
                event_count=event_count,
            )
            return summary

        # A fresher summary landed while this one was being computed
        return self.summaries.get(tenant_id, event_type, bucket_start) or summary


def _is_due(
    watermark: Watermark,
    summary: Optional[UsageSummary],
    now: datetime,
    interval: timedelta,
) -> bool:
    if summary is None:
        return True
    if summary.computed_at < watermark.last_event_at:
        return True
    return watermark.state == BucketState.OPEN and now - summary.computed_at >= interval
