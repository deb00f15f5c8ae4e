"""
Watermark tracking per aggregation bucket.

State machine per (tenant, event type, bucket):

    OPEN -> CLOSING -> CLOSED -> REOPENED -> CLOSED ...
                                    any -> FINALIZED (terminal)

OPEN becomes CLOSING once the bucket's end passes. CLOSING becomes CLOSED
after the grace period with no new arrivals. A late event in a CLOSED bucket
reopens it. FINALIZED is set by the invoice engine when the enclosing
billing period is finalized; later events are deferred to adjustments.
"""

import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from usage_ledger.config.loader import AggregationConfig
from usage_ledger.storage.billing_repository import InvoiceRepository
from usage_ledger.storage.db import get_connection, transaction
from usage_ledger.storage.models import (
    BucketState,
    InvoiceStatus,
    LateArrival,
    UsageEvent,
    Watermark,
)
from usage_ledger.storage.repository import SummaryRepository, WatermarkRepository

from .periods import bucket_bounds, ensure_utc, period_bounds, period_for, utc_now

logger = structlog.get_logger(__name__)

UNSTABLE_STATES = (BucketState.OPEN, BucketState.CLOSING, BucketState.REOPENED)


@dataclass(frozen=True)
class Observation:
    """What the tracker concluded about one accepted event."""
    outcome: LateArrival
    watermark: Optional[Watermark]


@dataclass(frozen=True)
class Transition:
    watermark: Watermark
    previous: BucketState


class WatermarkTracker:
    """Maintains bucket watermarks and decides when late data reopens a bucket."""

    def __init__(
        self,
        config: AggregationConfig,
        watermarks: WatermarkRepository,
        summaries: SummaryRepository,
        invoices: InvoiceRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.watermarks = watermarks
        self.summaries = summaries
        self.invoices = invoices
        self.clock = clock

    @property
    def grace(self) -> timedelta:
        return timedelta(seconds=self.config.grace_period_seconds)

    def observe(self, event: UsageEvent, conn: Optional[sqlite3.Connection] = None) -> Observation:
        """Record an accepted event against its bucket's watermark.

        With ``conn`` the update joins the caller's transaction, so storing an
        event and moving its watermark commit together and serialize against
        finalization.

        Returns:
            ON_TIME for open or closing buckets (and first sightings),
            REOPENED when the bucket had closed and must be recomputed now,
            DEFERRED when the billing period is already finalized
        """
        if conn is None:
            own = get_connection(self.watermarks.db_path)
            try:
                with transaction(own, immediate=True):
                    observation = self._observe(event, own)
            finally:
                own.close()
        else:
            observation = self._observe(event, conn)

        if observation.outcome == LateArrival.REOPENED:
            logger.info(
                "Late event reopened bucket",
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                bucket_start=observation.watermark.bucket_start.isoformat(),
                reopen_count=observation.watermark.reopen_count,
            )
        return observation

    def _observe(self, event: UsageEvent, conn: sqlite3.Connection) -> Observation:
        bucket_start, bucket_end = bucket_bounds(event.occurred_at, self.config.bucket_seconds)
        arrived = ensure_utc(event.received_at)
        invoice = self.invoices.get(event.tenant_id, period_for(bucket_start), conn=conn)
        current = self.watermarks.get(
            event.tenant_id, event.event_type, bucket_start, conn=conn
        )

        if invoice is not None and invoice.status != InvoiceStatus.DRAFT:
            return Observation(LateArrival.DEFERRED, current)
        if current is not None and current.state == BucketState.FINALIZED:
            return Observation(LateArrival.DEFERRED, current)

        if current is None:
            updated = Watermark(
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                bucket_start=bucket_start,
                bucket_end=bucket_end,
                state=BucketState.OPEN if arrived < bucket_end else BucketState.CLOSING,
                last_event_at=arrived,
            )
            outcome = LateArrival.ON_TIME
        elif current.state == BucketState.CLOSED:
            updated = replace(
                current,
                state=BucketState.REOPENED,
                last_event_at=max(current.last_event_at, arrived),
                reopen_count=current.reopen_count + 1,
            )
            outcome = LateArrival.REOPENED
        else:
            updated = replace(current, last_event_at=max(current.last_event_at, arrived))
            outcome = (
                LateArrival.REOPENED
                if current.state == BucketState.REOPENED
                else LateArrival.ON_TIME
            )
        self.watermarks.save(updated, conn=conn)
        return Observation(outcome, updated)

    def advance(self, now: Optional[datetime] = None) -> List[Transition]:
        """Apply time-driven transitions to every unstable bucket.

        A bucket only reaches CLOSED once its summary has been computed after
        its last arrival, so a closed bucket never hides unaggregated events.

        Returns:
            Transitions applied in this pass
        """
        now = ensure_utc(now or self.clock())
        transitions = []
        for watermark in self.watermarks.list_by_states(UNSTABLE_STATES):
            target = self._next_state(watermark, now)
            if target is None:
                continue
            applied = self._apply(watermark, target, now)
            if applied is not None:
                transitions.append(Transition(applied, watermark.state))
        for t in transitions:
            logger.info(
                "Watermark transition",
                tenant_id=t.watermark.tenant_id,
                event_type=t.watermark.event_type,
                bucket_start=t.watermark.bucket_start.isoformat(),
                previous=t.previous.value,
                state=t.watermark.state.value,
            )
        return transitions

    def period_watermarks(self, tenant_id: str, billing_period: str) -> List[Watermark]:
        start, end = period_bounds(billing_period)
        return self.watermarks.list_for_period(tenant_id, start, end)

    def unstable_buckets(self, tenant_id: str, billing_period: str) -> List[Watermark]:
        """Buckets of the period that would block finalization."""
        return [
            w for w in self.period_watermarks(tenant_id, billing_period)
            if w.state in UNSTABLE_STATES
        ]

    def _next_state(self, watermark: Watermark, now: datetime) -> Optional[BucketState]:
        state = watermark.state
        if state == BucketState.OPEN:
            if now < watermark.bucket_end:
                return None
            state = BucketState.CLOSING

        quiet_since = max(watermark.bucket_end, watermark.last_event_at)
        if state == BucketState.CLOSING and now - quiet_since < self.grace:
            return state if state != watermark.state else None

        if state in (BucketState.CLOSING, BucketState.REOPENED) and self._caught_up(watermark):
            return BucketState.CLOSED
        return state if state != watermark.state else None

    def _caught_up(self, watermark: Watermark) -> bool:
        summary = self.summaries.get(
            watermark.tenant_id, watermark.event_type, watermark.bucket_start
        )
        return summary is not None and summary.computed_at >= watermark.last_event_at

    def _apply(self, snapshot: Watermark, target: BucketState, now: datetime) -> Optional[Watermark]:
        """Compare-and-set: skip if an arrival changed the row since it was read."""
        conn = get_connection(self.watermarks.db_path)
        try:
            with transaction(conn, immediate=True):
                current = self.watermarks.get(
                    snapshot.tenant_id, snapshot.event_type, snapshot.bucket_start, conn=conn
                )
                if current != snapshot:
                    return None
                updated = replace(
                    current,
                    state=target,
                    closed_at=now if target == BucketState.CLOSED else current.closed_at,
                )
                self.watermarks.save(updated, conn=conn)
                return updated
        finally:
            conn.close()
