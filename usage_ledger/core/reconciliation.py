"""
Reconciliation between the event store, its downstream copies and the
derived summaries.

Reconciliation is a read-only observer. It measures drift, records every run
and raises alerts; it never repairs data. Repairs (backfill, forced
recompute) are explicit operator actions anchored on the event store.
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from usage_ledger.config.loader import PipelineConfig
from usage_ledger.errors import OperationCancelled, ReconciliationDriftError
from usage_ledger.storage.billing_repository import ReconciliationRepository
from usage_ledger.storage.copies import DownstreamCopy
from usage_ledger.storage.models import (
    Comparison,
    ReconciliationKind,
    ReconciliationResult,
    ReconciliationStatus,
)
from usage_ledger.storage.repository import EventRepository, KeyTotals, SummaryRepository

from .alerts import Alert, AlertSeverity, AlertSink
from .periods import ensure_utc, period_bounds, period_for, utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationScope:
    """What to compare: a kind, a time window and optionally one tenant/event type."""
    kind: ReconciliationKind
    start: datetime
    end: datetime
    tenant_id: Optional[str] = None
    event_type: Optional[str] = None

    @classmethod
    def for_period(
        cls,
        tenant_id: str,
        billing_period: str,
        kind: ReconciliationKind = ReconciliationKind.FULL,
    ) -> "ReconciliationScope":
        start, end = period_bounds(billing_period)
        return cls(kind=kind, start=start, end=end, tenant_id=tenant_id)


class ReconciliationService:
    """Compares independently derived copies of usage data.

    Checks by kind:
    - COUNT: event counts per tenant/event type, store vs every copy
    - SUM: quantity sums per tenant/event type, store vs every copy
    - FULL: COUNT and SUM, plus raw events vs stored summaries per bucket

    A comparison drifts when ``|expected - observed|`` exceeds
    ``tolerance_ratio * max(expected, observed)``.
    """

    def __init__(
        self,
        config: PipelineConfig,
        events: EventRepository,
        summaries: SummaryRepository,
        runs: ReconciliationRepository,
        copies: Optional[List[DownstreamCopy]] = None,
        alerts: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.events = events
        self.summaries = summaries
        self.runs = runs
        self.copies: List[DownstreamCopy] = list(copies or [])
        self.alerts = alerts or AlertSink()
        self.clock = clock

    def reconcile(
        self,
        scope: ReconciliationScope,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        """Run one reconciliation and record it.

        Args:
            scope: Kind, window and optional tenant/event type filter
            cancel: Optional token; a cancelled run records nothing

        Returns:
            MATCH, or DRIFT with the signed delta of the drifting comparisons
            (event counts for COUNT runs, quantities otherwise)

        Raises:
            OperationCancelled: If cancelled before the run was recorded
        """
        start, end = ensure_utc(scope.start), ensure_utc(scope.end)

        def check_cancelled() -> None:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("reconcile", kind=scope.kind.value, tenant_id=scope.tenant_id)

        store = self.events.totals_by_key(start, end, scope.tenant_id, scope.event_type)
        details: List[Comparison] = []

        for copy in self.copies:
            check_cancelled()
            observed = copy.totals_by_key(start, end, scope.tenant_id, scope.event_type)
            if scope.kind in (ReconciliationKind.COUNT, ReconciliationKind.FULL):
                details.extend(self._compare_totals(copy.name, "count", store, observed))
            if scope.kind in (ReconciliationKind.SUM, ReconciliationKind.FULL):
                details.extend(self._compare_totals(copy.name, "quantity", store, observed))

        if scope.kind == ReconciliationKind.FULL:
            tenants = [scope.tenant_id] if scope.tenant_id else sorted({t for t, _ in store})
            for tenant_id in tenants:
                check_cancelled()
                details.extend(self._compare_summaries(tenant_id, start, end, scope.event_type))

        check_cancelled()
        metric = "count" if scope.kind == ReconciliationKind.COUNT else "quantity"
        drifting = [c for c in details if not c.within_tolerance]
        result = ReconciliationResult(
            run_id=str(uuid.uuid4()),
            kind=scope.kind,
            status=ReconciliationStatus.DRIFT if drifting else ReconciliationStatus.MATCH,
            delta=sum(c.delta for c in drifting if c.metric == metric),
            tenant_id=scope.tenant_id,
            period_start=start,
            period_end=end,
            completed_at=ensure_utc(self.clock()),
            details=details,
        )
        self.runs.record(result)

        if drifting:
            self.alerts.emit(Alert(
                kind="reconciliation_drift",
                severity=(
                    AlertSeverity.CRITICAL
                    if scope.kind == ReconciliationKind.FULL
                    else AlertSeverity.WARNING
                ),
                message=f"{scope.kind.value} reconciliation drift",
                context={
                    "run_id": result.run_id,
                    "tenant_id": scope.tenant_id,
                    "delta": result.delta,
                    "checks": [c.check for c in drifting],
                },
            ))
        else:
            logger.info(
                "Reconciliation matched",
                run_id=result.run_id,
                kind=scope.kind.value,
                tenant_id=scope.tenant_id,
                comparisons=len(details),
            )
        return result

    def run_due(self, now: Optional[datetime] = None) -> List[ReconciliationResult]:
        """Run the pipeline-wide COUNT and SUM checks whose cadence has elapsed.

        Both cover the previous and the current billing period, where late
        events can still land.
        """
        now = ensure_utc(now or self.clock())
        current_start, current_end = period_bounds(period_for(now))
        previous_start, _ = period_bounds(period_for(current_start - timedelta(seconds=1)))

        cadences = (
            (ReconciliationKind.COUNT, self.config.reconciliation.count_interval_seconds),
            (ReconciliationKind.SUM, self.config.reconciliation.sum_interval_seconds),
        )
        results = []
        for kind, interval in cadences:
            last = self.runs.latest(kind, tenant_id=None)
            if last is not None and now - last.completed_at < timedelta(seconds=interval):
                continue
            results.append(self.reconcile(
                ReconciliationScope(kind=kind, start=previous_start, end=current_end)
            ))
        return results

    def latest_full(self, tenant_id: str, billing_period: str) -> Optional[ReconciliationResult]:
        start, _ = period_bounds(billing_period)
        return self.runs.latest(ReconciliationKind.FULL, tenant_id=tenant_id, period_start=start)

    def require_match(
        self,
        tenant_id: str,
        billing_period: str,
        not_before: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """Return the period's latest FULL run if it matched.

        Args:
            not_before: Reject runs completed before this moment (stale runs)

        Raises:
            ReconciliationDriftError: If no usable matching run exists
        """
        latest = self.latest_full(tenant_id, billing_period)
        if latest is None:
            raise ReconciliationDriftError(
                f"No full reconciliation recorded for {tenant_id} {billing_period}"
            )
        if latest.status != ReconciliationStatus.MATCH:
            raise ReconciliationDriftError(
                f"Latest full reconciliation for {tenant_id} {billing_period} drifted",
                run_id=latest.run_id,
                delta=latest.delta,
            )
        if not_before is not None and latest.completed_at < not_before:
            raise ReconciliationDriftError(
                f"Full reconciliation for {tenant_id} {billing_period} predates the last event",
                run_id=latest.run_id,
            )
        return latest

    def _within_tolerance(self, expected: int, observed: int) -> bool:
        allowed = self.config.reconciliation.tolerance_ratio * max(expected, observed)
        return abs(expected - observed) <= allowed

    def _compare_totals(
        self,
        copy_name: str,
        metric: str,
        store: KeyTotals,
        observed: KeyTotals,
    ) -> Iterable[Comparison]:
        index = 0 if metric == "count" else 1
        for key in sorted(set(store) | set(observed)):
            expected_value = store.get(key, (0, 0))[index]
            observed_value = observed.get(key, (0, 0))[index]
            yield Comparison(
                check=f"{copy_name}:{key[0]}/{key[1]}",
                metric=metric,
                expected=expected_value,
                observed=observed_value,
                within_tolerance=self._within_tolerance(expected_value, observed_value),
            )

    def _compare_summaries(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        event_type: Optional[str],
    ) -> List[Comparison]:
        bucket_seconds = self.config.aggregation.bucket_seconds
        raw = self.events.bucket_totals(tenant_id, start, end, bucket_seconds)
        if event_type is not None:
            raw = {k: v for k, v in raw.items() if k[0] == event_type}

        derived: Dict[Tuple[str, int], Tuple[int, int]] = {
            (s.event_type, int(s.bucket_start.timestamp())): (s.event_count, s.total_quantity)
            for s in self.summaries.list_range(tenant_id, start, end, event_type)
        }

        comparisons = []
        for key in sorted(set(raw) | set(derived)):
            expected = raw.get(key, (0, 0))
            observed = derived.get(key, (0, 0))
            bucket = datetime.fromtimestamp(key[1], tz=timezone.utc).isoformat()
            for metric, index in (("count", 0), ("quantity", 1)):
                comparisons.append(Comparison(
                    check=f"summary:{tenant_id}/{key[0]}@{bucket}",
                    metric=metric,
                    expected=expected[index],
                    observed=observed[index],
                    within_tolerance=self._within_tolerance(expected[index], observed[index]),
                ))
        return comparisons
