"""
Wiring of the metering pipeline.

``MeteringPipeline`` builds every component around one SQLite database and
exposes the operations workers and operators call: ingest, the periodic
``tick``, reconciliation and backfill, finalization and voiding.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional

import structlog

from usage_ledger.config.loader import PipelineConfig
from usage_ledger.core.aggregation import AggregationEngine
from usage_ledger.core.alerts import AlertSink, RecordingAlertSink
from usage_ledger.core.ingestion import IngestionBuffer, IngestionService, IngestResult
from usage_ledger.core.ledger import FinalizeResult, LedgerEngine
from usage_ledger.core.periods import ensure_utc, period_bounds, utc_now
from usage_ledger.core.reconciliation import ReconciliationScope, ReconciliationService
from usage_ledger.core.validator import EventValidator
from usage_ledger.core.watermark import Transition, WatermarkTracker
from usage_ledger.errors import MeteringError
from usage_ledger.storage.billing_repository import (
    AdjustmentRepository,
    FinalizeLockRepository,
    InvoiceRepository,
    LedgerRepository,
    ReconciliationRepository,
)
from usage_ledger.storage.copies import DownstreamCopy, EventPublisher
from usage_ledger.storage.db import DEFAULT_DB_PATH
from usage_ledger.storage.models import (
    Invoice,
    ReconciliationKind,
    ReconciliationResult,
    UsageSummary,
)
from usage_ledger.storage.repository import (
    EventRepository,
    SummaryRepository,
    WatermarkRepository,
    initialize_schema,
)

logger = structlog.get_logger(__name__)


@dataclass
class TickReport:
    """What one scheduler pass did."""
    recomputed: List[UsageSummary] = field(default_factory=list)
    transitions: List[Transition] = field(default_factory=list)
    reconciliations: List[ReconciliationResult] = field(default_factory=list)
    stuck_drafts: List[Invoice] = field(default_factory=list)
    expired_events: int = 0


class MeteringPipeline:
    """All pipeline components sharing one database and one clock."""

    def __init__(
        self,
        config: PipelineConfig,
        db_path: str = DEFAULT_DB_PATH,
        copies: Optional[List[DownstreamCopy]] = None,
        alerts: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.db_path = db_path
        self.clock = clock
        self.alerts = alerts or RecordingAlertSink()
        self.copies: List[DownstreamCopy] = list(copies or [])

        initialize_schema(db_path)

        self.events = EventRepository(db_path)
        self.summaries = SummaryRepository(db_path)
        self.watermarks = WatermarkRepository(db_path)
        self.invoices = InvoiceRepository(db_path)
        self.ledger_entries = LedgerRepository(db_path)
        self.adjustments = AdjustmentRepository(db_path)
        self.runs = ReconciliationRepository(db_path)
        self.locks = FinalizeLockRepository(db_path)

        self.validator = EventValidator(config)
        self.publisher = EventPublisher(self.copies)
        self.aggregation = AggregationEngine(
            config.aggregation, self.events, self.summaries, self.watermarks, clock=clock
        )
        self.tracker = WatermarkTracker(
            config.aggregation, self.watermarks, self.summaries, self.invoices, clock=clock
        )
        self.reconciliation = ReconciliationService(
            config, self.events, self.summaries, self.runs,
            copies=self.copies, alerts=self.alerts, clock=clock,
        )
        self.ledger = LedgerEngine(
            config,
            self.invoices,
            self.ledger_entries,
            self.adjustments,
            self.locks,
            self.summaries,
            self.watermarks,
            self.reconciliation,
            alerts=self.alerts,
            clock=clock,
        )
        self.ingestion = IngestionService(
            self.validator,
            self.events,
            self.publisher,
            self.tracker,
            self.aggregation,
            self.ledger,
            clock=clock,
        )

    def ingest(self, raw: Mapping[str, Any]) -> IngestResult:
        return self.ingestion.ingest(raw)

    def buffer(self, maxsize: int = 1000, workers: int = 1) -> IngestionBuffer:
        """A started, bounded ingestion buffer feeding this pipeline."""
        buffer = IngestionBuffer(self.ingestion, maxsize=maxsize, workers=workers)
        buffer.start()
        return buffer

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """One scheduler pass.

        Order matters: recomputes run before watermark advancement so buckets
        can close in the same pass once their summaries are caught up.
        """
        now = ensure_utc(now or self.clock())
        report = TickReport()
        report.recomputed = self.aggregation.recompute_due(now)
        report.transitions = self.tracker.advance(now)
        report.reconciliations = self.reconciliation.run_due(now)
        report.stuck_drafts = self.ledger.find_stuck_drafts(now)
        report.expired_events = self.expire_events(now)
        logger.info(
            "Tick complete",
            recomputed=len(report.recomputed),
            transitions=len(report.transitions),
            reconciliations=len(report.reconciliations),
            stuck_drafts=len(report.stuck_drafts),
            expired_events=report.expired_events,
        )
        return report

    def expire_events(self, now: Optional[datetime] = None) -> int:
        """Delete events past the retention window whose buckets no longer bill."""
        now = ensure_utc(now or self.clock())
        cutoff = now - timedelta(days=self.config.retention.retention_days)
        deleted = self.events.expire_events(cutoff)
        if deleted:
            logger.info("Expired events", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    def reconcile_period(
        self,
        tenant_id: str,
        billing_period: str,
        kind: ReconciliationKind = ReconciliationKind.FULL,
        cancel: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        return self.reconciliation.reconcile(
            ReconciliationScope.for_period(tenant_id, billing_period, kind), cancel=cancel
        )

    def backfill(self, copy_name: str, tenant_id: str, billing_period: str) -> int:
        """Republish a tenant-period's stored events to one downstream copy.

        Copies are idempotent on ``(tenant_id, idempotency_key)``, so events
        the copy already holds are left as they are. Run a reconciliation
        afterwards to record the corrected state.

        Returns:
            Number of events republished

        Raises:
            MeteringError: If no copy is registered under ``copy_name``
        """
        copy = self._copy(copy_name)
        start, end = period_bounds(billing_period)
        republished = 0
        for _, event_type in sorted(self.events.totals_by_key(start, end, tenant_id=tenant_id)):
            for event in self.events.events_in_range(tenant_id, event_type, start, end):
                copy.publish(event)
                republished += 1
        logger.info(
            "Backfill complete",
            copy=copy_name,
            tenant_id=tenant_id,
            billing_period=billing_period,
            republished=republished,
        )
        return republished

    def close_period(self, tenant_id: str, billing_period: str) -> FinalizeResult:
        """Operator path to finalization: recompute, reconcile, then finalize.

        Raises:
            FinalizeConflict: If buckets are still unstable or drift was found
        """
        self.aggregation.recompute_period(tenant_id, billing_period)
        self.tracker.advance()
        self.reconcile_period(tenant_id, billing_period)
        return self.ledger.finalize(tenant_id, billing_period)

    def finalize(self, tenant_id: str, billing_period: str) -> FinalizeResult:
        return self.ledger.finalize(tenant_id, billing_period)

    def void(self, tenant_id: str, billing_period: str, reason: str) -> Invoice:
        return self.ledger.void(tenant_id, billing_period, reason)

    def _copy(self, name: str) -> DownstreamCopy:
        for copy in self.publisher.copies:
            if copy.name == name:
                return copy
        raise MeteringError(
            f"Unknown downstream copy '{name}'",
            "UNKNOWN_COPY",
            context={"copies": [c.name for c in self.publisher.copies]},
            recovery_hint="Use one of the configured copy names",
        )
