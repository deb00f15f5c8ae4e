"""
Event ingestion path.

validate -> store (dedupe) + watermark + late adjustment, in one
transaction -> publish to downstream copies -> refresh drafts and recompute
reopened buckets.

Ingestion holds no state beyond the database, so any number of
``IngestionService`` instances can run against the same store.
"""

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional

import structlog

from usage_ledger.errors import MeteringError
from usage_ledger.storage.copies import EventPublisher
from usage_ledger.storage.db import get_connection, transaction
from usage_ledger.storage.models import AcceptOutcome, LateArrival, UsageEvent
from usage_ledger.storage.repository import EventRepository

from .aggregation import AggregationEngine
from .ledger import LedgerEngine
from .periods import period_for, utc_now
from .validator import EventValidator
from .watermark import WatermarkTracker

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IngestResult:
    event: UsageEvent
    outcome: AcceptOutcome
    arrival: Optional[LateArrival] = None
    failed_copies: List[str] = field(default_factory=list)


class IngestionService:
    """Accepts raw payloads delivered at-least-once."""

    def __init__(
        self,
        validator: EventValidator,
        events: EventRepository,
        publisher: EventPublisher,
        tracker: WatermarkTracker,
        aggregation: AggregationEngine,
        ledger: LedgerEngine,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.validator = validator
        self.events = events
        self.publisher = publisher
        self.tracker = tracker
        self.aggregation = aggregation
        self.ledger = ledger
        self.clock = clock

    def ingest(self, raw: Mapping[str, Any]) -> IngestResult:
        """Validate and store one payload.

        Duplicates are acknowledged without side effects. A new event in a
        closed bucket reopens it and triggers an immediate recompute; a new
        event in a finalized period becomes an adjustment on a later draft.

        Raises:
            ValidationError: If the payload is rejected; nothing is stored
        """
        event = self.validator.validate(raw, now=self.clock())

        conn = get_connection(self.events.db_path)
        try:
            with transaction(conn, immediate=True):
                outcome = self.events.accept(event, conn=conn)
                observation = adjustment = None
                if outcome == AcceptOutcome.INSERTED:
                    observation = self.tracker.observe(event, conn=conn)
                    if observation.outcome == LateArrival.DEFERRED:
                        adjustment = self.ledger.defer_late_usage(event, conn)
        finally:
            conn.close()

        if outcome == AcceptOutcome.DUPLICATE_IGNORED:
            logger.debug(
                "Duplicate event ignored",
                tenant_id=event.tenant_id,
                idempotency_key=event.idempotency_key,
            )
            return IngestResult(event=event, outcome=outcome)

        failed = self.publisher.publish(event)

        if observation.outcome == LateArrival.DEFERRED:
            if adjustment is not None:
                self.ledger.refresh_draft(event.tenant_id, adjustment.target_period)
        else:
            self.ledger.open_period(event.tenant_id, period_for(event.occurred_at))
            if observation.outcome == LateArrival.REOPENED:
                self.aggregation.recompute(event.tenant_id, event.event_type, event.occurred_at)

        return IngestResult(
            event=event,
            outcome=outcome,
            arrival=observation.outcome,
            failed_copies=failed,
        )


class IngestionBuffer:
    """Bounded hand-off between a transport and ingestion workers.

    ``submit`` blocks while the buffer is full, pushing backpressure onto the
    producer instead of dropping events. Rejected payloads are logged by the
    validator and counted here; they are never retried.
    """

    def __init__(self, service: IngestionService, maxsize: int = 1000, workers: int = 1):
        self.service = service
        self._queue: "queue.Queue[Optional[Mapping[str, Any]]]" = queue.Queue(maxsize=maxsize)
        self._workers = [
            threading.Thread(target=self._drain, name=f"ingest-worker-{i}", daemon=True)
            for i in range(workers)
        ]
        self._lock = threading.Lock()
        self.accepted = 0
        self.rejected = 0
        self.failed = 0
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for worker in self._workers:
            worker.start()

    def submit(self, raw: Mapping[str, Any], timeout: Optional[float] = None) -> None:
        """Enqueue a payload, blocking while the buffer is full.

        Raises:
            queue.Full: If ``timeout`` elapses first
        """
        self._queue.put(raw, timeout=timeout)

    def close(self) -> None:
        """Stop accepting work and wait until every queued payload is processed."""
        self.start()
        for _ in self._workers:
            self._queue.put(None)
        for worker in self._workers:
            worker.join()

    def _drain(self) -> None:
        while True:
            raw = self._queue.get()
            try:
                if raw is None:
                    return
                self._process(raw)
            finally:
                self._queue.task_done()

    def _process(self, raw: Mapping[str, Any]) -> None:
        try:
            self.service.ingest(raw)
        except MeteringError:
            with self._lock:
                self.rejected += 1
            return
        except Exception:
            logger.exception("Ingestion failed", idempotency_key=raw.get("idempotency_key"))
            with self._lock:
                self.failed += 1
            return
        with self._lock:
            self.accepted += 1
