"""
Repository pattern for data access.

Owns the schema and the event, summary and watermark tables. Billing tables
live in ``billing_repository``.
"""

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from .db import (
    DEFAULT_DB_PATH,
    connection_scope,
    from_db_time,
    get_connection,
    to_db_time,
)
from .models import AcceptOutcome, BucketState, UsageEvent, UsageSummary, Watermark

logger = structlog.get_logger(__name__)

# (tenant_id, event_type) -> (event_count, total_quantity)
KeyTotals = Dict[Tuple[str, str], Tuple[int, int]]


SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_event (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity >= 0),
    unit TEXT NOT NULL,
    idempotency_key TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    received_at TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT '',
    metadata TEXT NOT NULL DEFAULT '{}',
    UNIQUE (tenant_id, idempotency_key)
);
CREATE INDEX IF NOT EXISTS idx_usage_event_range
    ON usage_event (tenant_id, event_type, occurred_at, id);

CREATE TABLE IF NOT EXISTS usage_summary (
    tenant_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    bucket_start TEXT NOT NULL,
    bucket_end TEXT NOT NULL,
    total_quantity INTEGER NOT NULL,
    event_count INTEGER NOT NULL,
    computed_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, event_type, bucket_start)
);

CREATE TABLE IF NOT EXISTS watermark (
    tenant_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    bucket_start TEXT NOT NULL,
    bucket_end TEXT NOT NULL,
    state TEXT NOT NULL,
    last_event_at TEXT NOT NULL,
    closed_at TEXT,
    reopen_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (tenant_id, event_type, bucket_start)
);
CREATE INDEX IF NOT EXISTS idx_watermark_state ON watermark (state);

CREATE TABLE IF NOT EXISTS invoice (
    invoice_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    billing_period TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    status TEXT NOT NULL,
    total TEXT NOT NULL,
    currency TEXT NOT NULL,
    created_at TEXT NOT NULL,
    finalized_at TEXT,
    voided_at TEXT,
    UNIQUE (tenant_id, billing_period)
);

CREATE TABLE IF NOT EXISTS invoice_line (
    invoice_id TEXT NOT NULL REFERENCES invoice (invoice_id),
    line_no INTEGER NOT NULL,
    description TEXT NOT NULL,
    event_type TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    unit_price TEXT NOT NULL,
    amount TEXT NOT NULL,
    adjusts_invoice_id TEXT,
    PRIMARY KEY (invoice_id, line_no)
);

CREATE TABLE IF NOT EXISTS invoice_adjustment (
    adjustment_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    original_invoice_id TEXT NOT NULL REFERENCES invoice (invoice_id),
    target_period TEXT NOT NULL,
    event_type TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    amount TEXT NOT NULL,
    reason TEXT NOT NULL,
    source_key TEXT NOT NULL,
    created_at TEXT NOT NULL,
    applied INTEGER NOT NULL DEFAULT 0,
    UNIQUE (tenant_id, source_key)
);

CREATE TABLE IF NOT EXISTS ledger_entry (
    entry_id TEXT PRIMARY KEY,
    transaction_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    account_type TEXT NOT NULL,
    entry_type TEXT NOT NULL CHECK (entry_type IN ('debit', 'credit')),
    amount TEXT NOT NULL,
    reference_type TEXT NOT NULL,
    reference_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    memo TEXT NOT NULL DEFAULT '',
    UNIQUE (transaction_id, entry_type)
);
CREATE INDEX IF NOT EXISTS idx_ledger_entry_tenant ON ledger_entry (tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ledger_entry_reference
    ON ledger_entry (reference_type, reference_id);

CREATE TRIGGER IF NOT EXISTS ledger_entry_no_update
BEFORE UPDATE ON ledger_entry
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are append-only');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entry_no_delete
BEFORE DELETE ON ledger_entry
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are append-only');
END;

CREATE TABLE IF NOT EXISTS reconciliation_run (
    run_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    delta INTEGER NOT NULL,
    tenant_id TEXT,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    completed_at TEXT NOT NULL,
    details TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reconciliation_scope
    ON reconciliation_run (kind, tenant_id, period_start, completed_at);

CREATE TABLE IF NOT EXISTS finalize_lock (
    lock_key TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every pipeline table if it doesn't exist.

    ``usage_event`` and ``ledger_entry`` are append-only; the ledger enforces
    that with triggers.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


@dataclass(frozen=True)
class EventCursor:
    """Position inside an ordered event range, used to resume iteration."""
    occurred_at: datetime
    row_id: int


_EVENT_COLUMNS = """
    id, tenant_id, event_type, quantity, unit, idempotency_key,
    occurred_at, received_at, source, metadata
"""


def _row_to_event(row: Tuple) -> UsageEvent:
    return UsageEvent(
        tenant_id=row[1],
        event_type=row[2],
        quantity=row[3],
        unit=row[4],
        idempotency_key=row[5],
        occurred_at=from_db_time(row[6]),
        received_at=from_db_time(row[7]),
        source=row[8],
        metadata=json.loads(row[9]),
    )


class EventRepository:
    """Idempotent, append-only store of accepted usage events.

    The unique index on ``(tenant_id, idempotency_key)`` is the only
    deduplication mechanism; concurrent retries of one event race on the
    index and exactly one insert wins.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def accept(self, event: UsageEvent, conn: Optional[sqlite3.Connection] = None) -> AcceptOutcome:
        """Store an event unless its idempotency key was already accepted.

        Args:
            event: Validated usage event
            conn: Optional connection whose transaction the insert joins

        Returns:
            INSERTED for a new event, DUPLICATE_IGNORED for a resubmission
        """
        with connection_scope(self.db_path, conn) as c:
            cursor = c.execute("""
                INSERT INTO usage_event
                (tenant_id, event_type, quantity, unit, idempotency_key,
                 occurred_at, received_at, source, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, idempotency_key) DO NOTHING
            """, (
                event.tenant_id,
                event.event_type,
                event.quantity,
                event.unit,
                event.idempotency_key,
                to_db_time(event.occurred_at),
                to_db_time(event.received_at),
                event.source,
                json.dumps(event.metadata, sort_keys=True),
            ))
            if cursor.rowcount == 1:
                return AcceptOutcome.INSERTED

            existing = self.get_event(event.tenant_id, event.idempotency_key, conn=c)
            if existing is not None and not existing.same_payload(event):
                logger.warning(
                    "Idempotency key reused with a different payload",
                    tenant_id=event.tenant_id,
                    idempotency_key=event.idempotency_key,
                    stored_quantity=existing.quantity,
                    submitted_quantity=event.quantity,
                )
            return AcceptOutcome.DUPLICATE_IGNORED

    def get_event(
        self,
        tenant_id: str,
        idempotency_key: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[UsageEvent]:
        """Look up one event by its idempotency key."""
        with connection_scope(self.db_path, conn) as c:
            row = c.execute(f"""
                SELECT {_EVENT_COLUMNS} FROM usage_event
                WHERE tenant_id = ? AND idempotency_key = ?
            """, (tenant_id, idempotency_key)).fetchone()
        return _row_to_event(row) if row else None

    def events_page(
        self,
        tenant_id: str,
        event_type: str,
        start: datetime,
        end: datetime,
        after: Optional[EventCursor] = None,
        limit: int = 500,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Tuple[List[UsageEvent], Optional[EventCursor]]:
        """Fetch one page of events with ``start <= occurred_at < end``.

        Returns:
            The page and the cursor to resume from, or None when exhausted
        """
        query = f"""
            SELECT {_EVENT_COLUMNS} FROM usage_event
            WHERE tenant_id = ? AND event_type = ?
              AND occurred_at >= ? AND occurred_at < ?
        """
        params: List = [tenant_id, event_type, to_db_time(start), to_db_time(end)]
        if after is not None:
            query += " AND (occurred_at > ? OR (occurred_at = ? AND id > ?))"
            occurred = to_db_time(after.occurred_at)
            params.extend([occurred, occurred, after.row_id])
        query += " ORDER BY occurred_at, id LIMIT ?"
        params.append(limit)

        with connection_scope(self.db_path, conn) as c:
            rows = c.execute(query, params).fetchall()

        events = [_row_to_event(row) for row in rows]
        if len(rows) < limit:
            return events, None
        last = rows[-1]
        return events, EventCursor(occurred_at=from_db_time(last[6]), row_id=last[0])

    def events_in_range(
        self,
        tenant_id: str,
        event_type: str,
        start: datetime,
        end: datetime,
        after: Optional[EventCursor] = None,
        page_size: int = 500,
    ) -> Iterator[UsageEvent]:
        """Iterate the full, ordered event set of ``[start, end)``.

        The sequence is finite and restartable: resuming with the cursor of
        the last page seen yields exactly the remaining events.
        """
        cursor = after
        while True:
            events, cursor = self.events_page(
                tenant_id, event_type, start, end, after=cursor, limit=page_size
            )
            yield from events
            if cursor is None:
                return

    def totals_by_key(
        self,
        start: datetime,
        end: datetime,
        tenant_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> KeyTotals:
        """Event count and quantity sum per (tenant, event type) for ``[start, end)``."""
        query = """
            SELECT tenant_id, event_type, COUNT(*), COALESCE(SUM(quantity), 0)
            FROM usage_event
            WHERE occurred_at >= ? AND occurred_at < ?
        """
        params: List = [to_db_time(start), to_db_time(end)]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if event_type is not None:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " GROUP BY tenant_id, event_type"

        conn = get_connection(self.db_path)
        try:
            return {(r[0], r[1]): (r[2], r[3]) for r in conn.execute(query, params)}
        finally:
            conn.close()

    def bucket_totals(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        bucket_seconds: int,
    ) -> Dict[Tuple[str, int], Tuple[int, int]]:
        """Count and quantity per (event type, bucket epoch second) for one tenant."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT event_type,
                       (CAST(strftime('%s', substr(occurred_at, 1, 19)) AS INTEGER) / ?) * ? AS bucket,
                       COUNT(*), COALESCE(SUM(quantity), 0)
                FROM usage_event
                WHERE tenant_id = ? AND occurred_at >= ? AND occurred_at < ?
                GROUP BY event_type, bucket
            """, (
                bucket_seconds, bucket_seconds, tenant_id,
                to_db_time(start), to_db_time(end),
            )).fetchall()
            return {(r[0], r[1]): (r[2], r[3]) for r in rows}
        finally:
            conn.close()

    def expire_events(self, cutoff: datetime) -> int:
        """Delete events older than ``cutoff`` unless their bucket is still billable.

        Events of buckets whose watermark is not yet finalized are kept so
        summaries remain reproducible.

        Returns:
            Number of events deleted
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM usage_event
                WHERE occurred_at < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM watermark w
                      WHERE w.tenant_id = usage_event.tenant_id
                        AND w.event_type = usage_event.event_type
                        AND usage_event.occurred_at >= w.bucket_start
                        AND usage_event.occurred_at < w.bucket_end
                        AND w.state != ?
                  )
            """, (to_db_time(cutoff), BucketState.FINALIZED.value))
            return cursor.rowcount
        finally:
            conn.close()

    def count_events(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM usage_event").fetchone()[0]
        finally:
            conn.close()


class SummaryRepository:
    """Derived per-bucket summaries, only ever replaced wholesale."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def upsert(self, summary: UsageSummary) -> bool:
        """Replace the bucket's summary in one atomic statement.

        The write is skipped when a summary computed later is already stored,
        so a slow recompute can never overwrite a fresher one.

        Returns:
            True if the row was written
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO usage_summary
                (tenant_id, event_type, bucket_start, bucket_end,
                 total_quantity, event_count, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, event_type, bucket_start) DO UPDATE SET
                    bucket_end = excluded.bucket_end,
                    total_quantity = excluded.total_quantity,
                    event_count = excluded.event_count,
                    computed_at = excluded.computed_at
                WHERE excluded.computed_at >= usage_summary.computed_at
            """, (
                summary.tenant_id,
                summary.event_type,
                to_db_time(summary.bucket_start),
                to_db_time(summary.bucket_end),
                summary.total_quantity,
                summary.event_count,
                to_db_time(summary.computed_at),
            ))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get(self, tenant_id: str, event_type: str, bucket_start: datetime) -> Optional[UsageSummary]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT tenant_id, event_type, bucket_start, bucket_end,
                       total_quantity, event_count, computed_at
                FROM usage_summary
                WHERE tenant_id = ? AND event_type = ? AND bucket_start = ?
            """, (tenant_id, event_type, to_db_time(bucket_start))).fetchone()
            return self._row_to_summary(row) if row else None
        finally:
            conn.close()

    def list_range(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        event_type: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[UsageSummary]:
        """Summaries whose bucket starts inside ``[start, end)``, oldest first."""
        query = """
            SELECT tenant_id, event_type, bucket_start, bucket_end,
                   total_quantity, event_count, computed_at
            FROM usage_summary
            WHERE tenant_id = ? AND bucket_start >= ? AND bucket_start < ?
        """
        params: List = [tenant_id, to_db_time(start), to_db_time(end)]
        if event_type is not None:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY bucket_start, event_type"

        with connection_scope(self.db_path, conn) as c:
            return [self._row_to_summary(row) for row in c.execute(query, params).fetchall()]

    @staticmethod
    def _row_to_summary(row: Tuple) -> UsageSummary:
        return UsageSummary(
            tenant_id=row[0],
            event_type=row[1],
            bucket_start=from_db_time(row[2]),
            bucket_end=from_db_time(row[3]),
            total_quantity=row[4],
            event_count=row[5],
            computed_at=from_db_time(row[6]),
        )


_WATERMARK_COLUMNS = """
    tenant_id, event_type, bucket_start, bucket_end, state,
    last_event_at, closed_at, reopen_count
"""


class WatermarkRepository:
    """Per-bucket watermark rows. Transition rules live in ``core.watermark``."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(
        self,
        tenant_id: str,
        event_type: str,
        bucket_start: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Watermark]:
        with connection_scope(self.db_path, conn) as c:
            row = c.execute(f"""
                SELECT {_WATERMARK_COLUMNS} FROM watermark
                WHERE tenant_id = ? AND event_type = ? AND bucket_start = ?
            """, (tenant_id, event_type, to_db_time(bucket_start))).fetchone()
        return self._row_to_watermark(row) if row else None

    def save(self, watermark: Watermark, conn: Optional[sqlite3.Connection] = None) -> None:
        """Insert or overwrite a watermark row."""
        with connection_scope(self.db_path, conn) as c:
            c.execute(f"""
                INSERT OR REPLACE INTO watermark ({_WATERMARK_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                watermark.tenant_id,
                watermark.event_type,
                to_db_time(watermark.bucket_start),
                to_db_time(watermark.bucket_end),
                watermark.state.value,
                to_db_time(watermark.last_event_at),
                to_db_time(watermark.closed_at) if watermark.closed_at else None,
                watermark.reopen_count,
            ))

    def list_by_states(self, states: Iterable[BucketState]) -> List[Watermark]:
        values = [s.value for s in states]
        placeholders = ", ".join("?" for _ in values)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT {_WATERMARK_COLUMNS} FROM watermark
                WHERE state IN ({placeholders})
                ORDER BY bucket_start, tenant_id, event_type
            """, values).fetchall()
            return [self._row_to_watermark(row) for row in rows]
        finally:
            conn.close()

    def list_for_period(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Watermark]:
        """Watermarks of every bucket of a tenant starting inside ``[start, end)``."""
        with connection_scope(self.db_path, conn) as c:
            rows = c.execute(f"""
                SELECT {_WATERMARK_COLUMNS} FROM watermark
                WHERE tenant_id = ? AND bucket_start >= ? AND bucket_start < ?
                ORDER BY bucket_start, event_type
            """, (tenant_id, to_db_time(start), to_db_time(end))).fetchall()
        return [self._row_to_watermark(row) for row in rows]

    def mark_finalized(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        conn: sqlite3.Connection,
    ) -> int:
        """Make every bucket of a finalized period terminal. Runs in the caller's transaction."""
        cursor = conn.execute("""
            UPDATE watermark SET state = ?
            WHERE tenant_id = ? AND bucket_start >= ? AND bucket_start < ?
        """, (BucketState.FINALIZED.value, tenant_id, to_db_time(start), to_db_time(end)))
        return cursor.rowcount

    @staticmethod
    def _row_to_watermark(row: Tuple) -> Watermark:
        return Watermark(
            tenant_id=row[0],
            event_type=row[1],
            bucket_start=from_db_time(row[2]),
            bucket_end=from_db_time(row[3]),
            state=BucketState(row[4]),
            last_event_at=from_db_time(row[5]),
            closed_at=from_db_time(row[6]) if row[6] else None,
            reopen_count=row[7],
        )
