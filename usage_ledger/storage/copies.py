"""
Downstream copies of accepted events.

The pipeline publishes raw events (never summaries) to archival and
analytical copies. Each copy derives its own aggregates, which is what
reconciliation cross-checks against the event store.
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog

from .db import get_connection, to_db_time
from .models import UsageEvent
from .repository import KeyTotals

logger = structlog.get_logger(__name__)


class DownstreamCopy:
    """Interface of a replica that receives accepted events."""

    name: str = "copy"

    def publish(self, event: UsageEvent) -> None:
        raise NotImplementedError

    def totals_by_key(
        self,
        start: datetime,
        end: datetime,
        tenant_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> KeyTotals:
        """Event count and quantity sum per (tenant, event type) as the copy sees them."""
        raise NotImplementedError


class SqliteCopy(DownstreamCopy):
    """Archival copy kept in its own SQLite file.

    Writes are idempotent on ``(tenant_id, idempotency_key)`` so republishing
    an event after a retry cannot inflate the copy.
    """

    def __init__(self, db_path: str, name: str = "archive"):
        self.db_path = db_path
        self.name = name
        conn = get_connection(db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS archived_event (
                    tenant_id TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    occurred_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, idempotency_key)
                )
            """)
        finally:
            conn.close()

    def publish(self, event: UsageEvent) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR IGNORE INTO archived_event
                (tenant_id, idempotency_key, event_type, quantity, occurred_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                event.tenant_id,
                event.idempotency_key,
                event.event_type,
                event.quantity,
                to_db_time(event.occurred_at),
            ))
        finally:
            conn.close()

    def totals_by_key(self, start, end, tenant_id=None, event_type=None) -> KeyTotals:
        query = """
            SELECT tenant_id, event_type, COUNT(*), COALESCE(SUM(quantity), 0)
            FROM archived_event
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

    def discard(self, tenant_id: str, idempotency_key: str) -> None:
        """Remove one event, as a lossy downstream system might."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "DELETE FROM archived_event WHERE tenant_id = ? AND idempotency_key = ?",
                (tenant_id, idempotency_key),
            )
        finally:
            conn.close()


class InMemoryCopy(DownstreamCopy):
    """Analytical copy held in process memory."""

    def __init__(self, name: str = "analytics"):
        self.name = name
        self._events: Dict[Tuple[str, str], UsageEvent] = {}
        self._lock = threading.Lock()

    def publish(self, event: UsageEvent) -> None:
        with self._lock:
            self._events.setdefault((event.tenant_id, event.idempotency_key), event)

    def totals_by_key(self, start, end, tenant_id=None, event_type=None) -> KeyTotals:
        totals: Dict[Tuple[str, str], Tuple[int, int]] = {}
        with self._lock:
            events = list(self._events.values())
        for event in events:
            if not start <= event.occurred_at < end:
                continue
            if tenant_id is not None and event.tenant_id != tenant_id:
                continue
            if event_type is not None and event.event_type != event_type:
                continue
            key = (event.tenant_id, event.event_type)
            count, quantity = totals.get(key, (0, 0))
            totals[key] = (count + 1, quantity + event.quantity)
        return totals

    def discard(self, tenant_id: str, idempotency_key: str) -> None:
        with self._lock:
            self._events.pop((tenant_id, idempotency_key), None)

    def __len__(self) -> int:
        return len(self._events)


class EventPublisher:
    """Fans accepted events out to every registered downstream copy.

    A failing copy is logged and skipped: the event is already durable in
    the store, and the gap surfaces as drift at the next reconciliation.
    """

    def __init__(self, copies: Optional[List[DownstreamCopy]] = None):
        self.copies: List[DownstreamCopy] = list(copies or [])

    def register(self, copy: DownstreamCopy) -> None:
        self.copies.append(copy)

    def publish(self, event: UsageEvent) -> List[str]:
        """Publish to all copies.

        Returns:
            Names of the copies that failed to receive the event
        """
        failed = []
        for copy in self.copies:
            try:
                copy.publish(event)
            except Exception:
                logger.exception(
                    "Downstream publish failed",
                    copy=copy.name,
                    tenant_id=event.tenant_id,
                    idempotency_key=event.idempotency_key,
                )
                failed.append(copy.name)
        return failed
