"""
Data access for invoices, ledger postings, adjustments, reconciliation runs
and finalize locks.

Methods that take a ``conn`` participate in the caller's transaction; the
finalize path relies on that to commit everything in one unit.
"""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from .db import (
    DEFAULT_DB_PATH,
    connection_scope,
    from_db_money,
    from_db_time,
    get_connection,
    to_db_money,
    to_db_time,
    transaction,
)
from .models import (
    AccountType,
    Comparison,
    EntryType,
    Invoice,
    InvoiceAdjustment,
    InvoiceLine,
    InvoiceStatus,
    LedgerEntry,
    ReconciliationKind,
    ReconciliationResult,
    ReconciliationStatus,
)

_INVOICE_COLUMNS = """
    invoice_id, tenant_id, billing_period, period_start, period_end, status,
    total, currency, created_at, finalized_at, voided_at
"""


class InvoiceRepository:
    """Invoices and their lines."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(
        self,
        tenant_id: str,
        billing_period: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Invoice]:
        with connection_scope(self.db_path, conn) as c:
            row = c.execute(f"""
                SELECT {_INVOICE_COLUMNS} FROM invoice
                WHERE tenant_id = ? AND billing_period = ?
            """, (tenant_id, billing_period)).fetchone()
            if row is None:
                return None
            return self._load(c, row)

    def insert_if_absent(self, invoice: Invoice) -> bool:
        """Create the invoice unless one already exists for the tenant-period."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                INSERT INTO invoice ({_INVOICE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, billing_period) DO NOTHING
            """, (
                invoice.invoice_id,
                invoice.tenant_id,
                invoice.billing_period,
                to_db_time(invoice.period_start),
                to_db_time(invoice.period_end),
                invoice.status.value,
                to_db_money(invoice.total),
                invoice.currency,
                to_db_time(invoice.created_at),
                None,
                None,
            ))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def replace_draft(
        self,
        invoice_id: str,
        lines: List[InvoiceLine],
        total: Decimal,
        conn: sqlite3.Connection,
    ) -> bool:
        """Overwrite a draft's lines and total. No-op unless the invoice is still draft."""
        cursor = conn.execute("""
            UPDATE invoice SET total = ?
            WHERE invoice_id = ? AND status = ?
        """, (to_db_money(total), invoice_id, InvoiceStatus.DRAFT.value))
        if cursor.rowcount != 1:
            return False
        conn.execute("DELETE FROM invoice_line WHERE invoice_id = ?", (invoice_id,))
        conn.executemany("""
            INSERT INTO invoice_line
            (invoice_id, line_no, description, event_type, quantity,
             unit_price, amount, adjusts_invoice_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                invoice_id, line_no, line.description, line.event_type, line.quantity,
                to_db_money(line.unit_price), to_db_money(line.amount), line.adjusts_invoice_id,
            )
            for line_no, line in enumerate(lines, start=1)
        ])
        return True

    def transition(
        self,
        invoice_id: str,
        from_status: InvoiceStatus,
        to_status: InvoiceStatus,
        at: datetime,
        conn: sqlite3.Connection,
    ) -> bool:
        """Compare-and-set the invoice status, stamping the matching timestamp column."""
        column = {
            InvoiceStatus.FINALIZED: "finalized_at",
            InvoiceStatus.VOIDED: "voided_at",
        }[to_status]
        cursor = conn.execute(f"""
            UPDATE invoice SET status = ?, {column} = ?
            WHERE invoice_id = ? AND status = ?
        """, (to_status.value, to_db_time(at), invoice_id, from_status.value))
        return cursor.rowcount == 1

    def list_for_tenant(
        self,
        tenant_id: str,
        statuses: Optional[List[InvoiceStatus]] = None,
    ) -> List[Invoice]:
        query = f"SELECT {_INVOICE_COLUMNS} FROM invoice WHERE tenant_id = ?"
        params: List = [tenant_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY period_start"

        conn = get_connection(self.db_path)
        try:
            return [self._load(conn, row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_drafts_ending_before(self, cutoff: datetime) -> List[Invoice]:
        """Drafts whose billing period ended before ``cutoff``."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT {_INVOICE_COLUMNS} FROM invoice
                WHERE status = ? AND period_end < ?
                ORDER BY period_end
            """, (InvoiceStatus.DRAFT.value, to_db_time(cutoff))).fetchall()
            return [self._load(conn, row) for row in rows]
        finally:
            conn.close()

    @staticmethod
    def _load(conn: sqlite3.Connection, row: Tuple) -> Invoice:
        lines = [
            InvoiceLine(
                description=r[0],
                event_type=r[1],
                quantity=r[2],
                unit_price=from_db_money(r[3]),
                amount=from_db_money(r[4]),
                adjusts_invoice_id=r[5],
            )
            for r in conn.execute("""
                SELECT description, event_type, quantity, unit_price, amount, adjusts_invoice_id
                FROM invoice_line WHERE invoice_id = ? ORDER BY line_no
            """, (row[0],))
        ]
        return Invoice(
            invoice_id=row[0],
            tenant_id=row[1],
            billing_period=row[2],
            period_start=from_db_time(row[3]),
            period_end=from_db_time(row[4]),
            status=InvoiceStatus(row[5]),
            total=from_db_money(row[6]),
            currency=row[7],
            created_at=from_db_time(row[8]),
            finalized_at=from_db_time(row[9]) if row[9] else None,
            voided_at=from_db_time(row[10]) if row[10] else None,
            lines=lines,
        )


_ENTRY_COLUMNS = """
    entry_id, transaction_id, tenant_id, account_type, entry_type, amount,
    reference_type, reference_id, created_at, memo
"""


class LedgerRepository:
    """Append-only ledger postings. There is no update or delete."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, entries: List[LedgerEntry], conn: sqlite3.Connection) -> None:
        conn.executemany(f"""
            INSERT INTO ledger_entry ({_ENTRY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                e.entry_id, e.transaction_id, e.tenant_id, e.account_type.value,
                e.entry_type.value, to_db_money(e.amount), e.reference_type,
                e.reference_id, to_db_time(e.created_at), e.memo,
            )
            for e in entries
        ])

    def list_entries(
        self,
        tenant_id: Optional[str] = None,
        reference_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[LedgerEntry]:
        query = f"SELECT {_ENTRY_COLUMNS} FROM ledger_entry WHERE 1 = 1"
        params: List = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if reference_id is not None:
            query += " AND reference_id = ?"
            params.append(reference_id)
        query += " ORDER BY created_at, rowid"

        with connection_scope(self.db_path, conn) as c:
            return [self._row_to_entry(row) for row in c.execute(query, params).fetchall()]

    def list_by_reference(
        self,
        reference_type: str,
        reference_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[LedgerEntry]:
        with connection_scope(self.db_path, conn) as c:
            rows = c.execute(f"""
                SELECT {_ENTRY_COLUMNS} FROM ledger_entry
                WHERE reference_type = ? AND reference_id = ?
                ORDER BY created_at, rowid
            """, (reference_type, reference_id)).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_by_transaction_prefix(
        self,
        prefix: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[LedgerEntry]:
        """Entries of every transaction whose id starts with ``prefix``."""
        with connection_scope(self.db_path, conn) as c:
            rows = c.execute(f"""
                SELECT {_ENTRY_COLUMNS} FROM ledger_entry
                WHERE substr(transaction_id, 1, ?) = ?
                ORDER BY created_at, rowid
            """, (len(prefix), prefix)).fetchall()
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Tuple) -> LedgerEntry:
        return LedgerEntry(
            entry_id=row[0],
            transaction_id=row[1],
            tenant_id=row[2],
            account_type=AccountType(row[3]),
            entry_type=EntryType(row[4]),
            amount=from_db_money(row[5]),
            reference_type=row[6],
            reference_id=row[7],
            created_at=from_db_time(row[8]),
            memo=row[9],
        )


_ADJUSTMENT_COLUMNS = """
    adjustment_id, tenant_id, original_invoice_id, target_period, event_type,
    quantity, amount, reason, source_key, created_at, applied
"""


class AdjustmentRepository:
    """Post-finalization corrections waiting for (or applied to) a later draft."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_if_absent(
        self,
        adjustment: InvoiceAdjustment,
        conn: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Record an adjustment once per ``(tenant_id, source_key)``."""
        with connection_scope(self.db_path, conn) as c:
            cursor = c.execute(f"""
                INSERT INTO invoice_adjustment ({_ADJUSTMENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, source_key) DO NOTHING
            """, (
                adjustment.adjustment_id, adjustment.tenant_id,
                adjustment.original_invoice_id, adjustment.target_period,
                adjustment.event_type, adjustment.quantity,
                to_db_money(adjustment.amount), adjustment.reason,
                adjustment.source_key, to_db_time(adjustment.created_at),
                int(adjustment.applied),
            ))
            return cursor.rowcount == 1

    def get_by_source(
        self,
        tenant_id: str,
        source_key: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[InvoiceAdjustment]:
        with connection_scope(self.db_path, conn) as c:
            row = c.execute(f"""
                SELECT {_ADJUSTMENT_COLUMNS} FROM invoice_adjustment
                WHERE tenant_id = ? AND source_key = ?
            """, (tenant_id, source_key)).fetchone()
        return self._row_to_adjustment(row) if row else None

    def pending_for_period(
        self,
        tenant_id: str,
        target_period: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[InvoiceAdjustment]:
        with connection_scope(self.db_path, conn) as c:
            rows = c.execute(f"""
                SELECT {_ADJUSTMENT_COLUMNS} FROM invoice_adjustment
                WHERE tenant_id = ? AND target_period = ? AND applied = 0
                ORDER BY created_at, adjustment_id
            """, (tenant_id, target_period)).fetchall()
        return [self._row_to_adjustment(row) for row in rows]

    def mark_applied(self, adjustment_ids: List[str], conn: sqlite3.Connection) -> None:
        conn.executemany(
            "UPDATE invoice_adjustment SET applied = 1 WHERE adjustment_id = ?",
            [(adjustment_id,) for adjustment_id in adjustment_ids],
        )

    @staticmethod
    def _row_to_adjustment(row: Tuple) -> InvoiceAdjustment:
        return InvoiceAdjustment(
            adjustment_id=row[0],
            tenant_id=row[1],
            original_invoice_id=row[2],
            target_period=row[3],
            event_type=row[4],
            quantity=row[5],
            amount=from_db_money(row[6]),
            reason=row[7],
            source_key=row[8],
            created_at=from_db_time(row[9]),
            applied=bool(row[10]),
        )


class ReconciliationRepository:
    """History of reconciliation runs, the source of truth for finalize gating."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def record(self, result: ReconciliationResult) -> None:
        details = [
            {
                "check": c.check,
                "metric": c.metric,
                "expected": c.expected,
                "observed": c.observed,
                "within_tolerance": c.within_tolerance,
            }
            for c in result.details
        ]
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO reconciliation_run
                (run_id, kind, status, delta, tenant_id, period_start,
                 period_end, completed_at, details)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.run_id, result.kind.value, result.status.value, result.delta,
                result.tenant_id, to_db_time(result.period_start),
                to_db_time(result.period_end), to_db_time(result.completed_at),
                json.dumps(details),
            ))
        finally:
            conn.close()

    def latest(
        self,
        kind: ReconciliationKind,
        tenant_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[ReconciliationResult]:
        """Most recent run of a kind for a tenant (None for pipeline-wide runs),
        optionally narrowed to the run's period start."""
        query = """
            SELECT run_id, kind, status, delta, tenant_id, period_start,
                   period_end, completed_at, details
            FROM reconciliation_run WHERE kind = ? AND tenant_id IS ?
        """
        params: List = [kind.value, tenant_id]
        if period_start is not None:
            query += " AND period_start = ?"
            params.append(to_db_time(period_start))
        query += " ORDER BY completed_at DESC, rowid DESC LIMIT 1"

        with connection_scope(self.db_path, conn) as c:
            row = c.execute(query, params).fetchone()
        if row is None:
            return None
        return ReconciliationResult(
            run_id=row[0],
            kind=ReconciliationKind(row[1]),
            status=ReconciliationStatus(row[2]),
            delta=row[3],
            tenant_id=row[4],
            period_start=from_db_time(row[5]),
            period_end=from_db_time(row[6]),
            completed_at=from_db_time(row[7]),
            details=[Comparison(**d) for d in json.loads(row[8])],
        )


class FinalizeLockRepository:
    """Single-owner advisory locks keyed by tenant-period.

    A lock row expires so a crashed finalizer cannot wedge its period forever.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def try_acquire(self, lock_key: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        conn = get_connection(self.db_path)
        try:
            with transaction(conn, immediate=True):
                conn.execute(
                    "DELETE FROM finalize_lock WHERE lock_key = ? AND expires_at <= ?",
                    (lock_key, to_db_time(now)),
                )
                cursor = conn.execute("""
                    INSERT INTO finalize_lock (lock_key, owner, acquired_at, expires_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (lock_key) DO NOTHING
                """, (lock_key, owner, to_db_time(now), to_db_time(expires_at)))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def release(self, lock_key: str, owner: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "DELETE FROM finalize_lock WHERE lock_key = ? AND owner = ?",
                (lock_key, owner),
            )
        finally:
            conn.close()
