"""
Ledger and invoice engine.

Invoice lifecycle per (tenant, billing period): DRAFT -> FINALIZED -> VOIDED.

Drafts are recomputed freely from usage summaries and carry no ledger
postings. Finalization is the single exactly-once step: under a tenant-period
lock and one database transaction it posts balanced receivable/revenue pairs
and freezes the invoice. Anything learned afterwards becomes an adjustment
billed on a later period's draft; the ledger itself is never edited.
"""

import sqlite3
import uuid
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from usage_ledger.config.loader import PipelineConfig
from usage_ledger.errors import (
    FinalizeConflict,
    InvoiceStateError,
    ReconciliationDriftError,
    UnbalancedTransactionError,
)
from usage_ledger.storage.billing_repository import (
    AdjustmentRepository,
    FinalizeLockRepository,
    InvoiceRepository,
    LedgerRepository,
)
from usage_ledger.storage.db import get_connection, transaction
from usage_ledger.storage.models import (
    AccountType,
    EntryType,
    Invoice,
    InvoiceAdjustment,
    InvoiceLine,
    InvoiceStatus,
    LedgerEntry,
    UsageEvent,
)
from usage_ledger.storage.repository import SummaryRepository, WatermarkRepository

from .alerts import Alert, AlertSeverity, AlertSink
from .periods import ensure_utc, next_period, period_bounds, period_for, utc_now
from .pricing import RateCard, price_usage
from .reconciliation import ReconciliationService
from .watermark import UNSTABLE_STATES

logger = structlog.get_logger(__name__)

REF_INVOICE = "invoice"
REF_ADJUSTMENT = "invoice_adjustment"
REF_VOID = "invoice_void"


@dataclass(frozen=True)
class FinalizeResult:
    invoice: Invoice
    entries: List[LedgerEntry]
    already_finalized: bool = False


@dataclass(frozen=True)
class BillingExport:
    """What the billing collaborator may see: finalized state only."""
    invoices: List[Invoice]
    entries: List[LedgerEntry]


def assert_balanced(entries: List[LedgerEntry]) -> None:
    """Check that every transaction's debits equal its credits.

    Raises:
        UnbalancedTransactionError: On the first transaction that does not balance
    """
    totals: Dict[str, List[Decimal]] = defaultdict(lambda: [Decimal("0"), Decimal("0")])
    for entry in entries:
        side = 0 if entry.entry_type == EntryType.DEBIT else 1
        totals[entry.transaction_id][side] += entry.amount
    for transaction_id, (debits, credits) in totals.items():
        if debits != credits:
            raise UnbalancedTransactionError(
                f"Transaction {transaction_id} is unbalanced", debits, credits
            )


class LedgerEngine:
    """Drives invoices through their lifecycle and writes the ledger."""

    def __init__(
        self,
        config: PipelineConfig,
        invoices: InvoiceRepository,
        ledger: LedgerRepository,
        adjustments: AdjustmentRepository,
        locks: FinalizeLockRepository,
        summaries: SummaryRepository,
        watermarks: WatermarkRepository,
        reconciliation: ReconciliationService,
        alerts: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utc_now,
        lock_ttl_seconds: int = 300,
    ):
        self.config = config
        self.rate_card = RateCard.from_config(config.billing)
        self.invoices = invoices
        self.ledger = ledger
        self.adjustments = adjustments
        self.locks = locks
        self.summaries = summaries
        self.watermarks = watermarks
        self.reconciliation = reconciliation
        self.alerts = alerts or AlertSink()
        self.clock = clock
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)

    def open_period(self, tenant_id: str, billing_period: str) -> Invoice:
        """Ensure a draft invoice exists for the tenant-period and return the invoice."""
        start, end = period_bounds(billing_period)
        created = self.invoices.insert_if_absent(Invoice(
            invoice_id=f"inv_{uuid.uuid4().hex}",
            tenant_id=tenant_id,
            billing_period=billing_period,
            period_start=start,
            period_end=end,
            status=InvoiceStatus.DRAFT,
            total=Decimal("0.00"),
            currency=self.rate_card.currency,
            created_at=ensure_utc(self.clock()),
        ))
        if created:
            logger.info("Draft invoice opened", tenant_id=tenant_id, billing_period=billing_period)
        return self.invoices.get(tenant_id, billing_period)

    def refresh_draft(self, tenant_id: str, billing_period: str) -> Invoice:
        """Recompute a draft's lines from current summaries and pending adjustments.

        Finalized and voided invoices are returned unchanged.
        """
        invoice = self.open_period(tenant_id, billing_period)
        if invoice.status != InvoiceStatus.DRAFT:
            return invoice

        conn = get_connection(self.invoices.db_path)
        try:
            with transaction(conn, immediate=True):
                lines, _ = self._build_lines(tenant_id, billing_period, conn)
                self.invoices.replace_draft(
                    invoice.invoice_id, lines, _total(lines), conn
                )
                return self.invoices.get(tenant_id, billing_period, conn=conn)
        finally:
            conn.close()

    def finalize(self, tenant_id: str, billing_period: str) -> FinalizeResult:
        """Finalize a tenant-period exactly once.

        Preconditions: the period has ended, every bucket of it is CLOSED
        and the latest FULL reconciliation of the period matched after the
        last arrival.
        Retrying on a finalized invoice returns the existing result.

        Returns:
            FinalizeResult with the finalized invoice and its postings

        Raises:
            FinalizeConflict: Another finalize holds the lock, or a
                precondition is unmet; nothing was written
            InvoiceStateError: If the invoice was voided
        """
        invoice = self.open_period(tenant_id, billing_period)
        if invoice.status != InvoiceStatus.DRAFT:
            return self._existing_result(invoice)

        lock_key = f"{tenant_id}:{billing_period}"
        owner = uuid.uuid4().hex
        now = ensure_utc(self.clock())
        if not self.locks.try_acquire(lock_key, owner, now, now + self.lock_ttl):
            raise FinalizeConflict(
                f"Finalize already in progress for {tenant_id} {billing_period}",
                tenant_id, billing_period, reasons=["lock_held"],
            )

        try:
            conn = get_connection(self.invoices.db_path)
            try:
                with transaction(conn, immediate=True):
                    invoice = self.invoices.get(tenant_id, billing_period, conn=conn)
                    if invoice.status != InvoiceStatus.DRAFT:
                        return self._existing_result(invoice)

                    self._check_preconditions(tenant_id, billing_period, now, conn)

                    lines, applied = self._build_lines(tenant_id, billing_period, conn)
                    self.invoices.replace_draft(invoice.invoice_id, lines, _total(lines), conn)
                    entries = self._finalization_entries(invoice, lines, now)
                    assert_balanced(entries)
                    self.ledger.append(entries, conn)
                    self.adjustments.mark_applied([a.adjustment_id for a in applied], conn)
                    self.invoices.transition(
                        invoice.invoice_id, InvoiceStatus.DRAFT, InvoiceStatus.FINALIZED, now, conn
                    )
                    start, end = period_bounds(billing_period)
                    self.watermarks.mark_finalized(tenant_id, start, end, conn)
                    finalized = self.invoices.get(tenant_id, billing_period, conn=conn)
            finally:
                conn.close()
        finally:
            self.locks.release(lock_key, owner)

        logger.info(
            "Invoice finalized",
            tenant_id=tenant_id,
            billing_period=billing_period,
            invoice_id=finalized.invoice_id,
            total=str(finalized.total),
            postings=len(entries),
        )
        return FinalizeResult(invoice=finalized, entries=entries)

    def void(self, tenant_id: str, billing_period: str, reason: str) -> Invoice:
        """Void a finalized invoice by posting offsetting entries.

        Raises:
            InvoiceStateError: If the invoice is not finalized
            FinalizeConflict: If another finalize/void holds the lock
        """
        invoice = self.invoices.get(tenant_id, billing_period)
        if invoice is None or invoice.status != InvoiceStatus.FINALIZED:
            raise InvoiceStateError(
                f"Only finalized invoices can be voided ({tenant_id} {billing_period})",
                invoice_id=invoice.invoice_id if invoice else None,
                status=invoice.status.value if invoice else None,
            )

        lock_key = f"{tenant_id}:{billing_period}"
        owner = uuid.uuid4().hex
        now = ensure_utc(self.clock())
        if not self.locks.try_acquire(lock_key, owner, now, now + self.lock_ttl):
            raise FinalizeConflict(
                f"Invoice {invoice.invoice_id} is locked", tenant_id, billing_period,
                reasons=["lock_held"],
            )
        try:
            conn = get_connection(self.invoices.db_path)
            try:
                with transaction(conn, immediate=True):
                    if not self.invoices.transition(
                        invoice.invoice_id, InvoiceStatus.FINALIZED, InvoiceStatus.VOIDED, now, conn
                    ):
                        raise InvoiceStateError(
                            f"Invoice {invoice.invoice_id} changed state concurrently",
                            invoice_id=invoice.invoice_id,
                        )
                    posted = self.ledger.list_by_transaction_prefix(
                        f"{invoice.invoice_id}:", conn=conn
                    )
                    offsets = [_offset(entry, invoice.invoice_id, reason, now) for entry in posted]
                    assert_balanced(offsets)
                    self.ledger.append(offsets, conn)
            finally:
                conn.close()
        finally:
            self.locks.release(lock_key, owner)

        logger.info(
            "Invoice voided",
            tenant_id=tenant_id,
            billing_period=billing_period,
            invoice_id=invoice.invoice_id,
            reason=reason,
        )
        return self.invoices.get(tenant_id, billing_period)

    def record_late_adjustment(self, event: UsageEvent) -> Optional[InvoiceAdjustment]:
        """Bill usage that arrived after its period was finalized.

        Runs ``defer_late_usage`` in its own transaction, then refreshes the
        draft the adjustment landed on.

        Returns:
            The adjustment, or None if the event's period is not finalized
        """
        conn = get_connection(self.invoices.db_path)
        try:
            with transaction(conn, immediate=True):
                adjustment = self.defer_late_usage(event, conn)
        finally:
            conn.close()
        if adjustment is not None:
            self.refresh_draft(event.tenant_id, adjustment.target_period)
        return adjustment

    def defer_late_usage(
        self, event: UsageEvent, conn: sqlite3.Connection
    ) -> Optional[InvoiceAdjustment]:
        """Record a late event as an adjustment inside the caller's transaction.

        The adjustment references the original invoice and targets the
        earliest later period that is still a draft (or not opened yet).
        ``conn`` must hold an IMMEDIATE transaction: target selection and the
        insert then serialize against ``finalize``. The caller refreshes the
        target draft after commit.

        Returns:
            The stored adjustment, or None if the event's period is not finalized
        """
        period = period_for(event.occurred_at)
        original = self.invoices.get(event.tenant_id, period, conn=conn)
        if original is None or original.status == InvoiceStatus.DRAFT:
            return None

        target = next_period(period)
        while True:
            candidate = self.invoices.get(event.tenant_id, target, conn=conn)
            if candidate is None or candidate.status == InvoiceStatus.DRAFT:
                break
            target = next_period(target)

        adjustment = InvoiceAdjustment(
            adjustment_id=f"adj_{uuid.uuid4().hex}",
            tenant_id=event.tenant_id,
            original_invoice_id=original.invoice_id,
            target_period=target,
            event_type=event.event_type,
            quantity=event.quantity,
            amount=Decimal(event.quantity) * self.rate_card.get_rate(event.event_type),
            reason=f"late usage for {period}",
            source_key=event.idempotency_key,
            created_at=ensure_utc(self.clock()),
        )
        if not self.adjustments.insert_if_absent(adjustment, conn=conn):
            return self.adjustments.get_by_source(
                event.tenant_id, event.idempotency_key, conn=conn
            )
        logger.info(
            "Late usage deferred to adjustment",
            tenant_id=event.tenant_id,
            original_invoice_id=original.invoice_id,
            target_period=target,
            quantity=event.quantity,
        )
        return adjustment

    def find_stuck_drafts(self, now: Optional[datetime] = None) -> List[Invoice]:
        """Alert on drafts still open past their period's grace deadline."""
        now = ensure_utc(now or self.clock())
        cutoff = now - timedelta(days=self.config.billing.invoice_grace_days)
        stuck = self.invoices.list_drafts_ending_before(cutoff)
        for invoice in stuck:
            self.alerts.emit(Alert(
                kind="invoice_stuck_in_draft",
                severity=AlertSeverity.WARNING,
                message="Invoice still in draft past its grace deadline",
                context={
                    "tenant_id": invoice.tenant_id,
                    "billing_period": invoice.billing_period,
                    "invoice_id": invoice.invoice_id,
                },
            ))
        return stuck

    def export_finalized(self, tenant_id: str) -> BillingExport:
        """Finalized and voided invoices with their postings. Drafts are never exposed."""
        invoices = self.invoices.list_for_tenant(
            tenant_id, [InvoiceStatus.FINALIZED, InvoiceStatus.VOIDED]
        )
        return BillingExport(invoices=invoices, entries=self.ledger.list_entries(tenant_id=tenant_id))

    def trial_balance(self, tenant_id: Optional[str] = None) -> Tuple[Decimal, Decimal]:
        """Total debits and credits, for one tenant or the whole ledger."""
        debits = credits = Decimal("0")
        for entry in self.ledger.list_entries(tenant_id=tenant_id):
            if entry.entry_type == EntryType.DEBIT:
                debits += entry.amount
            else:
                credits += entry.amount
        return debits, credits

    def _existing_result(self, invoice: Invoice) -> FinalizeResult:
        if invoice.status == InvoiceStatus.VOIDED:
            raise InvoiceStateError(
                f"Invoice {invoice.invoice_id} was voided and cannot be finalized",
                invoice_id=invoice.invoice_id,
                status=invoice.status.value,
            )
        entries = self.ledger.list_by_transaction_prefix(f"{invoice.invoice_id}:")
        return FinalizeResult(invoice=invoice, entries=entries, already_finalized=True)

    def _check_preconditions(self, tenant_id: str, billing_period: str, now: datetime, conn) -> None:
        start, end = period_bounds(billing_period)
        if now < end:
            raise FinalizeConflict(
                f"Billing period {billing_period} has not ended yet",
                tenant_id, billing_period, reasons=["period_open"],
            )

        watermarks = self.watermarks.list_for_period(tenant_id, start, end, conn=conn)
        reasons = [
            f"bucket {w.event_type}@{w.bucket_start.isoformat()} is {w.state.value}"
            for w in watermarks
            if w.state in UNSTABLE_STATES
        ]
        if reasons:
            raise FinalizeConflict(
                f"Buckets of {tenant_id} {billing_period} are not closed",
                tenant_id, billing_period, reasons=reasons,
            )

        last_arrival = max((w.last_event_at for w in watermarks), default=None)
        try:
            self.reconciliation.require_match(tenant_id, billing_period, not_before=last_arrival)
        except ReconciliationDriftError as e:
            raise FinalizeConflict(
                e.message, tenant_id, billing_period, reasons=[e.error_code.lower()]
            ) from e

    def _build_lines(
        self,
        tenant_id: str,
        billing_period: str,
        conn,
    ) -> Tuple[List[InvoiceLine], List[InvoiceAdjustment]]:
        start, end = period_bounds(billing_period)
        quantities: Dict[str, int] = defaultdict(int)
        for summary in self.summaries.list_range(tenant_id, start, end, conn=conn):
            quantities[summary.event_type] += summary.total_quantity

        lines = [
            price_usage(self.rate_card, event_type, quantity)
            for event_type, quantity in sorted(quantities.items())
        ]
        # late usage is priced per original invoice and event type, rounded once
        pending = self.adjustments.pending_for_period(tenant_id, billing_period, conn=conn)
        late: Dict[Tuple[str, str], int] = defaultdict(int)
        for adjustment in pending:
            late[(adjustment.original_invoice_id, adjustment.event_type)] += adjustment.quantity
        for (original_invoice_id, event_type), quantity in sorted(late.items()):
            lines.append(replace(
                price_usage(self.rate_card, event_type, quantity),
                description=f"Adjustment to {original_invoice_id}: late {event_type} usage",
                adjusts_invoice_id=original_invoice_id,
            ))
        return lines, pending

    def _finalization_entries(
        self,
        invoice: Invoice,
        lines: List[InvoiceLine],
        now: datetime,
    ) -> List[LedgerEntry]:
        usage_total = _total([line for line in lines if line.adjusts_invoice_id is None])
        entries = _posting_pair(
            transaction_id=f"{invoice.invoice_id}:usage",
            tenant_id=invoice.tenant_id,
            amount=usage_total,
            reference_type=REF_INVOICE,
            reference_id=invoice.invoice_id,
            memo=f"usage {invoice.billing_period}",
            now=now,
        )
        for line in lines:
            if line.adjusts_invoice_id is None:
                continue
            entries.extend(_posting_pair(
                transaction_id=f"{invoice.invoice_id}:adj:{line.adjusts_invoice_id}:{line.event_type}",
                tenant_id=invoice.tenant_id,
                amount=line.amount,
                reference_type=REF_ADJUSTMENT,
                reference_id=line.adjusts_invoice_id,
                memo=f"{line.description}, billed on {invoice.invoice_id}",
                now=now,
            ))
        return entries


def _total(lines: List[InvoiceLine]) -> Decimal:
    return sum((line.amount for line in lines), Decimal("0.00"))


def _posting_pair(
    transaction_id: str,
    tenant_id: str,
    amount: Decimal,
    reference_type: str,
    reference_id: str,
    memo: str,
    now: datetime,
) -> List[LedgerEntry]:
    """Debit receivable / credit revenue; a negative amount swaps the sides."""
    if amount == 0:
        return []
    debit_account, credit_account = AccountType.RECEIVABLE, AccountType.REVENUE
    if amount < 0:
        debit_account, credit_account = credit_account, debit_account
        amount = -amount
    return [
        LedgerEntry(
            entry_id=f"le_{uuid.uuid4().hex}",
            transaction_id=transaction_id,
            tenant_id=tenant_id,
            account_type=account,
            entry_type=entry_type,
            amount=amount,
            reference_type=reference_type,
            reference_id=reference_id,
            created_at=now,
            memo=memo,
        )
        for account, entry_type in (
            (debit_account, EntryType.DEBIT),
            (credit_account, EntryType.CREDIT),
        )
    ]


def _offset(entry: LedgerEntry, invoice_id: str, reason: str, now: datetime) -> LedgerEntry:
    """Mirror of ``entry`` on the opposite side, cancelling it."""
    return LedgerEntry(
        entry_id=f"le_{uuid.uuid4().hex}",
        transaction_id=f"void:{entry.transaction_id}",
        tenant_id=entry.tenant_id,
        account_type=entry.account_type,
        entry_type=EntryType.CREDIT if entry.entry_type == EntryType.DEBIT else EntryType.DEBIT,
        amount=entry.amount,
        reference_type=REF_VOID,
        reference_id=invoice_id,
        created_at=now,
        memo=f"void: {reason}",
    )
