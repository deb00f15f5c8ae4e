"""
Data models for storage layer.

Defines the records persisted by the pipeline and the outcome enums returned
by its operations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


class AcceptOutcome(Enum):
    """Result of handing an event to the idempotent store."""
    INSERTED = "inserted"
    DUPLICATE_IGNORED = "duplicate_ignored"


class BucketState(Enum):
    """Watermark lifecycle of a single aggregation bucket."""
    OPEN = "open"            # bucket end not reached yet
    CLOSING = "closing"      # bucket ended, inside grace period
    CLOSED = "closed"        # stable, no events expected
    REOPENED = "reopened"    # late event landed after closing
    FINALIZED = "finalized"  # parent billing period finalized, terminal


class LateArrival(Enum):
    """How the watermark tracker classified an accepted event."""
    ON_TIME = "on_time"
    REOPENED = "reopened"
    DEFERRED = "deferred"  # period already finalized, becomes an adjustment


class AccountType(Enum):
    RECEIVABLE = "receivable"
    REVENUE = "revenue"
    CREDIT_BALANCE = "credit_balance"


class EntryType(Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class InvoiceStatus(Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    VOIDED = "voided"


class ReconciliationKind(Enum):
    COUNT = "count"
    SUM = "sum"
    FULL = "full"


class ReconciliationStatus(Enum):
    MATCH = "match"
    DRIFT = "drift"


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of metered usage.

    Created once by the validator, never mutated, removed only by
    retention expiry. ``(tenant_id, idempotency_key)`` is unique.
    """
    tenant_id: str
    event_type: str
    quantity: int
    idempotency_key: str
    occurred_at: datetime
    received_at: datetime
    unit: str = "unit"
    source: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    def same_payload(self, other: "UsageEvent") -> bool:
        """True when two events carry the same usage, ignoring receipt time."""
        return (
            self.event_type == other.event_type
            and self.quantity == other.quantity
            and self.occurred_at == other.occurred_at
            and self.unit == other.unit
        )


@dataclass(frozen=True)
class UsageSummary:
    """Aggregate of one bucket, always recomputed from raw events."""
    tenant_id: str
    event_type: str
    bucket_start: datetime
    bucket_end: datetime
    total_quantity: int
    event_count: int
    computed_at: datetime


@dataclass(frozen=True)
class Watermark:
    """Stability boundary of one bucket."""
    tenant_id: str
    event_type: str
    bucket_start: datetime
    bucket_end: datetime
    state: BucketState
    last_event_at: datetime
    closed_at: Optional[datetime] = None
    reopen_count: int = 0


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable append-only posting."""
    entry_id: str
    transaction_id: str
    tenant_id: str
    account_type: AccountType
    entry_type: EntryType
    amount: Decimal
    reference_type: str
    reference_id: str
    created_at: datetime
    memo: str = ""


@dataclass(frozen=True)
class InvoiceLine:
    """Priced usage (or adjustment) on an invoice."""
    description: str
    event_type: str
    quantity: int
    unit_price: Decimal
    amount: Decimal
    adjusts_invoice_id: Optional[str] = None


@dataclass
class Invoice:
    """Invoice for one tenant and billing period.

    Mutable while draft. Once finalized the total never changes; corrections
    are adjustment postings referencing the invoice.
    """
    invoice_id: str
    tenant_id: str
    billing_period: str
    period_start: datetime
    period_end: datetime
    status: InvoiceStatus
    total: Decimal
    currency: str
    created_at: datetime
    finalized_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    lines: List[InvoiceLine] = field(default_factory=list)


@dataclass(frozen=True)
class InvoiceAdjustment:
    """Correction against a finalized invoice, billed on a later draft.

    ``amount`` is the unrounded charge of this one event. Invoice lines sum
    quantities per original invoice and event type and round once.
    """
    adjustment_id: str
    tenant_id: str
    original_invoice_id: str
    target_period: str
    event_type: str
    quantity: int
    amount: Decimal
    reason: str
    source_key: str
    created_at: datetime
    applied: bool = False


@dataclass(frozen=True)
class Comparison:
    """One count or quantity check inside a reconciliation run."""
    check: str
    metric: str  # "count" or "quantity"
    expected: int
    observed: int
    within_tolerance: bool

    @property
    def delta(self) -> int:
        """Signed difference, positive when the observed copy is short."""
        return self.expected - self.observed


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one reconciliation run."""
    run_id: str
    kind: ReconciliationKind
    status: ReconciliationStatus
    delta: int
    tenant_id: Optional[str]
    period_start: datetime
    period_end: datetime
    completed_at: datetime
    details: List[Comparison] = field(default_factory=list)

    @property
    def drifting(self) -> List[Comparison]:
        return [c for c in self.details if not c.within_tolerance]
