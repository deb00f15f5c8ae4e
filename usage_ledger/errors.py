"""
Error taxonomy for the metering pipeline.

Every error carries a machine-readable code, context and a recovery hint so
operators can tell a rejected event from a blocked finalization.
"""

from typing import Any, Dict, List, Optional


class MeteringError(Exception):
    """Base error for the metering pipeline.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
    ):
        self.message = message
        self.error_code = error_code or "METERING_ERROR"
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a dictionary for logs and operator output."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class ValidationError(MeteringError):
    """Inbound event is malformed or out of bounds. Never retried by the pipeline."""

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        if field:
            context["field"] = field
        super().__init__(
            message,
            "VALIDATION_ERROR",
            context=context,
            recovery_hint="Fix the event upstream and resend it",
        )
        self.field = field


class ReconciliationDriftError(MeteringError):
    """Drift beyond tolerance blocks finalization of a tenant-period."""

    def __init__(self, message: str, run_id: Optional[str] = None, delta: int = 0):
        super().__init__(
            message,
            "RECONCILIATION_DRIFT",
            context={"run_id": run_id, "delta": delta},
            recovery_hint="Investigate the drifting copy, backfill or recompute, then reconcile again",
        )
        self.run_id = run_id
        self.delta = delta


class FinalizeConflict(MeteringError):
    """Finalize rejected: another finalize is in flight or preconditions are unmet."""

    def __init__(self, message: str, tenant_id: str, billing_period: str,
                 reasons: Optional[List[str]] = None):
        super().__init__(
            message,
            "FINALIZE_CONFLICT",
            context={
                "tenant_id": tenant_id,
                "billing_period": billing_period,
                "reasons": list(reasons or []),
            },
            recovery_hint="Retry once the preconditions clear",
        )
        self.tenant_id = tenant_id
        self.billing_period = billing_period
        self.reasons = list(reasons or [])


class InvoiceStateError(MeteringError):
    """Requested transition is not allowed from the invoice's current status."""

    def __init__(self, message: str, invoice_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(
            message,
            "INVOICE_STATE_ERROR",
            context={"invoice_id": invoice_id, "status": status},
        )


class UnbalancedTransactionError(MeteringError):
    """Debits and credits of a ledger transaction differ."""

    def __init__(self, message: str, debits: Any, credits: Any):
        super().__init__(
            message,
            "UNBALANCED_TRANSACTION",
            context={"debits": str(debits), "credits": str(credits)},
        )


class OperationCancelled(MeteringError):
    """A recompute or reconcile job was cancelled before its final write."""

    def __init__(self, operation: str, **context: Any):
        super().__init__(
            f"{operation} cancelled before completion",
            "OPERATION_CANCELLED",
            context=context,
        )
