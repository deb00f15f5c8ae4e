"""
Operational alerts.

Drift and stuck invoices are surfaced as observable signals, not as
exceptions thrown at callers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

import structlog

logger = structlog.get_logger("usage_ledger.alerts")


class AlertSeverity(Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Alert:
    """An operator-facing signal."""
    kind: str  # e.g. "reconciliation_drift", "invoice_stuck_in_draft"
    severity: AlertSeverity
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


class AlertSink:
    """Destination for alerts. The default implementation logs them."""

    def emit(self, alert: Alert) -> None:
        log = logger.error if alert.severity == AlertSeverity.CRITICAL else logger.warning
        log(alert.message, alert_kind=alert.kind, severity=alert.severity.value, **alert.context)


class RecordingAlertSink(AlertSink):
    """Logs alerts and keeps them in memory for status reporting."""

    def __init__(self):
        self.alerts: List[Alert] = []

    def emit(self, alert: Alert) -> None:
        super().emit(alert)
        self.alerts.append(alert)

    def of_kind(self, kind: str) -> List[Alert]:
        return [a for a in self.alerts if a.kind == kind]
