"""
Inbound event validation.

Schema and bounds checks applied before an event reaches durable storage.
Stateless: any number of validators can run side by side.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from usage_ledger.config.loader import PipelineConfig
from usage_ledger.errors import ValidationError
from usage_ledger.logging import log_audit_event
from usage_ledger.storage.models import UsageEvent

from .periods import ensure_utc, utc_now

REQUIRED_FIELDS = ("tenant_id", "event_type", "quantity", "idempotency_key", "occurred_at")
OPTIONAL_FIELDS = ("unit", "source", "metadata", "received_at")


class EventValidator:
    """Turns raw payloads into UsageEvents or rejects them with ValidationError."""

    def __init__(self, config: PipelineConfig):
        self.config = config

    def validate(self, raw: Mapping[str, Any], now: Optional[datetime] = None) -> UsageEvent:
        """Validate a raw payload.

        Checks, in order: required fields present, quantity a non-negative
        integer, event type allowed for the tenant, occurred_at not further
        in the future than the configured skew.

        Args:
            raw: Payload as delivered by the transport
            now: Acceptance time, defaults to the current UTC time

        Returns:
            Immutable UsageEvent stamped with ``received_at = now``

        Raises:
            ValidationError: If any check fails; the rejection is audited
        """
        now = ensure_utc(now or utc_now())
        try:
            return self._build(raw, now)
        except ValidationError as e:
            log_audit_event(
                "usage_event_rejected",
                tenant_id=raw.get("tenant_id") if isinstance(raw, Mapping) else None,
                idempotency_key=raw.get("idempotency_key") if isinstance(raw, Mapping) else None,
                reason=e.message,
                field=e.field,
            )
            raise

    def _build(self, raw: Mapping[str, Any], now: datetime) -> UsageEvent:
        if not isinstance(raw, Mapping):
            raise ValidationError("Event payload must be a mapping")

        unknown = set(raw) - set(REQUIRED_FIELDS) - set(OPTIONAL_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown event fields: {sorted(unknown)}")

        for name in REQUIRED_FIELDS:
            if raw.get(name) is None or raw.get(name) == "":
                raise ValidationError(f"Missing required field '{name}'", field=name)

        tenant_id = _require_str(raw, "tenant_id")
        event_type = _require_str(raw, "event_type")
        idempotency_key = _require_str(raw, "idempotency_key")

        quantity = raw["quantity"]
        # bool is an int subclass; True is not a quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("quantity must be an integer", field="quantity")
        if quantity < 0:
            raise ValidationError(f"quantity must be >= 0, got {quantity}", field="quantity")
        max_quantity = self.config.validation.max_quantity
        if quantity > max_quantity:
            raise ValidationError(
                f"quantity {quantity} exceeds the maximum of {max_quantity}",
                field="quantity",
                max_quantity=max_quantity,
            )

        allowed = self.config.get_tenant_config(tenant_id).allowed_event_types
        if event_type not in allowed:
            raise ValidationError(
                f"event_type '{event_type}' is not allowed for tenant '{tenant_id}'",
                field="event_type",
                allowed=sorted(allowed),
            )

        occurred_at = _parse_timestamp(raw["occurred_at"], "occurred_at")
        max_skew = timedelta(seconds=self.config.validation.max_future_skew_seconds)
        if occurred_at > now + max_skew:
            raise ValidationError(
                f"occurred_at {occurred_at.isoformat()} is more than "
                f"{max_skew.total_seconds():.0f}s in the future",
                field="occurred_at",
            )

        return UsageEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            quantity=quantity,
            idempotency_key=idempotency_key,
            occurred_at=occurred_at,
            received_at=now,
            unit=str(raw.get("unit") or "unit"),
            source=str(raw.get("source") or ""),
            metadata=_parse_metadata(raw.get("metadata")),
        )


def _require_str(raw: Mapping[str, Any], name: str) -> str:
    value = raw[name]
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{name}' must be a non-empty string", field=name)
    return value


def _parse_timestamp(value: Any, name: str) -> datetime:
    """Accept datetimes or ISO-8601 strings (``Z`` suffix included)."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
    raise ValidationError(f"'{name}' must be an ISO-8601 timestamp", field=name)


def _parse_metadata(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError("metadata must be a key-value mapping", field="metadata")
    return {str(k): str(v) for k, v in value.items()}
