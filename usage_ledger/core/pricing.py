"""
Pricing calculations and rate management.

Turns metered quantities into invoice amounts using the configured rate card.
Single currency only.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict

from usage_ledger.config.loader import BillingConfig
from usage_ledger.storage.models import InvoiceLine

CENT = Decimal("0.01")


@dataclass(frozen=True)
class RateCard:
    """Per-unit prices by event type."""
    rates: Dict[str, Decimal]
    currency: str = "USD"

    @classmethod
    def from_config(cls, config: BillingConfig) -> "RateCard":
        return cls(rates=dict(config.rates), currency=config.currency)

    def get_rate(self, event_type: str) -> Decimal:
        """Get the unit price for an event type.

        Raises:
            ValueError: If the event type has no rate
        """
        if event_type not in self.rates:
            raise ValueError(f"No rate configured for event type: {event_type}")
        return self.rates[event_type]


def calculate_charge(rate_card: RateCard, event_type: str, quantity: int) -> Decimal:
    """Charge for a quantity, rounded half-up to cents.

    Args:
        rate_card: Prices to apply
        event_type: Metered event type
        quantity: Units consumed

    Returns:
        Amount in the rate card's currency

    Raises:
        ValueError: If the event type has no rate
    """
    total = Decimal(quantity) * rate_card.get_rate(event_type)
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


def price_usage(rate_card: RateCard, event_type: str, quantity: int) -> InvoiceLine:
    """Invoice line for a period's total usage of one event type."""
    return InvoiceLine(
        description=f"{event_type} usage",
        event_type=event_type,
        quantity=quantity,
        unit_price=rate_card.get_rate(event_type),
        amount=calculate_charge(rate_card, event_type, quantity),
    )
