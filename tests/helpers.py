"""
Test helpers: fixed moments, a controllable clock and event payloads.
"""

from datetime import datetime, timedelta, timezone


def at(hour: int, minute: int = 0, day: int = 15, month: int = 1) -> datetime:
    """A UTC moment in January 2024 unless told otherwise."""
    return datetime(2024, month, day, hour, minute, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def event_payload(key: str, quantity: int, occurred_at: datetime, **overrides) -> dict:
    payload = {
        "tenant_id": "T1",
        "event_type": "api_call",
        "quantity": quantity,
        "idempotency_key": key,
        "occurred_at": occurred_at.isoformat(),
    }
    payload.update(overrides)
    return payload
