"""
Time bucketing and billing periods.

Buckets are fixed-width UTC intervals aligned to the epoch. Billing periods
are calendar months named ``YYYY-MM``.
"""

from datetime import datetime, timedelta, timezone
from typing import Tuple


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def bucket_start_for(moment: datetime, bucket_seconds: int) -> datetime:
    """Start of the bucket containing ``moment``."""
    epoch = int(ensure_utc(moment).timestamp())
    return datetime.fromtimestamp(epoch - epoch % bucket_seconds, tz=timezone.utc)


def bucket_bounds(moment: datetime, bucket_seconds: int) -> Tuple[datetime, datetime]:
    """``[start, end)`` of the bucket containing ``moment``."""
    start = bucket_start_for(moment, bucket_seconds)
    return start, start + timedelta(seconds=bucket_seconds)


def period_for(moment: datetime) -> str:
    """Billing period (``YYYY-MM``) containing ``moment``."""
    moment = ensure_utc(moment)
    return f"{moment.year:04d}-{moment.month:02d}"


def period_bounds(billing_period: str) -> Tuple[datetime, datetime]:
    """``[start, end)`` of a ``YYYY-MM`` billing period.

    Raises:
        ValueError: If the period string is malformed
    """
    try:
        year_str, month_str = billing_period.split("-")
        year, month = int(year_str), int(month_str)
        start = datetime(year, month, 1, tzinfo=timezone.utc)
    except ValueError:
        raise ValueError(f"Invalid billing period '{billing_period}', expected YYYY-MM")
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def next_period(billing_period: str) -> str:
    _, end = period_bounds(billing_period)
    return period_for(end)
