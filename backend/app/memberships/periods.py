"""Calendar arithmetic for billing cycles and usage periods."""
from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timezone
from typing import Optional

from .models import BillingCycle


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def period_key(moment: datetime) -> str:
    """Return the ``YYYY-MM`` usage period containing ``moment``."""

    return f"{moment.year:04d}-{moment.month:02d}"


def next_period_start(moment: datetime) -> datetime:
    """First instant of the calendar month following ``moment``."""

    year = moment.year + moment.month // 12
    month = moment.month % 12 + 1
    return moment.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by whole months, clamping to the end of short months."""

    total_months = moment.month - 1 + months
    year = moment.year + total_months // 12
    month = total_months % 12 + 1
    day = min(moment.day, monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def advance_cycle(moment: datetime, billing_cycle: BillingCycle, *, cycles: int = 1) -> datetime:
    months = 12 if billing_cycle == BillingCycle.YEARLY else 1
    return add_months(moment, months * cycles)


def parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str):
        return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise TypeError("Unsupported datetime value")


__all__ = [
    "add_months",
    "advance_cycle",
    "ensure_aware",
    "next_period_start",
    "parse_optional_datetime",
    "period_key",
    "utcnow",
]
