"""Refund and plan-change proration arithmetic."""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .models import BillingCycle, Membership, PlanChangeQuote, TierDefinition

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
_ONE_DAY = timedelta(days=1)


def round_money(value: Decimal) -> Decimal:
    """Canonical rounding rule, applied once at the end of a computation."""

    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta / _ONE_DAY)


def calculate_refund(membership: Membership, now: datetime) -> Decimal:
    """Refund owed for the unused part of the current paid period."""

    if now >= membership.end_date:
        return ZERO

    total_period_days = _ceil_days(membership.end_date - membership.start_date)
    if total_period_days <= 0:
        return ZERO
    unused_days = min(_ceil_days(membership.end_date - now), total_period_days)

    raw = membership.paid_amount * Decimal(unused_days) / Decimal(total_period_days)
    return max(ZERO, round_money(raw))


def calculate_plan_change(
    membership: Membership,
    new_tier: TierDefinition,
    billing_cycle: Optional[BillingCycle],
    now: datetime,
) -> PlanChangeQuote:
    """Quote the charge or credit for moving ``membership`` onto ``new_tier``."""

    cycle = billing_cycle or membership.billing_cycle
    refund_amount = calculate_refund(membership, now)
    new_plan_amount = round_money(new_tier.price_for(cycle))
    raw_net = new_plan_amount - refund_amount

    return PlanChangeQuote(
        new_plan_amount=new_plan_amount,
        refund_amount=refund_amount,
        net_amount=max(ZERO, raw_net),
        is_upgrade=new_plan_amount > membership.paid_amount,
        needs_payment=raw_net > 0,
        refund_to_customer=-raw_net if raw_net < 0 else ZERO,
    )


__all__ = ["CENT", "ZERO", "calculate_plan_change", "calculate_refund", "round_money"]
