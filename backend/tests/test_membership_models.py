"""Unit tests for membership models, the tier catalog and calendar helpers."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from backend.app.memberships import (
    DEFAULT_CATALOG,
    BillingCycle,
    BillingRefKind,
    ExternalBillingRef,
    Membership,
    MembershipClass,
    MembershipStatus,
    TierCode,
    UsageKind,
    ValidationError,
)
from backend.app.memberships.models import UNLIMITED, UsageCounters
from backend.app.memberships.periods import add_months, advance_cycle, next_period_start, period_key


NOW = datetime(2024, 6, 16, 12, tzinfo=timezone.utc)


def make_membership(**overrides) -> Membership:
    data = {
        "membership_id": "mem_1",
        "subscriber_id": "user-1",
        "tier_code": TierCode.HDB,
        "status": MembershipStatus.ACTIVE,
        "billing_cycle": BillingCycle.MONTHLY,
        "paid_amount": Decimal("25.00"),
        "start_date": datetime(2024, 6, 1, tzinfo=timezone.utc),
        "end_date": datetime(2024, 7, 1, tzinfo=timezone.utc),
        "current_usage": UsageCounters(
            period_key="2024-06",
            reset_date=datetime(2024, 7, 1, tzinfo=timezone.utc),
        ),
    }
    data.update(overrides)
    return Membership(**data)


def test_active_membership_grants_access():
    membership = make_membership()

    status = membership.access_status(NOW)

    assert membership.has_active_access(NOW)
    assert status.has_access is True
    assert status.message == "Active membership with full access"
    assert status.is_cancelled is False


def test_cancelled_membership_keeps_access_until_end_date():
    membership = make_membership(status=MembershipStatus.CANCELLED, cancelled_at=NOW)

    before_end = membership.access_status(NOW)
    after_end = membership.access_status(datetime(2024, 7, 2, tzinfo=timezone.utc))

    assert before_end.has_access is True
    assert before_end.message == "Cancelled - access until 2024-07-01"
    assert before_end.is_cancelled is True
    assert after_end.has_access is False
    assert after_end.message == "Cancelled and expired - no access"


@pytest.mark.parametrize(
    "status_value",
    [MembershipStatus.PENDING, MembershipStatus.SUSPENDED, MembershipStatus.EXPIRED],
)
def test_non_access_statuses_deny_access(status_value):
    membership = make_membership(status=status_value)

    assert membership.has_active_access(NOW) is False
    assert membership.access_status(NOW).has_access is False


def test_cancelled_at_cannot_coexist_with_active_status():
    with pytest.raises(PydanticValidationError):
        make_membership(status=MembershipStatus.ACTIVE, cancelled_at=NOW)


def test_evolve_revalidates_invariants():
    cancelled = make_membership(status=MembershipStatus.CANCELLED, cancelled_at=NOW)

    with pytest.raises(PydanticValidationError):
        cancelled.evolve(status=MembershipStatus.ACTIVE)

    reactivated = cancelled.evolve(status=MembershipStatus.ACTIVE, cancelled_at=None)
    assert reactivated.status == MembershipStatus.ACTIVE
    assert cancelled.status == MembershipStatus.CANCELLED


def test_end_date_must_not_precede_start_date():
    with pytest.raises(PydanticValidationError):
        make_membership(end_date=datetime(2024, 5, 1, tzinfo=timezone.utc))


def test_synthetic_billing_ref_is_not_provider_issued():
    ref = ExternalBillingRef.synthetic("mem_42")

    assert ref.kind == BillingRefKind.SYNTHETIC
    assert ref.subscription_ref == "membership_mem_42"
    assert ref.is_provider_issued is False


def test_catalog_lists_active_tiers_by_monthly_price():
    tiers = DEFAULT_CATALOG.list_active(MembershipClass.CUSTOMER)

    assert [tier.code for tier in tiers] == [
        TierCode.HDB,
        TierCode.CONDOMINIUM,
        TierCode.LANDED_PROPERTY,
        TierCode.COMMERCIAL,
    ]
    assert tiers[0].price_for(BillingCycle.MONTHLY) == Decimal("25.00")
    assert tiers[-1].price_for(BillingCycle.YEARLY) == Decimal("500.00")


def test_catalog_lists_vendor_tiers_after_customer_tiers():
    everything = DEFAULT_CATALOG.list_active()
    vendor = DEFAULT_CATALOG.list_active(MembershipClass.VENDOR)

    assert [tier.code for tier in vendor] == [
        TierCode.BASIC,
        TierCode.PROFESSIONAL,
        TierCode.PREMIUM,
        TierCode.ENTERPRISE,
    ]
    assert [tier.code for tier in everything][3:5] == [TierCode.COMMERCIAL, TierCode.BASIC]
    assert vendor[0].price_for(BillingCycle.MONTHLY) == Decimal("0.00")
    assert vendor[0].usage_kinds == [UsageKind.JOB_ASSIGNMENT]
    assert vendor[-1].features.limit_for(UsageKind.JOB_ASSIGNMENT) == UNLIMITED
    assert vendor[-1].features.platform_commission_rate == Decimal("8")


def test_catalog_rejects_unknown_and_inactive_tiers():
    with pytest.raises(ValidationError) as unknown:
        DEFAULT_CATALOG.get("GOLD")
    assert unknown.value.code == "unknown_tier"

    retired = DEFAULT_CATALOG.get(TierCode.HDB).model_copy(update={"is_active": False})
    catalog = DEFAULT_CATALOG.with_tier(retired)
    with pytest.raises(ValidationError) as inactive:
        catalog.get_purchasable(TierCode.HDB, BillingCycle.MONTHLY)
    assert inactive.value.code == "inactive_tier"
    assert DEFAULT_CATALOG.get(TierCode.HDB).is_active is True


def test_catalog_rejects_bad_billing_cycle():
    with pytest.raises(ValidationError) as exc:
        DEFAULT_CATALOG.get_purchasable(TierCode.HDB, "WEEKLY")

    assert exc.value.code == "invalid_billing_cycle"
    assert exc.value.status_code == 400


def test_emergency_limit_follows_emergency_service_flag():
    hdb = DEFAULT_CATALOG.get(TierCode.HDB)
    commercial = DEFAULT_CATALOG.get(TierCode.COMMERCIAL)

    assert hdb.limit_for(UsageKind.EMERGENCY_REQUEST) == 0
    assert commercial.limit_for(UsageKind.EMERGENCY_REQUEST) == UNLIMITED
    assert commercial.limit_for(UsageKind.SERVICE_REQUEST) == 1


def test_period_helpers_roll_over_year_end():
    december = datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc)

    assert period_key(december) == "2024-12"
    assert next_period_start(december) == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_add_months_clamps_to_short_months():
    assert add_months(datetime(2024, 1, 31, tzinfo=timezone.utc), 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert advance_cycle(datetime(2024, 2, 29, tzinfo=timezone.utc), BillingCycle.YEARLY) == datetime(
        2025, 2, 28, tzinfo=timezone.utc
    )
    assert advance_cycle(NOW, BillingCycle.MONTHLY) - NOW == timedelta(days=30)
