"""Static catalog definitions for membership tiers."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import ValidationError
from .models import UNLIMITED, BillingCycle, MembershipClass, TierCode, TierDefinition, TierFeatures

HDB_FEATURES = TierFeatures(
    service_requests_per_month=1,
    annual_inspections=12,
    response_time_hours=72,
)

CONDOMINIUM_FEATURES = TierFeatures(
    service_requests_per_month=1,
    annual_inspections=12,
    response_time_hours=48,
    priority_support=True,
)

LANDED_PROPERTY_FEATURES = TierFeatures(
    service_requests_per_month=1,
    annual_inspections=12,
    response_time_hours=48,
    emergency_service=True,
    priority_support=True,
)

COMMERCIAL_FEATURES = TierFeatures(
    service_requests_per_month=1,
    annual_inspections=12,
    response_time_hours=24,
    emergency_service=True,
    priority_support=True,
    dedicated_manager=True,
)

BASIC_FEATURES = TierFeatures(
    max_monthly_jobs=10,
    max_concurrent_jobs=2,
    platform_commission_rate=Decimal("15"),
)

PROFESSIONAL_FEATURES = TierFeatures(
    max_monthly_jobs=50,
    max_concurrent_jobs=5,
    platform_commission_rate=Decimal("12"),
    priority_assignment=True,
    emergency_service=True,
    priority_support=True,
)

PREMIUM_FEATURES = TierFeatures(
    max_monthly_jobs=150,
    max_concurrent_jobs=10,
    platform_commission_rate=Decimal("10"),
    priority_assignment=True,
    emergency_service=True,
    priority_support=True,
    dedicated_manager=True,
    featured_listing=True,
)

ENTERPRISE_FEATURES = TierFeatures(
    max_monthly_jobs=UNLIMITED,
    max_concurrent_jobs=UNLIMITED,
    platform_commission_rate=Decimal("8"),
    priority_assignment=True,
    emergency_service=True,
    priority_support=True,
    dedicated_manager=True,
    featured_listing=True,
)

# Customer yearly plans are priced at ten months.
TIER_CATALOG: Dict[TierCode, TierDefinition] = {
    TierCode.HDB: TierDefinition(
        code=TierCode.HDB,
        display_name="HDB Plan",
        description="Monthly assessment, minor repair labour included, parts billed separately",
        monthly_price=Decimal("25.00"),
        yearly_price=Decimal("250.00"),
        features=HDB_FEATURES,
    ),
    TierCode.CONDOMINIUM: TierDefinition(
        code=TierCode.CONDOMINIUM,
        display_name="Condominium Plan",
        description="HDB coverage with a focus on condominium facilities",
        monthly_price=Decimal("35.00"),
        yearly_price=Decimal("350.00"),
        features=CONDOMINIUM_FEATURES,
    ),
    TierCode.LANDED_PROPERTY: TierDefinition(
        code=TierCode.LANDED_PROPERTY,
        display_name="Landed Property Plan",
        description="Maintenance for landed homes with expanded coverage areas",
        monthly_price=Decimal("40.00"),
        yearly_price=Decimal("400.00"),
        features=LANDED_PROPERTY_FEATURES,
    ),
    TierCode.COMMERCIAL: TierDefinition(
        code=TierCode.COMMERCIAL,
        display_name="Commercial Plan",
        description="Comprehensive facility upkeep with customised maintenance schedules",
        monthly_price=Decimal("50.00"),
        yearly_price=Decimal("500.00"),
        features=COMMERCIAL_FEATURES,
    ),
    TierCode.BASIC: TierDefinition(
        code=TierCode.BASIC,
        membership_class=MembershipClass.VENDOR,
        display_name="Basic",
        description="Perfect for getting started with essential features",
        monthly_price=Decimal("0.00"),
        yearly_price=Decimal("0.00"),
        features=BASIC_FEATURES,
    ),
    TierCode.PROFESSIONAL: TierDefinition(
        code=TierCode.PROFESSIONAL,
        membership_class=MembershipClass.VENDOR,
        display_name="Professional",
        description="For growing businesses with enhanced features",
        monthly_price=Decimal("29.90"),
        yearly_price=Decimal("299.00"),
        features=PROFESSIONAL_FEATURES,
    ),
    TierCode.PREMIUM: TierDefinition(
        code=TierCode.PREMIUM,
        membership_class=MembershipClass.VENDOR,
        display_name="Premium",
        description="For established businesses with advanced tools",
        monthly_price=Decimal("79.90"),
        yearly_price=Decimal("799.00"),
        features=PREMIUM_FEATURES,
    ),
    TierCode.ENTERPRISE: TierDefinition(
        code=TierCode.ENTERPRISE,
        membership_class=MembershipClass.VENDOR,
        display_name="Enterprise",
        description="For large operations with unlimited features",
        monthly_price=Decimal("149.90"),
        yearly_price=Decimal("1499.00"),
        features=ENTERPRISE_FEATURES,
    ),
}


class TierCatalog:
    """Read-mostly lookup of tier definitions.

    Edits produce a new catalog; memberships keep the ``paid_amount`` captured
    at purchase, so a price change never rewrites an already-paid period.
    """

    def __init__(self, tiers: Optional[Mapping[TierCode, TierDefinition]] = None) -> None:
        self._tiers: Dict[TierCode, TierDefinition] = dict(TIER_CATALOG if tiers is None else tiers)

    @classmethod
    def from_definitions(cls, definitions: Iterable[TierDefinition]) -> "TierCatalog":
        return cls({definition.code: definition for definition in definitions})

    def get(self, code: TierCode | str) -> TierDefinition:
        """Return a tier definition, raising :class:`ValidationError` if unknown."""

        try:
            return self._tiers[TierCode(code)]
        except (KeyError, ValueError) as exc:
            raise ValidationError(
                code="unknown_tier",
                message=f"Unknown membership tier: {code}",
                detail={"tier_code": str(code)},
            ) from exc

    def get_purchasable(self, code: TierCode | str, billing_cycle: BillingCycle | str) -> TierDefinition:
        tier = self.get(code)
        if not tier.is_active:
            raise ValidationError(
                code="inactive_tier",
                message=f"Membership tier {tier.code.value} is not available",
                detail={"tier_code": tier.code.value},
            )
        try:
            BillingCycle(billing_cycle)
        except ValueError as exc:
            raise ValidationError(
                code="invalid_billing_cycle",
                message="Billing cycle must be MONTHLY or YEARLY",
                detail={"billing_cycle": str(billing_cycle)},
            ) from exc
        return tier

    def list_active(self, membership_class: Optional[MembershipClass] = None) -> List[TierDefinition]:
        """Active tiers grouped by class (customer first), cheapest first within a class."""

        classes = list(MembershipClass)
        tiers = [tier for tier in self._tiers.values() if tier.is_active]
        if membership_class is not None:
            tiers = [tier for tier in tiers if tier.membership_class == membership_class]
        return sorted(tiers, key=lambda tier: (classes.index(tier.membership_class), tier.monthly_price))

    def with_tier(self, definition: TierDefinition) -> "TierCatalog":
        tiers = dict(self._tiers)
        tiers[definition.code] = definition
        return TierCatalog(tiers)


DEFAULT_CATALOG = TierCatalog()


def get_tier_definition(code: TierCode | str) -> TierDefinition:
    """Return a tier definition from the default catalog."""

    return DEFAULT_CATALOG.get(code)


__all__ = ["DEFAULT_CATALOG", "TIER_CATALOG", "TierCatalog", "get_tier_definition"]
