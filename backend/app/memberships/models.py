"""Domain models for membership tiers, records and engine results."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UNLIMITED = -1


class MembershipClass(str, Enum):
    """Who holds the membership: a property owner or a service vendor."""

    CUSTOMER = "CUSTOMER"
    VENDOR = "VENDOR"


class TierCode(str, Enum):
    """Canonical identifiers for membership tiers.

    Customer tiers map to a property class; vendor tiers map to a job allowance.
    """

    HDB = "HDB"
    CONDOMINIUM = "CONDOMINIUM"
    LANDED_PROPERTY = "LANDED_PROPERTY"
    COMMERCIAL = "COMMERCIAL"
    BASIC = "BASIC"
    PROFESSIONAL = "PROFESSIONAL"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class BillingCycle(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class MembershipStatus(str, Enum):
    """Lifecycle state for a membership record."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


LIVE_STATUSES = frozenset(
    {MembershipStatus.ACTIVE, MembershipStatus.PENDING, MembershipStatus.SUSPENDED}
)


class BillingRefKind(str, Enum):
    """Whether a billing reference was issued by the payment provider."""

    PROVIDER = "PROVIDER"
    SYNTHETIC = "SYNTHETIC"


class UsageKind(str, Enum):
    """Quota-consuming actions tracked per usage period."""

    SERVICE_REQUEST = "service_request"
    EMERGENCY_REQUEST = "emergency_request"
    JOB_ASSIGNMENT = "job_assignment"


class TierFeatures(BaseModel):
    """Feature limits attached to a tier; ``-1`` means unlimited."""

    service_requests_per_month: int = Field(default=0, ge=UNLIMITED)
    annual_inspections: int = Field(default=0, ge=UNLIMITED)
    response_time_hours: int = Field(default=72, ge=0)
    material_discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    emergency_service: bool = False
    priority_support: bool = False
    dedicated_manager: bool = False
    max_monthly_jobs: int = Field(default=0, ge=UNLIMITED)
    max_concurrent_jobs: int = Field(default=0, ge=UNLIMITED)
    priority_assignment: bool = False
    featured_listing: bool = False
    platform_commission_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)

    model_config = ConfigDict(frozen=True)

    def limit_for(self, kind: UsageKind) -> int:
        if kind == UsageKind.EMERGENCY_REQUEST:
            return UNLIMITED if self.emergency_service else 0
        if kind == UsageKind.JOB_ASSIGNMENT:
            return self.max_monthly_jobs
        return self.service_requests_per_month


class TierDefinition(BaseModel):
    """Describes a membership tier, its prices and feature limits."""

    code: TierCode
    membership_class: MembershipClass = MembershipClass.CUSTOMER
    display_name: str
    description: str = ""
    monthly_price: Decimal = Field(ge=0)
    yearly_price: Decimal = Field(ge=0)
    features: TierFeatures = Field(default_factory=TierFeatures)
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    def price_for(self, billing_cycle: BillingCycle) -> Decimal:
        if billing_cycle == BillingCycle.YEARLY:
            return self.yearly_price
        return self.monthly_price

    def limit_for(self, kind: UsageKind) -> int:
        return self.features.limit_for(kind)

    @property
    def usage_kinds(self) -> List[UsageKind]:
        if self.membership_class == MembershipClass.VENDOR:
            return [UsageKind.JOB_ASSIGNMENT]
        return [UsageKind.SERVICE_REQUEST, UsageKind.EMERGENCY_REQUEST]


class UsageCounters(BaseModel):
    """Quota consumption scoped to one calendar month."""

    period_key: str = Field(pattern=r"^\d{4}-\d{2}$")
    service_requests_used: int = Field(default=0, ge=0)
    emergency_requests_used: int = Field(default=0, ge=0)
    jobs_assigned: int = Field(default=0, ge=0)
    reset_date: datetime

    model_config = ConfigDict(frozen=True)

    def used(self, kind: UsageKind) -> int:
        if kind == UsageKind.EMERGENCY_REQUEST:
            return self.emergency_requests_used
        if kind == UsageKind.JOB_ASSIGNMENT:
            return self.jobs_assigned
        return self.service_requests_used


class ExternalBillingRef(BaseModel):
    """Correlation identifiers for the payment provider's customer/subscription."""

    kind: BillingRefKind
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_provider_issued(self) -> bool:
        return self.kind == BillingRefKind.PROVIDER

    @classmethod
    def synthetic(cls, membership_id: str) -> "ExternalBillingRef":
        return cls(
            kind=BillingRefKind.SYNTHETIC,
            customer_ref=None,
            subscription_ref=f"membership_{membership_id}",
        )


class AccessStatus(BaseModel):
    has_access: bool
    message: str
    expires_at: Optional[datetime] = None
    is_cancelled: bool = False

    model_config = ConfigDict(frozen=True)


class Membership(BaseModel):
    """One subscriber's membership lifecycle plus current usage counters."""

    membership_id: str
    subscriber_id: str
    tier_code: TierCode
    status: MembershipStatus = MembershipStatus.PENDING
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    paid_amount: Decimal = Field(default=Decimal("0"), ge=0)
    start_date: datetime
    end_date: datetime
    next_billing_date: Optional[datetime] = None
    auto_renew: bool = True
    cancelled_at: Optional[datetime] = None
    will_expire_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    pending_tier_code: Optional[TierCode] = None
    pending_billing_cycle: Optional[BillingCycle] = None
    provider_sync_pending: bool = False
    current_usage: UsageCounters
    billing_ref: Optional[ExternalBillingRef] = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Membership":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        if self.cancelled_at is not None and self.status not in {
            MembershipStatus.CANCELLED,
            MembershipStatus.EXPIRED,
        }:
            raise ValueError("cancelled memberships must have CANCELLED or EXPIRED status")
        return self

    def evolve(self, **changes: Any) -> "Membership":
        """Return a validated copy with ``changes`` applied."""

        data = self.model_dump()
        data.update(changes)
        return Membership.model_validate(data)

    def has_active_access(self, now: datetime) -> bool:
        if self.status == MembershipStatus.ACTIVE:
            return True
        if self.status == MembershipStatus.CANCELLED:
            return now < self.end_date
        return False

    def access_status(self, now: datetime) -> AccessStatus:
        if self.status == MembershipStatus.ACTIVE:
            return AccessStatus(
                has_access=True,
                message="Active membership with full access",
                expires_at=self.end_date,
            )
        if self.status == MembershipStatus.CANCELLED:
            has_access = now < self.end_date
            message = (
                f"Cancelled - access until {self.end_date.date().isoformat()}"
                if has_access
                else "Cancelled and expired - no access"
            )
            return AccessStatus(
                has_access=has_access,
                message=message,
                expires_at=self.end_date,
                is_cancelled=True,
            )
        if self.status == MembershipStatus.EXPIRED:
            return AccessStatus(
                has_access=False,
                message="Membership expired - no access",
                expires_at=self.end_date,
            )
        return AccessStatus(
            has_access=False,
            message=f"Membership {self.status.value.lower()} - no access",
            expires_at=self.end_date,
        )


class PlanChangeQuote(BaseModel):
    """Monetary breakdown of moving a membership to another tier or cycle."""

    new_plan_amount: Decimal
    refund_amount: Decimal
    net_amount: Decimal
    is_upgrade: bool
    needs_payment: bool
    refund_to_customer: Decimal

    model_config = ConfigDict(frozen=True)


class PlanChangeTiming(str, Enum):
    IMMEDIATE = "immediate"
    NEXT_BILLING_CYCLE = "next_billing_cycle"


class PlanChangeResult(BaseModel):
    membership: Membership
    quote: PlanChangeQuote
    timing: PlanChangeTiming
    charge_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CancellationOutcome(str, Enum):
    CANCELLED = "cancelled"
    CANCELLED_PROVIDER_SYNC_PENDING = "cancelled_provider_sync_pending"


class CancellationResult(BaseModel):
    """Local cancellation always succeeds; provider sync may lag behind."""

    membership: Membership
    outcome: CancellationOutcome
    refund_amount: Decimal = Decimal("0.00")
    provider_error: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def provider_sync_pending(self) -> bool:
        return self.outcome == CancellationOutcome.CANCELLED_PROVIDER_SYNC_PENDING


class EligibilityReason(str, Enum):
    ALLOWED = "allowed"
    NO_MEMBERSHIP = "no_membership"
    NO_ACCESS = "no_access"
    QUOTA_EXCEEDED = "quota_exceeded"


class EligibilityResult(BaseModel):
    allowed: bool
    reason: EligibilityReason
    message: Optional[str] = None
    membership: Optional[Membership] = None

    model_config = ConfigDict(frozen=True)


class ConsumptionOutcome(str, Enum):
    CONSUMED = "consumed"
    QUOTA_EXCEEDED = "quota_exceeded"
    NO_MEMBERSHIP = "no_membership"
    NO_ACCESS = "no_access"


class ConsumptionResult(BaseModel):
    outcome: ConsumptionOutcome
    membership: Optional[Membership] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def consumed(self) -> bool:
        return self.outcome == ConsumptionOutcome.CONSUMED


class MembershipBenefits(BaseModel):
    tier_code: TierCode
    response_time_hours: int
    material_discount_percent: Decimal
    emergency_service_allowed: bool
    priority_support: bool
    dedicated_manager: bool
    membership_class: MembershipClass = MembershipClass.CUSTOMER
    max_concurrent_jobs: int = 0
    priority_assignment: bool = False
    platform_commission_rate: Decimal = Decimal("0")

    model_config = ConfigDict(frozen=True)


class QuotaUsage(BaseModel):
    kind: UsageKind
    used: int
    limit: Optional[int] = Field(default=None, description="None when unlimited")
    remaining: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class UsageSummary(BaseModel):
    tier_code: TierCode
    display_name: str
    billing_cycle: BillingCycle
    period_key: str
    reset_date: datetime
    next_billing_date: Optional[datetime] = None
    quotas: List[QuotaUsage] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class DiscountBreakdown(BaseModel):
    percentage: Decimal
    amount: Decimal
    final_total: Decimal

    model_config = ConfigDict(frozen=True)


class PaymentEventType(str, Enum):
    """Normalized payment lifecycle events understood by the reconciler."""

    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"


RENEWAL_BILLING_REASON = "subscription_cycle"


class PaymentEvent(BaseModel):
    """Provider notification decoded at the webhook boundary."""

    event_id: str = Field(min_length=1)
    event_type: PaymentEventType
    subscription_ref: str = Field(min_length=1)
    provider_status: Optional[str] = None
    billing_reason: Optional[str] = None
    period_end: Optional[datetime] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @field_validator("provider_status", "billing_reason")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value

    @property
    def is_renewal(self) -> bool:
        return self.billing_reason == RENEWAL_BILLING_REASON


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"


class ReconciliationSkipReason(str, Enum):
    DUPLICATE_EVENT = "duplicate_event"
    UNKNOWN_REFERENCE = "unknown_reference"
    SYNTHETIC_REFERENCE = "synthetic_reference"
    NO_CHANGE = "no_change"
    STALE_EVENT = "stale_event"
    UNSUPPORTED_STATUS = "unsupported_status"
    INELIGIBLE_STATE = "ineligible_state"


class ReconciliationResult(BaseModel):
    event_id: str
    outcome: ReconciliationOutcome
    skip_reason: Optional[ReconciliationSkipReason] = None
    membership: Optional[Membership] = None

    model_config = ConfigDict(frozen=True)

    @property
    def applied(self) -> bool:
        return self.outcome == ReconciliationOutcome.APPLIED


class SweepFailure(BaseModel):
    membership_id: str
    error: str

    model_config = ConfigDict(frozen=True)


class SweepSummary(BaseModel):
    """Outcome of one expiration sweep run."""

    checked: int = 0
    expired: int = 0
    failed: int = 0
    failures: List[SweepFailure] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def to_dict(self) -> Dict[str, int]:
        return {"checked": self.checked, "expired": self.expired, "failed": self.failed}


class ExpirationStats(BaseModel):
    active: int
    cancelled_with_access: int
    cancelled_due: int
    expiring_soon: int

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return self.active + self.cancelled_with_access + self.cancelled_due


class MembershipAuditEventType(str, Enum):
    """Audit event categories emitted by the membership engine."""

    SUBSCRIBED = "subscribed"
    ACTIVATED = "activated"
    PLAN_CHANGED = "plan_changed"
    PLAN_CHANGE_SCHEDULED = "plan_change_scheduled"
    CANCELLED = "cancelled"
    REACTIVATED = "reactivated"
    SUSPENDED = "suspended"
    RENEWED = "renewed"
    EXPIRED = "expired"
    PROVIDER_SYNC_PENDING = "provider_sync_pending"
    PROVIDER_SYNCED = "provider_synced"
    CHARGE_REFUNDED = "charge_refunded"
    CHARGE_REFUND_FAILED = "charge_refund_failed"
    JOB_ASSIGNED = "job_assigned"


class MembershipAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: MembershipAuditEventType
    membership_id: str
    subscriber_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)
