"""API schemas for membership endpoints."""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..memberships import (
    BillingCycle,
    BillingRefKind,
    CancellationResult,
    ConsumptionResult,
    EligibilityResult,
    ExternalBillingRef,
    Membership,
    PaymentEvent,
    PaymentEventType,
    PlanChangeQuote,
    PlanChangeResult,
    TierCode,
    TierDefinition,
)
from ..memberships.models import AccessStatus, DiscountBreakdown, MembershipBenefits, UsageSummary
from ..memberships.periods import parse_optional_datetime

logger = logging.getLogger("memberships.webhook")

# Provider event names accepted at the webhook boundary.
_EVENT_TYPE_ALIASES: Dict[str, PaymentEventType] = {
    "subscription_updated": PaymentEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": PaymentEventType.SUBSCRIPTION_UPDATED,
    "subscription_cancelled": PaymentEventType.SUBSCRIPTION_CANCELLED,
    "subscription_canceled": PaymentEventType.SUBSCRIPTION_CANCELLED,
    "customer.subscription.deleted": PaymentEventType.SUBSCRIPTION_CANCELLED,
    "invoice_paid": PaymentEventType.INVOICE_PAID,
    "invoice.payment_succeeded": PaymentEventType.INVOICE_PAID,
    "invoice.paid": PaymentEventType.INVOICE_PAID,
    "invoice_failed": PaymentEventType.INVOICE_FAILED,
    "invoice.payment_failed": PaymentEventType.INVOICE_FAILED,
}


class TierResponse(BaseModel):
    tier: TierDefinition


class TierListResponse(BaseModel):
    tiers: List[TierDefinition]


class BillingRefPayload(BaseModel):
    customer_ref: Optional[str] = Field(default=None, alias="customerRef")
    subscription_ref: str = Field(alias="subscriptionRef", min_length=1)

    model_config = ConfigDict(populate_by_name=True)

    def to_ref(self) -> ExternalBillingRef:
        return ExternalBillingRef(
            kind=BillingRefKind.PROVIDER,
            customer_ref=self.customer_ref,
            subscription_ref=self.subscription_ref,
        )


class SubscribeRequest(BaseModel):
    tier_code: TierCode = Field(alias="tierCode")
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, alias="billingCycle")
    billing_ref: Optional[BillingRefPayload] = Field(default=None, alias="billingRef")

    model_config = ConfigDict(populate_by_name=True)


class MembershipResponse(BaseModel):
    membership: Membership
    access: AccessStatus


class MembershipHistoryResponse(BaseModel):
    memberships: List[Membership]


class PlanChangeRequest(BaseModel):
    tier_code: TierCode = Field(alias="tierCode")
    billing_cycle: Optional[BillingCycle] = Field(default=None, alias="billingCycle")
    immediate: bool = True

    model_config = ConfigDict(populate_by_name=True)


class PlanChangeQuoteResponse(BaseModel):
    quote: PlanChangeQuote


class PlanChangeResponse(BaseModel):
    result: PlanChangeResult


class CancelRequest(BaseModel):
    immediate: bool = False
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelResponse(BaseModel):
    result: CancellationResult
    provider_sync_pending: bool = Field(alias="providerSyncPending")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: CancellationResult) -> "CancelResponse":
        return cls(result=result, provider_sync_pending=result.provider_sync_pending)


class EligibilityResponse(BaseModel):
    result: EligibilityResult


class ConsumeRequest(BaseModel):
    is_emergency: bool = Field(default=False, alias="isEmergency")

    model_config = ConfigDict(populate_by_name=True)


class ConsumeResponse(BaseModel):
    result: ConsumptionResult


class JobAssignmentRequest(BaseModel):
    active_jobs: int = Field(default=0, ge=0, alias="activeJobs")
    is_emergency: bool = Field(default=False, alias="isEmergency")

    model_config = ConfigDict(populate_by_name=True)


class BenefitsResponse(BaseModel):
    benefits: Optional[MembershipBenefits] = None


class UsageResponse(BaseModel):
    usage: UsageSummary


class DiscountRequest(BaseModel):
    amount: Decimal = Field(ge=0)


class DiscountResponse(BaseModel):
    discount: DiscountBreakdown


class ProviderWebhookPayload(BaseModel):
    """Normalized provider notification as posted to the webhook endpoint."""

    id: str = Field(min_length=1)
    type: str
    subscription_ref: Optional[str] = Field(default=None, alias="subscriptionRef")
    status: Optional[str] = None
    billing_reason: Optional[str] = Field(default=None, alias="billingReason")
    period_end: Optional[datetime] = Field(default=None, alias="periodEnd")
    occurred_at: Optional[datetime] = Field(default=None, alias="occurredAt")

    model_config = ConfigDict(populate_by_name=True)

    def to_event(self) -> Optional[PaymentEvent]:
        """Decode into a :class:`PaymentEvent`; unknown event types yield ``None``."""

        event_type = _EVENT_TYPE_ALIASES.get(self.type.strip().lower())
        if event_type is None:
            logger.info("Ignoring unsupported payment event %s type=%s", self.id, self.type)
            return None
        if not self.subscription_ref:
            logger.info("Ignoring payment event %s without subscription reference", self.id)
            return None
        data = {
            "event_id": self.id,
            "event_type": event_type,
            "subscription_ref": self.subscription_ref,
            "provider_status": self.status,
            "billing_reason": self.billing_reason,
            "period_end": parse_optional_datetime(self.period_end),
        }
        occurred_at = parse_optional_datetime(self.occurred_at)
        if occurred_at is not None:
            data["occurred_at"] = occurred_at
        return PaymentEvent(**data)
