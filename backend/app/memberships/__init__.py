"""Membership domain package: tiers, lifecycle, quotas and payment reconciliation."""

from .catalog import DEFAULT_CATALOG, TierCatalog, get_tier_definition
from .config import MembershipConfig, load_membership_config
from .errors import (
    AccessDenied,
    ConflictError,
    MembershipError,
    NoMembership,
    PaymentDeclined,
    ProviderNotFound,
    ProviderUnavailable,
    QuotaExceeded,
    ValidationError,
)
from .expiration import ExpirationSweep
from .memory import InMemoryMembershipRepository
from .models import (
    BillingCycle,
    BillingRefKind,
    CancellationOutcome,
    CancellationResult,
    ConsumptionOutcome,
    ConsumptionResult,
    EligibilityReason,
    EligibilityResult,
    ExternalBillingRef,
    Membership,
    MembershipAuditEvent,
    MembershipAuditEventType,
    MembershipClass,
    MembershipStatus,
    PaymentEvent,
    PaymentEventType,
    PlanChangeQuote,
    PlanChangeResult,
    ReconciliationOutcome,
    ReconciliationResult,
    ReconciliationSkipReason,
    SweepSummary,
    TierCode,
    TierDefinition,
    UsageKind,
)
from .provider import ChargeReceipt, PaymentProvider, RefundReceipt
from .reconciler import PaymentEventReconciler
from .service import MembershipEventLogger, MembershipService
from .store import MembershipRepository

__all__ = [
    "AccessDenied",
    "BillingCycle",
    "BillingRefKind",
    "CancellationOutcome",
    "CancellationResult",
    "ChargeReceipt",
    "ConflictError",
    "ConsumptionOutcome",
    "ConsumptionResult",
    "DEFAULT_CATALOG",
    "EligibilityReason",
    "EligibilityResult",
    "ExpirationSweep",
    "ExternalBillingRef",
    "InMemoryMembershipRepository",
    "Membership",
    "MembershipAuditEvent",
    "MembershipAuditEventType",
    "MembershipClass",
    "MembershipConfig",
    "MembershipError",
    "MembershipEventLogger",
    "MembershipRepository",
    "MembershipService",
    "MembershipStatus",
    "NoMembership",
    "PaymentDeclined",
    "PaymentEvent",
    "PaymentEventReconciler",
    "PaymentEventType",
    "PaymentProvider",
    "PlanChangeQuote",
    "PlanChangeResult",
    "ProviderNotFound",
    "ProviderUnavailable",
    "QuotaExceeded",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ReconciliationSkipReason",
    "RefundReceipt",
    "SweepSummary",
    "TierCatalog",
    "TierCode",
    "TierDefinition",
    "UsageKind",
    "ValidationError",
    "get_tier_definition",
    "load_membership_config",
]
