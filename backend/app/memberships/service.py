"""Membership lifecycle manager coordinating the store, quotas and the provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol
from uuid import uuid4

from .catalog import DEFAULT_CATALOG, TierCatalog
from .config import MembershipConfig
from .errors import (
    AccessDenied,
    ConflictError,
    MembershipError,
    NoMembership,
    ProviderNotFound,
    QuotaExceeded,
    ValidationError,
)
from .models import (
    LIVE_STATUSES,
    AccessStatus,
    BillingCycle,
    CancellationOutcome,
    CancellationResult,
    ConsumptionOutcome,
    ConsumptionResult,
    DiscountBreakdown,
    EligibilityReason,
    EligibilityResult,
    ExternalBillingRef,
    Membership,
    MembershipAuditEvent,
    MembershipAuditEventType,
    MembershipBenefits,
    MembershipClass,
    MembershipStatus,
    PlanChangeQuote,
    PlanChangeResult,
    PlanChangeTiming,
    QuotaUsage,
    TierCode,
    TierDefinition,
    UsageKind,
    UsageSummary,
)
from .periods import advance_cycle, ensure_aware, utcnow
from .proration import ZERO, calculate_plan_change, calculate_refund, round_money
from .provider import PaymentProvider, bounded_call
from .quota import apply_consumption, apply_job_assignment, evaluate_quota, fresh_usage, roll_period
from .store import MembershipRepository, versioned_update

logger = logging.getLogger("memberships")


class MembershipEventLogger(Protocol):
    """Captures structured membership audit events."""

    def log(self, event: MembershipAuditEvent) -> None:
        ...


@dataclass
class MembershipService:
    """Owns every state transition a subscriber can trigger directly."""

    repository: MembershipRepository
    provider: PaymentProvider
    event_logger: MembershipEventLogger
    catalog: TierCatalog = DEFAULT_CATALOG
    config: MembershipConfig = field(default_factory=MembershipConfig)
    clock: Callable[[], datetime] = utcnow

    def _now(self) -> datetime:
        return ensure_aware(self.clock())

    def _audit(
        self,
        event_type: MembershipAuditEventType,
        membership: Membership,
        **metadata: object,
    ) -> None:
        self.event_logger.log(
            MembershipAuditEvent(
                event_type=event_type,
                membership_id=membership.membership_id,
                subscriber_id=membership.subscriber_id,
                metadata={key: str(value) for key, value in metadata.items() if value is not None},
                occurred_at=self._now(),
            )
        )

    def _current(self, subscriber_id: str) -> Optional[Membership]:
        return self.repository.get_current_for_subscriber(subscriber_id)

    def _require_current(self, subscriber_id: str) -> Membership:
        membership = self._current(subscriber_id)
        if membership is None:
            raise NoMembership(detail={"subscriber_id": subscriber_id})
        return membership

    def _update_current(
        self,
        subscriber_id: str,
        mutate: Callable[[Membership], Membership],
    ) -> Membership:
        updated = versioned_update(
            self.repository,
            lambda: self._current(subscriber_id),
            mutate,
            attempts=self.config.max_write_attempts,
        )
        if updated is None:
            raise NoMembership(detail={"subscriber_id": subscriber_id})
        return updated

    def _update_by_id(
        self,
        membership_id: str,
        mutate: Callable[[Membership], Membership],
    ) -> Membership:
        updated = versioned_update(
            self.repository,
            lambda: self.repository.get(membership_id),
            mutate,
            attempts=self.config.max_write_attempts,
        )
        if updated is None:
            raise NoMembership(detail={"membership_id": membership_id})
        return updated

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------
    def subscribe(
        self,
        subscriber_id: str,
        tier_code: TierCode | str,
        billing_cycle: BillingCycle | str = BillingCycle.MONTHLY,
        *,
        billing_ref: Optional[ExternalBillingRef] = None,
        payment_confirmed: Optional[bool] = None,
    ) -> Membership:
        """Create a membership for ``subscriber_id``.

        ``payment_confirmed`` is for server-side callers that have verified the
        payment themselves; request payloads never set it.
        """

        tier = self.catalog.get_purchasable(tier_code, billing_cycle)
        cycle = BillingCycle(billing_cycle)

        existing = self._current(subscriber_id)
        if existing is not None and existing.status in LIVE_STATUSES:
            raise ConflictError(
                code="membership_exists",
                message="You already have an active membership",
                detail={"membership_id": existing.membership_id},
                retriable=False,
            )
        if billing_ref is not None and billing_ref.subscription_ref:
            claimed = self.repository.find_by_subscription_ref(billing_ref.subscription_ref)
            if claimed is not None and claimed.subscriber_id != subscriber_id:
                logger.warning(
                    "Subscriber %s tried to attach subscription %s owned by membership %s",
                    subscriber_id,
                    billing_ref.subscription_ref,
                    claimed.membership_id,
                )
                raise ConflictError(
                    code="billing_ref_in_use",
                    message="This billing subscription belongs to another membership",
                    retriable=False,
                )

        now = self._now()
        membership_id = f"mem_{uuid4().hex}"
        end_date = advance_cycle(now, cycle)
        awaiting_payment = self.config.require_payment_confirmation and not payment_confirmed
        membership = Membership(
            membership_id=membership_id,
            subscriber_id=subscriber_id,
            tier_code=tier.code,
            status=MembershipStatus.PENDING if awaiting_payment else MembershipStatus.ACTIVE,
            billing_cycle=cycle,
            paid_amount=round_money(tier.price_for(cycle)),
            start_date=now,
            end_date=end_date,
            next_billing_date=end_date,
            auto_renew=True,
            current_usage=fresh_usage(now),
            billing_ref=billing_ref or ExternalBillingRef.synthetic(membership_id),
            created_at=now,
            updated_at=now,
        )
        stored = self.repository.insert(membership)
        logger.info(
            "Membership %s created for subscriber %s tier=%s cycle=%s status=%s",
            stored.membership_id,
            subscriber_id,
            tier.code.value,
            cycle.value,
            stored.status.value,
        )
        self._audit(
            MembershipAuditEventType.SUBSCRIBED,
            stored,
            tier_code=tier.code.value,
            billing_cycle=cycle.value,
            status=stored.status.value,
        )
        return stored

    def confirm_payment(self, membership_id: str) -> Membership:
        activated = False

        def mutate(current: Membership) -> Membership:
            nonlocal activated
            if current.status == MembershipStatus.ACTIVE:
                return current
            if current.status != MembershipStatus.PENDING:
                raise ValidationError(
                    code="invalid_transition",
                    message=f"Cannot confirm payment for a {current.status.value.lower()} membership",
                )
            activated = True
            return current.evolve(status=MembershipStatus.ACTIVE)

        membership = self._update_by_id(membership_id, mutate)
        if activated:
            self._audit(MembershipAuditEventType.ACTIVATED, membership)
        return membership

    def quote_plan_change(
        self,
        subscriber_id: str,
        new_tier_code: TierCode | str,
        billing_cycle: Optional[BillingCycle | str] = None,
    ) -> PlanChangeQuote:
        membership = self._require_current(subscriber_id)
        new_tier, cycle = self._plan_change_target(membership, new_tier_code, billing_cycle)
        return calculate_plan_change(membership, new_tier, cycle, self._now())

    def _plan_change_target(
        self,
        membership: Membership,
        new_tier_code: TierCode | str,
        billing_cycle: Optional[BillingCycle | str],
    ) -> tuple[TierDefinition, BillingCycle]:
        if membership.status != MembershipStatus.ACTIVE:
            raise ValidationError(
                code="membership_not_active",
                message="Only active memberships can change plan",
                detail={"status": membership.status.value},
            )
        cycle = BillingCycle(billing_cycle) if billing_cycle else membership.billing_cycle
        new_tier = self.catalog.get_purchasable(new_tier_code, cycle)
        current_class = self.get_tier(membership).membership_class
        if new_tier.membership_class != current_class:
            raise ValidationError(
                code="membership_class_mismatch",
                message=f"Cannot move a {current_class.value.lower()} membership to a "
                f"{new_tier.membership_class.value.lower()} tier",
                detail={"tier_code": new_tier.code.value},
            )
        if new_tier.code == membership.tier_code:
            raise ValidationError(
                code="same_tier",
                message="Membership is already on this tier",
                detail={"tier_code": new_tier.code.value},
            )
        return new_tier, cycle

    def change_plan(
        self,
        subscriber_id: str,
        new_tier_code: TierCode | str,
        *,
        billing_cycle: Optional[BillingCycle | str] = None,
        immediate: bool = True,
    ) -> PlanChangeResult:
        membership = self._require_current(subscriber_id)
        new_tier, cycle = self._plan_change_target(membership, new_tier_code, billing_cycle)
        now = self._now()
        quote = calculate_plan_change(membership, new_tier, cycle, now)

        if not immediate:
            def schedule(current: Membership) -> Membership:
                self._plan_change_target(current, new_tier.code, cycle)
                return current.evolve(pending_tier_code=new_tier.code, pending_billing_cycle=cycle)

            updated = self._update_current(subscriber_id, schedule)
            self._audit(
                MembershipAuditEventType.PLAN_CHANGE_SCHEDULED,
                updated,
                tier_code=new_tier.code.value,
                billing_cycle=cycle.value,
            )
            return PlanChangeResult(
                membership=updated,
                quote=quote,
                timing=PlanChangeTiming.NEXT_BILLING_CYCLE,
            )

        charge_id: Optional[str] = None
        ref = membership.billing_ref
        if quote.needs_payment and ref is not None and ref.is_provider_issued:
            # PaymentDeclined and ProviderUnavailable propagate with the record untouched.
            # The key only changes once the record does, so a retry after a
            # timeout cannot collect twice.
            idempotency_key = (
                f"plan-change:{membership.membership_id}:{membership.version}:"
                f"{new_tier.code.value}:{cycle.value}"
            )
            receipt = bounded_call(
                lambda: self.provider.charge(
                    customer_ref=ref.customer_ref,
                    amount=quote.net_amount,
                    currency=self.config.currency,
                    description=f"Membership plan change to {new_tier.display_name}",
                    metadata={
                        "membership_id": membership.membership_id,
                        "tier_code": new_tier.code.value,
                        "billing_cycle": cycle.value,
                    },
                    idempotency_key=idempotency_key,
                ),
                timeout=self.config.provider_timeout_seconds,
                operation="charge",
            )
            charge_id = receipt.charge_id
        elif quote.needs_payment:
            logger.info(
                "Membership %s has no provider billing reference; applying plan change without charge",
                membership.membership_id,
            )

        def apply(current: Membership) -> Membership:
            if current.membership_id != membership.membership_id or current.status != MembershipStatus.ACTIVE:
                raise ConflictError(
                    message="Membership changed while the plan change was being processed",
                    detail={"membership_id": membership.membership_id, "charge_id": charge_id},
                    retriable=False,
                )
            end_date = advance_cycle(now, cycle)
            return current.evolve(
                tier_code=new_tier.code,
                billing_cycle=cycle,
                paid_amount=quote.new_plan_amount,
                start_date=now,
                end_date=end_date,
                next_billing_date=end_date,
                pending_tier_code=None,
                pending_billing_cycle=None,
            )

        try:
            updated = self._update_current(subscriber_id, apply)
        except MembershipError as exc:
            if not charge_id:
                raise
            refund_status = self._refund_plan_change(membership, charge_id, quote.net_amount, exc)
            raise ConflictError(
                code="plan_change_not_applied",
                message="Membership changed while the plan change was being processed",
                detail={
                    "membership_id": membership.membership_id,
                    "charge_id": charge_id,
                    "refund_status": refund_status,
                },
                retriable=False,
            ) from exc

        logger.info(
            "Membership %s moved from %s to %s (net=%s refund=%s)",
            updated.membership_id,
            membership.tier_code.value,
            new_tier.code.value,
            quote.net_amount,
            quote.refund_amount,
        )
        self._audit(
            MembershipAuditEventType.PLAN_CHANGED,
            updated,
            from_tier=membership.tier_code.value,
            tier_code=new_tier.code.value,
            net_amount=quote.net_amount,
            charge_id=charge_id,
        )
        return PlanChangeResult(
            membership=updated,
            quote=quote,
            timing=PlanChangeTiming.IMMEDIATE,
            charge_id=charge_id,
        )

    def _refund_plan_change(
        self,
        membership: Membership,
        charge_id: str,
        amount: Decimal,
        cause: MembershipError,
    ) -> str:
        """Give back a charge whose plan change could not be committed.

        Returns ``"refunded"`` or, when the provider refuses or times out,
        ``"refund_pending"``; the failure is audited with the charge id so it
        can be settled by hand.
        """

        try:
            receipt = bounded_call(
                lambda: self.provider.refund(
                    charge_id=charge_id,
                    amount=amount,
                    reason="plan_change_not_applied",
                ),
                timeout=self.config.provider_timeout_seconds,
                operation="refund",
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Charge %s collected for membership %s could not be refunded: %s",
                charge_id,
                membership.membership_id,
                exc,
            )
            self._audit(
                MembershipAuditEventType.CHARGE_REFUND_FAILED,
                membership,
                charge_id=charge_id,
                amount=amount,
                cause=cause.code,
                error=getattr(exc, "code", type(exc).__name__),
            )
            return "refund_pending"

        logger.warning(
            "Plan change for membership %s not applied (%s); charge %s refunded as %s",
            membership.membership_id,
            cause.code,
            charge_id,
            receipt.refund_id,
        )
        self._audit(
            MembershipAuditEventType.CHARGE_REFUNDED,
            membership,
            charge_id=charge_id,
            refund_id=receipt.refund_id,
            amount=amount,
            cause=cause.code,
        )
        return "refunded"

    def cancel(
        self,
        subscriber_id: str,
        *,
        immediate: bool = False,
        reason: Optional[str] = None,
    ) -> CancellationResult:
        now = self._now()
        refund = ZERO
        transitioned = False

        def mutate(current: Membership) -> Membership:
            nonlocal refund, transitioned
            refund = ZERO
            transitioned = False
            if current.status == MembershipStatus.CANCELLED:
                if not immediate or current.end_date <= now:
                    return current
                refund = calculate_refund(current, now)
                end_date = max(now, current.start_date)
                transitioned = True
                return current.evolve(end_date=end_date, will_expire_at=end_date)
            if current.status not in LIVE_STATUSES:
                raise ValidationError(
                    code="invalid_transition",
                    message=f"Cannot cancel a {current.status.value.lower()} membership",
                )

            if current.status != MembershipStatus.ACTIVE:
                # Unpaid (PENDING) or failed-payment (SUSPENDED) periods carry no grace or refund.
                end_date = max(now, current.start_date)
            elif immediate:
                refund = calculate_refund(current, now)
                end_date = max(now, current.start_date)
            else:
                end_date = current.end_date
            ref = current.billing_ref
            transitioned = True
            return current.evolve(
                status=MembershipStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason,
                auto_renew=False,
                end_date=end_date,
                will_expire_at=end_date,
                next_billing_date=None,
                pending_tier_code=None,
                pending_billing_cycle=None,
                provider_sync_pending=bool(ref and ref.is_provider_issued),
            )

        cancelled = self._update_current(subscriber_id, mutate)
        if transitioned:
            logger.info(
                "Membership %s cancelled immediate=%s access_until=%s",
                cancelled.membership_id,
                immediate,
                cancelled.end_date.isoformat(),
            )
            self._audit(
                MembershipAuditEventType.CANCELLED,
                cancelled,
                immediate=immediate,
                reason=reason,
                refund_amount=refund,
            )

        if not cancelled.provider_sync_pending:
            return CancellationResult(
                membership=cancelled,
                outcome=CancellationOutcome.CANCELLED,
                refund_amount=refund,
            )

        try:
            synced = self.retry_provider_sync(cancelled.membership_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Provider cancellation for membership %s pending retry: %s",
                cancelled.membership_id,
                exc,
            )
            self._audit(
                MembershipAuditEventType.PROVIDER_SYNC_PENDING,
                cancelled,
                error=getattr(exc, "code", type(exc).__name__),
            )
            return CancellationResult(
                membership=self.repository.get(cancelled.membership_id) or cancelled,
                outcome=CancellationOutcome.CANCELLED_PROVIDER_SYNC_PENDING,
                refund_amount=refund,
                provider_error=str(exc),
            )

        return CancellationResult(
            membership=synced,
            outcome=CancellationOutcome.CANCELLED,
            refund_amount=refund,
        )

    def retry_provider_sync(self, membership_id: str) -> Membership:
        """Push a locally committed cancellation to the payment provider.

        Raises :class:`ProviderUnavailable` when the provider still cannot be
        reached; the record keeps its ``provider_sync_pending`` flag.
        """

        membership = self.repository.get(membership_id)
        if membership is None:
            raise NoMembership(detail={"membership_id": membership_id})
        if not membership.provider_sync_pending:
            return membership

        ref = membership.billing_ref
        if ref is not None and ref.is_provider_issued and ref.subscription_ref:
            try:
                bounded_call(
                    lambda: self.provider.cancel_recurring(ref.subscription_ref),
                    timeout=self.config.provider_timeout_seconds,
                    operation="cancel_recurring",
                )
            except ProviderNotFound:
                logger.info(
                    "Provider has no subscription %s for membership %s; treating as cancelled",
                    ref.subscription_ref,
                    membership_id,
                )

        def clear(current: Membership) -> Membership:
            if not current.provider_sync_pending:
                return current
            return current.evolve(provider_sync_pending=False)

        synced = self._update_by_id(membership_id, clear)
        self._audit(MembershipAuditEventType.PROVIDER_SYNCED, synced)
        return synced

    def retry_pending_provider_syncs(self) -> Dict[str, int]:
        pending = list(self.repository.list_provider_sync_pending())
        synced = 0
        failed = 0
        for membership in pending:
            try:
                self.retry_provider_sync(membership.membership_id)
                synced += 1
            except Exception:  # noqa: BLE001
                failed += 1
                logger.warning(
                    "Provider sync retry failed for membership %s",
                    membership.membership_id,
                    exc_info=True,
                )
        return {"checked": len(pending), "synced": synced, "failed": failed}

    def reactivate(self, subscriber_id: str) -> Membership:
        now = self._now()
        reactivated = False

        def mutate(current: Membership) -> Membership:
            nonlocal reactivated
            if current.status == MembershipStatus.ACTIVE:
                return current
            if current.status != MembershipStatus.CANCELLED:
                raise ValidationError(
                    code="invalid_transition",
                    message=f"Cannot reactivate a {current.status.value.lower()} membership",
                )
            if now >= current.end_date:
                raise ValidationError(
                    code="reactivation_window_closed",
                    message="Membership has already ended; subscribe again instead",
                    detail={"end_date": current.end_date.isoformat()},
                )
            reactivated = True
            return current.evolve(
                status=MembershipStatus.ACTIVE,
                cancelled_at=None,
                cancellation_reason=None,
                will_expire_at=None,
                auto_renew=True,
                next_billing_date=current.end_date,
                provider_sync_pending=False,
            )

        membership = self._update_current(subscriber_id, mutate)
        if reactivated:
            logger.info("Membership %s reactivated", membership.membership_id)
            self._audit(MembershipAuditEventType.REACTIVATED, membership)
        return membership

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_membership(self, subscriber_id: str) -> Optional[Membership]:
        """Current membership with the usage period rolled forward if stale."""

        membership = self._current(subscriber_id)
        if membership is None:
            return None
        now = self._now()
        if roll_period(membership, now) is membership:
            return membership
        return versioned_update(
            self.repository,
            lambda: self._current(subscriber_id),
            lambda current: roll_period(current, now),
            attempts=self.config.max_write_attempts,
        )

    def list_history(self, subscriber_id: str) -> List[Membership]:
        return list(self.repository.list_for_subscriber(subscriber_id))

    def get_tier(self, membership: Membership) -> TierDefinition:
        return self.catalog.get(membership.tier_code)

    def access_status(self, membership: Membership) -> AccessStatus:
        return membership.access_status(self._now())

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------
    def can_create_service_request(
        self,
        subscriber_id: str,
        *,
        is_emergency: bool = False,
    ) -> EligibilityResult:
        membership = self.get_membership(subscriber_id)
        if membership is None:
            return EligibilityResult(
                allowed=True,
                reason=EligibilityReason.NO_MEMBERSHIP,
                message="No membership - pay per service",
            )

        now = self._now()
        if not membership.has_active_access(now):
            return EligibilityResult(
                allowed=False,
                reason=EligibilityReason.NO_ACCESS,
                message=membership.access_status(now).message,
                membership=membership,
            )

        tier = self.get_tier(membership)
        kinds = [UsageKind.SERVICE_REQUEST]
        if is_emergency:
            kinds.append(UsageKind.EMERGENCY_REQUEST)
        for kind in kinds:
            evaluation = evaluate_quota(membership, tier, kind, now)
            if not evaluation.allowed:
                message = (
                    "Emergency service is not included in this tier."
                    if kind == UsageKind.EMERGENCY_REQUEST
                    else f"Monthly limit reached ({evaluation.used}/{evaluation.limit})"
                )
                return EligibilityResult(
                    allowed=False,
                    reason=EligibilityReason.QUOTA_EXCEEDED,
                    message=message,
                    membership=membership,
                )

        return EligibilityResult(allowed=True, reason=EligibilityReason.ALLOWED, membership=membership)

    def consume_service_request(
        self,
        subscriber_id: str,
        *,
        is_emergency: bool = False,
    ) -> ConsumptionResult:
        now = self._now()

        def mutate(current: Membership) -> Membership:
            if not current.has_active_access(now):
                raise AccessDenied(message=current.access_status(now).message)
            return apply_consumption(current, self.get_tier(current), is_emergency=is_emergency, now=now)

        try:
            updated = versioned_update(
                self.repository,
                lambda: self._current(subscriber_id),
                mutate,
                attempts=self.config.max_write_attempts,
            )
        except QuotaExceeded as exc:
            return ConsumptionResult(
                outcome=ConsumptionOutcome.QUOTA_EXCEEDED,
                membership=self._current(subscriber_id),
                message=exc.message,
            )
        except AccessDenied as exc:
            return ConsumptionResult(
                outcome=ConsumptionOutcome.NO_ACCESS,
                membership=self._current(subscriber_id),
                message=exc.message,
            )

        if updated is None:
            return ConsumptionResult(
                outcome=ConsumptionOutcome.NO_MEMBERSHIP,
                message="No membership - pay per service",
            )
        logger.debug(
            "Membership %s consumed service request emergency=%s used=%s",
            updated.membership_id,
            is_emergency,
            updated.current_usage.service_requests_used,
        )
        return ConsumptionResult(outcome=ConsumptionOutcome.CONSUMED, membership=updated)

    def consume_or_raise(self, subscriber_id: str, *, is_emergency: bool = False) -> Membership:
        result = self.consume_service_request(subscriber_id, is_emergency=is_emergency)
        if result.outcome == ConsumptionOutcome.CONSUMED and result.membership is not None:
            return result.membership
        if result.outcome == ConsumptionOutcome.QUOTA_EXCEEDED:
            raise QuotaExceeded(message=result.message or QuotaExceeded.message)
        if result.outcome == ConsumptionOutcome.NO_ACCESS:
            raise AccessDenied(message=result.message or AccessDenied.message)
        raise NoMembership(detail={"subscriber_id": subscriber_id})

    def _vendor_tier(self, membership: Membership, active_jobs: int) -> TierDefinition:
        if active_jobs < 0:
            raise ValidationError(code="invalid_active_jobs", message="Active job count must not be negative")
        tier = self.get_tier(membership)
        if tier.membership_class != MembershipClass.VENDOR:
            raise ValidationError(
                code="not_vendor_membership",
                message="Job limits apply to vendor memberships only",
                detail={"tier_code": tier.code.value},
            )
        return tier

    def can_accept_job(
        self,
        subscriber_id: str,
        *,
        active_jobs: int,
        is_emergency: bool = False,
    ) -> EligibilityResult:
        """Check a vendor's monthly and concurrent job allowance without recording anything."""

        membership = self.get_membership(subscriber_id)
        if membership is None:
            return EligibilityResult(
                allowed=False,
                reason=EligibilityReason.NO_MEMBERSHIP,
                message="A vendor membership is required to accept jobs",
            )
        tier = self._vendor_tier(membership, active_jobs)
        now = self._now()
        if not membership.has_active_access(now):
            return EligibilityResult(
                allowed=False,
                reason=EligibilityReason.NO_ACCESS,
                message=membership.access_status(now).message,
                membership=membership,
            )
        try:
            apply_job_assignment(membership, tier, active_jobs=active_jobs, now=now, is_emergency=is_emergency)
        except QuotaExceeded as exc:
            return EligibilityResult(
                allowed=False,
                reason=EligibilityReason.QUOTA_EXCEEDED,
                message=exc.message,
                membership=membership,
            )
        return EligibilityResult(allowed=True, reason=EligibilityReason.ALLOWED, membership=membership)

    def record_job_assignment(
        self,
        subscriber_id: str,
        *,
        active_jobs: int,
        is_emergency: bool = False,
    ) -> ConsumptionResult:
        now = self._now()

        def mutate(current: Membership) -> Membership:
            tier = self._vendor_tier(current, active_jobs)
            if not current.has_active_access(now):
                raise AccessDenied(message=current.access_status(now).message)
            return apply_job_assignment(
                current,
                tier,
                active_jobs=active_jobs,
                now=now,
                is_emergency=is_emergency,
            )

        try:
            updated = versioned_update(
                self.repository,
                lambda: self._current(subscriber_id),
                mutate,
                attempts=self.config.max_write_attempts,
            )
        except QuotaExceeded as exc:
            return ConsumptionResult(
                outcome=ConsumptionOutcome.QUOTA_EXCEEDED,
                membership=self._current(subscriber_id),
                message=exc.message,
            )
        except AccessDenied as exc:
            return ConsumptionResult(
                outcome=ConsumptionOutcome.NO_ACCESS,
                membership=self._current(subscriber_id),
                message=exc.message,
            )

        if updated is None:
            return ConsumptionResult(
                outcome=ConsumptionOutcome.NO_MEMBERSHIP,
                message="A vendor membership is required to accept jobs",
            )
        self._audit(
            MembershipAuditEventType.JOB_ASSIGNED,
            updated,
            jobs_assigned=updated.current_usage.jobs_assigned,
            active_jobs=active_jobs + 1,
            emergency=is_emergency,
        )
        return ConsumptionResult(outcome=ConsumptionOutcome.CONSUMED, membership=updated)

    def get_benefits(self, subscriber_id: str) -> Optional[MembershipBenefits]:
        membership = self._current(subscriber_id)
        if membership is None or not membership.has_active_access(self._now()):
            return None
        tier = self.get_tier(membership)
        features = tier.features
        return MembershipBenefits(
            tier_code=membership.tier_code,
            response_time_hours=features.response_time_hours,
            material_discount_percent=features.material_discount_percent,
            emergency_service_allowed=features.emergency_service,
            priority_support=features.priority_support,
            dedicated_manager=features.dedicated_manager,
            membership_class=tier.membership_class,
            max_concurrent_jobs=features.max_concurrent_jobs,
            priority_assignment=features.priority_assignment,
            platform_commission_rate=features.platform_commission_rate,
        )

    def get_usage_summary(self, subscriber_id: str) -> UsageSummary:
        membership = self.get_membership(subscriber_id)
        if membership is None:
            raise NoMembership(detail={"subscriber_id": subscriber_id})
        tier = self.get_tier(membership)
        now = self._now()
        quotas = []
        for kind in tier.usage_kinds:
            evaluation = evaluate_quota(membership, tier, kind, now)
            quotas.append(
                QuotaUsage(
                    kind=kind,
                    used=evaluation.used,
                    limit=None if evaluation.unlimited else evaluation.limit,
                    remaining=evaluation.remaining,
                )
            )
        return UsageSummary(
            tier_code=tier.code,
            display_name=tier.display_name,
            billing_cycle=membership.billing_cycle,
            period_key=membership.current_usage.period_key,
            reset_date=membership.current_usage.reset_date,
            next_billing_date=membership.next_billing_date,
            quotas=quotas,
        )

    def apply_material_discount(self, subscriber_id: str, amount: Decimal) -> DiscountBreakdown:
        if amount < 0:
            raise ValidationError(code="invalid_amount", message="Amount must not be negative")
        benefits = self.get_benefits(subscriber_id)
        percentage = benefits.material_discount_percent if benefits else Decimal("0")
        discount = round_money(amount * percentage / Decimal(100))
        return DiscountBreakdown(
            percentage=percentage,
            amount=discount,
            final_total=round_money(amount) - discount,
        )


__all__ = ["MembershipEventLogger", "MembershipService"]
