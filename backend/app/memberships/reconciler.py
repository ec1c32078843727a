"""Applies normalized payment-provider events to membership records."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .catalog import DEFAULT_CATALOG, TierCatalog
from .config import MembershipConfig
from .errors import ConflictError
from .models import (
    LIVE_STATUSES,
    Membership,
    MembershipAuditEvent,
    MembershipAuditEventType,
    MembershipStatus,
    PaymentEvent,
    PaymentEventType,
    ReconciliationOutcome,
    ReconciliationResult,
    ReconciliationSkipReason,
)
from .periods import advance_cycle, ensure_aware, utcnow
from .proration import round_money
from .quota import fresh_usage
from .service import MembershipEventLogger
from .store import MembershipRepository, versioned_update

logger = logging.getLogger("memberships.reconciler")

_ACTIVE_PROVIDER_STATUSES = frozenset({"active", "trialing"})
_CANCELLED_PROVIDER_STATUSES = frozenset({"cancelled", "canceled"})


class _Skip(Exception):
    def __init__(self, reason: ReconciliationSkipReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


@dataclass
class PaymentEventReconciler:
    """Maps provider lifecycle events onto local state transitions.

    Each event is applied at most once: its id is recorded in the same write
    as the transition, and state checks turn repeated transitions into
    ``NO_CHANGE`` skips.
    """

    repository: MembershipRepository
    event_logger: MembershipEventLogger
    catalog: TierCatalog = DEFAULT_CATALOG
    config: MembershipConfig = field(default_factory=MembershipConfig)
    clock: Callable[[], datetime] = utcnow

    def _now(self) -> datetime:
        return ensure_aware(self.clock())

    def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        if self.repository.has_processed_event(event.event_id):
            return self._skipped(event, ReconciliationSkipReason.DUPLICATE_EVENT)

        record = self.repository.find_by_subscription_ref(event.subscription_ref)
        if record is None:
            return self._skipped(event, ReconciliationSkipReason.UNKNOWN_REFERENCE)
        if record.billing_ref is None or not record.billing_ref.is_provider_issued:
            return self._skipped(event, ReconciliationSkipReason.SYNTHETIC_REFERENCE, record)

        now = self._now()
        audit_type: Optional[MembershipAuditEventType] = None

        def mutate(current: Membership) -> Membership:
            nonlocal audit_type
            if self.repository.has_processed_event(event.event_id):
                raise _Skip(ReconciliationSkipReason.DUPLICATE_EVENT)
            if current.status == MembershipStatus.EXPIRED:
                raise _Skip(ReconciliationSkipReason.INELIGIBLE_STATE)
            updated, audit_type = self._transition(current, event, now)
            return updated

        try:
            updated = versioned_update(
                self.repository,
                lambda: self.repository.get(record.membership_id),
                mutate,
                attempts=self.config.max_write_attempts,
                processed_event_id=event.event_id,
            )
        except _Skip as skip:
            return self._skipped(event, skip.reason, self.repository.get(record.membership_id))
        except ConflictError as exc:
            if exc.code != "membership_exists":
                raise
            # The subscriber moved on to a newer membership between our check and the write.
            return self._skipped(
                event,
                ReconciliationSkipReason.INELIGIBLE_STATE,
                self.repository.get(record.membership_id),
            )
        if updated is None:
            return self._skipped(event, ReconciliationSkipReason.UNKNOWN_REFERENCE)

        logger.info(
            "Applied %s event %s to membership %s status=%s",
            event.event_type.value,
            event.event_id,
            updated.membership_id,
            updated.status.value,
        )
        if audit_type is not None:
            self.event_logger.log(
                MembershipAuditEvent(
                    event_type=audit_type,
                    membership_id=updated.membership_id,
                    subscriber_id=updated.subscriber_id,
                    metadata={"event_id": event.event_id, "event_type": event.event_type.value},
                    occurred_at=now,
                )
            )
        return ReconciliationResult(
            event_id=event.event_id,
            outcome=ReconciliationOutcome.APPLIED,
            membership=updated,
        )

    def _skipped(
        self,
        event: PaymentEvent,
        reason: ReconciliationSkipReason,
        membership: Optional[Membership] = None,
    ) -> ReconciliationResult:
        logger.info(
            "Skipped %s event %s for %s: %s",
            event.event_type.value,
            event.event_id,
            event.subscription_ref,
            reason.value,
        )
        return ReconciliationResult(
            event_id=event.event_id,
            outcome=ReconciliationOutcome.SKIPPED,
            skip_reason=reason,
            membership=membership,
        )

    def _transition(
        self,
        current: Membership,
        event: PaymentEvent,
        now: datetime,
    ) -> tuple[Membership, MembershipAuditEventType]:
        if event.event_type == PaymentEventType.SUBSCRIPTION_UPDATED:
            return self._subscription_updated(current, event, now)
        if event.event_type == PaymentEventType.SUBSCRIPTION_CANCELLED:
            return self._cancelled(current, now, end_date=current.end_date)
        if event.event_type == PaymentEventType.INVOICE_PAID:
            if event.is_renewal:
                return self._renewed(current, event, now)
            if current.status != MembershipStatus.PENDING:
                raise _Skip(ReconciliationSkipReason.NO_CHANGE)
            return current.evolve(status=MembershipStatus.ACTIVE), MembershipAuditEventType.ACTIVATED
        if event.event_type == PaymentEventType.INVOICE_FAILED:
            if current.status == MembershipStatus.SUSPENDED:
                raise _Skip(ReconciliationSkipReason.NO_CHANGE)
            if current.status == MembershipStatus.CANCELLED:
                raise _Skip(ReconciliationSkipReason.INELIGIBLE_STATE)
            return current.evolve(status=MembershipStatus.SUSPENDED), MembershipAuditEventType.SUSPENDED
        raise _Skip(ReconciliationSkipReason.UNSUPPORTED_STATUS)

    def _subscription_updated(
        self,
        current: Membership,
        event: PaymentEvent,
        now: datetime,
    ) -> tuple[Membership, MembershipAuditEventType]:
        status = event.provider_status or ""
        if status in _ACTIVE_PROVIDER_STATUSES:
            if current.status == MembershipStatus.ACTIVE:
                raise _Skip(ReconciliationSkipReason.NO_CHANGE)
            if current.cancelled_at is not None and ensure_aware(event.occurred_at) < current.cancelled_at:
                raise _Skip(ReconciliationSkipReason.STALE_EVENT)
            if current.status not in LIVE_STATUSES and self._has_other_live(current):
                raise _Skip(ReconciliationSkipReason.INELIGIBLE_STATE)
            activated = current.evolve(
                status=MembershipStatus.ACTIVE,
                cancelled_at=None,
                cancellation_reason=None,
                will_expire_at=None,
                auto_renew=True,
                next_billing_date=current.next_billing_date or current.end_date,
            )
            return activated, MembershipAuditEventType.ACTIVATED
        if status in _CANCELLED_PROVIDER_STATUSES:
            end_date = max(current.start_date, min(current.end_date, now))
            return self._cancelled(current, now, end_date=end_date)
        raise _Skip(ReconciliationSkipReason.UNSUPPORTED_STATUS)

    def _cancelled(
        self,
        current: Membership,
        now: datetime,
        *,
        end_date: datetime,
    ) -> tuple[Membership, MembershipAuditEventType]:
        if current.status == MembershipStatus.CANCELLED:
            raise _Skip(ReconciliationSkipReason.NO_CHANGE)
        if current.status != MembershipStatus.ACTIVE:
            # No paid period to honour for PENDING or SUSPENDED records.
            end_date = max(current.start_date, min(end_date, now))
        cancelled = current.evolve(
            status=MembershipStatus.CANCELLED,
            cancelled_at=now,
            cancellation_reason=current.cancellation_reason or "cancelled_by_provider",
            auto_renew=False,
            end_date=end_date,
            will_expire_at=end_date,
            next_billing_date=None,
            pending_tier_code=None,
            pending_billing_cycle=None,
            provider_sync_pending=False,
        )
        return cancelled, MembershipAuditEventType.CANCELLED

    def _has_other_live(self, current: Membership) -> bool:
        newest = self.repository.get_current_for_subscriber(current.subscriber_id)
        return (
            newest is not None
            and newest.membership_id != current.membership_id
            and newest.status in LIVE_STATUSES
        )

    def _renewed(
        self,
        current: Membership,
        event: PaymentEvent,
        now: datetime,
    ) -> tuple[Membership, MembershipAuditEventType]:
        if current.status == MembershipStatus.CANCELLED:
            raise _Skip(ReconciliationSkipReason.INELIGIBLE_STATE)

        tier = self.catalog.get(current.pending_tier_code or current.tier_code)
        cycle = current.pending_billing_cycle or current.billing_cycle
        start_date = current.end_date
        end_date = ensure_aware(event.period_end) if event.period_end else advance_cycle(start_date, cycle)
        if end_date <= current.end_date:
            raise _Skip(ReconciliationSkipReason.NO_CHANGE)

        renewed = current.evolve(
            status=MembershipStatus.ACTIVE,
            tier_code=tier.code,
            billing_cycle=cycle,
            paid_amount=round_money(tier.price_for(cycle)),
            start_date=start_date,
            end_date=end_date,
            next_billing_date=end_date,
            pending_tier_code=None,
            pending_billing_cycle=None,
            current_usage=fresh_usage(now),
        )
        return renewed, MembershipAuditEventType.RENEWED


__all__ = ["PaymentEventReconciler"]
