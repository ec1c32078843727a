"""Tests for applying payment-provider events to memberships."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from backend.app.memberships import (
    BillingCycle,
    BillingRefKind,
    ExternalBillingRef,
    InMemoryMembershipRepository,
    Membership,
    MembershipAuditEvent,
    MembershipAuditEventType,
    MembershipStatus,
    PaymentEvent,
    PaymentEventReconciler,
    PaymentEventType,
    ReconciliationOutcome,
    ReconciliationSkipReason,
    TierCode,
)
from backend.app.memberships.models import UsageCounters
from backend.app.memberships.service import MembershipEventLogger
from backend.app.schemas.memberships import ProviderWebhookPayload


NOW = datetime(2024, 6, 20, tzinfo=timezone.utc)


class FakeEventLogger(MembershipEventLogger):
    def __init__(self) -> None:
        self.events: List[MembershipAuditEvent] = []

    def log(self, event: MembershipAuditEvent) -> None:
        self.events.append(event)


def make_membership(**overrides) -> Membership:
    data = {
        "membership_id": "mem_sub",
        "subscriber_id": "user-7",
        "tier_code": TierCode.HDB,
        "status": MembershipStatus.ACTIVE,
        "billing_cycle": BillingCycle.MONTHLY,
        "paid_amount": Decimal("25.00"),
        "start_date": datetime(2024, 6, 1, tzinfo=timezone.utc),
        "end_date": datetime(2024, 7, 1, tzinfo=timezone.utc),
        "next_billing_date": datetime(2024, 7, 1, tzinfo=timezone.utc),
        "current_usage": UsageCounters(
            period_key="2024-06",
            service_requests_used=1,
            reset_date=datetime(2024, 7, 1, tzinfo=timezone.utc),
        ),
        "billing_ref": ExternalBillingRef(
            kind=BillingRefKind.PROVIDER,
            customer_ref="cus_7",
            subscription_ref="sub_7",
        ),
        "created_at": datetime(2024, 6, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return Membership(**data)


def make_event(event_type: PaymentEventType, event_id: str = "evt_1", **overrides) -> PaymentEvent:
    data = {
        "event_id": event_id,
        "event_type": event_type,
        "subscription_ref": "sub_7",
        "occurred_at": NOW,
    }
    data.update(overrides)
    return PaymentEvent(**data)


@pytest.fixture
def reconciler_components():
    repository = InMemoryMembershipRepository()
    event_logger = FakeEventLogger()
    reconciler = PaymentEventReconciler(
        repository=repository,
        event_logger=event_logger,
        clock=lambda: NOW,
    )
    return repository, event_logger, reconciler


def test_unknown_reference_is_skipped_without_changes(reconciler_components):
    repository, event_logger, reconciler = reconciler_components
    stored = repository.insert(make_membership())

    result = reconciler.reconcile(make_event(PaymentEventType.INVOICE_FAILED, subscription_ref="sub_missing"))

    assert result.outcome == ReconciliationOutcome.SKIPPED
    assert result.skip_reason == ReconciliationSkipReason.UNKNOWN_REFERENCE
    assert repository.get(stored.membership_id) == stored
    assert repository.has_processed_event("evt_1") is False
    assert event_logger.events == []


def test_synthetic_reference_is_never_reconciled(reconciler_components):
    repository, _, reconciler = reconciler_components
    stored = repository.insert(make_membership(billing_ref=ExternalBillingRef.synthetic("mem_sub")))

    result = reconciler.reconcile(
        make_event(PaymentEventType.SUBSCRIPTION_CANCELLED, subscription_ref="membership_mem_sub")
    )

    assert result.skip_reason == ReconciliationSkipReason.SYNTHETIC_REFERENCE
    assert repository.get(stored.membership_id).status == MembershipStatus.ACTIVE


def test_payment_failure_suspends_membership(reconciler_components):
    repository, event_logger, reconciler = reconciler_components
    repository.insert(make_membership())

    result = reconciler.reconcile(make_event(PaymentEventType.INVOICE_FAILED))

    assert result.applied is True
    assert result.membership.status == MembershipStatus.SUSPENDED
    assert result.membership.has_active_access(NOW) is False
    assert repository.has_processed_event("evt_1") is True
    assert event_logger.events[-1].event_type == MembershipAuditEventType.SUSPENDED


def test_replayed_event_leaves_record_identical(reconciler_components):
    repository, event_logger, reconciler = reconciler_components
    repository.insert(make_membership())
    event = make_event(PaymentEventType.INVOICE_FAILED)

    first = reconciler.reconcile(event)
    after_first = repository.get("mem_sub")
    second = reconciler.reconcile(event)

    assert first.applied is True
    assert second.outcome == ReconciliationOutcome.SKIPPED
    assert second.skip_reason == ReconciliationSkipReason.DUPLICATE_EVENT
    assert repository.get("mem_sub") == after_first
    assert len(event_logger.events) == 1


def test_distinct_event_with_same_effect_is_no_change(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(make_membership())
    reconciler.reconcile(make_event(PaymentEventType.INVOICE_FAILED, "evt_1"))
    suspended = repository.get("mem_sub")

    result = reconciler.reconcile(make_event(PaymentEventType.INVOICE_FAILED, "evt_2"))

    assert result.skip_reason == ReconciliationSkipReason.NO_CHANGE
    assert repository.get("mem_sub") == suspended


def test_renewal_rolls_usage_and_extends_period(reconciler_components):
    repository, event_logger, reconciler = reconciler_components
    repository.insert(make_membership(status=MembershipStatus.SUSPENDED))

    result = reconciler.reconcile(
        make_event(PaymentEventType.INVOICE_PAID, billing_reason="subscription_cycle")
    )

    renewed = result.membership
    assert result.applied is True
    assert renewed.status == MembershipStatus.ACTIVE
    assert renewed.start_date == datetime(2024, 7, 1, tzinfo=timezone.utc)
    assert renewed.end_date == datetime(2024, 8, 1, tzinfo=timezone.utc)
    assert renewed.next_billing_date == renewed.end_date
    assert renewed.current_usage.service_requests_used == 0
    assert event_logger.events[-1].event_type == MembershipAuditEventType.RENEWED


def test_renewal_applies_scheduled_plan_change(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(
        make_membership(pending_tier_code=TierCode.COMMERCIAL, pending_billing_cycle=BillingCycle.YEARLY)
    )
    period_end = datetime(2025, 7, 1, tzinfo=timezone.utc)

    result = reconciler.reconcile(
        make_event(
            PaymentEventType.INVOICE_PAID,
            billing_reason="SUBSCRIPTION_CYCLE",
            period_end=period_end,
        )
    )

    renewed = result.membership
    assert renewed.tier_code == TierCode.COMMERCIAL
    assert renewed.billing_cycle == BillingCycle.YEARLY
    assert renewed.paid_amount == Decimal("500.00")
    assert renewed.end_date == period_end
    assert renewed.pending_tier_code is None
    assert renewed.pending_billing_cycle is None


def test_renewal_with_past_period_end_is_no_change(reconciler_components):
    repository, _, reconciler = reconciler_components
    stored = repository.insert(make_membership())

    result = reconciler.reconcile(
        make_event(
            PaymentEventType.INVOICE_PAID,
            billing_reason="subscription_cycle",
            period_end=datetime(2024, 7, 1, tzinfo=timezone.utc),
        )
    )

    assert result.skip_reason == ReconciliationSkipReason.NO_CHANGE
    assert repository.get(stored.membership_id) == stored


def test_first_invoice_confirms_pending_membership(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(make_membership(status=MembershipStatus.PENDING))

    result = reconciler.reconcile(
        make_event(PaymentEventType.INVOICE_PAID, billing_reason="subscription_create")
    )

    assert result.membership.status == MembershipStatus.ACTIVE
    assert result.membership.end_date == datetime(2024, 7, 1, tzinfo=timezone.utc)


def test_provider_cancellation_keeps_paid_period(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(make_membership())

    result = reconciler.reconcile(make_event(PaymentEventType.SUBSCRIPTION_CANCELLED))

    cancelled = result.membership
    assert cancelled.status == MembershipStatus.CANCELLED
    assert cancelled.cancelled_at == NOW
    assert cancelled.end_date == datetime(2024, 7, 1, tzinfo=timezone.utc)
    assert cancelled.auto_renew is False
    assert cancelled.has_active_access(NOW) is True


def test_subscription_update_to_cancelled_ends_access_now(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(make_membership())

    result = reconciler.reconcile(
        make_event(PaymentEventType.SUBSCRIPTION_UPDATED, provider_status="Canceled")
    )

    assert result.membership.status == MembershipStatus.CANCELLED
    assert result.membership.end_date == NOW
    assert result.membership.cancelled_at is not None


def test_subscription_update_reactivates_and_clears_cancellation(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(
        make_membership(
            status=MembershipStatus.CANCELLED,
            cancelled_at=NOW - timedelta(days=2),
            will_expire_at=datetime(2024, 7, 1, tzinfo=timezone.utc),
            auto_renew=False,
        )
    )

    result = reconciler.reconcile(make_event(PaymentEventType.SUBSCRIPTION_UPDATED, provider_status="active"))

    active = result.membership
    assert active.status == MembershipStatus.ACTIVE
    assert active.cancelled_at is None
    assert active.will_expire_at is None
    assert active.auto_renew is True


def test_activation_older_than_cancellation_is_stale(reconciler_components):
    repository, _, reconciler = reconciler_components
    stored = repository.insert(make_membership(status=MembershipStatus.CANCELLED, cancelled_at=NOW))

    result = reconciler.reconcile(
        make_event(
            PaymentEventType.SUBSCRIPTION_UPDATED,
            provider_status="active",
            occurred_at=NOW - timedelta(hours=1),
        )
    )

    assert result.skip_reason == ReconciliationSkipReason.STALE_EVENT
    assert repository.get(stored.membership_id) == stored


def test_unsupported_provider_status_is_skipped(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(make_membership())

    result = reconciler.reconcile(
        make_event(PaymentEventType.SUBSCRIPTION_UPDATED, provider_status="incomplete")
    )

    assert result.skip_reason == ReconciliationSkipReason.UNSUPPORTED_STATUS


def test_expired_membership_ignores_events(reconciler_components):
    repository, _, reconciler = reconciler_components
    repository.insert(
        make_membership(
            status=MembershipStatus.EXPIRED,
            cancelled_at=NOW - timedelta(days=30),
            expired_at=NOW - timedelta(days=1),
        )
    )

    result = reconciler.reconcile(make_event(PaymentEventType.INVOICE_FAILED))

    assert result.skip_reason == ReconciliationSkipReason.INELIGIBLE_STATE


def test_reactivation_skipped_when_subscriber_has_newer_live_membership(reconciler_components):
    repository, event_logger, reconciler = reconciler_components
    old = repository.insert(
        make_membership(
            status=MembershipStatus.CANCELLED,
            cancelled_at=NOW - timedelta(days=2),
            auto_renew=False,
        )
    )
    newer = repository.insert(
        make_membership(
            membership_id="mem_new",
            tier_code=TierCode.COMMERCIAL,
            billing_ref=ExternalBillingRef(kind=BillingRefKind.PROVIDER, subscription_ref="sub_8"),
            created_at=NOW - timedelta(days=1),
        )
    )

    result = reconciler.reconcile(make_event(PaymentEventType.SUBSCRIPTION_UPDATED, provider_status="active"))

    assert result.skip_reason == ReconciliationSkipReason.INELIGIBLE_STATE
    assert repository.get(old.membership_id) == old
    assert repository.get(newer.membership_id) == newer
    assert repository.get_current_for_subscriber("user-7").membership_id == "mem_new"
    assert event_logger.events == []


def test_store_rejects_reactivation_that_races_a_new_subscription():
    class StaleLookupRepository(InMemoryMembershipRepository):
        # The newer record is committed after the guard looked for it.
        def get_current_for_subscriber(self, subscriber_id):
            return None

    repository = StaleLookupRepository()
    reconciler = PaymentEventReconciler(
        repository=repository,
        event_logger=FakeEventLogger(),
        clock=lambda: NOW,
    )
    old = repository.insert(
        make_membership(status=MembershipStatus.CANCELLED, cancelled_at=NOW - timedelta(days=2))
    )
    repository.insert(
        make_membership(
            membership_id="mem_new",
            billing_ref=ExternalBillingRef(kind=BillingRefKind.PROVIDER, subscription_ref="sub_8"),
        )
    )

    result = reconciler.reconcile(make_event(PaymentEventType.SUBSCRIPTION_UPDATED, provider_status="active"))

    assert result.outcome == ReconciliationOutcome.SKIPPED
    assert result.skip_reason == ReconciliationSkipReason.INELIGIBLE_STATE
    assert repository.get(old.membership_id).status == MembershipStatus.CANCELLED
    assert repository.has_processed_event("evt_1") is False


@pytest.mark.parametrize("status", [MembershipStatus.SUSPENDED, MembershipStatus.PENDING])
def test_provider_cancellation_of_unpaid_membership_ends_access_now(reconciler_components, status):
    repository, _, reconciler = reconciler_components
    repository.insert(make_membership(status=status))

    result = reconciler.reconcile(make_event(PaymentEventType.SUBSCRIPTION_CANCELLED))

    cancelled = result.membership
    assert cancelled.status == MembershipStatus.CANCELLED
    assert cancelled.end_date == NOW
    assert cancelled.will_expire_at == NOW
    assert cancelled.has_active_access(NOW) is False


def test_webhook_payload_decodes_known_aliases():
    payload = ProviderWebhookPayload(
        id="evt_9",
        type="invoice.payment_failed",
        subscriptionRef="sub_7",
        occurredAt="2024-06-20T00:00:00Z",
    )

    event = payload.to_event()

    assert event.event_type == PaymentEventType.INVOICE_FAILED
    assert event.subscription_ref == "sub_7"
    assert event.occurred_at == NOW


def test_webhook_payload_ignores_unknown_types():
    payload = ProviderWebhookPayload(id="evt_10", type="charge.refunded", subscriptionRef="sub_7")

    assert payload.to_event() is None
