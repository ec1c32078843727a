"""Application wiring for the membership engine."""
from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from threading import Lock
from typing import Dict, Optional
from uuid import uuid4

from ..memberships import (
    ChargeReceipt,
    ExpirationSweep,
    InMemoryMembershipRepository,
    MembershipAuditEvent,
    MembershipConfig,
    MembershipEventLogger,
    MembershipRepository,
    MembershipService,
    PaymentEventReconciler,
    PaymentProvider,
    RefundReceipt,
    load_membership_config,
)


logger = logging.getLogger("memberships")


class LoggingMembershipEventLogger(MembershipEventLogger):
    """Simple event logger forwarding membership audit events to logging."""

    def log(self, event: MembershipAuditEvent) -> None:
        logger.info(
            "Membership event %s membership=%s subscriber=%s metadata=%s",
            event.event_type.value,
            event.membership_id,
            event.subscriber_id,
            event.metadata,
        )


class LocalSandboxPaymentProvider(PaymentProvider):
    """Minimal provider implementation for local development and tests.

    Receipts are remembered per idempotency key for the life of the process.
    """

    def __init__(self) -> None:
        self._receipts: Dict[str, ChargeReceipt] = {}
        self._lock = Lock()

    def charge(
        self,
        *,
        customer_ref: Optional[str],
        amount: Decimal,
        currency: str,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ChargeReceipt:
        with self._lock:
            existing = self._receipts.get(idempotency_key)
            if existing is not None:
                logger.info("Sandbox charge %s replayed for key %s", existing.charge_id, idempotency_key)
                return existing
            receipt = ChargeReceipt(charge_id=f"ch_{uuid4().hex}", amount=amount, currency=currency)
            self._receipts[idempotency_key] = receipt
        logger.info(
            "Sandbox charge %s customer=%s amount=%s %s (%s)",
            receipt.charge_id,
            customer_ref,
            amount,
            currency,
            description,
        )
        return receipt

    def refund(self, *, charge_id: str, amount: Decimal, reason: str) -> RefundReceipt:
        refund_id = f"re_{uuid4().hex}"
        logger.info("Sandbox refund %s of %s for charge %s (%s)", refund_id, amount, charge_id, reason)
        return RefundReceipt(refund_id=refund_id, charge_id=charge_id, amount=amount)

    def cancel_recurring(self, subscription_ref: str) -> None:
        logger.info("Sandbox cancelled recurring billing for %s", subscription_ref)


@lru_cache(maxsize=1)
def get_membership_config() -> MembershipConfig:
    return load_membership_config()


@lru_cache(maxsize=1)
def get_membership_repository() -> MembershipRepository:
    config = get_membership_config()
    if config.store == "memory":
        logger.warning("Using in-memory membership store; records are lost on restart")
        return InMemoryMembershipRepository()
    from ..memberships.repository import PostgresMembershipRepository

    return PostgresMembershipRepository()


@lru_cache(maxsize=1)
def get_membership_service() -> MembershipService:
    return MembershipService(
        repository=get_membership_repository(),
        provider=LocalSandboxPaymentProvider(),
        event_logger=LoggingMembershipEventLogger(),
        config=get_membership_config(),
    )


@lru_cache(maxsize=1)
def get_payment_reconciler() -> PaymentEventReconciler:
    return PaymentEventReconciler(
        repository=get_membership_repository(),
        event_logger=LoggingMembershipEventLogger(),
        config=get_membership_config(),
    )


@lru_cache(maxsize=1)
def get_expiration_sweep() -> ExpirationSweep:
    return ExpirationSweep(
        repository=get_membership_repository(),
        event_logger=LoggingMembershipEventLogger(),
        config=get_membership_config(),
    )


__all__ = [
    "LocalSandboxPaymentProvider",
    "LoggingMembershipEventLogger",
    "get_expiration_sweep",
    "get_membership_config",
    "get_membership_repository",
    "get_membership_service",
    "get_payment_reconciler",
]
