"""Payment provider contract used by the membership engine."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol, TypeVar

from .errors import ProviderUnavailable

logger = logging.getLogger("memberships.provider")

T = TypeVar("T")


@dataclass(frozen=True)
class ChargeReceipt:
    """Acknowledgement returned by the provider for a successful charge."""

    charge_id: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    charge_id: str
    amount: Decimal


class PaymentProvider(Protocol):
    """External payment processor integration.

    Implementations raise :class:`PaymentDeclined` when the payment method is
    refused, :class:`ProviderNotFound` when the subscription is unknown to the
    provider and :class:`ProviderUnavailable` for transport failures.

    ``charge`` must honour ``idempotency_key``: a repeated call with the same
    key returns the original receipt instead of collecting twice.
    """

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
        """Collect ``amount`` from the customer's stored payment method."""

    def refund(self, *, charge_id: str, amount: Decimal, reason: str) -> RefundReceipt:
        """Return ``amount`` of a previously collected charge."""

    def cancel_recurring(self, subscription_ref: str) -> None:
        """Stop future billing for ``subscription_ref``."""


def bounded_call(fn: Callable[[], T], *, timeout: float, operation: str) -> T:
    """Run ``fn`` with a hard deadline; a timeout surfaces as ProviderUnavailable."""

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="membership-provider")
    future = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        logger.warning("Payment provider %s timed out after %.1fs", operation, timeout)
        raise ProviderUnavailable(
            message=f"Payment provider did not answer {operation} in time",
            detail={"operation": operation, "timeout_seconds": timeout},
        ) from exc
    finally:
        executor.shutdown(wait=False)


__all__ = ["ChargeReceipt", "PaymentProvider", "RefundReceipt", "bounded_call"]
