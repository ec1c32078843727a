"""Error taxonomy for the membership entitlement engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass(eq=False)
class MembershipError(Exception):
    """Base class for failures surfaced to callers of the membership engine."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None
    retriable: bool = False

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.retriable:
            base_detail["retriable"] = True
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass(eq=False)
class ValidationError(MembershipError):
    """Request rejected synchronously; never retried."""

    code: str = "validation_error"
    message: str = "Invalid membership request."
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class ConflictError(MembershipError):
    """Existing live membership or a lost optimistic write."""

    code: str = "conflict"
    message: str = "Membership was modified concurrently."
    status_code: int = status.HTTP_409_CONFLICT
    retriable: bool = True


@dataclass(eq=False)
class NoMembership(MembershipError):
    code: str = "no_membership"
    message: str = "No membership found."
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass(eq=False)
class AccessDenied(MembershipError):
    code: str = "membership_inactive"
    message: str = "Membership does not grant access."
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass(eq=False)
class QuotaExceeded(MembershipError):
    code: str = "quota_exceeded"
    message: str = "Monthly service request limit reached."
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass(eq=False)
class PaymentDeclined(MembershipError):
    code: str = "payment_declined"
    message: str = "The payment provider declined the charge."
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED


@dataclass(eq=False)
class ProviderUnavailable(MembershipError):
    code: str = "provider_unavailable"
    message: str = "The payment provider could not be reached."
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE
    retriable: bool = True


@dataclass(eq=False)
class ProviderNotFound(MembershipError):
    """The provider has no record of the referenced object."""

    code: str = "provider_not_found"
    message: str = "The payment provider does not recognise this reference."
    status_code: int = status.HTTP_404_NOT_FOUND


__all__ = [
    "AccessDenied",
    "ConflictError",
    "MembershipError",
    "NoMembership",
    "PaymentDeclined",
    "ProviderNotFound",
    "ProviderUnavailable",
    "QuotaExceeded",
    "ValidationError",
]
