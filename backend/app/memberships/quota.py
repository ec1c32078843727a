"""Usage quota evaluation with lazy per-period counter resets."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .errors import QuotaExceeded
from .models import UNLIMITED, Membership, TierDefinition, UsageCounters, UsageKind
from .periods import next_period_start, period_key


@dataclass(frozen=True)
class QuotaEvaluation:
    """Represents the outcome of a quota check for one usage kind."""

    kind: UsageKind
    limit: int
    used: int
    allowed: bool

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict[str, int | bool | None]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "kind": self.kind.value,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "allowed": self.allowed,
        }


def fresh_usage(now: datetime) -> UsageCounters:
    return UsageCounters(period_key=period_key(now), reset_date=next_period_start(now))


def roll_period(membership: Membership, now: datetime) -> Membership:
    """Reset counters when ``now`` falls in a newer period than the stored one.

    Returns the same instance when no reset is needed so callers can skip the
    write entirely.
    """

    if membership.current_usage.period_key == period_key(now):
        return membership
    return membership.evolve(current_usage=fresh_usage(now))


def evaluate_quota(
    membership: Membership,
    tier: TierDefinition,
    kind: UsageKind,
    now: datetime,
) -> QuotaEvaluation:
    """Check whether one more unit of ``kind`` fits within the tier limit."""

    usage = roll_period(membership, now).current_usage
    limit = tier.limit_for(kind)
    used = usage.used(kind)
    allowed = limit == UNLIMITED or used < limit
    return QuotaEvaluation(kind=kind, limit=limit, used=used, allowed=allowed)


def apply_consumption(
    membership: Membership,
    tier: TierDefinition,
    *,
    is_emergency: bool,
    now: datetime,
) -> Membership:
    """Return a copy with the consumption recorded, raising when over quota.

    Emergency requests count against both the regular service-request quota
    and the emergency allowance.
    """

    rolled = roll_period(membership, now)
    kinds = [UsageKind.SERVICE_REQUEST]
    if is_emergency:
        kinds.append(UsageKind.EMERGENCY_REQUEST)

    for kind in kinds:
        evaluation = evaluate_quota(rolled, tier, kind, now)
        if not evaluation.allowed:
            message = (
                "Emergency service is not included in this tier."
                if kind == UsageKind.EMERGENCY_REQUEST
                else "Monthly service request limit reached."
            )
            raise QuotaExceeded(message=message, detail=evaluation.to_dict())

    usage = rolled.current_usage
    updated_usage = usage.model_copy(
        update={
            "service_requests_used": usage.service_requests_used + 1,
            "emergency_requests_used": usage.emergency_requests_used + (1 if is_emergency else 0),
        }
    )
    return rolled.evolve(current_usage=updated_usage)


def evaluate_concurrency(tier: TierDefinition, active_jobs: int) -> QuotaEvaluation:
    """Check whether a vendor already holding ``active_jobs`` may take one more."""

    limit = tier.features.max_concurrent_jobs
    allowed = limit == UNLIMITED or active_jobs < limit
    return QuotaEvaluation(kind=UsageKind.JOB_ASSIGNMENT, limit=limit, used=active_jobs, allowed=allowed)


def apply_job_assignment(
    membership: Membership,
    tier: TierDefinition,
    *,
    active_jobs: int,
    now: datetime,
    is_emergency: bool = False,
) -> Membership:
    """Return a copy with one more job assigned this period.

    ``active_jobs`` is the number of jobs the vendor currently has in progress;
    only the monthly counter is stored on the membership.
    """

    if is_emergency and not tier.features.emergency_service:
        raise QuotaExceeded(
            message="Emergency jobs are not included in this tier.",
            detail={"tier_code": tier.code.value},
        )
    concurrency = evaluate_concurrency(tier, active_jobs)
    if not concurrency.allowed:
        raise QuotaExceeded(
            message=f"Concurrent job limit reached ({concurrency.used}/{concurrency.limit})",
            detail=concurrency.to_dict(),
        )

    rolled = roll_period(membership, now)
    monthly = evaluate_quota(rolled, tier, UsageKind.JOB_ASSIGNMENT, now)
    if not monthly.allowed:
        raise QuotaExceeded(message="Monthly job limit reached.", detail=monthly.to_dict())

    usage = rolled.current_usage
    return rolled.evolve(current_usage=usage.model_copy(update={"jobs_assigned": usage.jobs_assigned + 1}))


__all__ = [
    "QuotaEvaluation",
    "apply_consumption",
    "apply_job_assignment",
    "evaluate_concurrency",
    "evaluate_quota",
    "fresh_usage",
    "roll_period",
]
