"""Batch transition of cancelled memberships whose paid period has ended."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import MembershipConfig
from .models import (
    ExpirationStats,
    Membership,
    MembershipAuditEvent,
    MembershipAuditEventType,
    MembershipStatus,
    SweepFailure,
    SweepSummary,
)
from .periods import ensure_aware, utcnow
from .service import MembershipEventLogger
from .store import MembershipRepository, versioned_update

logger = logging.getLogger("memberships.expiration")


@dataclass
class ExpirationSweep:
    """Moves CANCELLED memberships past their end date to EXPIRED.

    Every record is transitioned with its own conditional write, so two
    overlapping runs never double count and a failure only affects the
    record that raised it.
    """

    repository: MembershipRepository
    event_logger: MembershipEventLogger
    config: MembershipConfig = field(default_factory=MembershipConfig)
    clock: Callable[[], datetime] = utcnow

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_aware(now or self.clock())

    def run(self, now: Optional[datetime] = None) -> SweepSummary:
        moment = self._now(now)
        due = list(self.repository.list_cancelled_due(moment))
        expired = 0
        failures: List[SweepFailure] = []

        for membership in due:
            try:
                if self._expire(membership.membership_id, moment):
                    expired += 1
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to expire membership %s", membership.membership_id)
                failures.append(SweepFailure(membership_id=membership.membership_id, error=str(exc)))

        summary = SweepSummary(
            checked=len(due),
            expired=expired,
            failed=len(failures),
            failures=failures,
        )
        logger.info(
            "Expiration sweep checked=%s expired=%s failed=%s",
            summary.checked,
            summary.expired,
            summary.failed,
        )
        return summary

    def _expire(self, membership_id: str, now: datetime) -> bool:
        transitioned = False

        def mutate(current: Membership) -> Membership:
            nonlocal transitioned
            transitioned = False
            # Another run or a reactivation may have moved the record on.
            if current.status != MembershipStatus.CANCELLED or current.end_date > now:
                return current
            transitioned = True
            return current.evolve(
                status=MembershipStatus.EXPIRED,
                auto_renew=False,
                expired_at=current.expired_at or now,
                next_billing_date=None,
            )

        updated = versioned_update(
            self.repository,
            lambda: self.repository.get(membership_id),
            mutate,
            attempts=self.config.max_write_attempts,
        )
        if transitioned and updated is not None:
            self.event_logger.log(
                MembershipAuditEvent(
                    event_type=MembershipAuditEventType.EXPIRED,
                    membership_id=updated.membership_id,
                    subscriber_id=updated.subscriber_id,
                    metadata={"end_date": updated.end_date.isoformat()},
                    occurred_at=now,
                )
            )
        return transitioned

    def find_expiring_soon(
        self,
        days_ahead: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[Membership]:
        """Cancelled memberships whose access ends within ``days_ahead`` days."""

        moment = self._now(now)
        window = self.config.expiring_soon_days if days_ahead is None else days_ahead
        return list(
            self.repository.list_cancelled_ending_between(moment, moment + timedelta(days=window))
        )

    def expiration_stats(self, now: Optional[datetime] = None) -> ExpirationStats:
        moment = self._now(now)
        horizon = moment + timedelta(days=self.config.expiring_soon_days)
        return ExpirationStats(
            active=self.repository.count(status=MembershipStatus.ACTIVE),
            cancelled_with_access=self.repository.count(status=MembershipStatus.CANCELLED, end_after=moment),
            cancelled_due=self.repository.count(status=MembershipStatus.CANCELLED, end_on_or_before=moment),
            expiring_soon=self.repository.count(
                status=MembershipStatus.CANCELLED,
                end_after=moment,
                end_on_or_before=horizon,
            ),
        )


__all__ = ["ExpirationSweep"]
