"""In-process membership store suitable for tests and local development."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Set

from .errors import ConflictError
from .models import LIVE_STATUSES, Membership, MembershipStatus


class InMemoryMembershipRepository:
    """Thread-safe store honouring the same conditional-write contract as Postgres."""

    def __init__(self) -> None:
        self._records: Dict[str, Membership] = {}
        self._processed_events: Set[str] = set()
        self._lock = Lock()

    def insert(self, membership: Membership) -> Membership:
        with self._lock:
            if membership.membership_id in self._records:
                raise ConflictError(
                    code="membership_exists",
                    message=f"Membership {membership.membership_id} already exists",
                )
            self._check_single_live(membership)
            stored = membership.model_copy(update={"version": 1})
            self._records[stored.membership_id] = stored
            return stored

    def save(
        self,
        membership: Membership,
        *,
        expected_version: int,
        processed_event_id: Optional[str] = None,
    ) -> Membership:
        with self._lock:
            current = self._records.get(membership.membership_id)
            if current is None or current.version != expected_version:
                raise ConflictError(
                    message="Membership version mismatch",
                    detail={"membership_id": membership.membership_id},
                )
            if processed_event_id is not None and processed_event_id in self._processed_events:
                raise ConflictError(
                    message="Payment event already processed",
                    detail={"event_id": processed_event_id},
                )
            self._check_single_live(membership)
            stored = membership.model_copy(
                update={
                    "version": expected_version + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._records[stored.membership_id] = stored
            if processed_event_id is not None:
                self._processed_events.add(processed_event_id)
            return stored

    def _check_single_live(self, membership: Membership) -> None:
        if membership.status not in LIVE_STATUSES:
            return
        for record in self._records.values():
            if (
                record.membership_id != membership.membership_id
                and record.subscriber_id == membership.subscriber_id
                and record.status in LIVE_STATUSES
            ):
                raise ConflictError(
                    code="membership_exists",
                    message="Subscriber already has an active membership",
                    detail={"subscriber_id": membership.subscriber_id},
                    retriable=False,
                )

    def get(self, membership_id: str) -> Optional[Membership]:
        with self._lock:
            return self._records.get(membership_id)

    def get_current_for_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        candidates = [
            record
            for record in self.list_for_subscriber(subscriber_id)
            if record.status != MembershipStatus.EXPIRED
        ]
        if not candidates:
            return None
        # A live record outranks a cancelled one still inside its grace window.
        return max(candidates, key=lambda record: (record.status in LIVE_STATUSES, record.created_at))

    def list_for_subscriber(self, subscriber_id: str) -> List[Membership]:
        with self._lock:
            records = [r for r in self._records.values() if r.subscriber_id == subscriber_id]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[Membership]:
        with self._lock:
            for record in self._records.values():
                if record.billing_ref and record.billing_ref.subscription_ref == subscription_ref:
                    return record
        return None

    def list_cancelled_due(self, now: datetime) -> List[Membership]:
        with self._lock:
            return [
                record
                for record in self._records.values()
                if record.status == MembershipStatus.CANCELLED and record.end_date <= now
            ]

    def list_cancelled_ending_between(self, start: datetime, end: datetime) -> List[Membership]:
        with self._lock:
            return [
                record
                for record in self._records.values()
                if record.status == MembershipStatus.CANCELLED and start <= record.end_date <= end
            ]

    def list_provider_sync_pending(self) -> List[Membership]:
        with self._lock:
            return [record for record in self._records.values() if record.provider_sync_pending]

    def count(
        self,
        *,
        status: MembershipStatus,
        end_after: Optional[datetime] = None,
        end_on_or_before: Optional[datetime] = None,
    ) -> int:
        with self._lock:
            return sum(
                1
                for record in self._records.values()
                if record.status == status
                and (end_after is None or record.end_date > end_after)
                and (end_on_or_before is None or record.end_date <= end_on_or_before)
            )

    def has_processed_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._processed_events

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._processed_events.clear()


__all__ = ["InMemoryMembershipRepository"]
