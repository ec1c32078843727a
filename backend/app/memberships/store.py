"""Persistence contract for membership records and the optimistic write loop."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from .errors import ConflictError
from .models import Membership, MembershipStatus

logger = logging.getLogger("memberships.store")


class MembershipRepository(Protocol):
    """Persistence operations required by the membership engine.

    ``save`` is a conditional write: it succeeds only when the stored version
    still equals ``expected_version`` and raises :class:`ConflictError`
    otherwise. ``processed_event_id`` is recorded in the same commit so a
    payment event can never be applied twice.
    """

    def insert(self, membership: Membership) -> Membership:
        ...

    def save(
        self,
        membership: Membership,
        *,
        expected_version: int,
        processed_event_id: Optional[str] = None,
    ) -> Membership:
        ...

    def get(self, membership_id: str) -> Optional[Membership]:
        ...

    def get_current_for_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        ...

    def list_for_subscriber(self, subscriber_id: str) -> Sequence[Membership]:
        ...

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[Membership]:
        ...

    def list_cancelled_due(self, now: datetime) -> Sequence[Membership]:
        ...

    def list_cancelled_ending_between(self, start: datetime, end: datetime) -> Sequence[Membership]:
        ...

    def list_provider_sync_pending(self) -> Sequence[Membership]:
        ...

    def count(
        self,
        *,
        status: MembershipStatus,
        end_after: Optional[datetime] = None,
        end_on_or_before: Optional[datetime] = None,
    ) -> int:
        ...

    def has_processed_event(self, event_id: str) -> bool:
        ...


Loader = Callable[[], Optional[Membership]]
Mutator = Callable[[Membership], Membership]


def versioned_update(
    repository: MembershipRepository,
    load: Loader,
    mutate: Mutator,
    *,
    attempts: int,
    processed_event_id: Optional[str] = None,
) -> Optional[Membership]:
    """Run a read-check-mutate cycle, retrying the whole cycle on conflict.

    ``mutate`` may raise to abort; returning the very instance it received
    means "nothing to write". Returns ``None`` when ``load`` finds no record.
    A non-retriable conflict, such as a second live record for the same
    subscriber, is raised on the first attempt.
    """

    for attempt in range(1, attempts + 1):
        current = load()
        if current is None:
            return None
        updated = mutate(current)
        if updated is current:
            return current
        try:
            return repository.save(
                updated,
                expected_version=current.version,
                processed_event_id=processed_event_id,
            )
        except ConflictError as exc:
            if not exc.retriable:
                raise
            logger.debug(
                "Version conflict on membership %s (attempt %s/%s)",
                current.membership_id,
                attempt,
                attempts,
            )
    raise ConflictError(
        message="Membership is being modified concurrently; retry later.",
        detail={"attempts": attempts},
    )


__all__ = ["MembershipRepository", "versioned_update"]
