"""PostgreSQL persistence for membership records."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .errors import ConflictError
from .models import (
    BillingCycle,
    BillingRefKind,
    ExternalBillingRef,
    Membership,
    MembershipStatus,
    TierCode,
    UsageCounters,
)

_LIVE_STATUS_VALUES = tuple(
    status.value
    for status in (MembershipStatus.ACTIVE, MembershipStatus.PENDING, MembershipStatus.SUSPENDED)
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_membership(row: dict) -> Membership:
    billing_ref = None
    if row.get("billing_ref_kind"):
        billing_ref = ExternalBillingRef(
            kind=BillingRefKind(row["billing_ref_kind"]),
            customer_ref=row.get("customer_ref"),
            subscription_ref=row.get("subscription_ref"),
        )
    pending_tier = row.get("pending_tier_code")
    pending_cycle = row.get("pending_billing_cycle")
    return Membership(
        membership_id=row["membership_id"],
        subscriber_id=row["subscriber_id"],
        tier_code=TierCode(row["tier_code"]),
        status=MembershipStatus(row["status"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        paid_amount=Decimal(row["paid_amount"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        next_billing_date=row.get("next_billing_date"),
        auto_renew=bool(row["auto_renew"]),
        cancelled_at=row.get("cancelled_at"),
        will_expire_at=row.get("will_expire_at"),
        expired_at=row.get("expired_at"),
        cancellation_reason=row.get("cancellation_reason"),
        pending_tier_code=TierCode(pending_tier) if pending_tier else None,
        pending_billing_cycle=BillingCycle(pending_cycle) if pending_cycle else None,
        provider_sync_pending=bool(row.get("provider_sync_pending")),
        current_usage=UsageCounters(
            period_key=row["usage_period_key"],
            service_requests_used=int(row["service_requests_used"]),
            emergency_requests_used=int(row["emergency_requests_used"]),
            jobs_assigned=int(row.get("jobs_assigned") or 0),
            reset_date=row["usage_reset_date"],
        ),
        billing_ref=billing_ref,
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _live_conflict(membership: Membership) -> ConflictError:
    return ConflictError(
        code="membership_exists",
        message="Subscriber already has an active membership",
        detail={"subscriber_id": membership.subscriber_id},
        retriable=False,
    )


def _membership_params(membership: Membership) -> Dict[str, Any]:
    ref = membership.billing_ref
    return {
        "membership_id": membership.membership_id,
        "subscriber_id": membership.subscriber_id,
        "tier_code": membership.tier_code.value,
        "status": membership.status.value,
        "billing_cycle": membership.billing_cycle.value,
        "paid_amount": membership.paid_amount,
        "start_date": membership.start_date,
        "end_date": membership.end_date,
        "next_billing_date": membership.next_billing_date,
        "auto_renew": membership.auto_renew,
        "cancelled_at": membership.cancelled_at,
        "will_expire_at": membership.will_expire_at,
        "expired_at": membership.expired_at,
        "cancellation_reason": membership.cancellation_reason,
        "pending_tier_code": membership.pending_tier_code.value if membership.pending_tier_code else None,
        "pending_billing_cycle": (
            membership.pending_billing_cycle.value if membership.pending_billing_cycle else None
        ),
        "provider_sync_pending": membership.provider_sync_pending,
        "usage_period_key": membership.current_usage.period_key,
        "service_requests_used": membership.current_usage.service_requests_used,
        "emergency_requests_used": membership.current_usage.emergency_requests_used,
        "jobs_assigned": membership.current_usage.jobs_assigned,
        "usage_reset_date": membership.current_usage.reset_date,
        "billing_ref_kind": ref.kind.value if ref else None,
        "customer_ref": ref.customer_ref if ref else None,
        "subscription_ref": ref.subscription_ref if ref else None,
        "created_at": membership.created_at,
    }


class PostgresMembershipRepository:
    """Concrete repository persisting membership records in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def insert(self, membership: Membership) -> Membership:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO memberships (
                        membership_id, subscriber_id, tier_code, status, billing_cycle,
                        paid_amount, start_date, end_date, next_billing_date, auto_renew,
                        cancelled_at, will_expire_at, expired_at, cancellation_reason,
                        pending_tier_code, pending_billing_cycle, provider_sync_pending,
                        usage_period_key, service_requests_used, emergency_requests_used,
                        jobs_assigned, usage_reset_date, billing_ref_kind, customer_ref,
                        subscription_ref, version, created_at
                    )
                    VALUES (
                        %(membership_id)s, %(subscriber_id)s, %(tier_code)s, %(status)s,
                        %(billing_cycle)s, %(paid_amount)s, %(start_date)s, %(end_date)s,
                        %(next_billing_date)s, %(auto_renew)s, %(cancelled_at)s,
                        %(will_expire_at)s, %(expired_at)s, %(cancellation_reason)s,
                        %(pending_tier_code)s, %(pending_billing_cycle)s,
                        %(provider_sync_pending)s, %(usage_period_key)s,
                        %(service_requests_used)s, %(emergency_requests_used)s,
                        %(jobs_assigned)s, %(usage_reset_date)s, %(billing_ref_kind)s,
                        %(customer_ref)s, %(subscription_ref)s, 1, %(created_at)s
                    )
                    RETURNING *
                    """,
                    _membership_params(membership),
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise _live_conflict(membership) from exc
        if not row:
            raise RuntimeError("Failed to persist membership")
        return _row_to_membership(row)

    def save(
        self,
        membership: Membership,
        *,
        expected_version: int,
        processed_event_id: Optional[str] = None,
    ) -> Membership:
        params = _membership_params(membership)
        params["expected_version"] = expected_version
        try:
            with self._cursor() as cursor:
                if processed_event_id is not None:
                    cursor.execute(
                        """
                        INSERT INTO membership_processed_events (event_id, membership_id)
                        VALUES (%s, %s)
                        ON CONFLICT (event_id) DO NOTHING
                        """,
                        (processed_event_id, membership.membership_id),
                    )
                    if cursor.rowcount == 0:
                        raise ConflictError(
                            message="Payment event already processed",
                            detail={"event_id": processed_event_id},
                        )
                cursor.execute(
                    """
                    UPDATE memberships SET
                        tier_code = %(tier_code)s,
                        status = %(status)s,
                        billing_cycle = %(billing_cycle)s,
                        paid_amount = %(paid_amount)s,
                        start_date = %(start_date)s,
                        end_date = %(end_date)s,
                        next_billing_date = %(next_billing_date)s,
                        auto_renew = %(auto_renew)s,
                        cancelled_at = %(cancelled_at)s,
                        will_expire_at = %(will_expire_at)s,
                        expired_at = %(expired_at)s,
                        cancellation_reason = %(cancellation_reason)s,
                        pending_tier_code = %(pending_tier_code)s,
                        pending_billing_cycle = %(pending_billing_cycle)s,
                        provider_sync_pending = %(provider_sync_pending)s,
                        usage_period_key = %(usage_period_key)s,
                        service_requests_used = %(service_requests_used)s,
                        emergency_requests_used = %(emergency_requests_used)s,
                        jobs_assigned = %(jobs_assigned)s,
                        usage_reset_date = %(usage_reset_date)s,
                        billing_ref_kind = %(billing_ref_kind)s,
                        customer_ref = %(customer_ref)s,
                        subscription_ref = %(subscription_ref)s,
                        version = version + 1,
                        updated_at = NOW()
                    WHERE membership_id = %(membership_id)s AND version = %(expected_version)s
                    RETURNING *
                    """,
                    params,
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise _live_conflict(membership) from exc
        if not row:
            raise ConflictError(
                message="Membership version mismatch",
                detail={"membership_id": membership.membership_id},
            )
        return _row_to_membership(row)

    def get(self, membership_id: str) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM memberships
                WHERE membership_id = %s
                LIMIT 1
                """,
                (membership_id,),
            )
            row = cursor.fetchone()
            return _row_to_membership(row) if row else None

    def get_current_for_subscriber(self, subscriber_id: str) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM memberships
                WHERE subscriber_id = %s AND status <> %s
                ORDER BY (status IN %s) DESC, created_at DESC
                LIMIT 1
                """,
                (subscriber_id, MembershipStatus.EXPIRED.value, _LIVE_STATUS_VALUES),
            )
            row = cursor.fetchone()
            return _row_to_membership(row) if row else None

    def list_for_subscriber(self, subscriber_id: str) -> List[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM memberships
                WHERE subscriber_id = %s
                ORDER BY created_at DESC
                """,
                (subscriber_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_membership(row) for row in rows]

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM memberships
                WHERE subscription_ref = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (subscription_ref,),
            )
            row = cursor.fetchone()
            return _row_to_membership(row) if row else None

    def list_cancelled_due(self, now: datetime) -> List[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM memberships
                WHERE status = %s AND end_date <= %s
                ORDER BY end_date ASC
                """,
                (MembershipStatus.CANCELLED.value, now),
            )
            rows = cursor.fetchall() or []
            return [_row_to_membership(row) for row in rows]

    def list_cancelled_ending_between(self, start: datetime, end: datetime) -> List[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM memberships
                WHERE status = %s AND end_date >= %s AND end_date <= %s
                ORDER BY end_date ASC
                """,
                (MembershipStatus.CANCELLED.value, start, end),
            )
            rows = cursor.fetchall() or []
            return [_row_to_membership(row) for row in rows]

    def list_provider_sync_pending(self) -> List[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM memberships
                WHERE provider_sync_pending
                ORDER BY updated_at ASC
                """
            )
            rows = cursor.fetchall() or []
            return [_row_to_membership(row) for row in rows]

    def count(
        self,
        *,
        status: MembershipStatus,
        end_after: Optional[datetime] = None,
        end_on_or_before: Optional[datetime] = None,
    ) -> int:
        clauses = ["status = %s"]
        params: List[Any] = [status.value]
        if end_after is not None:
            clauses.append("end_date > %s")
            params.append(end_after)
        if end_on_or_before is not None:
            clauses.append("end_date <= %s")
            params.append(end_on_or_before)
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT COUNT(*) AS total FROM memberships WHERE {' AND '.join(clauses)}",
                tuple(params),
            )
            row = cursor.fetchone()
            return int(row["total"]) if row else 0

    def has_processed_event(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM membership_processed_events WHERE event_id = %s LIMIT 1",
                (event_id,),
            )
            return cursor.fetchone() is not None


__all__ = ["PostgresMembershipRepository", "managed_connection"]
