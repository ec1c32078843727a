"""API routes exposing membership functionality."""
from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Response, status

from ... import app_context
from ..memberships import DEFAULT_CATALOG, MembershipClass, MembershipError, TierCode
from ..schemas.memberships import (
    BenefitsResponse,
    CancelRequest,
    CancelResponse,
    ConsumeRequest,
    ConsumeResponse,
    DiscountRequest,
    DiscountResponse,
    EligibilityResponse,
    JobAssignmentRequest,
    MembershipHistoryResponse,
    MembershipResponse,
    PlanChangeQuoteResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    ProviderWebhookPayload,
    SubscribeRequest,
    TierListResponse,
    TierResponse,
    UsageResponse,
)
from ..services.memberships import get_membership_service, get_payment_reconciler


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _subscriber_id(current_user) -> str:
    return str(current_user.id)


router = APIRouter(prefix="/api/memberships", tags=["memberships"])


@router.get("/tiers", response_model=TierListResponse)
def list_tiers(membership_class: Optional[MembershipClass] = None) -> TierListResponse:
    return TierListResponse(tiers=DEFAULT_CATALOG.list_active(membership_class))


@router.get("/tiers/{tier_code}", response_model=TierResponse)
def get_tier(tier_code: TierCode) -> TierResponse:
    try:
        tier = DEFAULT_CATALOG.get(tier_code)
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return TierResponse(tier=tier)


@router.get("/me", response_model=MembershipResponse)
def get_my_membership(*, current_user=Depends(_get_current_user)) -> MembershipResponse:
    service = get_membership_service()
    membership = service.get_membership(_subscriber_id(current_user))
    if membership is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No membership found")
    return MembershipResponse(membership=membership, access=service.access_status(membership))


@router.get("/me/history", response_model=MembershipHistoryResponse)
def list_my_memberships(*, current_user=Depends(_get_current_user)) -> MembershipHistoryResponse:
    service = get_membership_service()
    return MembershipHistoryResponse(memberships=service.list_history(_subscriber_id(current_user)))


@router.post("/subscribe", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
def subscribe(
    payload: SubscribeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> MembershipResponse:
    service = get_membership_service()
    try:
        membership = service.subscribe(
            _subscriber_id(current_user),
            payload.tier_code,
            payload.billing_cycle,
            billing_ref=payload.billing_ref.to_ref() if payload.billing_ref else None,
        )
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return MembershipResponse(membership=membership, access=service.access_status(membership))


@router.post("/me/change-plan/quote", response_model=PlanChangeQuoteResponse)
def quote_plan_change(
    payload: PlanChangeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PlanChangeQuoteResponse:
    service = get_membership_service()
    try:
        quote = service.quote_plan_change(
            _subscriber_id(current_user),
            payload.tier_code,
            payload.billing_cycle,
        )
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return PlanChangeQuoteResponse(quote=quote)


@router.post("/me/change-plan", response_model=PlanChangeResponse)
def change_plan(
    payload: PlanChangeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PlanChangeResponse:
    service = get_membership_service()
    try:
        result = service.change_plan(
            _subscriber_id(current_user),
            payload.tier_code,
            billing_cycle=payload.billing_cycle,
            immediate=payload.immediate,
        )
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return PlanChangeResponse(result=result)


@router.post("/me/cancel", response_model=CancelResponse)
def cancel_membership(
    payload: CancelRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CancelResponse:
    service = get_membership_service()
    try:
        result = service.cancel(
            _subscriber_id(current_user),
            immediate=payload.immediate,
            reason=payload.reason,
        )
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return CancelResponse.from_result(result)


@router.post("/me/reactivate", response_model=MembershipResponse)
def reactivate_membership(*, current_user=Depends(_get_current_user)) -> MembershipResponse:
    service = get_membership_service()
    try:
        membership = service.reactivate(_subscriber_id(current_user))
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return MembershipResponse(membership=membership, access=service.access_status(membership))


@router.get("/me/eligibility", response_model=EligibilityResponse)
def check_eligibility(
    emergency: bool = Query(default=False),
    *,
    current_user=Depends(_get_current_user),
) -> EligibilityResponse:
    service = get_membership_service()
    result = service.can_create_service_request(_subscriber_id(current_user), is_emergency=emergency)
    return EligibilityResponse(result=result)


@router.post("/me/consume", response_model=ConsumeResponse)
def consume_service_request(
    payload: ConsumeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ConsumeResponse:
    service = get_membership_service()
    try:
        result = service.consume_service_request(
            _subscriber_id(current_user),
            is_emergency=payload.is_emergency,
        )
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return ConsumeResponse(result=result)


@router.get("/me/jobs/eligibility", response_model=EligibilityResponse)
def check_job_eligibility(
    active_jobs: int = Query(default=0, ge=0, alias="activeJobs"),
    emergency: bool = Query(default=False),
    *,
    current_user=Depends(_get_current_user),
) -> EligibilityResponse:
    service = get_membership_service()
    try:
        result = service.can_accept_job(
            _subscriber_id(current_user),
            active_jobs=active_jobs,
            is_emergency=emergency,
        )
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return EligibilityResponse(result=result)


@router.post("/me/jobs/assign", response_model=ConsumeResponse)
def record_job_assignment(
    payload: JobAssignmentRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ConsumeResponse:
    service = get_membership_service()
    try:
        result = service.record_job_assignment(
            _subscriber_id(current_user),
            active_jobs=payload.active_jobs,
            is_emergency=payload.is_emergency,
        )
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return ConsumeResponse(result=result)


@router.get("/me/benefits", response_model=BenefitsResponse)
def get_benefits(*, current_user=Depends(_get_current_user)) -> BenefitsResponse:
    service = get_membership_service()
    return BenefitsResponse(benefits=service.get_benefits(_subscriber_id(current_user)))


@router.get("/me/usage", response_model=UsageResponse)
def get_usage(*, current_user=Depends(_get_current_user)) -> UsageResponse:
    service = get_membership_service()
    try:
        usage = service.get_usage_summary(_subscriber_id(current_user))
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return UsageResponse(usage=usage)


@router.post("/me/discount", response_model=DiscountResponse)
def calculate_discount(
    payload: DiscountRequest,
    *,
    current_user=Depends(_get_current_user),
) -> DiscountResponse:
    service = get_membership_service()
    try:
        discount = service.apply_material_discount(_subscriber_id(current_user), payload.amount)
    except MembershipError as exc:
        raise exc.to_http_exception() from exc
    return DiscountResponse(discount=discount)


@router.post("/webhook", status_code=status.HTTP_204_NO_CONTENT)
def receive_webhook(payload: ProviderWebhookPayload) -> Response:
    event = payload.to_event()
    if event is not None:
        get_payment_reconciler().reconcile(event)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
