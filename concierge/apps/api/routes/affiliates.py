from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.apps.api.deps import get_customer_id, get_db
from concierge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from concierge.apps.api.response import SuccessEnvelope, success_response
from concierge.domain.models import Affiliate, Commission, Referral
from concierge.persistence.repos import affiliates as affiliates_repo
from concierge.services.affiliates import (
    create_affiliate,
    get_stats,
    link_referral_to_customer,
    require_affiliate,
    track_click,
    update_payment_info,
)


router = APIRouter(prefix="/affiliates", tags=["affiliates"], responses=DEFAULT_ERROR_RESPONSES)


class CreateAffiliateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class PaymentInfoRequest(BaseModel):
    paypal_email: EmailStr | None = None


class TrackClickRequest(BaseModel):
    affiliate_code: str = Field(min_length=1, max_length=50)
    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = None


class LinkReferralRequest(BaseModel):
    affiliate_code: str = Field(min_length=1, max_length=50)
    email: EmailStr | None = None


class AffiliateResponse(BaseModel):
    affiliate_id: int
    affiliate_code: str
    status: str
    commission_rate: str
    total_earnings: str
    pending_earnings: str
    paid_earnings: str
    paypal_email: str | None


class AffiliateStatsResponse(BaseModel):
    total_referrals: int
    signed_up_referrals: int
    subscribed_referrals: int
    conversion_rate: str


class ReferralResponse(BaseModel):
    referral_id: int
    status: str
    referred_email: str | None
    clicked_at: datetime | None
    signed_up_at: datetime | None
    subscribed_at: datetime | None


class CommissionResponse(BaseModel):
    commission_id: int
    type: str
    amount: str
    commission_rate: str
    status: str
    created_at: datetime | None


class SuccessResponse(BaseModel):
    success: bool


def _affiliate_payload(row: Affiliate) -> AffiliateResponse:
    return AffiliateResponse(
        affiliate_id=row.id,
        affiliate_code=row.affiliate_code,
        status=row.status,
        commission_rate=str(row.commission_rate),
        total_earnings=str(row.total_earnings),
        pending_earnings=str(row.pending_earnings),
        paid_earnings=str(row.paid_earnings),
        paypal_email=row.paypal_email,
    )


def _referral_payload(row: Referral) -> ReferralResponse:
    return ReferralResponse(
        referral_id=row.id,
        status=row.status,
        referred_email=row.referred_email,
        clicked_at=row.clicked_at,
        signed_up_at=row.signed_up_at,
        subscribed_at=row.subscribed_at,
    )


def _commission_payload(row: Commission) -> CommissionResponse:
    return CommissionResponse(
        commission_id=row.id,
        type=row.type,
        amount=str(row.amount),
        commission_rate=str(row.commission_rate),
        status=row.status,
        created_at=row.created_at,
    )


@router.post("", response_model=SuccessEnvelope[AffiliateResponse] | AffiliateResponse)
async def create(
    request: Request,
    payload: CreateAffiliateRequest,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    affiliate = await create_affiliate(db, customer_id=customer_id, name=payload.name)
    return success_response(request=request, data=_affiliate_payload(affiliate))


@router.get("/me", response_model=SuccessEnvelope[AffiliateResponse | None] | AffiliateResponse | None)
async def me(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict | None:
    affiliate = await affiliates_repo.get_by_customer(db, customer_id)
    data = _affiliate_payload(affiliate) if affiliate else None
    return success_response(request=request, data=data)


@router.put("/me/payment-info", response_model=SuccessEnvelope[AffiliateResponse] | AffiliateResponse)
async def payment_info(
    request: Request,
    payload: PaymentInfoRequest,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    affiliate = await update_payment_info(db, customer_id=customer_id, paypal_email=payload.paypal_email)
    return success_response(request=request, data=_affiliate_payload(affiliate))


@router.get(
    "/stats",
    response_model=SuccessEnvelope[AffiliateStatsResponse | None] | AffiliateStatsResponse | None,
)
async def stats(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict | None:
    result = await get_stats(db, customer_id)
    data = None
    if result is not None:
        data = AffiliateStatsResponse(
            total_referrals=result.total_referrals,
            signed_up_referrals=result.signed_up_referrals,
            subscribed_referrals=result.subscribed_referrals,
            conversion_rate=result.conversion_rate,
        )
    return success_response(request=request, data=data)


@router.get("/referrals", response_model=SuccessEnvelope[list[ReferralResponse]] | list[ReferralResponse])
async def referrals(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    affiliate = await require_affiliate(db, customer_id)
    rows = await affiliates_repo.list_referrals(db, affiliate.id)
    return success_response(request=request, data=[_referral_payload(row) for row in rows])


@router.get(
    "/commissions",
    response_model=SuccessEnvelope[list[CommissionResponse]] | list[CommissionResponse],
)
async def commissions(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    affiliate = await require_affiliate(db, customer_id)
    rows = await affiliates_repo.list_commissions(db, affiliate.id)
    return success_response(request=request, data=[_commission_payload(row) for row in rows])


@router.post("/track-click", response_model=SuccessEnvelope[SuccessResponse] | SuccessResponse)
async def click(
    request: Request,
    payload: TrackClickRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Public endpoint; records a pending referral for the landing visit.
    ip_address = payload.ip_address or (request.client.host if request.client else None)
    await track_click(
        db,
        affiliate_code=payload.affiliate_code,
        ip_address=ip_address,
        user_agent=payload.user_agent or request.headers.get("user-agent"),
    )
    return success_response(request=request, data=SuccessResponse(success=True))


@router.post("/link-referral", response_model=SuccessEnvelope[SuccessResponse] | SuccessResponse)
async def link_referral(
    request: Request,
    payload: LinkReferralRequest,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    linked = await link_referral_to_customer(
        db,
        affiliate_code=payload.affiliate_code,
        customer_id=customer_id,
        email=payload.email,
    )
    return success_response(request=request, data=SuccessResponse(success=linked))
