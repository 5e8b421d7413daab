from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.apps.api.deps import get_db
from concierge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from concierge.apps.api.response import SuccessEnvelope, success_response
from concierge.services.instances import InstanceConfig
from concierge.services.leads import capture_lead
from concierge.services.payments import (
    MAX_CUSTOMER_ID,
    PaymentProcessor,
    confirm_payment,
    create_checkout,
    get_payment_processor,
)
from concierge.services.provisioning import deploy_instance
from concierge.services.status import get_instance_status, polling_policy


router = APIRouter(prefix="/onboarding", tags=["onboarding"], responses=DEFAULT_ERROR_RESPONSES)

Tier = Literal["starter", "pro", "business"]


class LeadRequest(BaseModel):
    email: EmailStr
    tier: Tier | None = None
    temp_customer_id: int | None = Field(default=None, gt=0, le=MAX_CUSTOMER_ID)
    source: str = Field(default="onboarding", max_length=100)


class LeadResponse(BaseModel):
    lead_id: int
    email: str
    status: str


class CheckoutRequest(BaseModel):
    email: EmailStr
    tier: Tier
    customer_id: int = Field(gt=0, le=MAX_CUSTOMER_ID)
    origin: str | None = Field(default=None, max_length=2048)


class CheckoutResponse(BaseModel):
    session_url: str | None
    session_id: str


class VerifyPaymentRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)


class VerifyPaymentResponse(BaseModel):
    success: bool
    email: str | None
    tier: str
    customer_id: int


class DeployRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)
    customer_id: int = Field(gt=0, le=MAX_CUSTOMER_ID)
    email: EmailStr
    role: str = Field(min_length=1, max_length=10000)
    bot_token: str | None = Field(default=None, max_length=512)
    channels: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)
    custom_api_key: str | None = Field(default=None, max_length=512)


class DeployResponse(BaseModel):
    success: bool


class InstanceStatusResponse(BaseModel):
    status: str
    error_message: str | None
    external_id: str | None


class PollingPolicyResponse(BaseModel):
    interval_s: int
    client_timeout_s: int


@router.post("/leads", response_model=SuccessEnvelope[LeadResponse] | LeadResponse)
async def create_lead(
    request: Request,
    payload: LeadRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    lead = await capture_lead(
        db,
        email=payload.email,
        tier=payload.tier,
        temp_customer_id=payload.temp_customer_id,
        source=payload.source,
    )
    return success_response(
        request=request,
        data=LeadResponse(lead_id=lead.id, email=lead.email, status=lead.status),
    )


@router.post("/checkout", response_model=SuccessEnvelope[CheckoutResponse] | CheckoutResponse)
async def checkout(
    request: Request,
    payload: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> dict:
    session = await create_checkout(
        db,
        processor,
        email=payload.email,
        tier=payload.tier,
        customer_id=payload.customer_id,
        origin=payload.origin or request.headers.get("origin"),
    )
    return success_response(
        request=request,
        data=CheckoutResponse(session_url=session.url, session_id=session.id),
    )


@router.post("/verify-payment", response_model=SuccessEnvelope[VerifyPaymentResponse] | VerifyPaymentResponse)
async def verify_payment(
    request: Request,
    payload: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> dict:
    # Idempotent; the webhook and the deploy fallback call the same gate.
    confirmation = await confirm_payment(db, processor, payload.session_id)
    return success_response(
        request=request,
        data=VerifyPaymentResponse(
            success=True,
            email=confirmation.email,
            tier=confirmation.tier,
            customer_id=confirmation.customer_id,
        ),
    )


@router.post("/deploy", response_model=SuccessEnvelope[DeployResponse] | DeployResponse)
async def deploy(
    request: Request,
    payload: DeployRequest,
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> dict:
    # Returns once the instance row is durable; provisioning continues in the background.
    await deploy_instance(
        db,
        processor,
        session_id=payload.session_id,
        customer_id=payload.customer_id,
        config=InstanceConfig(
            role=payload.role,
            email=payload.email,
            bot_token=payload.bot_token or None,
            channels=payload.channels,
            services=payload.services,
            custom_api_key=payload.custom_api_key or None,
        ),
    )
    return success_response(request=request, data=DeployResponse(success=True))


@router.get(
    "/status",
    response_model=SuccessEnvelope[InstanceStatusResponse | None] | InstanceStatusResponse | None,
)
async def instance_status(
    request: Request,
    customer_id: int = Query(gt=0, le=MAX_CUSTOMER_ID),
    session_id: str = Query(min_length=1, max_length=255),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> dict | None:
    status = await get_instance_status(db, processor, customer_id=customer_id, session_id=session_id)
    data = None
    if status is not None:
        data = InstanceStatusResponse(
            status=status.status,
            error_message=status.error_message,
            external_id=status.external_id,
        )
    return success_response(request=request, data=data)


@router.get("/polling-policy", response_model=SuccessEnvelope[PollingPolicyResponse] | PollingPolicyResponse)
async def get_polling_policy(request: Request) -> dict:
    return success_response(request=request, data=PollingPolicyResponse(**polling_policy()))
