from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.apps.api.deps import get_customer_id, get_db
from concierge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from concierge.apps.api.response import SuccessEnvelope, success_response
from concierge.domain.models import BillingRecord, Instance, Subscription
from concierge.services.dashboard import delete_instance, get_instance_logs, restart_instance
from concierge.services.provisioning import retry_deploy
from concierge.services.status import get_dashboard


router = APIRouter(prefix="/dashboard", tags=["dashboard"], responses=DEFAULT_ERROR_RESPONSES)


class SubscriptionResponse(BaseModel):
    subscription_id: int
    tier: str
    status: str
    setup_fee_paid: bool
    monthly_price: str | None
    start_date: datetime | None
    renewal_date: datetime | None
    cancelled_at: datetime | None


class InstanceResponse(BaseModel):
    instance_id: int
    status: str
    external_id: str | None
    error_message: str | None
    ai_role: str | None
    ai_email: str | None
    has_bot_token: bool
    # Includes the gateway URL and token; dashboard-only.
    config: dict[str, Any]
    created_at: datetime | None
    updated_at: datetime | None


class BillingRecordResponse(BaseModel):
    billing_record_id: int
    type: str
    amount: str
    currency: str
    status: str
    description: str | None
    created_at: datetime | None


class DashboardResponse(BaseModel):
    subscription: SubscriptionResponse | None
    instance: InstanceResponse | None
    billing_records: list[BillingRecordResponse]


class ActionResponse(BaseModel):
    success: bool
    status: str | None = None


class LogsResponse(BaseModel):
    logs: list[str]


def _subscription_payload(row: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscription_id=row.id,
        tier=row.tier,
        status=row.status,
        setup_fee_paid=row.setup_fee_paid,
        monthly_price=str(row.monthly_price) if row.monthly_price is not None else None,
        start_date=row.start_date,
        renewal_date=row.renewal_date,
        cancelled_at=row.cancelled_at,
    )


def _instance_payload(row: Instance) -> InstanceResponse:
    return InstanceResponse(
        instance_id=row.id,
        status=row.status,
        external_id=row.external_id,
        error_message=row.error_message,
        ai_role=row.ai_role,
        ai_email=row.ai_email,
        has_bot_token=bool(row.bot_token),
        config=dict(row.config_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _billing_payload(row: BillingRecord) -> BillingRecordResponse:
    return BillingRecordResponse(
        billing_record_id=row.id,
        type=row.type,
        amount=str(row.amount),
        currency=row.currency,
        status=row.status,
        description=row.description,
        created_at=row.created_at,
    )


@router.get("", response_model=SuccessEnvelope[DashboardResponse] | DashboardResponse)
async def dashboard(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await get_dashboard(db, customer_id)
    payload = DashboardResponse(
        subscription=_subscription_payload(view.subscription) if view.subscription else None,
        instance=_instance_payload(view.instance) if view.instance else None,
        billing_records=[_billing_payload(row) for row in view.billing_records],
    )
    return success_response(request=request, data=payload)


@router.post("/retry", response_model=SuccessEnvelope[ActionResponse] | ActionResponse)
async def retry(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only valid from error; the new attempt runs in the background.
    await retry_deploy(db, customer_id)
    return success_response(request=request, data=ActionResponse(success=True))


@router.post("/restart", response_model=SuccessEnvelope[ActionResponse] | ActionResponse)
async def restart(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    instance = await restart_instance(db, customer_id)
    return success_response(request=request, data=ActionResponse(success=True, status=instance.status))


@router.get("/logs", response_model=SuccessEnvelope[LogsResponse] | LogsResponse)
async def logs(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    lines = await get_instance_logs(db, customer_id)
    return success_response(request=request, data=LogsResponse(logs=lines))


@router.delete("/instance", response_model=SuccessEnvelope[ActionResponse] | ActionResponse)
async def remove_instance(
    request: Request,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    instance = await delete_instance(db, customer_id)
    return success_response(request=request, data=ActionResponse(success=True, status=instance.status))
