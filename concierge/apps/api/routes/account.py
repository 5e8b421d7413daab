from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.apps.api.deps import get_customer_id, get_db
from concierge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from concierge.apps.api.response import SuccessEnvelope, success_response
from concierge.services.leads import migrate_lead_records


router = APIRouter(prefix="/account", tags=["account"], responses=DEFAULT_ERROR_RESPONSES)


class LinkAccountRequest(BaseModel):
    email: EmailStr


class LinkAccountResponse(BaseModel):
    migrated: bool
    subscriptions: int
    instances: int
    billing_records: int
    reason: str | None = None


@router.post("/link", response_model=SuccessEnvelope[LinkAccountResponse] | LinkAccountResponse)
async def link_account(
    request: Request,
    payload: LinkAccountRequest,
    customer_id: int = Depends(get_customer_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Called after login; moves pre-signup records onto the real customer id once.
    result = await migrate_lead_records(db, email=payload.email, customer_id=customer_id)
    return success_response(
        request=request,
        data=LinkAccountResponse(
            migrated=result.migrated,
            subscriptions=result.subscriptions,
            instances=result.instances,
            billing_records=result.billing_records,
            reason=result.reason,
        ),
    )
