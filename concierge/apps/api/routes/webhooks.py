from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.apps.api.deps import get_db
from concierge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from concierge.apps.api.response import success_response
from concierge.services.payments import PaymentProcessor, get_payment_processor
from concierge.services.webhooks import handle_event, verify_event


router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> Any:
    # Signature verification needs the raw body, not parsed JSON.
    payload = await request.body()
    event = verify_event(payload, request.headers.get("stripe-signature"))
    result = await handle_event(db, processor, event)
    return success_response(request=request, data=result)
