from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import json
import logging
from typing import Any, Awaitable, Callable

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.config import get_settings
from concierge.core.errors import (
    InvalidCustomerIdError,
    InvalidSessionMetadataError,
    PaymentNotCompletedError,
    WebhookSignatureError,
)
from concierge.persistence.repos import billing as billing_repo
from concierge.persistence.repos import subscriptions as subscriptions_repo
from concierge.services.affiliates import record_commissions
from concierge.services.payments import (
    PaymentProcessor,
    cents_to_amount,
    materialize_subscription,
    session_info_from_stripe,
)
from concierge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Processor subscription statuses folded onto the local lifecycle.
SUBSCRIPTION_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "paused",
    "unpaid": "paused",
    "paused": "paused",
    "incomplete": "pending",
    "canceled": "cancelled",
    "incomplete_expired": "cancelled",
}

EventHandler = Callable[[AsyncSession, PaymentProcessor, dict[str, Any]], Awaitable[None]]


def verify_event(payload: bytes, signature: str | None) -> dict[str, Any]:
    # Signature check first; the handlers only ever see the verified payload.
    if not signature:
        raise WebhookSignatureError("Missing Stripe signature.")
    secret = get_settings().stripe_webhook_secret
    if not secret:
        logger.error("stripe_webhook_unconfigured missing=STRIPE_WEBHOOK_SECRET")
        raise WebhookSignatureError("Webhook verification is not configured.")
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as exc:
        raise WebhookSignatureError("Invalid webhook payload.") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("stripe_webhook_signature_invalid error=%s", exc)
        raise WebhookSignatureError("Invalid webhook signature.") from exc
    return json.loads(payload)


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _period_end(subscription: dict[str, Any]) -> datetime | None:
    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _timestamp(period_end)


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if subscription is None:
        # Newer API versions nest the reference under the invoice parent.
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


def _invoice_period_end(invoice: dict[str, Any]) -> datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    return _timestamp((lines[0].get("period") or {}).get("end"))


async def _checkout_completed(db: AsyncSession, processor: PaymentProcessor, obj: dict[str, Any]) -> None:
    session = session_info_from_stripe(obj)
    try:
        confirmation = await materialize_subscription(db, processor, session)
    except (PaymentNotCompletedError, InvalidCustomerIdError, InvalidSessionMetadataError) as exc:
        # Unusable sessions are acknowledged so the processor stops redelivering them.
        logger.warning("stripe_checkout_ignored session_id=%s reason=%s", session.id, exc.message)
        return
    logger.info(
        "stripe_checkout_confirmed session_id=%s customer_id=%s created=%s",
        session.id,
        confirmation.customer_id,
        confirmation.created,
    )


async def _subscription_updated(db: AsyncSession, processor: PaymentProcessor, obj: dict[str, Any]) -> None:
    subscription = await subscriptions_repo.get_by_stripe_subscription(db, obj.get("id"))
    if subscription is None:
        logger.info("stripe_subscription_unknown stripe_subscription_id=%s", obj.get("id"))
        return
    renewal_date = _period_end(obj)
    if renewal_date is not None:
        subscription.renewal_date = renewal_date
    status = SUBSCRIPTION_STATUS_MAP.get(obj.get("status") or "")
    if status is not None:
        subscription.status = status
        if status == "cancelled" and subscription.cancelled_at is None:
            subscription.cancelled_at = datetime.now(timezone.utc)
    await db.commit()


async def _subscription_deleted(db: AsyncSession, processor: PaymentProcessor, obj: dict[str, Any]) -> None:
    subscription = await subscriptions_repo.get_by_stripe_subscription(db, obj.get("id"))
    if subscription is None:
        return
    subscription.status = "cancelled"
    subscription.cancelled_at = _timestamp(obj.get("canceled_at")) or datetime.now(timezone.utc)
    await db.commit()
    logger.info("subscription_cancelled subscription_id=%s", subscription.id)


async def _invoice_paid(db: AsyncSession, processor: PaymentProcessor, obj: dict[str, Any]) -> None:
    # Only renewals bill here; the first invoice is covered by checkout confirmation.
    if obj.get("billing_reason") != "subscription_cycle":
        return
    invoice_id = obj.get("id")
    if invoice_id and await billing_repo.get_by_invoice(db, invoice_id) is not None:
        return
    stripe_subscription_id = _invoice_subscription_id(obj)
    if not stripe_subscription_id:
        return
    subscription = await subscriptions_repo.get_by_stripe_subscription(db, stripe_subscription_id)
    if subscription is None:
        logger.info("stripe_invoice_unmatched invoice_id=%s", invoice_id)
        return
    amount_cents = obj.get("amount_paid")
    if amount_cents is not None:
        amount = cents_to_amount(int(amount_cents))
    else:
        amount = subscription.monthly_price or Decimal("0")
    record = await billing_repo.create_billing_record(
        db,
        customer_id=subscription.customer_id,
        subscription_id=subscription.id,
        type="monthly_subscription",
        amount=amount,
        stripe_invoice_id=invoice_id,
        stripe_charge_id=obj.get("charge") if isinstance(obj.get("charge"), str) else None,
        description=f"{subscription.tier.capitalize()} plan renewal",
    )
    await record_commissions(
        db,
        customer_id=subscription.customer_id,
        subscription_id=subscription.id,
        billing_records=[record],
    )
    renewal_date = _invoice_period_end(obj)
    if renewal_date is not None:
        subscription.renewal_date = renewal_date
    await db.commit()
    logger.info("subscription_renewed subscription_id=%s invoice_id=%s", subscription.id, invoice_id)


EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.paid": _invoice_paid,
}


async def handle_event(db: AsyncSession, processor: PaymentProcessor, event: dict[str, Any]) -> dict[str, Any]:
    event_id = str(event.get("id") or "")
    event_type = event.get("type")
    if event_id.startswith("evt_test_"):
        # Dashboard test deliveries only check that the endpoint is reachable.
        return {"verified": True}
    increment_counter("stripe_webhook_events_total")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("stripe_webhook_unhandled event_id=%s event_type=%s", event_id, event_type)
        return {"received": True}
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("stripe_webhook_received event_id=%s event_type=%s", event_id, event_type)
    await handler(db, processor, obj)
    return {"received": True}
