"""Checkout creation and the payment confirmation gate.

``confirm_payment`` is the single place a subscription is materialized. It is
called from three trigger points (the verify-payment endpoint, the Stripe
webhook and the fallback inside deploy) and must produce exactly one
subscription plus its two billing records no matter how often it runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
import logging
import time
from typing import Any, Protocol

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.config import get_settings
from concierge.core.errors import (
    InvalidCustomerIdError,
    InvalidSessionMetadataError,
    PaymentNotCompletedError,
    PaymentProcessorError,
)
from concierge.domain.models import TIERS
from concierge.persistence.repos import billing as billing_repo
from concierge.persistence.repos import leads as leads_repo
from concierge.persistence.repos import subscriptions as subscriptions_repo
from concierge.services.affiliates import record_commissions
from concierge.services.resilience import payment_retry_policy, retry_async
from concierge.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# Amounts in cents. Setup fee is flat; monthly price varies by tier.
PRICING: dict[str, dict[str, int]] = {
    "starter": {"setup_fee": 25000, "monthly_price": 4900},
    "pro": {"setup_fee": 25000, "monthly_price": 9900},
    "business": {"setup_fee": 25000, "monthly_price": 14900},
}

# Customer ids are stored in a signed 32-bit column.
MAX_CUSTOMER_ID = 2_147_483_647


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CheckoutSessionInfo:
    # Normalized view of a processor checkout session; metadata is the only trusted input.
    id: str
    payment_status: str
    url: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    client_reference_id: str | None = None
    customer_email: str | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    payment_intent_id: str | None = None


@dataclass(frozen=True)
class PaymentConfirmation:
    email: str | None
    tier: str
    customer_id: int
    subscription_id: int | None
    created: bool


class PaymentProcessor(Protocol):
    async def create_checkout_session(
        self,
        *,
        customer_email: str,
        tier: str,
        customer_id: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionInfo: ...

    async def retrieve_session(self, session_id: str) -> CheckoutSessionInfo: ...

    async def get_subscription_period_end(self, stripe_subscription_id: str) -> datetime | None: ...


def as_plain_dict(obj: Any) -> dict[str, Any]:
    # StripeObject exposes to_dict(); webhook payloads are already plain dicts.
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


def _stripe_id(value: Any) -> str | None:
    # Stripe returns either an id string or an expanded object for references.
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id") if hasattr(value, "get") else None


def session_info_from_stripe(session: Any) -> CheckoutSessionInfo:
    session = as_plain_dict(session)
    metadata = session.get("metadata") or {}
    return CheckoutSessionInfo(
        id=session.get("id"),
        payment_status=session.get("payment_status") or "unpaid",
        url=session.get("url"),
        metadata={str(key): str(value) for key, value in dict(metadata).items()},
        client_reference_id=session.get("client_reference_id"),
        customer_email=session.get("customer_email")
        or (session.get("customer_details") or {}).get("email"),
        stripe_customer_id=_stripe_id(session.get("customer")),
        stripe_subscription_id=_stripe_id(session.get("subscription")),
        payment_intent_id=_stripe_id(session.get("payment_intent")),
    )


class StripePaymentProcessor:
    """Stripe Checkout implementation using the SDK's async client."""

    def __init__(self, secret_key: str) -> None:
        self._client = stripe.StripeClient(secret_key, http_client=stripe.HTTPXClient())

    async def _call(self, operation: str, func) -> Any:
        start = time.monotonic()
        try:
            result = await func()
        except stripe.StripeError as exc:
            record_external_call(
                integration=f"stripe.{operation}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("stripe_call_failed operation=%s error=%s", operation, exc)
            raise PaymentProcessorError(
                str(exc),
                http_status=exc.http_status,
                transient=isinstance(exc, stripe.APIConnectionError),
            ) from exc
        record_external_call(
            integration=f"stripe.{operation}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return result

    async def _read(self, operation: str, func) -> Any:
        # Reads are idempotent, so connection failures, timeouts and 5xx answers are retried.
        try:
            return await retry_async(lambda: self._call(operation, func), policy=payment_retry_policy())
        except TimeoutError as exc:
            logger.warning("stripe_call_timed_out operation=%s", operation)
            raise PaymentProcessorError(f"stripe {operation} timed out", transient=True) from exc

    async def create_checkout_session(
        self,
        *,
        customer_email: str,
        tier: str,
        customer_id: int,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSessionInfo:
        pricing = PRICING[tier]
        label = tier.capitalize()
        params = {
            "mode": "payment",
            "customer_email": customer_email,
            "client_reference_id": str(customer_id),
            "success_url": success_url,
            "cancel_url": cancel_url,
            "allow_promotion_codes": True,
            "metadata": {
                "userId": str(customer_id),
                "tier": tier,
                "customerEmail": customer_email,
            },
            "line_items": [
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": f"{label} Plan - Setup Fee",
                            "description": "One-time setup and configuration fee",
                        },
                        "unit_amount": pricing["setup_fee"],
                    },
                    "quantity": 1,
                },
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": f"{label} Plan - First Month",
                            "description": "Monthly subscription fee",
                        },
                        "unit_amount": pricing["monthly_price"],
                    },
                    "quantity": 1,
                },
            ],
        }
        session = await self._call(
            "checkout.create",
            lambda: self._client.checkout.sessions.create_async(params=params),
        )
        return session_info_from_stripe(session)

    async def retrieve_session(self, session_id: str) -> CheckoutSessionInfo:
        session = await self._read(
            "checkout.retrieve",
            lambda: self._client.checkout.sessions.retrieve_async(session_id),
        )
        return session_info_from_stripe(session)

    async def get_subscription_period_end(self, stripe_subscription_id: str) -> datetime | None:
        try:
            subscription = await self._read(
                "subscription.retrieve",
                lambda: self._client.subscriptions.retrieve_async(stripe_subscription_id),
            )
        except PaymentProcessorError:
            return None
        subscription = as_plain_dict(subscription)
        period_end = subscription.get("current_period_end")
        if period_end is None:
            # Newer API versions report the period on subscription items.
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                period_end = items[0].get("current_period_end")
        if not period_end:
            return None
        return datetime.fromtimestamp(int(period_end), tz=timezone.utc)


def get_payment_processor() -> PaymentProcessor:
    # FastAPI dependency; tests override it with an in-memory fake.
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise PaymentProcessorError("STRIPE_SECRET_KEY is not configured")
    return StripePaymentProcessor(settings.stripe_secret_key)


def extract_customer_id(session: CheckoutSessionInfo) -> int:
    # Trust only processor-side metadata; the client reference is a legacy fallback.
    raw = session.metadata.get("userId") or session.client_reference_id
    if raw is None or not str(raw).strip():
        raise InvalidCustomerIdError(f"session {session.id} has no customer id in metadata")
    try:
        customer_id = int(str(raw).strip())
    except ValueError as exc:
        raise InvalidCustomerIdError(f"session {session.id} has non-numeric customer id {raw!r}") from exc
    if customer_id <= 0 or customer_id > MAX_CUSTOMER_ID:
        raise InvalidCustomerIdError(f"session {session.id} customer id {customer_id} out of range")
    return customer_id


def extract_tier(session: CheckoutSessionInfo) -> str:
    tier = session.metadata.get("tier")
    if tier not in TIERS:
        raise InvalidSessionMetadataError(f"session {session.id} has unknown tier {tier!r}")
    return tier


def session_email(session: CheckoutSessionInfo) -> str | None:
    return session.metadata.get("customerEmail") or session.customer_email


async def create_checkout(
    db: AsyncSession,
    processor: PaymentProcessor,
    *,
    email: str,
    tier: str,
    customer_id: int,
    origin: str | None = None,
) -> CheckoutSessionInfo:
    base_url = (origin or get_settings().app_url).rstrip("/")
    session = await processor.create_checkout_session(
        customer_email=email,
        tier=tier,
        customer_id=customer_id,
        success_url=f"{base_url}/onboarding/configure?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/onboarding/payment",
    )
    lead = await leads_repo.get_by_email(db, email)
    if lead is not None:
        lead.status = "checkout_started"
        lead.selected_tier = tier
        lead.stripe_session_id = session.id
        if lead.temp_customer_id is None:
            lead.temp_customer_id = customer_id
        await db.commit()
    logger.info("checkout_created session_id=%s customer_id=%s tier=%s", session.id, customer_id, tier)
    return session


async def confirm_payment(
    db: AsyncSession,
    processor: PaymentProcessor,
    session_id: str,
) -> PaymentConfirmation:
    session = await processor.retrieve_session(session_id)
    return await materialize_subscription(db, processor, session)


async def materialize_subscription(
    db: AsyncSession,
    processor: PaymentProcessor,
    session: CheckoutSessionInfo,
) -> PaymentConfirmation:
    if session.payment_status != "paid":
        raise PaymentNotCompletedError(f"session {session.id} payment_status={session.payment_status}")
    customer_id = extract_customer_id(session)
    tier = extract_tier(session)
    email = session_email(session)

    existing = await subscriptions_repo.get_by_customer(db, customer_id)
    if existing is not None:
        increment_counter("payment_confirmation_replayed_total")
        return PaymentConfirmation(
            email=email,
            tier=existing.tier,
            customer_id=customer_id,
            subscription_id=existing.id,
            created=False,
        )

    now = datetime.now(timezone.utc)
    renewal_date: datetime | None = None
    if session.stripe_subscription_id:
        renewal_date = await processor.get_subscription_period_end(session.stripe_subscription_id)
    if renewal_date is None:
        renewal_date = now + timedelta(days=get_settings().renewal_default_days)

    pricing = PRICING[tier]
    subscription_id = await subscriptions_repo.insert_if_absent(
        db,
        customer_id=customer_id,
        tier=tier,
        status="active",
        setup_fee_paid=True,
        stripe_customer_id=session.stripe_customer_id,
        stripe_subscription_id=session.stripe_subscription_id,
        monthly_price=cents_to_amount(pricing["monthly_price"]),
        start_date=now,
        renewal_date=renewal_date,
    )
    if subscription_id is None:
        # A concurrent confirmation inserted first; treat it as already confirmed.
        await db.rollback()
        winner = await subscriptions_repo.get_by_customer(db, customer_id)
        increment_counter("payment_confirmation_replayed_total")
        return PaymentConfirmation(
            email=email,
            tier=winner.tier if winner else tier,
            customer_id=customer_id,
            subscription_id=winner.id if winner else None,
            created=False,
        )

    setup_record = await billing_repo.create_billing_record(
        db,
        customer_id=customer_id,
        subscription_id=subscription_id,
        type="setup_fee",
        amount=cents_to_amount(pricing["setup_fee"]),
        stripe_charge_id=session.payment_intent_id,
        description=f"{tier.capitalize()} plan setup fee",
    )
    monthly_record = await billing_repo.create_billing_record(
        db,
        customer_id=customer_id,
        subscription_id=subscription_id,
        type="monthly_subscription",
        amount=cents_to_amount(pricing["monthly_price"]),
        description=f"{tier.capitalize()} plan first month",
    )
    await record_commissions(
        db,
        customer_id=customer_id,
        subscription_id=subscription_id,
        billing_records=[setup_record, monthly_record],
    )

    lead = await leads_repo.get_by_temp_customer(db, customer_id)
    if lead is None and email:
        lead = await leads_repo.get_by_email(db, email)
    if lead is not None:
        lead.status = "paid"
        lead.stripe_session_id = session.id

    await db.commit()
    increment_counter("subscriptions_created_total")
    logger.info(
        "subscription_created customer_id=%s tier=%s subscription_id=%s session_id=%s",
        customer_id,
        tier,
        subscription_id,
        session.id,
    )
    return PaymentConfirmation(
        email=email,
        tier=tier,
        customer_id=customer_id,
        subscription_id=subscription_id,
        created=True,
    )
