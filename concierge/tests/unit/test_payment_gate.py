from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from concierge.core.errors import (
    InvalidCustomerIdError,
    InvalidSessionMetadataError,
    PaymentNotCompletedError,
)
from concierge.persistence.db import SessionLocal
from concierge.persistence.repos import leads as leads_repo
from concierge.persistence.repos import subscriptions as subscriptions_repo
from concierge.services.leads import capture_lead
from concierge.services.payments import (
    MAX_CUSTOMER_ID,
    CheckoutSessionInfo,
    confirm_payment,
    create_checkout,
    extract_customer_id,
    session_info_from_stripe,
)
from concierge.tests.utils.seed import count_subscriptions, list_billing_records


def _session(metadata: dict[str, str], client_reference_id: str | None = None) -> CheckoutSessionInfo:
    return CheckoutSessionInfo(
        id="cs_meta",
        payment_status="paid",
        metadata=metadata,
        client_reference_id=client_reference_id,
    )


@pytest.mark.parametrize("raw", ["0", "-5", "2147483648", "abc", "", "  "])
def test_customer_id_out_of_range_or_malformed_is_rejected(raw: str) -> None:
    with pytest.raises(InvalidCustomerIdError):
        extract_customer_id(_session({"userId": raw, "tier": "pro"}))


def test_customer_id_upper_bound_is_accepted() -> None:
    assert extract_customer_id(_session({"userId": str(MAX_CUSTOMER_ID)})) == MAX_CUSTOMER_ID


def test_customer_id_falls_back_to_client_reference() -> None:
    assert extract_customer_id(_session({}, client_reference_id="42")) == 42


def test_session_info_normalizes_expanded_references() -> None:
    info = session_info_from_stripe(
        {
            "id": "cs_1",
            "payment_status": "paid",
            "metadata": {"userId": "7", "tier": "pro"},
            "customer": {"id": "cus_1"},
            "subscription": "sub_1",
            "customer_details": {"email": "buyer@example.com"},
        }
    )
    assert info.stripe_customer_id == "cus_1"
    assert info.stripe_subscription_id == "sub_1"
    assert info.customer_email == "buyer@example.com"


@pytest.mark.asyncio
async def test_confirmation_is_idempotent(processor) -> None:
    processor.add_session("cs_paid", customer_id=101, tier="pro")

    async with SessionLocal() as session:
        first = await confirm_payment(session, processor, "cs_paid")
    async with SessionLocal() as session:
        second = await confirm_payment(session, processor, "cs_paid")

    assert first.created is True
    assert second.created is False
    assert second.tier == "pro"
    assert second.subscription_id == first.subscription_id
    assert await count_subscriptions(101) == 1
    records = await list_billing_records(101)
    assert [record.type for record in records] == ["setup_fee", "monthly_subscription"]
    assert [record.amount for record in records] == [Decimal("250.00"), Decimal("99.00")]


@pytest.mark.asyncio
async def test_unpaid_session_creates_nothing(processor) -> None:
    processor.add_session("cs_unpaid", customer_id=102, paid=False)

    async with SessionLocal() as session:
        with pytest.raises(PaymentNotCompletedError):
            await confirm_payment(session, processor, "cs_unpaid")

    assert await count_subscriptions(102) == 0
    assert await list_billing_records(102) == []


@pytest.mark.asyncio
async def test_unknown_tier_is_rejected(processor) -> None:
    processor.add_session("cs_tier", customer_id=103, tier="platinum")

    async with SessionLocal() as session:
        with pytest.raises(InvalidSessionMetadataError):
            await confirm_payment(session, processor, "cs_tier")
    assert await count_subscriptions(103) == 0


@pytest.mark.asyncio
async def test_renewal_date_prefers_processor_period_end(processor) -> None:
    period_end = datetime(2031, 1, 15, tzinfo=timezone.utc)
    processor.add_session("cs_sub", customer_id=104, stripe_subscription_id="sub_104")
    processor.period_ends["sub_104"] = period_end

    async with SessionLocal() as session:
        await confirm_payment(session, processor, "cs_sub")
        subscription = await subscriptions_repo.get_by_customer(session, 104)

    assert subscription.renewal_date.replace(tzinfo=timezone.utc) == period_end
    assert subscription.stripe_subscription_id == "sub_104"


@pytest.mark.asyncio
async def test_renewal_date_defaults_to_thirty_days(processor) -> None:
    processor.add_session("cs_once", customer_id=105, tier="starter")
    before = datetime.now(timezone.utc)

    async with SessionLocal() as session:
        await confirm_payment(session, processor, "cs_once")
        subscription = await subscriptions_repo.get_by_customer(session, 105)

    renewal = subscription.renewal_date.replace(tzinfo=timezone.utc)
    assert before + timedelta(days=29) < renewal < before + timedelta(days=31)
    assert subscription.monthly_price == Decimal("49.00")
    assert subscription.setup_fee_paid is True
    assert subscription.status == "active"


@pytest.mark.asyncio
async def test_checkout_and_confirmation_advance_the_lead(processor) -> None:
    async with SessionLocal() as session:
        await capture_lead(session, email="Lead@Example.com", tier="starter")
        checkout = await create_checkout(
            session,
            processor,
            email="lead@example.com",
            tier="business",
            customer_id=106,
            origin="https://app.example.com/",
        )

    assert processor.created[0]["success_url"] == (
        "https://app.example.com/onboarding/configure?session_id={CHECKOUT_SESSION_ID}"
    )
    assert processor.created[0]["cancel_url"] == "https://app.example.com/onboarding/payment"

    async with SessionLocal() as session:
        lead = await leads_repo.get_by_email(session, "lead@example.com")
        assert lead.status == "checkout_started"
        assert lead.selected_tier == "business"
        assert lead.temp_customer_id == 106

    processor.add_session(checkout.id, customer_id=106, tier="business", email="lead@example.com")
    async with SessionLocal() as session:
        await confirm_payment(session, processor, checkout.id)
    async with SessionLocal() as session:
        lead = await leads_repo.get_by_email(session, "lead@example.com")
        assert lead.status == "paid"
