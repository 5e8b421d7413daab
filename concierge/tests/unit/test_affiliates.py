from __future__ import annotations

from decimal import Decimal
import re

import pytest

from concierge.core.errors import AffiliateError, AffiliateNotFoundError
from concierge.persistence.db import SessionLocal
from concierge.persistence.repos import affiliates as affiliates_repo
from concierge.persistence.repos import billing as billing_repo
from concierge.services.affiliates import (
    commission_amount,
    create_affiliate,
    generate_affiliate_code,
    get_stats,
    link_referral_to_customer,
    record_commissions,
    track_click,
)
from concierge.tests.utils.seed import seed_subscription


async def _referred_customer(affiliate_customer_id: int, customer_id: int) -> str:
    # Affiliate signs up, a visitor clicks the link and later registers as customer_id.
    async with SessionLocal() as session:
        affiliate = await create_affiliate(session, customer_id=affiliate_customer_id, name="Jane Doe!")
        await track_click(session, affiliate_code=affiliate.affiliate_code, ip_address="203.0.113.9")
        assert await link_referral_to_customer(
            session,
            affiliate_code=affiliate.affiliate_code,
            customer_id=customer_id,
            email="friend@example.com",
        )
        return affiliate.affiliate_code


def test_affiliate_code_shape() -> None:
    assert re.fullmatch(r"JANEDO[0-9A-Z]{4}", generate_affiliate_code("Jane Doe!"))
    assert re.fullmatch(r"AB[0-9A-Z]{4}", generate_affiliate_code("a-b"))


def test_commission_amount_rounds_to_cents() -> None:
    assert commission_amount(Decimal("250.00"), Decimal("30.00")) == Decimal("75.00")
    assert commission_amount(Decimal("99.00"), Decimal("30.00")) == Decimal("29.70")
    assert commission_amount(Decimal("49.99"), Decimal("12.50")) == Decimal("6.25")


@pytest.mark.asyncio
async def test_paid_referral_earns_commission_on_both_records(processor) -> None:
    await _referred_customer(affiliate_customer_id=900, customer_id=401)

    await seed_subscription(processor, customer_id=401, tier="pro")

    async with SessionLocal() as session:
        affiliate = await affiliates_repo.get_by_customer(session, 900)
        commissions = await affiliates_repo.list_commissions(session, affiliate.id)
        stats = await get_stats(session, 900)

    assert sorted(commission.amount for commission in commissions) == [Decimal("29.70"), Decimal("75.00")]
    assert {commission.type for commission in commissions} == {"setup_fee", "monthly_recurring"}
    assert affiliate.total_earnings == Decimal("104.70")
    assert affiliate.pending_earnings == Decimal("104.70")
    assert stats.total_referrals == 1
    assert stats.subscribed_referrals == 1
    assert stats.conversion_rate == "100.0"


@pytest.mark.asyncio
async def test_commission_replay_is_a_no_op(processor) -> None:
    await _referred_customer(affiliate_customer_id=901, customer_id=402)
    confirmation = await seed_subscription(processor, customer_id=402, tier="pro")
    await seed_subscription(processor, customer_id=402, tier="pro")

    async with SessionLocal() as session:
        records = await billing_repo.list_for_customer(session, 402)
        created = await record_commissions(
            session,
            customer_id=402,
            subscription_id=confirmation.subscription_id,
            billing_records=records,
        )
        await session.commit()

    assert created == []
    async with SessionLocal() as session:
        affiliate = await affiliates_repo.get_by_customer(session, 901)
        commissions = await affiliates_repo.list_commissions(session, affiliate.id)
    assert len(commissions) == 2
    assert affiliate.total_earnings == Decimal("104.70")


@pytest.mark.asyncio
async def test_unreferred_customer_earns_nothing(processor) -> None:
    async with SessionLocal() as session:
        await create_affiliate(session, customer_id=902, name="Solo")

    await seed_subscription(processor, customer_id=403)

    async with SessionLocal() as session:
        affiliate = await affiliates_repo.get_by_customer(session, 902)
        assert await affiliates_repo.list_commissions(session, affiliate.id) == []
        stats = await get_stats(session, 902)
    assert stats.total_referrals == 0
    assert stats.conversion_rate == "0"


@pytest.mark.asyncio
async def test_duplicate_affiliate_account_is_rejected() -> None:
    async with SessionLocal() as session:
        await create_affiliate(session, customer_id=903, name="Twice")
        with pytest.raises(AffiliateError):
            await create_affiliate(session, customer_id=903, name="Twice")


@pytest.mark.asyncio
async def test_unknown_codes_are_rejected_or_ignored() -> None:
    async with SessionLocal() as session:
        with pytest.raises(AffiliateNotFoundError):
            await track_click(session, affiliate_code="NOPE0000")
        assert not await link_referral_to_customer(session, affiliate_code="NOPE0000", customer_id=404)
        assert await get_stats(session, 404) is None
