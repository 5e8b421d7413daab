from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
import logging
import re
import secrets
import string
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.config import get_settings
from concierge.core.errors import AffiliateError, AffiliateNotFoundError
from concierge.domain.models import Affiliate, BillingRecord, Commission, Referral
from concierge.persistence.repos import affiliates as affiliates_repo
from concierge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.digits + string.ascii_uppercase
_CODE_ATTEMPTS = 10


@dataclass(frozen=True)
class AffiliateStats:
    total_referrals: int
    signed_up_referrals: int
    subscribed_referrals: int
    conversion_rate: str


def generate_affiliate_code(name: str) -> str:
    # Six cleaned characters of the name plus four random base36 characters.
    clean = re.sub(r"[^a-zA-Z0-9]", "", name).upper()[:6]
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    return f"{clean}{suffix}"


def commission_amount(amount: Decimal, rate: Decimal) -> Decimal:
    return (Decimal(amount) * Decimal(rate) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _commission_type(record: BillingRecord) -> str:
    return "setup_fee" if record.type == "setup_fee" else "monthly_recurring"


async def create_affiliate(db: AsyncSession, *, customer_id: int, name: str) -> Affiliate:
    if await affiliates_repo.get_by_customer(db, customer_id) is not None:
        raise AffiliateError("You already have an affiliate account.")
    code = generate_affiliate_code(name)
    for _ in range(_CODE_ATTEMPTS):
        if await affiliates_repo.get_by_code(db, code) is None:
            break
        code = generate_affiliate_code(name)
    affiliate = Affiliate(
        customer_id=customer_id,
        affiliate_code=code,
        status="active",
        commission_rate=Decimal(get_settings().default_commission_rate),
        total_earnings=Decimal("0"),
        pending_earnings=Decimal("0"),
        paid_earnings=Decimal("0"),
    )
    db.add(affiliate)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise AffiliateError("You already have an affiliate account.") from exc
    await db.refresh(affiliate)
    logger.info("affiliate_created affiliate_id=%s customer_id=%s", affiliate.id, customer_id)
    return affiliate


async def require_affiliate(db: AsyncSession, customer_id: int) -> Affiliate:
    affiliate = await affiliates_repo.get_by_customer(db, customer_id)
    if affiliate is None:
        raise AffiliateNotFoundError("Affiliate account not found.")
    return affiliate


async def update_payment_info(db: AsyncSession, *, customer_id: int, paypal_email: str | None) -> Affiliate:
    affiliate = await require_affiliate(db, customer_id)
    affiliate.paypal_email = paypal_email
    await db.commit()
    await db.refresh(affiliate)
    return affiliate


async def track_click(
    db: AsyncSession,
    *,
    affiliate_code: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> Referral:
    affiliate = await affiliates_repo.get_by_code(db, affiliate_code)
    if affiliate is None or affiliate.status != "active":
        raise AffiliateNotFoundError("Invalid affiliate code.")
    referral = Referral(
        affiliate_id=affiliate.id,
        status="pending",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.add(referral)
    await db.commit()
    await db.refresh(referral)
    increment_counter("affiliate_clicks_total")
    return referral


async def link_referral_to_customer(
    db: AsyncSession,
    *,
    affiliate_code: str,
    customer_id: int,
    email: str | None = None,
) -> bool:
    # Attach the newest pending click for this affiliate to the signed-up customer.
    affiliate = await affiliates_repo.get_by_code(db, affiliate_code)
    if affiliate is None:
        return False
    referral = await affiliates_repo.latest_pending_referral(db, affiliate.id)
    if referral is not None:
        referral.referred_customer_id = customer_id
        referral.referred_email = email
        referral.status = "signed_up"
        referral.signed_up_at = datetime.now(timezone.utc)
        await db.commit()
        logger.info(
            "referral_linked referral_id=%s affiliate_id=%s customer_id=%s",
            referral.id,
            affiliate.id,
            customer_id,
        )
    return True


async def get_stats(db: AsyncSession, customer_id: int) -> AffiliateStats | None:
    affiliate = await affiliates_repo.get_by_customer(db, customer_id)
    if affiliate is None:
        return None
    referrals = await affiliates_repo.list_referrals(db, affiliate.id, limit=None)
    total = len(referrals)
    signed_up = sum(1 for referral in referrals if referral.status in ("signed_up", "subscribed"))
    subscribed = sum(1 for referral in referrals if referral.status == "subscribed")
    rate = f"{subscribed / total * 100:.1f}" if total else "0"
    return AffiliateStats(
        total_referrals=total,
        signed_up_referrals=signed_up,
        subscribed_referrals=subscribed,
        conversion_rate=rate,
    )


async def record_commissions(
    db: AsyncSession,
    *,
    customer_id: int,
    subscription_id: int,
    billing_records: Iterable[BillingRecord],
) -> list[Commission]:
    """Credit the referring affiliate for the given billing records.

    Runs inside the caller's transaction and does not commit. Each billing
    record earns at most one commission per referral, so replays are no-ops.
    """
    referral = await affiliates_repo.referral_for_customer(db, customer_id)
    if referral is None:
        return []
    affiliate = await affiliates_repo.get_affiliate(db, referral.affiliate_id)
    if affiliate is None or affiliate.status != "active":
        return []

    created: list[Commission] = []
    for record in billing_records:
        if await affiliates_repo.get_commission_for_billing(db, referral.id, record.id) is not None:
            continue
        amount = commission_amount(record.amount, affiliate.commission_rate)
        commission = Commission(
            affiliate_id=affiliate.id,
            referral_id=referral.id,
            subscription_id=subscription_id,
            billing_record_id=record.id,
            amount=amount,
            commission_rate=affiliate.commission_rate,
            status="pending",
            type=_commission_type(record),
        )
        db.add(commission)
        await affiliates_repo.increment_totals(db, affiliate.id, amount)
        created.append(commission)

    if referral.status != "subscribed":
        referral.status = "subscribed"
        referral.subscribed_at = datetime.now(timezone.utc)
        referral.subscription_id = subscription_id
    await db.flush()
    if created:
        increment_counter("commissions_recorded_total", len(created))
        logger.info(
            "commissions_recorded affiliate_id=%s customer_id=%s count=%s",
            affiliate.id,
            customer_id,
            len(created),
        )
    return created
