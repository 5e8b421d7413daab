from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.domain.models import Affiliate, Commission, Referral


async def get_by_customer(session: AsyncSession, customer_id: int) -> Affiliate | None:
    result = await session.execute(select(Affiliate).where(Affiliate.customer_id == customer_id))
    return result.scalar_one_or_none()


async def get_by_code(session: AsyncSession, affiliate_code: str) -> Affiliate | None:
    result = await session.execute(select(Affiliate).where(Affiliate.affiliate_code == affiliate_code))
    return result.scalar_one_or_none()


async def get_affiliate(session: AsyncSession, affiliate_id: int) -> Affiliate | None:
    result = await session.execute(select(Affiliate).where(Affiliate.id == affiliate_id))
    return result.scalar_one_or_none()


async def latest_pending_referral(session: AsyncSession, affiliate_id: int) -> Referral | None:
    result = await session.execute(
        select(Referral)
        .where(Referral.affiliate_id == affiliate_id, Referral.status == "pending")
        .order_by(Referral.created_at.desc(), Referral.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def referral_for_customer(session: AsyncSession, customer_id: int) -> Referral | None:
    # Commissions follow the most recent referral that converted this customer.
    result = await session.execute(
        select(Referral)
        .where(
            Referral.referred_customer_id == customer_id,
            Referral.status.in_(("signed_up", "subscribed")),
        )
        .order_by(Referral.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_referrals(session: AsyncSession, affiliate_id: int, *, limit: int | None = 50) -> list[Referral]:
    stmt = (
        select(Referral)
        .where(Referral.affiliate_id == affiliate_id)
        .order_by(Referral.created_at.desc(), Referral.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_commissions(session: AsyncSession, affiliate_id: int, *, limit: int = 50) -> list[Commission]:
    result = await session.execute(
        select(Commission)
        .where(Commission.affiliate_id == affiliate_id)
        .order_by(Commission.created_at.desc(), Commission.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_commission_for_billing(
    session: AsyncSession, referral_id: int, billing_record_id: int
) -> Commission | None:
    result = await session.execute(
        select(Commission).where(
            Commission.referral_id == referral_id,
            Commission.billing_record_id == billing_record_id,
        )
    )
    return result.scalar_one_or_none()


async def increment_totals(session: AsyncSession, affiliate_id: int, amount: Decimal) -> None:
    # Single UPDATE so concurrent commissions for one affiliate never lose an increment.
    await session.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate_id)
        .values(
            total_earnings=Affiliate.total_earnings + amount,
            pending_earnings=Affiliate.pending_earnings + amount,
        )
        .execution_options(synchronize_session=False)
    )
