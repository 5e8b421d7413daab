from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.domain.models import Subscription
from concierge.persistence.db import dialect_name


async def get_subscription(session: AsyncSession, subscription_id: int) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_by_customer(session: AsyncSession, customer_id: int) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.customer_id == customer_id))
    return result.scalar_one_or_none()


async def get_by_stripe_subscription(session: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def insert_if_absent(
    session: AsyncSession,
    *,
    customer_id: int,
    tier: str,
    status: str,
    setup_fee_paid: bool,
    stripe_customer_id: str | None,
    stripe_subscription_id: str | None,
    monthly_price: Decimal,
    start_date: datetime,
    renewal_date: datetime,
) -> int | None:
    # Race-safe insert keyed on the customer unique constraint; None means another writer won.
    insert = pg_insert if dialect_name(session) == "postgresql" else sqlite_insert
    stmt = (
        insert(Subscription)
        .values(
            customer_id=customer_id,
            tier=tier,
            status=status,
            setup_fee_paid=setup_fee_paid,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            monthly_price=monthly_price,
            start_date=start_date,
            renewal_date=renewal_date,
        )
        .on_conflict_do_nothing(index_elements=[Subscription.customer_id])
        .returning(Subscription.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def reassign_customer(session: AsyncSession, from_customer_id: int, to_customer_id: int) -> int:
    # Move subscription ownership during lead migration; skip if the target already owns one.
    existing = await get_by_customer(session, to_customer_id)
    if existing is not None:
        return 0
    subscription = await get_by_customer(session, from_customer_id)
    if subscription is None:
        return 0
    subscription.customer_id = to_customer_id
    return 1
