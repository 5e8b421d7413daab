from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.domain.models import BillingRecord


async def create_billing_record(
    session: AsyncSession,
    *,
    customer_id: int,
    subscription_id: int | None,
    type: str,
    amount: Decimal,
    status: str = "completed",
    stripe_charge_id: str | None = None,
    stripe_invoice_id: str | None = None,
    description: str | None = None,
) -> BillingRecord:
    record = BillingRecord(
        customer_id=customer_id,
        subscription_id=subscription_id,
        type=type,
        amount=amount,
        status=status,
        stripe_charge_id=stripe_charge_id,
        stripe_invoice_id=stripe_invoice_id,
        description=description,
    )
    session.add(record)
    # Flush so callers can link commissions to the generated id.
    await session.flush()
    return record


async def list_for_customer(session: AsyncSession, customer_id: int) -> list[BillingRecord]:
    # Stable ordering keeps dashboard responses deterministic.
    result = await session.execute(
        select(BillingRecord)
        .where(BillingRecord.customer_id == customer_id)
        .order_by(BillingRecord.created_at, BillingRecord.id)
    )
    return list(result.scalars().all())


async def get_by_invoice(session: AsyncSession, stripe_invoice_id: str) -> BillingRecord | None:
    result = await session.execute(
        select(BillingRecord).where(BillingRecord.stripe_invoice_id == stripe_invoice_id)
    )
    return result.scalars().first()


async def reassign_customer(session: AsyncSession, from_customer_id: int, to_customer_id: int) -> int:
    result = await session.execute(
        update(BillingRecord)
        .where(BillingRecord.customer_id == from_customer_id)
        .values(customer_id=to_customer_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
