from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update

from concierge.domain.models import BillingRecord, Instance, Subscription
from concierge.persistence.db import SessionLocal
from concierge.services.payments import PaymentConfirmation, confirm_payment
from concierge.tests.utils.fakes import FakePaymentProcessor


async def seed_subscription(
    processor: FakePaymentProcessor,
    *,
    customer_id: int,
    tier: str = "pro",
    session_id: str | None = None,
    email: str = "owner@example.com",
) -> PaymentConfirmation:
    # Register a paid checkout session and run it through the confirmation gate.
    session_id = session_id or f"cs_paid_{customer_id}"
    processor.add_session(session_id, customer_id=customer_id, tier=tier, email=email)
    async with SessionLocal() as session:
        return await confirm_payment(session, processor, session_id)


async def load_instance(customer_id: int) -> Instance | None:
    # Fresh session so assertions see committed state, not a cached identity.
    async with SessionLocal() as session:
        result = await session.execute(
            select(Instance)
            .where(Instance.customer_id == customer_id, Instance.status != "deleted")
            .order_by(Instance.id.desc())
        )
        return result.scalars().first()


async def count_instances(customer_id: int) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count()).select_from(Instance).where(Instance.customer_id == customer_id)
        )
        return int(result.scalar_one())


async def count_subscriptions(customer_id: int) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count()).select_from(Subscription).where(Subscription.customer_id == customer_id)
        )
        return int(result.scalar_one())


async def list_billing_records(customer_id: int) -> list[BillingRecord]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(BillingRecord).where(BillingRecord.customer_id == customer_id).order_by(BillingRecord.id)
        )
        return list(result.scalars().all())


async def force_instance_state(instance_id: int, **values: object) -> None:
    # Direct row edits for states the public workflow only reaches over time.
    async with SessionLocal() as session:
        await session.execute(update(Instance).where(Instance.id == instance_id).values(**values))
        await session.commit()


async def backdate_provisioning(instance_id: int, started_at: datetime) -> None:
    await force_instance_state(instance_id, provisioning_started_at=started_at)
