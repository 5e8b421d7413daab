from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.domain.models import Lead


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_by_email(session: AsyncSession, email: str) -> Lead | None:
    result = await session.execute(select(Lead).where(func.lower(Lead.email) == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_by_temp_customer(session: AsyncSession, temp_customer_id: int) -> Lead | None:
    result = await session.execute(
        select(Lead).where(Lead.temp_customer_id == temp_customer_id).order_by(Lead.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()
