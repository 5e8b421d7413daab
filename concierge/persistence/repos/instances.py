from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.domain.models import Instance


async def get_instance(session: AsyncSession, instance_id: int) -> Instance | None:
    result = await session.execute(select(Instance).where(Instance.id == instance_id))
    return result.scalar_one_or_none()


async def get_live_for_customer(session: AsyncSession, customer_id: int) -> Instance | None:
    # Newest non-deleted row; the partial unique index keeps this to at most one.
    result = await session.execute(
        select(Instance)
        .where(Instance.customer_id == customer_id, Instance.status != "deleted")
        .order_by(Instance.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_fenced(
    session: AsyncSession,
    instance_id: int,
    *,
    attempt: int,
    allowed_statuses: Iterable[str],
    values: dict[str, Any],
) -> bool:
    # Apply a write-back only if the row is still on the same attempt and in an expected state.
    result = await session.execute(
        update(Instance)
        .where(
            Instance.id == instance_id,
            Instance.provision_attempt == attempt,
            Instance.status.in_(tuple(allowed_statuses)),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


async def reassign_customer(session: AsyncSession, from_customer_id: int, to_customer_id: int) -> int:
    # Move instance ownership during lead migration unless the target already has a live instance.
    if await get_live_for_customer(session, to_customer_id) is not None:
        return 0
    result = await session.execute(
        update(Instance)
        .where(Instance.customer_id == from_customer_id)
        .values(customer_id=to_customer_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
