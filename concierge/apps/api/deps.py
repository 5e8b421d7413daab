from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.errors import InvalidCustomerIdError
from concierge.persistence.db import get_session
from concierge.services.payments import MAX_CUSTOMER_ID


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def parse_customer_id(raw: str | int | None) -> int:
    try:
        customer_id = int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise InvalidCustomerIdError(f"customer id {raw!r} is not numeric") from exc
    if customer_id <= 0 or customer_id > MAX_CUSTOMER_ID:
        raise InvalidCustomerIdError(f"customer id {customer_id} out of range")
    return customer_id


async def get_customer_id(x_customer_id: str = Header(..., alias="X-Customer-Id")) -> int:
    # Identity seam for authenticated routes; an auth layer resolves this upstream.
    return parse_customer_id(x_customer_id)
