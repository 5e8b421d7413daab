from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.errors import SessionMismatchError
from concierge.domain.models import BillingRecord, Instance, Subscription
from concierge.persistence.repos import billing as billing_repo
from concierge.persistence.repos import subscriptions as subscriptions_repo
from concierge.services.instances import get_instance_for_customer
from concierge.services.payments import PaymentProcessor, extract_customer_id


logger = logging.getLogger(__name__)

# Client polling policy; the server-side staleness flip is the authoritative terminal signal.
POLL_INTERVAL_S = 3
CLIENT_TIMEOUT_S = 5 * 60


@dataclass(frozen=True)
class InstanceStatus:
    status: str
    error_message: str | None
    external_id: str | None


@dataclass(frozen=True)
class Dashboard:
    subscription: Subscription | None
    instance: Instance | None
    billing_records: list[BillingRecord]


def polling_policy() -> dict[str, int]:
    return {"interval_s": POLL_INTERVAL_S, "client_timeout_s": CLIENT_TIMEOUT_S}


async def get_instance_status(
    db: AsyncSession,
    processor: PaymentProcessor,
    *,
    customer_id: int,
    session_id: str,
) -> InstanceStatus | None:
    """Unauthenticated progress poll, gated on proof of purchase.

    The checkout session's trusted customer id must match ``customer_id``. The
    result never carries gateway credentials; those are dashboard-only.
    """
    session = await processor.retrieve_session(session_id)
    session_customer_id = extract_customer_id(session)
    if session_customer_id != customer_id:
        logger.warning(
            "status_session_mismatch session_id=%s claimed_customer_id=%s session_customer_id=%s",
            session_id,
            customer_id,
            session_customer_id,
        )
        raise SessionMismatchError(f"session {session_id} belongs to customer {session_customer_id}")

    instance = await get_instance_for_customer(db, customer_id)
    if instance is None:
        return None
    return InstanceStatus(
        status=instance.status,
        error_message=instance.error_message,
        external_id=instance.external_id,
    )


async def get_dashboard(db: AsyncSession, customer_id: int) -> Dashboard:
    subscription = await subscriptions_repo.get_by_customer(db, customer_id)
    instance = await get_instance_for_customer(db, customer_id)
    billing_records = await billing_repo.list_for_customer(db, customer_id)
    return Dashboard(subscription=subscription, instance=instance, billing_records=billing_records)
