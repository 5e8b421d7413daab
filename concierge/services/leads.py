from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.domain.models import Lead
from concierge.persistence.repos import billing as billing_repo
from concierge.persistence.repos import instances as instances_repo
from concierge.persistence.repos import leads as leads_repo
from concierge.persistence.repos import subscriptions as subscriptions_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationResult:
    migrated: bool
    subscriptions: int = 0
    instances: int = 0
    billing_records: int = 0
    reason: str | None = None


async def capture_lead(
    db: AsyncSession,
    *,
    email: str,
    tier: str | None = None,
    temp_customer_id: int | None = None,
    source: str = "onboarding",
) -> Lead:
    # Upsert keyed by normalized email; later captures refresh tier and temp id.
    normalized = leads_repo.normalize_email(email)
    lead = await leads_repo.get_by_email(db, normalized)
    if lead is None:
        lead = Lead(
            email=normalized,
            selected_tier=tier,
            status="lead",
            temp_customer_id=temp_customer_id,
            source=source,
        )
        db.add(lead)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            lead = await leads_repo.get_by_email(db, normalized)
            if lead is None:
                raise
        else:
            await db.refresh(lead)
            logger.info("lead_captured lead_id=%s tier=%s", lead.id, tier)
            return lead
    if tier:
        lead.selected_tier = tier
    if temp_customer_id is not None and lead.customer_id is None:
        lead.temp_customer_id = temp_customer_id
    await db.commit()
    await db.refresh(lead)
    return lead


async def migrate_lead_records(db: AsyncSession, *, email: str, customer_id: int) -> MigrationResult:
    """Move rows owned by a lead's temporary id onto the real customer id.

    Safe to call on every login: absent leads, leads without a temporary id and
    already-migrated leads are no-ops.
    """
    lead = await leads_repo.get_by_email(db, email)
    if lead is None:
        return MigrationResult(migrated=False, reason="no_lead")
    if lead.migrated_at is not None:
        return MigrationResult(migrated=False, reason="already_migrated")
    temp_id = lead.temp_customer_id
    if temp_id is None:
        return MigrationResult(migrated=False, reason="no_temp_id")
    if temp_id == customer_id:
        lead.customer_id = customer_id
        lead.migrated_at = datetime.now(timezone.utc)
        await db.commit()
        return MigrationResult(migrated=False, reason="same_id")

    # Both ids paid: moving instances or billing alone would split them from their subscription.
    if (
        await subscriptions_repo.get_by_customer(db, customer_id) is not None
        and await subscriptions_repo.get_by_customer(db, temp_id) is not None
    ):
        logger.warning(
            "lead_migration_conflict lead_id=%s temp_customer_id=%s customer_id=%s",
            lead.id,
            temp_id,
            customer_id,
        )
        return MigrationResult(migrated=False, reason="customer_already_subscribed")

    subscriptions = await subscriptions_repo.reassign_customer(db, temp_id, customer_id)
    instances = await instances_repo.reassign_customer(db, temp_id, customer_id)
    billing_records = await billing_repo.reassign_customer(db, temp_id, customer_id)
    lead.customer_id = customer_id
    lead.migrated_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info(
        "lead_migrated lead_id=%s customer_id=%s subscriptions=%s instances=%s billing_records=%s",
        lead.id,
        customer_id,
        subscriptions,
        instances,
        billing_records,
    )
    return MigrationResult(
        migrated=True,
        subscriptions=subscriptions,
        instances=instances,
        billing_records=billing_records,
    )
