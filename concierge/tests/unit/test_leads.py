from __future__ import annotations

import pytest

from concierge.persistence.db import SessionLocal
from concierge.services.instances import InstanceConfig, create_or_reuse_instance
from concierge.services.leads import capture_lead, migrate_lead_records
from concierge.tests.utils.seed import (
    count_instances,
    count_subscriptions,
    list_billing_records,
    seed_subscription,
)


@pytest.mark.asyncio
async def test_capture_lead_upserts_by_normalized_email() -> None:
    async with SessionLocal() as session:
        first = await capture_lead(session, email="Visitor@Example.com ", tier="starter")
    async with SessionLocal() as session:
        second = await capture_lead(session, email="visitor@example.com", tier="pro", temp_customer_id=77)

    assert second.id == first.id
    assert second.email == "visitor@example.com"
    assert second.selected_tier == "pro"
    assert second.temp_customer_id == 77
    assert second.status == "lead"


@pytest.mark.asyncio
async def test_migration_moves_records_once(processor) -> None:
    async with SessionLocal() as session:
        await capture_lead(session, email="buyer@example.com", tier="pro", temp_customer_id=501)
    confirmation = await seed_subscription(processor, customer_id=501, email="buyer@example.com")
    async with SessionLocal() as session:
        await create_or_reuse_instance(
            session,
            customer_id=501,
            subscription_id=confirmation.subscription_id,
            config=InstanceConfig(role="Assistant"),
        )

    async with SessionLocal() as session:
        result = await migrate_lead_records(session, email="buyer@example.com", customer_id=601)

    assert result.migrated is True
    assert (result.subscriptions, result.instances, result.billing_records) == (1, 1, 2)
    assert await count_subscriptions(601) == 1
    assert await count_subscriptions(501) == 0
    assert await count_instances(601) == 1
    assert len(await list_billing_records(601)) == 2

    async with SessionLocal() as session:
        again = await migrate_lead_records(session, email="buyer@example.com", customer_id=601)
    assert again.migrated is False
    assert again.reason == "already_migrated"
    assert await count_subscriptions(601) == 1


@pytest.mark.asyncio
async def test_migration_no_ops() -> None:
    async with SessionLocal() as session:
        missing = await migrate_lead_records(session, email="ghost@example.com", customer_id=602)
        await capture_lead(session, email="no-temp@example.com")
        no_temp = await migrate_lead_records(session, email="no-temp@example.com", customer_id=602)
        await capture_lead(session, email="same@example.com", temp_customer_id=603)
        same = await migrate_lead_records(session, email="same@example.com", customer_id=603)

    assert (missing.migrated, missing.reason) == (False, "no_lead")
    assert (no_temp.migrated, no_temp.reason) == (False, "no_temp_id")
    assert (same.migrated, same.reason) == (False, "same_id")


@pytest.mark.asyncio
async def test_migration_leaves_both_accounts_intact_when_both_subscribed(processor) -> None:
    async with SessionLocal() as session:
        await capture_lead(session, email="twice@example.com", tier="pro", temp_customer_id=511)
    temp = await seed_subscription(processor, customer_id=511, email="twice@example.com")
    await seed_subscription(processor, customer_id=611, tier="starter", email="twice@example.com")
    async with SessionLocal() as session:
        await create_or_reuse_instance(
            session,
            customer_id=511,
            subscription_id=temp.subscription_id,
            config=InstanceConfig(role="Assistant"),
        )

    async with SessionLocal() as session:
        result = await migrate_lead_records(session, email="twice@example.com", customer_id=611)

    assert (result.migrated, result.reason) == (False, "customer_already_subscribed")
    assert await count_subscriptions(511) == 1
    assert await count_instances(511) == 1
    assert len(await list_billing_records(511)) == 2
    assert len(await list_billing_records(611)) == 2
    assert await count_instances(611) == 0
