from __future__ import annotations

from datetime import timedelta

import pytest

from concierge.core.errors import InstanceNotFoundError, InvalidInstanceStateError
from concierge.persistence.db import SessionLocal
from concierge.services.instances import (
    TIMEOUT_MESSAGE,
    InstanceConfig,
    can_transition,
    create_or_reuse_instance,
    get_instance_for_customer,
    mark_error,
    mark_running,
    reset_for_retry,
    utc_now,
)
from concierge.tests.utils.seed import (
    backdate_provisioning,
    count_instances,
    force_instance_state,
    load_instance,
    seed_subscription,
)


CONFIG = InstanceConfig(
    role="Executive assistant",
    email="owner@example.com",
    bot_token="123:abc",
    channels=["telegram"],
    services=["calendar"],
)


async def _create(customer_id: int, subscription_id: int, config: InstanceConfig = CONFIG):
    async with SessionLocal() as session:
        return await create_or_reuse_instance(
            session,
            customer_id=customer_id,
            subscription_id=subscription_id,
            config=config,
        )


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        ("provisioning", "running", True),
        ("provisioning", "error", True),
        ("error", "provisioning", True),
        ("running", "stopped", False),
        ("error", "running", False),
        ("stopped", "running", True),
        ("running", "provisioning", False),
        ("stopped", "provisioning", False),
        ("deleted", "running", False),
    ],
)
def test_transition_table(current: str, target: str, allowed: bool) -> None:
    assert can_transition(current, target) is allowed


@pytest.mark.asyncio
async def test_repeated_deploy_reuses_row_and_bumps_attempt(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=201)
    first = await _create(201, confirmation.subscription_id)
    await force_instance_state(first.id, status="error", error_message="boom")

    updated = InstanceConfig(role="Researcher", channels=["slack"])
    second = await _create(201, confirmation.subscription_id, updated)

    assert second.id == first.id
    assert second.provision_attempt == first.provision_attempt + 1
    assert second.status == "provisioning"
    assert second.error_message is None
    assert second.ai_role == "Researcher"
    assert second.config_json == {"channels": ["slack"], "services": []}
    assert await count_instances(201) == 1


@pytest.mark.asyncio
async def test_deploy_never_resets_a_running_instance(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=202)
    instance = await _create(202, confirmation.subscription_id)
    await force_instance_state(instance.id, status="running", external_id="app-1")

    with pytest.raises(InvalidInstanceStateError):
        await _create(202, confirmation.subscription_id)

    row = await load_instance(202)
    assert row.status == "running"
    assert row.external_id == "app-1"


@pytest.mark.asyncio
async def test_stale_provisioning_flips_to_error_and_persists(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=203)
    instance = await _create(203, confirmation.subscription_id)
    await backdate_provisioning(instance.id, utc_now() - timedelta(minutes=11))

    async with SessionLocal() as session:
        first = await get_instance_for_customer(session, 203)
    async with SessionLocal() as session:
        second = await get_instance_for_customer(session, 203)

    assert first.status == "error"
    assert first.error_message == TIMEOUT_MESSAGE
    assert second.status == "error"
    row = await load_instance(203)
    assert row.status == "error"
    assert row.error_message == TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_fresh_provisioning_is_left_alone(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=204)
    instance = await _create(204, confirmation.subscription_id)
    await backdate_provisioning(instance.id, utc_now() - timedelta(minutes=9))

    async with SessionLocal() as session:
        current = await get_instance_for_customer(session, 204)
    assert current.status == "provisioning"


@pytest.mark.asyncio
async def test_retry_while_running_is_rejected_without_mutation(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=205)
    instance = await _create(205, confirmation.subscription_id)
    await force_instance_state(instance.id, status="running", external_id="app-205")
    before = await load_instance(205)

    async with SessionLocal() as session:
        with pytest.raises(InvalidInstanceStateError) as excinfo:
            await reset_for_retry(session, 205)
    assert excinfo.value.status_code == 409

    after = await load_instance(205)
    assert after.status == "running"
    assert after.external_id == "app-205"
    assert after.provision_attempt == before.provision_attempt


@pytest.mark.asyncio
async def test_retry_from_error_restarts_the_clock(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=206)
    instance = await _create(206, confirmation.subscription_id)
    await force_instance_state(
        instance.id,
        status="error",
        error_message="Failed to provision AI instance: quota",
        provisioning_started_at=utc_now() - timedelta(hours=1),
    )

    async with SessionLocal() as session:
        retried = await reset_for_retry(session, 206)

    assert retried.status == "provisioning"
    assert retried.error_message is None
    assert retried.provision_attempt == instance.provision_attempt + 1
    async with SessionLocal() as session:
        current = await get_instance_for_customer(session, 206)
    assert current.status == "provisioning"


@pytest.mark.asyncio
async def test_retry_without_instance_is_not_found() -> None:
    async with SessionLocal() as session:
        with pytest.raises(InstanceNotFoundError):
            await reset_for_retry(session, 207)


@pytest.mark.asyncio
async def test_superseded_attempt_cannot_write_back(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=208)
    instance = await _create(208, confirmation.subscription_id)
    old_attempt = instance.provision_attempt
    await force_instance_state(instance.id, status="error")
    newer = await _create(208, confirmation.subscription_id)

    async with SessionLocal() as session:
        assert not await mark_running(
            session, instance.id, attempt=old_attempt, external_id="app-old", config_patch={}
        )
        assert not await mark_error(session, instance.id, attempt=old_attempt, message="late failure")

    row = await load_instance(208)
    assert row.status == "provisioning"
    assert row.external_id is None
    assert row.provision_attempt == newer.provision_attempt


@pytest.mark.asyncio
async def test_late_success_cannot_revive_timed_out_attempt(processor) -> None:
    confirmation = await seed_subscription(processor, customer_id=209)
    instance = await _create(209, confirmation.subscription_id)
    await force_instance_state(instance.id, status="error", error_message=TIMEOUT_MESSAGE)

    async with SessionLocal() as session:
        assert not await mark_running(
            session,
            instance.id,
            attempt=instance.provision_attempt,
            external_id="app-209",
            config_patch={"gateway_token": "tok"},
        )

    row = await load_instance(209)
    assert row.status == "error"
    assert row.error_message == TIMEOUT_MESSAGE
    assert row.external_id is None
    assert "gateway_token" not in (row.config_json or {})
