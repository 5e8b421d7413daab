"""Deploy orchestration and the detached provisioning continuation.

The request path only makes the instance row durable and schedules
``run_provisioning``; the cloud call and its write-back happen afterwards in a
task that owns its own database sessions and never raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import secrets
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.config import get_settings
from concierge.core.errors import (
    ConciergeError,
    ProvisioningPreconditionError,
    SessionMismatchError,
    SubscriptionNotFoundError,
)
from concierge.domain.models import Instance
from concierge.persistence.db import SessionLocal
from concierge.persistence.repos import instances as instances_repo
from concierge.persistence.repos import subscriptions as subscriptions_repo
from concierge.services import cloud
from concierge.services.instances import (
    InstanceConfig,
    create_or_reuse_instance,
    mark_error,
    mark_running,
    reset_for_retry,
)
from concierge.services.model_keys import ModelKeySelection, select_model_key
from concierge.services.payments import PaymentProcessor, extract_customer_id, materialize_subscription
from concierge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Strong references keep detached tasks alive until they finish.
_background_tasks: set[asyncio.Task[None]] = set()


@dataclass(frozen=True)
class ProvisioningSnapshot:
    instance_id: int
    attempt: int
    customer_id: int
    tier: str
    email: str | None
    role: str
    bot_token: str | None
    model_api_key: str | None
    config: dict[str, Any]


def mint_gateway_token() -> str:
    return secrets.token_urlsafe(32)


def gateway_url_for(app: cloud.CloudApp, app_name: str) -> str:
    if app.live_url:
        return app.live_url.rstrip("/")
    return f"https://{app_name}.{get_settings().gateway_base_domain}"


def check_preconditions(*, tier: str, custom_api_key: str | None) -> None:
    # Raises ProvisioningPreconditionError when the platform cannot provision at all.
    cloud.get_cloud_provisioner()
    select_model_key(tier=tier, custom_api_key=custom_api_key)


def build_envs(
    snapshot: ProvisioningSnapshot,
    selection: ModelKeySelection,
    gateway_token: str,
) -> list[cloud.EnvVar]:
    config = {
        "channels": list(snapshot.config.get("channels") or []),
        "services": list(snapshot.config.get("services") or []),
        "model_provider": selection.provider,
        "model": selection.model,
    }
    envs = [
        cloud.EnvVar("USER_ID", str(snapshot.customer_id)),
        cloud.EnvVar("USER_EMAIL", snapshot.email or ""),
        cloud.EnvVar("AI_ROLE", snapshot.role),
        cloud.EnvVar("TELEGRAM_BOT_TOKEN", snapshot.bot_token or "", secret=True),
        cloud.EnvVar("CONFIG_JSON", json.dumps(config, separators=(",", ":"))),
        cloud.EnvVar(selection.env_var, selection.api_key, secret=True),
        cloud.EnvVar("OPENCLAW_GATEWAY_TOKEN", gateway_token, secret=True),
    ]
    if selection.model:
        envs.append(cloud.EnvVar("OPENCLAW_MODEL", selection.model))
    return envs


async def _load_snapshot(instance_id: int, attempt: int) -> ProvisioningSnapshot | None:
    async with SessionLocal() as session:
        instance = await instances_repo.get_instance(session, instance_id)
        if instance is None:
            return None
        if instance.provision_attempt != attempt or instance.status != "provisioning":
            logger.info(
                "provisioning_superseded instance_id=%s attempt=%s current_attempt=%s status=%s",
                instance_id,
                attempt,
                instance.provision_attempt,
                instance.status,
            )
            return None
        subscription = await subscriptions_repo.get_subscription(session, instance.subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"instance {instance_id} has no subscription")
        return ProvisioningSnapshot(
            instance_id=instance.id,
            attempt=attempt,
            customer_id=instance.customer_id,
            tier=subscription.tier,
            email=instance.ai_email,
            role=instance.ai_role or "",
            bot_token=instance.bot_token,
            model_api_key=instance.model_api_key,
            config=dict(instance.config_json or {}),
        )


async def _record_failure(instance_id: int, attempt: int, message: str) -> None:
    # Compensating write; must never raise out of the continuation.
    try:
        async with SessionLocal() as session:
            updated = await mark_error(session, instance_id, attempt=attempt, message=message)
    except Exception:  # noqa: BLE001 - continuation must not crash the loop
        logger.exception("provisioning_error_writeback_failed instance_id=%s attempt=%s", instance_id, attempt)
        return
    increment_counter("provisioning_failures_total")
    logger.warning(
        "provisioning_failed instance_id=%s attempt=%s recorded=%s error=%s",
        instance_id,
        attempt,
        updated,
        message,
    )


async def _delete_orphaned_app(
    provisioner: cloud.DigitalOceanProvisioner,
    app_id: str,
    *,
    instance_id: int,
    attempt: int,
) -> None:
    try:
        await provisioner.delete_app(app_id)
    except Exception:  # noqa: BLE001 - continuation must not crash the loop
        logger.exception(
            "orphaned_app_delete_failed instance_id=%s attempt=%s app_id=%s",
            instance_id,
            attempt,
            app_id,
        )
        return
    increment_counter("orphaned_apps_deleted_total")
    logger.info("orphaned_app_deleted instance_id=%s attempt=%s app_id=%s", instance_id, attempt, app_id)


async def run_provisioning(instance_id: int, attempt: int) -> None:
    """Issue exactly one create call for ``attempt`` and reconcile the outcome."""
    try:
        snapshot = await _load_snapshot(instance_id, attempt)
        if snapshot is None:
            return
        provisioner = cloud.get_cloud_provisioner()
        selection = select_model_key(tier=snapshot.tier, custom_api_key=snapshot.model_api_key)
        gateway_token = mint_gateway_token()
        app_name = cloud.app_name_for(snapshot.customer_id)
        spec = cloud.build_app_spec(
            name=app_name,
            tier=snapshot.tier,
            envs=build_envs(snapshot, selection, gateway_token),
        )
        logger.info(
            "provisioning_started instance_id=%s attempt=%s tier=%s provider=%s",
            instance_id,
            attempt,
            snapshot.tier,
            selection.provider,
        )
        app = await provisioner.create_app(spec)
    except ConciergeError as exc:
        await _record_failure(instance_id, attempt, exc.message)
        return
    except Exception as exc:  # noqa: BLE001 - every failure becomes stored state
        logger.exception("provisioning_crashed instance_id=%s attempt=%s", instance_id, attempt)
        await _record_failure(instance_id, attempt, f"{cloud.FAILURE_PREFIX}: {exc}")
        return

    config_patch = {
        "app_name": app_name,
        "gateway_url": gateway_url_for(app, app_name),
        "gateway_token": gateway_token,
        "channels": list(snapshot.config.get("channels") or []),
        "services": list(snapshot.config.get("services") or []),
        "model_provider": selection.provider,
        "model": selection.model,
    }
    try:
        async with SessionLocal() as session:
            updated = await mark_running(
                session,
                instance_id,
                attempt=attempt,
                external_id=app.id,
                config_patch=config_patch,
            )
    except Exception:  # noqa: BLE001 - continuation must not crash the loop
        logger.exception("provisioning_writeback_failed instance_id=%s attempt=%s", instance_id, attempt)
        return
    if not updated:
        # A newer attempt or the timeout owns the row; the app just created has no owner.
        logger.warning(
            "provisioning_result_discarded instance_id=%s attempt=%s app_id=%s",
            instance_id,
            attempt,
            app.id,
        )
        await _delete_orphaned_app(provisioner, app.id, instance_id=instance_id, attempt=attempt)
        return
    increment_counter("provisioning_success_total")
    logger.info("provisioning_succeeded instance_id=%s attempt=%s app_id=%s", instance_id, attempt, app.id)


def _on_task_done(task: asyncio.Task[None]) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning("provisioning_task_cancelled name=%s", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error("provisioning_task_failed name=%s", task.get_name(), exc_info=exc)


async def launch_provisioning(instance_id: int, attempt: int) -> None:
    if get_settings().deploy_execution_mode == "inline":
        await run_provisioning(instance_id, attempt)
        return
    task = asyncio.create_task(
        run_provisioning(instance_id, attempt),
        name=f"provision-{instance_id}-{attempt}",
    )
    _background_tasks.add(task)
    task.add_done_callback(_on_task_done)


async def drain_background_tasks(timeout_s: float | None = None) -> None:
    # Used on shutdown and by tests to wait for in-flight continuations.
    pending = list(_background_tasks)
    if not pending:
        return
    await asyncio.wait(pending, timeout=timeout_s)


def pending_background_tasks() -> int:
    return len(_background_tasks)


async def _dispatch(db: AsyncSession, instance: Instance, *, tier: str) -> None:
    # Unmet preconditions are written immediately so the very next poll shows them.
    try:
        check_preconditions(tier=tier, custom_api_key=instance.model_api_key)
    except ProvisioningPreconditionError as exc:
        await mark_error(db, instance.id, attempt=instance.provision_attempt, message=exc.message)
        increment_counter("provisioning_failures_total")
        logger.warning(
            "provisioning_precondition_failed instance_id=%s attempt=%s error=%s",
            instance.id,
            instance.provision_attempt,
            exc.message,
        )
        return
    await launch_provisioning(instance.id, instance.provision_attempt)


async def deploy_instance(
    db: AsyncSession,
    processor: PaymentProcessor,
    *,
    session_id: str,
    customer_id: int,
    config: InstanceConfig,
) -> Instance:
    """Accept a deploy request and return once the instance row is durable.

    Provisioning errors never surface here; they are stored on the instance and
    observed through the status poll.
    """
    session = await processor.retrieve_session(session_id)
    session_customer_id = extract_customer_id(session)
    if session_customer_id != customer_id:
        logger.warning(
            "deploy_session_mismatch session_id=%s claimed_customer_id=%s session_customer_id=%s",
            session_id,
            customer_id,
            session_customer_id,
        )
        raise SessionMismatchError(f"session {session_id} belongs to customer {session_customer_id}")

    subscription = await subscriptions_repo.get_by_customer(db, customer_id)
    if subscription is None:
        # The client may reach deploy before verify-payment or the webhook landed.
        logger.info("deploy_confirming_payment customer_id=%s session_id=%s", customer_id, session_id)
        await materialize_subscription(db, processor, session)
        subscription = await subscriptions_repo.get_by_customer(db, customer_id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"customer {customer_id} has no subscription")

    instance = await create_or_reuse_instance(
        db,
        customer_id=customer_id,
        subscription_id=subscription.id,
        config=config,
    )
    increment_counter("deploys_accepted_total")
    await _dispatch(db, instance, tier=subscription.tier)
    return instance


async def retry_deploy(db: AsyncSession, customer_id: int) -> Instance:
    # Re-issues one provisioning call with the stored configuration.
    instance = await reset_for_retry(db, customer_id)
    subscription = await subscriptions_repo.get_subscription(db, instance.subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"customer {customer_id} has no subscription")
    increment_counter("deploy_retries_total")
    await _dispatch(db, instance, tier=subscription.tier)
    return instance
