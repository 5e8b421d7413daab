from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.config import get_settings
from concierge.core.errors import InstanceNotFoundError, InvalidInstanceStateError
from concierge.domain.models import Instance
from concierge.persistence.repos import instances as instances_repo
from concierge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(minutes=10)
TIMEOUT_MESSAGE = "Provisioning timed out after 10 minutes. Please retry the deployment."

# Allowed lifecycle edges; anything else is rejected without touching the row.
TRANSITIONS: dict[str, frozenset[str]] = {
    "provisioning": frozenset({"running", "error"}),
    "error": frozenset({"provisioning", "deleted"}),
    # running -> error is reserved for health checks.
    "running": frozenset({"error", "deleted"}),
    # Operators stop instances out of band; the workflow only leaves this state.
    "stopped": frozenset({"running", "deleted"}),
    "deleted": frozenset(),
}

# Rows in these states are overwritten by a repeated deploy instead of duplicated.
REUSABLE_STATUSES = ("provisioning", "error")


@dataclass(frozen=True)
class InstanceConfig:
    role: str
    email: str | None = None
    bot_token: str | None = None
    channels: list[str] = field(default_factory=list)
    services: list[str] = field(default_factory=list)
    custom_api_key: str | None = None

    def as_config_json(self) -> dict[str, Any]:
        return {"channels": list(self.channels), "services": list(self.services)}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def stale_after() -> timedelta:
    seconds = get_settings().provisioning_stale_after_s
    return timedelta(seconds=seconds) if seconds else STALE_AFTER


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(instance: Instance, target: str) -> None:
    if not can_transition(instance.status, target):
        raise InvalidInstanceStateError(
            f"Cannot move instance from {instance.status} to {target}."
        )
    instance.status = target


def _apply_config(instance: Instance, config: InstanceConfig, now: datetime) -> None:
    instance.status = "provisioning"
    instance.ai_role = config.role
    instance.ai_email = config.email
    instance.bot_token = config.bot_token
    instance.model_api_key = config.custom_api_key
    # Reassign rather than mutate so the JSON column is flagged dirty.
    instance.config_json = config.as_config_json()
    instance.error_message = None
    instance.external_id = None
    instance.provisioning_started_at = now


async def create_or_reuse_instance(
    db: AsyncSession,
    *,
    customer_id: int,
    subscription_id: int,
    config: InstanceConfig,
) -> Instance:
    """Return the customer's live instance reset to ``provisioning``.

    A new row is inserted only when the customer has no non-deleted instance.
    Rows in ``provisioning`` or ``error`` are overwritten with the new
    configuration and get a fresh ``provision_attempt``; running or stopped
    instances are never reset by a deploy.
    """
    now = utc_now()
    instance = await instances_repo.get_live_for_customer(db, customer_id)
    if instance is None:
        instance = Instance(
            customer_id=customer_id,
            subscription_id=subscription_id,
            provision_attempt=1,
        )
        _apply_config(instance, config, now)
        db.add(instance)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent deploy inserted first; reuse its row.
            await db.rollback()
            increment_counter("instance_create_conflicts_total")
            instance = await instances_repo.get_live_for_customer(db, customer_id)
            if instance is None:
                raise
            return await _reset_existing(db, instance, config, now)
        await db.refresh(instance)
        logger.info(
            "instance_created instance_id=%s customer_id=%s", instance.id, customer_id
        )
        return instance
    return await _reset_existing(db, instance, config, now)


async def _reset_existing(
    db: AsyncSession, instance: Instance, config: InstanceConfig, now: datetime
) -> Instance:
    if instance.status not in REUSABLE_STATUSES:
        raise InvalidInstanceStateError(
            f"Instance is already {instance.status}; manage it from the dashboard."
        )
    _apply_config(instance, config, now)
    instance.provision_attempt = (instance.provision_attempt or 0) + 1
    await db.commit()
    await db.refresh(instance)
    logger.info(
        "instance_reset instance_id=%s customer_id=%s attempt=%s",
        instance.id,
        instance.customer_id,
        instance.provision_attempt,
    )
    return instance


def is_stale(instance: Instance, now: datetime) -> bool:
    if instance.status != "provisioning":
        return False
    started = instance.provisioning_started_at or instance.created_at
    if started is None:
        return False
    return now - _as_utc(started) > stale_after()


async def refresh_staleness(db: AsyncSession, instance: Instance, *, now: datetime | None = None) -> Instance:
    # Lazy timeout: a stuck provisioning row is flipped to error and persisted on read.
    now = now or utc_now()
    if not is_stale(instance, now):
        return instance
    flipped = await instances_repo.update_fenced(
        db,
        instance.id,
        attempt=instance.provision_attempt,
        allowed_statuses=("provisioning",),
        values={"status": "error", "error_message": TIMEOUT_MESSAGE},
    )
    await db.commit()
    await db.refresh(instance)
    if flipped:
        increment_counter("provisioning_timeouts_total")
        logger.warning(
            "provisioning_timed_out instance_id=%s customer_id=%s attempt=%s",
            instance.id,
            instance.customer_id,
            instance.provision_attempt,
        )
    return instance


async def get_instance_for_customer(db: AsyncSession, customer_id: int) -> Instance | None:
    instance = await instances_repo.get_live_for_customer(db, customer_id)
    if instance is None:
        return None
    return await refresh_staleness(db, instance)


async def require_instance_for_customer(db: AsyncSession, customer_id: int) -> Instance:
    instance = await get_instance_for_customer(db, customer_id)
    if instance is None:
        raise InstanceNotFoundError(f"customer {customer_id} has no instance")
    return instance


async def mark_running(
    db: AsyncSession,
    instance_id: int,
    *,
    attempt: int,
    external_id: str,
    config_patch: dict[str, Any],
) -> bool:
    # Success write-back; only the attempt still in provisioning may claim the row.
    instance = await instances_repo.get_instance(db, instance_id)
    if instance is None or instance.provision_attempt != attempt:
        return False
    config = dict(instance.config_json or {})
    config.update(config_patch)
    updated = await instances_repo.update_fenced(
        db,
        instance_id,
        attempt=attempt,
        allowed_statuses=("provisioning",),
        values={
            "status": "running",
            "external_id": external_id,
            "config_json": config,
            "error_message": None,
        },
    )
    await db.commit()
    return updated


async def mark_error(db: AsyncSession, instance_id: int, *, attempt: int, message: str) -> bool:
    updated = await instances_repo.update_fenced(
        db,
        instance_id,
        attempt=attempt,
        allowed_statuses=("provisioning",),
        values={"status": "error", "error_message": message},
    )
    await db.commit()
    return updated


async def reset_for_retry(db: AsyncSession, customer_id: int) -> Instance:
    # Only an errored instance may be retried; any other state is left untouched.
    instance = await require_instance_for_customer(db, customer_id)
    if instance.status != "error":
        raise InvalidInstanceStateError(
            f"Retry is only available when the instance is in error (current status: {instance.status})."
        )
    transition(instance, "provisioning")
    instance.error_message = None
    instance.external_id = None
    instance.provisioning_started_at = utc_now()
    instance.provision_attempt = (instance.provision_attempt or 0) + 1
    await db.commit()
    await db.refresh(instance)
    logger.info(
        "instance_retry instance_id=%s customer_id=%s attempt=%s",
        instance.id,
        customer_id,
        instance.provision_attempt,
    )
    return instance


async def set_status(db: AsyncSession, instance: Instance, target: str) -> Instance:
    # Administrative transitions (stop/restart/delete) from the dashboard.
    transition(instance, target)
    await db.commit()
    await db.refresh(instance)
    logger.info("instance_status_changed instance_id=%s status=%s", instance.id, target)
    return instance
