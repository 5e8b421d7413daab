from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from concierge.core.errors import (
    InvalidInstanceStateError,
    ProvisioningFailureError,
    ProvisioningPreconditionError,
)
from concierge.domain.models import Instance
from concierge.services import cloud
from concierge.services.instances import require_instance_for_customer, set_status


logger = logging.getLogger(__name__)


def _require_deployed(instance: Instance) -> str:
    if not instance.external_id:
        raise InvalidInstanceStateError("Instance has not finished provisioning yet.")
    return instance.external_id


async def restart_instance(db: AsyncSession, customer_id: int) -> Instance:
    instance = await require_instance_for_customer(db, customer_id)
    if instance.status not in ("running", "stopped"):
        raise InvalidInstanceStateError(
            f"Restart is only available for running or stopped instances (current status: {instance.status})."
        )
    app_id = _require_deployed(instance)
    await cloud.get_cloud_provisioner().restart_app(app_id)
    if instance.status == "stopped":
        instance = await set_status(db, instance, "running")
    logger.info("instance_restarted instance_id=%s customer_id=%s", instance.id, customer_id)
    return instance


async def get_instance_logs(db: AsyncSession, customer_id: int) -> list[str]:
    # Logs are best effort; an unreachable platform yields an empty list.
    instance = await require_instance_for_customer(db, customer_id)
    if not instance.external_id:
        return []
    try:
        return await cloud.get_cloud_provisioner().get_app_logs(instance.external_id)
    except (ProvisioningFailureError, ProvisioningPreconditionError) as exc:
        logger.warning("instance_logs_unavailable instance_id=%s error=%s", instance.id, exc.message)
        return []


async def delete_instance(db: AsyncSession, customer_id: int) -> Instance:
    instance = await require_instance_for_customer(db, customer_id)
    if instance.status == "provisioning":
        raise InvalidInstanceStateError("Instance is still provisioning; wait for it to finish before deleting.")
    if instance.external_id:
        await cloud.get_cloud_provisioner().delete_app(instance.external_id)
    return await set_status(db, instance, "deleted")
