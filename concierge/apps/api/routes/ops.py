from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from concierge.apps.api.deps import get_db
from concierge.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from concierge.apps.api.response import SuccessEnvelope, success_response
from concierge.domain.models import INSTANCE_STATUSES, Instance
from concierge.services.provisioning import pending_background_tasks
from concierge.services.telemetry import (
    availability,
    counters_snapshot,
    external_stats_by_integration,
    p95_latency,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)

_WINDOW_S = 300


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def ops_metrics(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # JSON metrics for operators; the instance gauges come straight from the table.
    try:
        rows = await db.execute(
            select(Instance.status, func.count()).group_by(Instance.status)
        )
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "DB_UNAVAILABLE", "message": "Database error while aggregating instance metrics"},
        ) from exc
    by_status = {status: 0 for status in INSTANCE_STATUSES}
    for status, count in rows.all():
        by_status[status] = int(count or 0)

    payload = {
        "counters": counters_snapshot(),
        "gauges": {
            "instances_by_status": by_status,
            "provisioning_tasks_inflight": pending_background_tasks(),
        },
        "requests": {
            "window_s": _WINDOW_S,
            "availability": availability(_WINDOW_S),
            "p95_latency_ms": p95_latency(_WINDOW_S),
            "p95_latency_ms_onboarding": p95_latency(_WINDOW_S, path_prefix="/v1/onboarding"),
        },
        "external": external_stats_by_integration(_WINDOW_S),
    }
    return success_response(request=request, data=payload)
