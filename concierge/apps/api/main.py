from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from concierge.apps.api.errors import (
    concierge_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from concierge.apps.api.response import API_VERSION
from concierge.apps.api.routes.account import router as account_router
from concierge.apps.api.routes.affiliates import router as affiliates_router
from concierge.apps.api.routes.dashboard import router as dashboard_router
from concierge.apps.api.routes.health import router as health_router
from concierge.apps.api.routes.onboarding import router as onboarding_router
from concierge.apps.api.routes.ops import router as ops_router
from concierge.apps.api.routes.webhooks import router as webhooks_router
from concierge.core.config import get_settings
from concierge.core.errors import ConciergeError
from concierge.core.logging import configure_logging
from concierge.services.provisioning import drain_background_tasks
from concierge.services.telemetry import record_request


logger = logging.getLogger(__name__)

_LEGACY_SUNSET_DAYS = 90
_LEGACY_EXEMPT_PREFIXES = (
    "/v1",
    "/docs",
    "/openapi.json",
    "/redoc",
)
_SHUTDOWN_DRAIN_TIMEOUT_S = 30.0

_ROUTERS = (
    health_router,
    onboarding_router,
    dashboard_router,
    account_router,
    affiliates_router,
    webhooks_router,
    ops_router,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("api_started app=%s", get_settings().app_name)
    yield
    # Let in-flight provisioning continuations record their outcome before exit.
    await drain_background_tasks(timeout_s=_SHUTDOWN_DRAIN_TIMEOUT_S)
    logger.info("api_stopped")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Concierge API", lifespan=lifespan, docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            method=request.method,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        # Legacy unversioned aliases advertise their replacement.
        if not request.url.path.startswith(_LEGACY_EXEMPT_PREFIXES):
            sunset_at = datetime.now(timezone.utc) + timedelta(days=_LEGACY_SUNSET_DAYS)
            response.headers["Deprecation"] = "true"
            response.headers["Sunset"] = format_datetime(sunset_at)
            response.headers["Link"] = '</v1/docs>; rel="successor-version"'
        return response

    app.add_exception_handler(ConciergeError, concierge_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Unversioned aliases kept for older frontends; hidden from the schema.
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Concierge API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
