from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import time
from typing import Any

import httpx

from concierge.core.config import Settings, get_settings
from concierge.core.errors import ProvisioningFailureError, ProvisioningPreconditionError
from concierge.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

CREDENTIALS_MISSING_MESSAGE = "Cloud provisioning is not configured. Please contact support."
FAILURE_PREFIX = "Failed to provision AI instance"

INSTANCE_SIZES = {
    "starter": "basic-xxs",
    "pro": "basic-xs",
    "business": "basic-s",
}
HTTP_PORT = 8080
LOG_TAIL_LINES = 100


@dataclass(frozen=True)
class CloudApp:
    id: str
    name: str | None = None
    live_url: str | None = None
    phase: str | None = None


@dataclass(frozen=True)
class EnvVar:
    key: str
    value: str
    secret: bool = False

    def as_spec(self) -> dict[str, str]:
        entry = {"key": self.key, "value": self.value, "scope": "RUN_TIME"}
        if self.secret:
            entry["type"] = "SECRET"
        return entry


def app_name_for(customer_id: int, *, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"openclaw-{customer_id}-{stamp}"


def build_app_spec(
    *,
    name: str,
    tier: str,
    envs: list[EnvVar],
    settings: Settings | None = None,
) -> dict[str, Any]:
    # Declarative App Platform spec: one service running the agent image.
    settings = settings or get_settings()
    return {
        "name": name,
        "region": settings.do_region,
        "services": [
            {
                "name": settings.do_component_name,
                "image": {
                    "registry_type": "DOCKER_HUB",
                    "repository": settings.do_image_repository,
                    "tag": settings.do_image_tag,
                },
                "instance_count": 1,
                "instance_size_slug": INSTANCE_SIZES[tier],
                "envs": [env.as_spec() for env in envs],
                "http_port": HTTP_PORT,
            }
        ],
    }


def _app_from_payload(payload: dict[str, Any]) -> CloudApp:
    app = payload.get("app") or {}
    app_id = app.get("id")
    if not app_id:
        raise ProvisioningFailureError(f"{FAILURE_PREFIX}: response did not include an app id")
    phase = (app.get("active_deployment") or app.get("pending_deployment") or {}).get("phase")
    return CloudApp(
        id=str(app_id),
        name=(app.get("spec") or {}).get("name"),
        live_url=app.get("live_url") or app.get("default_ingress"),
        phase=phase,
    )


def _error_payload(response: httpx.Response) -> str:
    # Prefer the platform's JSON error body, stringified verbatim.
    try:
        return json.dumps(response.json(), separators=(",", ":"))
    except ValueError:
        return response.text or f"HTTP {response.status_code}"


class DigitalOceanProvisioner:
    """Thin async client for the App Platform endpoints the workflow uses."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._token = token
        self._base_url = (base_url or settings.do_api_base).rstrip("/")
        self._timeout_s = timeout_s if timeout_s is not None else settings.provisioning_timeout_s
        self._transport = transport
        self._component = settings.do_component_name

    def _client(self) -> httpx.AsyncClient:
        # A short-lived client per call; provisioning traffic is low volume.
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_s,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        start = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json_body, params=params)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=f"cloud.{operation}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("cloud_call_failed operation=%s error=%s", operation, exc)
            detail = str(exc) or type(exc).__name__
            raise ProvisioningFailureError(f"{FAILURE_PREFIX}: {detail}") from exc

        if response.status_code >= 400:
            record_external_call(
                integration=f"cloud.{operation}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            detail = _error_payload(response)
            logger.warning(
                "cloud_call_rejected operation=%s status=%s error=%s",
                operation,
                response.status_code,
                detail,
            )
            raise ProvisioningFailureError(f"{FAILURE_PREFIX}: {detail}", http_status=response.status_code)

        record_external_call(
            integration=f"cloud.{operation}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return response

    async def create_app(self, spec: dict[str, Any]) -> CloudApp:
        response = await self._request("create_app", "POST", "/apps", json_body={"spec": spec})
        app = _app_from_payload(response.json())
        logger.info("cloud_app_created app_id=%s name=%s", app.id, spec.get("name"))
        return app

    async def get_app(self, app_id: str) -> CloudApp:
        response = await self._request("get_app", "GET", f"/apps/{app_id}")
        return _app_from_payload(response.json())

    async def get_app_logs(self, app_id: str, component: str | None = None) -> list[str]:
        response = await self._request(
            "get_logs",
            "GET",
            f"/apps/{app_id}/components/{component or self._component}/logs",
            params={"type": "RUN", "follow": "false", "tail_lines": LOG_TAIL_LINES},
        )
        payload = response.json()
        logs = payload.get("logs")
        if isinstance(logs, list):
            return [str(line) for line in logs]
        # The platform may hand back download URLs instead of inline lines.
        return [str(url) for url in payload.get("historic_urls") or []]

    async def restart_app(self, app_id: str) -> None:
        await self._request(
            "restart_app",
            "POST",
            f"/apps/{app_id}/deployments",
            json_body={"force_build": False},
        )
        logger.info("cloud_app_restarted app_id=%s", app_id)

    async def delete_app(self, app_id: str) -> None:
        await self._request("delete_app", "DELETE", f"/apps/{app_id}")
        logger.info("cloud_app_deleted app_id=%s", app_id)


def get_cloud_provisioner() -> DigitalOceanProvisioner:
    # Missing credentials are a platform misconfiguration, not a customer error.
    settings = get_settings()
    if not settings.do_api_token:
        logger.error("cloud_provisioning_unconfigured missing=DO_API_TOKEN")
        raise ProvisioningPreconditionError(CREDENTIALS_MISSING_MESSAGE)
    return DigitalOceanProvisioner(settings.do_api_token)
