from __future__ import annotations

import os
import tempfile

# Bind the engine to a throwaway SQLite file before any concierge module builds it.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.gettempdir(), f"concierge-test-{os.getpid()}.db"
)

import pytest
from httpx import ASGITransport, AsyncClient

from concierge.apps.api.main import create_app
from concierge.core.config import get_settings
from concierge.domain.models import Base
from concierge.persistence.db import engine
from concierge.services import cloud
from concierge.services.payments import get_payment_processor
from concierge.services.provisioning import drain_background_tasks
from concierge.services.telemetry import reset_telemetry
from concierge.tests.utils.fakes import FakeCloudProvisioner, FakePaymentProcessor
from concierge.tests.utils.signing import WEBHOOK_SECRET


_PLATFORM_ENV = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "OPENROUTER_API_KEY",
    "DO_API_TOKEN",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "DEPLOY_EXECUTION_MODE",
    "PROVISIONING_STALE_AFTER_S",
)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch) -> None:
    # Start every test without platform credentials; tests opt in explicitly.
    for key in _PLATFORM_ENV:
        monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
async def database() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    reset_telemetry()
    yield
    # Let detached provisioning tasks finish before the schema disappears.
    await drain_background_tasks(timeout_s=5)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def fake_cloud(monkeypatch) -> FakeCloudProvisioner:
    provisioner = FakeCloudProvisioner()
    monkeypatch.setattr(cloud, "get_cloud_provisioner", lambda: provisioner)
    return provisioner


@pytest.fixture
def platform_key(monkeypatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-platform")
    get_settings.cache_clear()


@pytest.fixture
def webhook_secret(monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    get_settings.cache_clear()


@pytest.fixture
def app(processor: FakePaymentProcessor):
    application = create_app()
    application.dependency_overrides[get_payment_processor] = lambda: processor
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncClient:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
