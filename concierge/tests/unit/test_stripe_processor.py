from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import pytest
import stripe

from concierge.core.config import get_settings
from concierge.core.errors import PaymentProcessorError
from concierge.services.payments import StripePaymentProcessor
from concierge.services.telemetry import counters_snapshot


class FlakyResource:
    """Raises the queued errors first, then answers with ``result``."""

    def __init__(self, result: dict[str, Any], failures: list[Exception] | None = None) -> None:
        self.result = result
        self.failures = list(failures or [])
        self.calls = 0
        self.delay_s = 0.0

    async def retrieve_async(self, object_id: str) -> dict[str, Any]:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.failures:
            raise self.failures.pop(0)
        return {"id": object_id, **self.result}


PAID_SESSION = {
    "payment_status": "paid",
    "metadata": {"userId": "77", "tier": "pro", "customerEmail": "pay@example.com"},
}


@pytest.fixture
def fast_retries(monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("STRIPE_RETRY_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()


def _processor(sessions: FlakyResource | None = None, subscriptions: FlakyResource | None = None):
    processor = StripePaymentProcessor("sk_test_unit")
    processor._client = SimpleNamespace(
        checkout=SimpleNamespace(sessions=sessions or FlakyResource(PAID_SESSION)),
        subscriptions=subscriptions or FlakyResource({}),
    )
    return processor


@pytest.mark.asyncio
async def test_connection_error_on_session_read_is_retried(fast_retries) -> None:
    sessions = FlakyResource(PAID_SESSION, [stripe.APIConnectionError("connection reset")])

    info = await _processor(sessions=sessions).retrieve_session("cs_flaky")

    assert sessions.calls == 2
    assert info.id == "cs_flaky"
    assert info.metadata["userId"] == "77"
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_server_error_on_session_read_is_retried(fast_retries) -> None:
    sessions = FlakyResource(PAID_SESSION, [stripe.APIError("upstream unavailable", http_status=503)])

    info = await _processor(sessions=sessions).retrieve_session("cs_503")

    assert sessions.calls == 2
    assert info.payment_status == "paid"


@pytest.mark.asyncio
async def test_client_error_on_session_read_is_not_retried(fast_retries) -> None:
    sessions = FlakyResource(
        PAID_SESSION,
        [stripe.InvalidRequestError("No such checkout.session: cs_gone", "id", http_status=404)],
    )

    with pytest.raises(PaymentProcessorError) as excinfo:
        await _processor(sessions=sessions).retrieve_session("cs_gone")

    assert sessions.calls == 1
    assert excinfo.value.http_status == 404
    assert not excinfo.value.transient


@pytest.mark.asyncio
async def test_persistent_connection_failure_surfaces_after_retries(fast_retries) -> None:
    sessions = FlakyResource(
        PAID_SESSION,
        [stripe.APIConnectionError("reset"), stripe.APIConnectionError("reset again")],
    )

    with pytest.raises(PaymentProcessorError) as excinfo:
        await _processor(sessions=sessions).retrieve_session("cs_down")

    assert sessions.calls == 2
    assert excinfo.value.transient


@pytest.mark.asyncio
async def test_hanging_session_read_times_out_as_processor_error(fast_retries, monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_TIMEOUT_MS", "20")
    get_settings.cache_clear()
    sessions = FlakyResource(PAID_SESSION)
    sessions.delay_s = 1.0

    with pytest.raises(PaymentProcessorError) as excinfo:
        await _processor(sessions=sessions).retrieve_session("cs_slow")

    assert sessions.calls == 2
    assert excinfo.value.transient


@pytest.mark.asyncio
async def test_period_end_read_is_retried(fast_retries) -> None:
    subscriptions = FlakyResource(
        {"current_period_end": 1767225600},
        [stripe.APIConnectionError("connection reset")],
    )

    period_end = await _processor(subscriptions=subscriptions).get_subscription_period_end("sub_1")

    assert subscriptions.calls == 2
    assert period_end == datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_period_end_falls_back_to_none_when_unavailable(fast_retries) -> None:
    subscriptions = FlakyResource(
        {"current_period_end": 1767225600},
        [stripe.APIError("down", http_status=500), stripe.APIError("still down", http_status=500)],
    )

    assert await _processor(subscriptions=subscriptions).get_subscription_period_end("sub_2") is None
    assert subscriptions.calls == 2
