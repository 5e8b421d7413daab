from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from concierge.core.config import get_settings
from concierge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures and upstream 5xx answers.
    if isinstance(exc, TransientException) or getattr(exc, "transient", False):
        return True
    # Domain errors carry their own API status_code; only the upstream http_status counts.
    status = getattr(exc, "http_status", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def payment_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.stripe_timeout_ms,
        max_attempts=settings.stripe_retry_max_attempts,
        backoff_ms=settings.stripe_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Jittered exponential backoff for idempotent reads; never wrap non-idempotent creates.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            logger.info("external_call_retry attempt=%s error=%s", attempt, type(exc).__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
