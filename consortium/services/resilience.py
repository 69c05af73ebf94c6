from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from consortium.core.config import get_settings
from consortium.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TransportError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures and throttled or 5xx responses.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if status is None and isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
    if isinstance(status, int) and (status >= 500 or status == 429):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            logger.info("external_call_retry attempt=%s error=%s", attempt, type(exc).__name__)
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
