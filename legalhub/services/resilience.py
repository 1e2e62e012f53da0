from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from legalhub.core.config import get_settings
from legalhub.core.errors import VendorFailureError, VendorTransientError
from legalhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def is_retryable_status(status_code: int | None) -> bool:
    # 5xx and 429 are transient; every other status is final.
    if status_code is None:
        return False
    return status_code >= 500 or status_code == 429


def default_retryable(exc: Exception) -> bool:
    if isinstance(exc, VendorFailureError):
        return False
    if isinstance(exc, VendorTransientError):
        return True
    if isinstance(exc, TransientException):
        return True
    return is_retryable_status(getattr(exc, "status_code", None))


@dataclass(frozen=True)
class RetryPolicy:
    # One policy shared by the SOAP and REST clients.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        # Linear backoff: attempt N waits N * base.
        return (self.backoff_ms / 1000.0) * attempt


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.vendor_call_timeout_ms,
        max_attempts=settings.vendor_retry_max_attempts,
        backoff_ms=settings.vendor_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[int], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "vendor_call",
) -> Any:
    """Run ``func(attempt)`` until it succeeds or the policy gives up.

    Each attempt is bounded by ``policy.timeout_ms``. Retryable failures that
    survive the last attempt are surfaced as ``VendorFailureError`` so callers
    only ever see the terminal kind.
    """
    policy = policy or default_retry_policy()
    retryable = retryable or default_retryable
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(attempt), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-retryable errors re-raised as-is
            if not retryable(exc):
                raise
            if attempt >= max_attempts:
                increment_counter("vendor_retries_exhausted_total")
                logger.warning(
                    "vendor_retries_exhausted operation=%s attempts=%s", operation, attempt
                )
                raise VendorFailureError(
                    f"{operation} failed after {attempt} attempts: {exc}",
                    status_code=getattr(exc, "status_code", None),
                ) from exc
            increment_counter("vendor_retries_total")
            logger.info(
                "vendor_retry operation=%s attempt=%s max_attempts=%s", operation, attempt, max_attempts
            )
            await asyncio.sleep(policy.delay_s(attempt))
            attempt += 1
