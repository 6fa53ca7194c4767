from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from crmsync.core.config import get_settings
from crmsync.core.errors import SyncErrorType
from crmsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_NETWORK_ERROR_CODES = frozenset({"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ECONNRESET"})


@dataclass(frozen=True)
class RetryPolicy:
    # Exponential backoff with additive jitter; delays in milliseconds.
    max_attempts: int = 5
    base_delay_ms: int = 2000
    max_delay_ms: int = 60000
    multiplier: float = 2.0
    jitter_ms: int = 1000

    def delay_ms(self, attempt: int) -> float:
        # attempt is 1-based; jitter is added on top of the capped delay.
        capped = min(self.base_delay_ms * (self.multiplier ** (attempt - 1)), self.max_delay_ms)
        return capped + random.uniform(0, self.jitter_ms)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.sync_retry_max_attempts,
        base_delay_ms=settings.sync_retry_base_delay_ms,
        max_delay_ms=settings.sync_retry_max_delay_ms,
        multiplier=settings.sync_retry_multiplier,
        jitter_ms=settings.sync_retry_jitter_ms,
    )


def _status_code(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def classify_error(exc: BaseException) -> SyncErrorType:
    # Explicit classification wins over every heuristic.
    explicit = getattr(exc, "error_type", None)
    if isinstance(explicit, SyncErrorType):
        return explicit
    if isinstance(explicit, str) and explicit in SyncErrorType.__members__:
        return SyncErrorType(explicit)

    message = str(exc).lower()
    if _status_code(exc) == 401 or "authentication" in message:
        return SyncErrorType.AUTH_ERROR
    if (
        getattr(exc, "code", None) in _NETWORK_ERROR_CODES
        or isinstance(exc, (ConnectionError, TimeoutError, httpx.TransportError))
        or "timeout" in message
    ):
        return SyncErrorType.NETWORK_ERROR
    if isinstance(exc, ValidationError) or "validation" in message:
        return SyncErrorType.VALIDATION_ERROR
    if isinstance(exc, SQLAlchemyError) or "database" in message:
        return SyncErrorType.DATABASE_ERROR
    return SyncErrorType.UNKNOWN_ERROR


async def retry_operation(
    func: Callable[[], Awaitable[Any]],
    *,
    label: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    # Retry transient failures; auth and validation failures surface immediately.
    policy = policy or default_retry_policy()
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles terminal failures
            error_type = classify_error(exc)
            if not error_type.retryable:
                logger.warning(
                    "retry_not_retryable label=%s error_type=%s attempt=%s",
                    label,
                    error_type.value,
                    attempt,
                )
                raise
            if attempt >= max_attempts:
                logger.error(
                    "retry_exhausted label=%s error_type=%s attempts=%s",
                    label,
                    error_type.value,
                    attempt,
                )
                raise
            delay_ms = policy.delay_ms(attempt)
            # Track retry volume so operators can detect retry storms.
            increment_counter("sync_retries_total")
            logger.warning(
                "retry_scheduled label=%s error_type=%s attempt=%s delay_ms=%.0f",
                label,
                error_type.value,
                attempt,
                delay_ms,
            )
            await sleep(delay_ms / 1000.0)
            attempt += 1
