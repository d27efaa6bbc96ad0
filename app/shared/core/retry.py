"""
Retry Logic with Exponential Backoff

Only idempotent, read-only upstream calls may be retried in-process.
Mutating calls (account creation, credit application, payment initialization)
must never be wrapped: an in-process retry combined with gateway redelivery is
how subscribers get credited twice.

Usage:
    @retry_read_only("radius_get_userdata")
    async def fetch():
        ...
"""

from typing import Any, Awaitable, Callable, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()
T = TypeVar("T")

READ_ONLY_MAX_ATTEMPTS = 3
READ_ONLY_MIN_WAIT = 0.1
READ_ONLY_MAX_WAIT = 2.0


def _log_before_sleep(operation: str) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        logger.warning(
            "operation_failed_will_retry",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=READ_ONLY_MAX_ATTEMPTS,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
        )

    return _log


def retry_read_only(
    operation: str,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry transport failures of a read-only call at most three times."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        wrapped: Callable[..., Awaitable[T]] = retry(
            stop=stop_after_attempt(READ_ONLY_MAX_ATTEMPTS),
            wait=wait_exponential(
                multiplier=READ_ONLY_MIN_WAIT, min=READ_ONLY_MIN_WAIT, max=READ_ONLY_MAX_WAIT
            ),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=_log_before_sleep(operation),
            reraise=True,
        )(func)
        return wrapped

    return decorator


def is_transient_http_error(exc: Any) -> bool:
    """Timeouts, connection failures and upstream 5xx are worth redelivering."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False
