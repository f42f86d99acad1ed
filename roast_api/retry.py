"""Retry policy for GitHub and LLM calls, built on tenacity."""

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

import httpx
from loguru import logger
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import RoastAPIError, UpstreamError

F = TypeVar("F", bound=Callable[..., Any])

# Failures worth another attempt; everything else is final.
RETRYABLE_ERRORS = (TimeoutError, ConnectionError, httpx.TransportError)


def _warn_before_retry(upstream_name: str) -> Callable[[RetryCallState], None]:
    def log(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(f"{upstream_name} attempt {state.attempt_number} failed, retrying: {error}")

    return log


def with_upstream_retry(
    upstream_name: str,
    max_retries: int = 3,
    error_cls: type[UpstreamError] = UpstreamError,
) -> Callable[[F], F]:
    """Retry transport failures of an async upstream call.

    Domain errors (``RoastAPIError``) pass through untouched, transport errors
    are retried with exponential backoff and re-raised once attempts run out,
    and any other exception is wrapped in ``error_cls``.

    Args:
        upstream_name: Name used in log and error messages
        max_retries: Maximum number of attempts
        error_cls: Exception type used to wrap unexpected failures

    """
    policy = retry(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=_warn_before_retry(upstream_name),
        reraise=True,
    )

    def decorator(func: F) -> F:
        @policy
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except RETRYABLE_ERRORS + (RoastAPIError,):
                raise
            except Exception as e:
                logger.error(f"{upstream_name} call failed: {e}")
                raise error_cls(f"{upstream_name} error: {e}") from e

        return wrapper  # type: ignore[return-value]

    return decorator
