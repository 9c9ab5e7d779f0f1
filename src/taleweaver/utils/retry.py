"""Retry utilities with tenacity."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
)

from ..config import settings
from ..models import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


def status_code_of(error: BaseException) -> int | None:
    """Extract an HTTP status code from an SDK or HTTP-library exception."""
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status

    response = getattr(error, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
    return None


def retry_after_seconds(error: BaseException) -> float | None:
    """Return the provider's Retry-After hint in seconds, if any."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None

    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        # HTTP-date form is not honoured
        return None
    return seconds if seconds >= 0 else None


def response_body_of(error: BaseException) -> Any:
    """Best-effort extraction of an upstream response body for diagnostics."""
    body = getattr(error, "body", None)
    if body is not None:
        return body

    response = getattr(error, "response", None)
    if response is None:
        return None
    try:
        return response.json()
    except Exception:
        text = getattr(response, "text", None)
        return text if text else None


def upstream_error_from(error: BaseException, context: str) -> UpstreamError:
    """Convert an SDK/HTTP exception into an ``UpstreamError``."""
    if isinstance(error, UpstreamError):
        return error
    return UpstreamError(
        f"{context}: {error}",
        status_code=status_code_of(error),
        body=response_body_of(error),
    )


@dataclass
class RetryPolicy:
    """Bounded exponential-backoff retry on selected HTTP statuses.

    Attempt ``n`` (1-based) that fails with a retryable status waits
    ``base_delay * 2 ** (n - 1)`` seconds (capped at ``max_delay``) before
    the next call, unless the provider sent a ``Retry-After`` hint.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    retryable_statuses: frozenset[int] = frozenset({429})
    sleep: SleepFunc = asyncio.sleep

    def is_retryable(self, error: BaseException) -> bool:
        return status_code_of(error) in self.retryable_statuses

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = retry_after_seconds(error) if error is not None else None
        if hint is not None:
            return min(hint, self.max_delay)
        return self.backoff(retry_state.attempt_number)

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=self.wait,
            retry=retry_if_exception(self.is_retryable),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


def create_retry_policy(
    max_attempts: int | None = None,
    base_delay: float | None = None,
    max_delay: float | None = None,
    retryable_statuses: Iterable[int] | None = None,
    sleep: SleepFunc | None = None,
) -> RetryPolicy:
    """
    Create a retry policy, filling unset values from settings.

    Args:
        max_attempts: Maximum calls, first one included (default from settings)
        base_delay: Delay after the first failure in seconds
        max_delay: Upper bound for any single delay
        retryable_statuses: HTTP statuses that trigger a retry
        sleep: Async sleep function, injectable for tests

    Returns:
        RetryPolicy
    """
    return RetryPolicy(
        max_attempts=max_attempts if max_attempts is not None else settings.llm_max_retries,
        base_delay=base_delay if base_delay is not None else settings.llm_retry_base_delay,
        max_delay=max_delay if max_delay is not None else settings.llm_retry_max_wait,
        retryable_statuses=frozenset(
            retryable_statuses
            if retryable_statuses is not None
            else settings.retryable_status_codes
        ),
        sleep=sleep or asyncio.sleep,
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    name: str = "operation",
) -> T:
    """Run ``operation`` under ``policy``; the final failure propagates unchanged."""
    policy = policy or create_retry_policy()
    logger.debug(f"{name}: up to {policy.max_attempts} attempts")
    return await policy.retrying()(operation)
