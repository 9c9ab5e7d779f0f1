"""Tests for the tenacity-based retry policy."""

from unittest.mock import AsyncMock

import pytest

from conftest import make_status_error
from taleweaver.models import ErrorKind, UpstreamError
from taleweaver.utils.retry import (
    RetryPolicy,
    call_with_retry,
    create_retry_policy,
    retry_after_seconds,
    status_code_of,
    upstream_error_from,
)


class TestStatusHelpers:
    def test_status_from_sdk_error(self):
        assert status_code_of(make_status_error(429)) == 429

    def test_status_missing(self):
        assert status_code_of(ValueError("boom")) is None

    def test_retry_after_numeric(self):
        error = make_status_error(429, headers={"retry-after": "2.5"})
        assert retry_after_seconds(error) == 2.5

    def test_retry_after_http_date_ignored(self):
        error = make_status_error(429, headers={"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"})
        assert retry_after_seconds(error) is None

    def test_upstream_error_keeps_status(self):
        error = upstream_error_from(make_status_error(429), "Story generation failed")
        assert isinstance(error, UpstreamError)
        assert error.status_code == 429
        assert error.kind == ErrorKind.RATE_LIMITED

    def test_upstream_error_passthrough(self):
        original = UpstreamError("already wrapped", status_code=502)
        assert upstream_error_from(original, "ctx") is original


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, fast_policy, sleep_recorder):
        operation = AsyncMock(return_value="ok")

        result = await call_with_retry(operation, fast_policy)

        assert result == "ok"
        assert operation.await_count == 1
        assert sleep_recorder.delays == []

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self, fast_policy, sleep_recorder):
        operation = AsyncMock(side_effect=[make_status_error(429), make_status_error(429), "ok"])

        result = await call_with_retry(operation, fast_policy)

        assert result == "ok"
        assert operation.await_count == 3
        assert sleep_recorder.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, fast_policy, sleep_recorder):
        error = make_status_error(429)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(Exception) as exc_info:
            await call_with_retry(operation, fast_policy)

        assert exc_info.value is error
        assert operation.await_count == 3
        assert len(sleep_recorder.delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_status_fails_immediately(self, fast_policy, sleep_recorder):
        error = make_status_error(400)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(Exception) as exc_info:
            await call_with_retry(operation, fast_policy)

        assert exc_info.value is error
        assert operation.await_count == 1
        assert sleep_recorder.delays == []

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_honoured(self, fast_policy, sleep_recorder):
        operation = AsyncMock(
            side_effect=[make_status_error(429, headers={"retry-after": "7"}), "ok"]
        )

        await call_with_retry(operation, fast_policy)

        assert sleep_recorder.delays == [7.0]

    @pytest.mark.asyncio
    async def test_retry_after_hint_is_capped(self, sleep_recorder):
        policy = RetryPolicy(max_attempts=2, max_delay=5.0, sleep=sleep_recorder)
        operation = AsyncMock(
            side_effect=[make_status_error(429, headers={"retry-after": "120"}), "ok"]
        )

        await call_with_retry(operation, policy)

        assert sleep_recorder.delays == [5.0]


class TestRetryPolicy:
    def test_backoff_doubles_and_caps(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert [policy.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_create_policy_uses_settings(self):
        policy = create_retry_policy()
        assert policy.max_attempts == 5
        assert 429 in policy.retryable_statuses

    def test_create_policy_overrides(self):
        policy = create_retry_policy(max_attempts=2, retryable_statuses=[429, 503])
        assert policy.max_attempts == 2
        assert policy.retryable_statuses == frozenset({429, 503})
