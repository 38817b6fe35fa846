"""Tests for companion_core.llm.retry."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from companion_core.errors import (
    GenerationEmptyResponse,
    GenerationExhausted,
    GenerationTransientError,
)
from companion_core.llm.retry import RetryPolicy, exponential_backoff


@pytest.fixture
def sleep():
    return AsyncMock()


class TestBackoff:
    def test_doubles(self):
        assert [exponential_backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


class TestRetryPolicy:
    def test_needs_one_attempt(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    async def test_first_attempt_succeeds(self, sleep):
        op = AsyncMock(return_value="ok")
        assert await RetryPolicy(sleep=sleep).run(op) == "ok"
        op.assert_awaited_once_with(1)
        sleep.assert_not_awaited()

    async def test_retries_then_succeeds(self, sleep):
        op = AsyncMock(side_effect=[GenerationTransientError("502"), "ok"])
        assert await RetryPolicy(sleep=sleep).run(op) == "ok"
        assert op.await_count == 2
        sleep.assert_awaited_once_with(2.0)

    async def test_exhausted_after_max_attempts(self, sleep):
        errors = [GenerationTransientError(f"fail {n}") for n in range(3)]
        op = AsyncMock(side_effect=errors)
        with pytest.raises(GenerationExhausted) as info:
            await RetryPolicy(max_attempts=3, sleep=sleep).run(op)
        assert info.value.attempts == 3
        assert info.value.last_error is errors[-1]
        assert "after 3 attempts" in str(info.value)
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    async def test_single_attempt_never_sleeps(self, sleep):
        op = AsyncMock(side_effect=GenerationEmptyResponse("empty"))
        with pytest.raises(GenerationExhausted):
            await RetryPolicy(max_attempts=1, sleep=sleep).run(op)
        sleep.assert_not_awaited()

    async def test_non_retryable_propagates(self, sleep):
        op = AsyncMock(side_effect=KeyError("bug"))
        with pytest.raises(KeyError):
            await RetryPolicy(sleep=sleep).run(op)
        assert op.await_count == 1

    async def test_custom_predicate_and_backoff(self, sleep):
        op = AsyncMock(side_effect=[OSError("flaky"), "ok"])
        policy = RetryPolicy(
            retryable=lambda exc: isinstance(exc, OSError),
            backoff=lambda attempt: 0.5,
            sleep=sleep,
        )
        assert await policy.run(op) == "ok"
        sleep.assert_awaited_once_with(0.5)
