"""Tests for the linear-backoff retry executor."""

from __future__ import annotations

import asyncio
import time

import pytest

from lifecycle.errors import (
    Cancelled,
    DeadlineExceeded,
    ErrorClass,
    RemoteNotFound,
    RemoteThrottled,
    default_classify,
)
from lifecycle.retry import RetryDecision, RetryExecutor, RetryPolicy


def flaky(failures: list[BaseException], result: str = "ok"):
    """Callable that raises each given error once, then returns ``result``."""
    calls = {"count": 0}

    def op() -> str:
        calls["count"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return op, calls


def transient_policy(**overrides: float) -> RetryPolicy:
    params = {"base_delay": 0.01, "delay_increment": 0.0, "deadline": 2.0}
    params.update(overrides)
    return RetryPolicy.from_classifier(default_classify, **params)


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_linear_delays(self) -> None:
        """Each attempt waits base plus a growing increment."""
        policy = RetryPolicy(
            classifier=lambda e: RetryDecision.FATAL, base_delay=3, delay_increment=3
        )
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [3, 6, 9]

    def test_rejects_negative_values(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(classifier=lambda e: RetryDecision.FATAL, base_delay=-1)

    def test_from_classifier_extra_retryable(self) -> None:
        """Operation-specific predicates make otherwise fatal errors retryable."""
        policy = RetryPolicy.from_classifier(
            default_classify,
            extra_retryable=lambda e: "being deleted" in str(e),
        )
        assert policy.classifier(RemoteThrottled()) is RetryDecision.RETRYABLE
        assert policy.classifier(RuntimeError("group being deleted")) is RetryDecision.RETRYABLE
        assert policy.classifier(RuntimeError("bad request")) is RetryDecision.FATAL

    def test_from_classifier_retry_on(self) -> None:
        policy = RetryPolicy.from_classifier(
            default_classify, retry_on=(ErrorClass.TRANSIENT, ErrorClass.NOT_FOUND)
        )
        assert policy.classifier(RemoteNotFound()) is RetryDecision.RETRYABLE


class TestRetryExecutor:
    """Tests for RetryExecutor.execute."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self) -> None:
        op, calls = flaky([])
        assert await RetryExecutor().execute(op, transient_policy()) == "ok"
        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self) -> None:
        """Two throttled attempts are followed by success on the third."""
        op, calls = flaky([RemoteThrottled("429"), RemoteThrottled("429")])

        result = await RetryExecutor().execute(op, transient_policy())

        assert result == "ok"
        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_fatal_error_raised_without_sleeping(self) -> None:
        """Fatal errors propagate unchanged and immediately."""
        error = ValueError("bad request")
        op, calls = flaky([error])
        started = time.monotonic()

        with pytest.raises(ValueError) as exc_info:
            await RetryExecutor().execute(op, transient_policy(base_delay=5.0))

        assert exc_info.value is error
        assert calls["count"] == 1
        assert time.monotonic() - started < 1.0

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self) -> None:
        """Persistent transient failures end in DeadlineExceeded."""
        op, calls = flaky([RemoteThrottled("busy")] * 1000)

        with pytest.raises(DeadlineExceeded) as exc_info:
            await RetryExecutor().execute(
                op, transient_policy(deadline=0.05), operation="create thing"
            )

        assert exc_info.value.operation == "create thing"
        assert exc_info.value.attempts == calls["count"]
        assert isinstance(exc_info.value.last_error, RemoteThrottled)
        assert isinstance(exc_info.value.__cause__, RemoteThrottled)

    @pytest.mark.asyncio
    async def test_zero_deadline_single_attempt(self) -> None:
        """With no budget the first transient failure ends the call."""
        op, calls = flaky([RemoteThrottled("busy")] * 10)

        with pytest.raises(DeadlineExceeded):
            await RetryExecutor().execute(op, transient_policy(deadline=0))

        assert calls["count"] == 1

    @pytest.mark.asyncio
    async def test_coroutine_operation(self) -> None:
        """Coroutine functions are awaited directly."""
        attempts = []

        async def op() -> int:
            attempts.append(1)
            if len(attempts) < 2:
                raise RemoteThrottled()
            return 7

        assert await RetryExecutor().execute(op, transient_policy()) == 7

    @pytest.mark.asyncio
    async def test_cancel_interrupts_backoff(self) -> None:
        """Setting the cancel event ends the wait with Cancelled."""
        cancel_event = asyncio.Event()
        op, _ = flaky([RemoteThrottled("busy")] * 10)

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            cancel_event.set()

        canceller = asyncio.create_task(cancel_soon())
        started = time.monotonic()
        with pytest.raises(Cancelled):
            await RetryExecutor(cancel_event).execute(
                op, transient_policy(base_delay=10.0, deadline=60.0)
            )
        await canceller

        assert time.monotonic() - started < 5.0
