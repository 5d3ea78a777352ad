"""Linear-backoff retry of remote operations.

Remote create/update/delete calls fail transiently (throttling, service busy,
another operation in progress on the same object). The executor retries those
with a delay that grows by a fixed increment after every attempt, up to a
deadline. Anything the policy classifies as fatal is re-raised at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import Cancelled, DeadlineExceeded, ErrorClass
from .timing import Deadline, call_remote, interruptible_sleep

logger = logging.getLogger(__name__)

# Defaults match the incremental wait most resource managers used (3s + 3s/attempt)
DEFAULT_BASE_DELAY_SECONDS = 3.0
DEFAULT_DELAY_INCREMENT_SECONDS = 3.0
DEFAULT_RETRY_DEADLINE_SECONDS = 600.0


class RetryDecision(str, Enum):
    """Outcome of classifying a failed attempt."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryPolicy:
    """How to retry one remote operation.

    Attributes:
        classifier: Maps an error to RETRYABLE or FATAL.
        base_delay: Sleep before the second attempt, in seconds.
        delay_increment: Added to the sleep after every further attempt.
        deadline: Total time budget in seconds across all attempts.
    """

    classifier: Callable[[BaseException], RetryDecision]
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    delay_increment: float = DEFAULT_DELAY_INCREMENT_SECONDS
    deadline: float = DEFAULT_RETRY_DEADLINE_SECONDS

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.delay_increment < 0:
            raise ValueError("retry delays must not be negative")
        if self.deadline < 0:
            raise ValueError("retry deadline must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to sleep after the given (1-based) failed attempt."""
        return self.base_delay + (attempt - 1) * self.delay_increment

    @classmethod
    def from_classifier(
        cls,
        classify: Callable[[BaseException], ErrorClass],
        *,
        retry_on: Iterable[ErrorClass] = (ErrorClass.TRANSIENT,),
        extra_retryable: Callable[[BaseException], bool] | None = None,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        delay_increment: float = DEFAULT_DELAY_INCREMENT_SECONDS,
        deadline: float = DEFAULT_RETRY_DEADLINE_SECONDS,
    ) -> RetryPolicy:
        """Build a policy from an ErrorClass classifier.

        Args:
            classify: Four-way remote error classifier.
            retry_on: Error classes to retry.
            extra_retryable: Optional predicate for operation-specific retryable
                errors (for example a conflicting operation on a parent resource).
        """
        retryable = frozenset(retry_on)

        def classifier(error: BaseException) -> RetryDecision:
            if classify(error) in retryable:
                return RetryDecision.RETRYABLE
            if extra_retryable is not None and extra_retryable(error):
                return RetryDecision.RETRYABLE
            return RetryDecision.FATAL

        return cls(
            classifier=classifier,
            base_delay=base_delay,
            delay_increment=delay_increment,
            deadline=deadline,
        )


class RetryExecutor:
    """Runs remote operations under a RetryPolicy.

    The executor holds no per-call state; one instance can serve every
    operation of a reconciler. Sleeps end early when ``cancel_event`` is set.
    """

    def __init__(self, cancel_event: asyncio.Event | None = None) -> None:
        self._cancel_event = cancel_event

    async def execute(
        self,
        op: Callable[[], Any],
        policy: RetryPolicy,
        *,
        operation: str = "remote operation",
    ) -> Any:
        """Call ``op`` until it succeeds, fails fatally, or the deadline passes.

        Returns:
            Whatever ``op`` returns on its successful attempt.

        Raises:
            DeadlineExceeded: Retryable failures outlasted the deadline.
            Cancelled: The cancel signal fired while waiting.
            Exception: Any fatal error from ``op``, unchanged.
        """
        deadline = Deadline(policy.deadline)
        attempt = 0

        while True:
            attempt += 1
            try:
                return await call_remote(op)
            except Cancelled:
                raise
            except Exception as e:
                decision = policy.classifier(e)
                if decision is RetryDecision.FATAL:
                    logger.debug(
                        "Non-retryable failure",
                        extra={"operation": operation, "attempt": attempt, "error": str(e)},
                    )
                    raise

                if deadline.expired:
                    logger.error(
                        "Retry deadline exceeded",
                        extra={
                            "operation": operation,
                            "attempts": attempt,
                            "deadline_seconds": policy.deadline,
                            "error": str(e),
                        },
                    )
                    raise DeadlineExceeded(operation, e, attempt) from e

                wait_time = min(policy.delay_for(attempt), deadline.remaining)
                logger.warning(
                    "Retryable failure, retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await interruptible_sleep(wait_time, self._cancel_event)
