"""Status polling for asynchronous remote operations.

Control-plane create/update/delete calls return before the resource is usable.
The poller fetches the resource status until it lands in a target set, stops
immediately when it lands in a fail set, and gives up with PollTimeout
otherwise. An empty target set (PollSpec.until_absent) means "wait until the
resource is gone". Throttled or temporarily failing fetches count as pending
ticks, so the wait never outlives its own timeout.

STATUS PARTITION:
- pending: keep waiting (with strict_pending, only these keep waiting)
- target: stop, success
- fail: stop, TerminalFailure
Target and fail must be disjoint; a status in both would make the outcome
depend on check order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import (
    Cancelled,
    ErrorClass,
    NotFoundDuringWait,
    PollTimeout,
    TerminalFailure,
    UnexpectedStatus,
    default_classify,
)
from .timing import Deadline, call_remote, interruptible_sleep

logger = logging.getLogger(__name__)

# Returned by wait_for when an empty target set is satisfied by disappearance
STATUS_ABSENT = ""

DEFAULT_POLL_TIMEOUT_SECONDS = 600.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_INITIAL_DELAY_SECONDS = 5.0


def _as_frozenset(values: Iterable[str]) -> frozenset[str]:
    if isinstance(values, str):
        return frozenset((values,))
    return frozenset(values)


@dataclass(frozen=True)
class PollSpec:
    """Status vocabulary and timing for one wait.

    Attributes:
        target_statuses: Statuses that end the wait successfully. Empty means
            wait for the resource to disappear.
        pending_statuses: Statuses expected while the operation is in flight.
        fail_statuses: Statuses that end the wait with TerminalFailure.
        timeout: Overall time budget in seconds.
        poll_interval: Sleep between fetches in seconds.
        initial_delay: Sleep before the first fetch in seconds.
        not_found_tolerance: Consecutive "not found" fetches tolerated before
            NotFoundDuringWait, for APIs that are eventually consistent right
            after a create.
        strict_pending: Reject statuses outside pending/target/fail.
    """

    target_statuses: frozenset[str]
    pending_statuses: frozenset[str] = field(default_factory=frozenset)
    fail_statuses: frozenset[str] = field(default_factory=frozenset)
    timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS
    not_found_tolerance: int = 0
    strict_pending: bool = False

    def __post_init__(self) -> None:
        # Accept any iterable of strings; store frozensets
        object.__setattr__(self, "target_statuses", _as_frozenset(self.target_statuses))
        object.__setattr__(self, "pending_statuses", _as_frozenset(self.pending_statuses))
        object.__setattr__(self, "fail_statuses", _as_frozenset(self.fail_statuses))

        errors: list[str] = []
        if STATUS_ABSENT in self.target_statuses | self.pending_statuses | self.fail_statuses:
            errors.append(
                "statuses must not be empty; use PollSpec.until_absent to wait for absence"
            )
        overlap = self.target_statuses & self.fail_statuses
        if overlap:
            errors.append(f"statuses cannot be both target and fail: {sorted(overlap)}")
        if self.timeout < 0:
            errors.append("timeout must not be negative")
        if self.poll_interval < 0:
            errors.append("poll_interval must not be negative")
        if self.initial_delay < 0:
            errors.append("initial_delay must not be negative")
        if self.not_found_tolerance < 0:
            errors.append("not_found_tolerance must not be negative")

        if errors:
            raise ValueError("Invalid PollSpec: " + "; ".join(errors))

    @classmethod
    def until_absent(cls, pending_statuses: Iterable[str] = (), **timing: Any) -> PollSpec:
        """Spec that succeeds once the resource can no longer be found."""
        return cls(target_statuses=frozenset(), pending_statuses=pending_statuses, **timing)

    @property
    def waits_for_absence(self) -> bool:
        return not self.target_statuses

    def with_timing(
        self,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        initial_delay: float | None = None,
    ) -> PollSpec:
        """Copy with timing overrides; status sets are kept."""
        updates: dict[str, Any] = {}
        if timeout is not None:
            updates["timeout"] = timeout
        if poll_interval is not None:
            updates["poll_interval"] = poll_interval
        if initial_delay is not None:
            updates["initial_delay"] = initial_delay
        return replace(self, **updates)


class StatePoller:
    """Waits for a remote resource to reach a status in a PollSpec.

    Args:
        classifier: Decides which fetch errors mean "not found".
        cancel_event: Ends sleeps early with Cancelled when set.
    """

    def __init__(
        self,
        classifier: Callable[[BaseException], ErrorClass] = default_classify,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._classify = classifier
        self._cancel_event = cancel_event

    async def wait_for(
        self,
        fetch: Callable[[], Any],
        spec: PollSpec,
        *,
        description: str = "resource",
    ) -> str:
        """Poll ``fetch`` until the status satisfies ``spec``.

        Args:
            fetch: Returns the current status string, or raises a "not found"
                error when the resource does not exist. Transient errors are
                retried on the next tick; any other error propagates.
            spec: Status partition and timing.
            description: Used in log records and error messages.

        Returns:
            The target status reached, or STATUS_ABSENT when waiting for
            disappearance.

        Raises:
            TerminalFailure: A fail status was observed.
            NotFoundDuringWait: The resource was missing while a target status
                was expected.
            UnexpectedStatus: strict_pending and an undeclared status.
            PollTimeout: The timeout elapsed first.
            Cancelled: The cancel signal fired.
        """
        deadline = Deadline(spec.timeout)
        last_status: str | None = None
        not_found_streak = 0
        ticks = 0

        await interruptible_sleep(min(spec.initial_delay, deadline.remaining), self._cancel_event)

        while True:
            ticks += 1
            try:
                status = await call_remote(fetch)
            except Cancelled:
                raise
            except Exception as e:
                error_class = self._classify(e)
                if error_class is ErrorClass.TRANSIENT:
                    logger.warning(
                        "Status fetch failed temporarily, still waiting",
                        extra={"resource": description, "ticks": ticks, "error": str(e)},
                    )
                elif error_class is not ErrorClass.NOT_FOUND:
                    raise
                elif spec.waits_for_absence:
                    logger.info(
                        "Resource is gone",
                        extra={"resource": description, "ticks": ticks},
                    )
                    return STATUS_ABSENT
                else:
                    not_found_streak += 1
                    if not_found_streak > spec.not_found_tolerance:
                        raise NotFoundDuringWait(description) from e

                    logger.debug(
                        "Resource not visible yet",
                        extra={"resource": description, "not_found_streak": not_found_streak},
                    )
            else:
                not_found_streak = 0
                last_status = status

                if status in spec.fail_statuses:
                    logger.error(
                        "Resource reached failure status",
                        extra={"resource": description, "status": status, "ticks": ticks},
                    )
                    raise TerminalFailure(status, description)

                if status in spec.target_statuses:
                    logger.info(
                        "Resource reached target status",
                        extra={
                            "resource": description,
                            "status": status,
                            "ticks": ticks,
                            "elapsed_seconds": round(deadline.elapsed, 3),
                        },
                    )
                    return status

                if spec.strict_pending and status not in spec.pending_statuses:
                    raise UnexpectedStatus(status, description)

                logger.debug(
                    "Waiting for target status",
                    extra={"resource": description, "status": status, "ticks": ticks},
                )

            if deadline.expired:
                logger.error(
                    "Timed out waiting for target status",
                    extra={
                        "resource": description,
                        "last_status": last_status,
                        "timeout_seconds": spec.timeout,
                    },
                )
                raise PollTimeout(last_status, spec.timeout, description)

            await interruptible_sleep(
                min(spec.poll_interval, deadline.remaining), self._cancel_event
            )
