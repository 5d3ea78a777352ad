"""Error taxonomy for the lifecycle engine.

Every failure the engine surfaces is one of these types. Remote client errors
are never replaced: when they leave a reconciler operation they are chained as
the ``__cause__`` of a ReconcileError that records which stage failed.

CLASSIFICATION:
Remote errors are sorted into four classes by a classifier function:
- NOT_FOUND: the remote object is absent (Read clears identity, Delete succeeds)
- TRANSIENT: throttling or temporary unavailability (retried internally)
- PERMISSION_DENIED: caller lacks rights (surfaced, advisory during planning)
- FATAL: anything else (surfaced immediately)
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorClass(str, Enum):
    """Four-way classification of remote errors."""

    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    PERMISSION_DENIED = "permission_denied"
    FATAL = "fatal"


class LifecycleError(Exception):
    """Base class for all engine errors."""

    pass


# =============================================================================
# Generic remote signals
# =============================================================================
# Client bindings that do not speak azure-core raise these so that the default
# classifier can sort them without a service-specific classifier.


class RemoteNotFound(LifecycleError):
    """The remote object does not exist."""

    pass


class RemoteThrottled(LifecycleError):
    """The remote API asked the caller to slow down or try again later."""

    pass


class RemotePermissionDenied(LifecycleError):
    """The remote API rejected the call for lack of permission."""

    pass


def default_classify(error: BaseException) -> ErrorClass:
    """Classify an error using only the generic remote signals."""
    if isinstance(error, RemoteNotFound):
        return ErrorClass.NOT_FOUND
    if isinstance(error, RemoteThrottled):
        return ErrorClass.TRANSIENT
    if isinstance(error, RemotePermissionDenied):
        return ErrorClass.PERMISSION_DENIED
    return ErrorClass.FATAL


# =============================================================================
# Identity
# =============================================================================


class InvalidSegment(LifecycleError, ValueError):
    """An identity segment is empty or contains the delimiter."""

    def __init__(self, segment: str, delimiter: str) -> None:
        self.segment = segment
        self.delimiter = delimiter
        if not segment:
            reason = "identity segments must not be empty"
        else:
            reason = f"identity segment {segment!r} contains reserved delimiter {delimiter!r}"
        super().__init__(reason)


class MalformedIdentity(LifecycleError, ValueError):
    """An identity key does not decode into the declared number of segments."""

    def __init__(self, key: str, arity: int, found: int, names: tuple[str, ...] = ()) -> None:
        self.key = key
        self.arity = arity
        self.found = found
        expected = ", ".join(names) if names else f"{arity} segments"
        super().__init__(
            f"invalid resource identity {key!r}: expected {expected}, found {found} segment(s)"
        )


# =============================================================================
# Retry and polling
# =============================================================================


class Cancelled(LifecycleError):
    """A wait was interrupted by the cancel signal."""

    pass


class DeadlineExceeded(LifecycleError):
    """Retryable failures persisted until the retry deadline elapsed."""

    def __init__(self, operation: str, last_error: BaseException, attempts: int) -> None:
        self.operation = operation
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"{operation} still failing after {attempts} attempt(s): {last_error}"
        )


class NotFoundDuringWait(LifecycleError):
    """The resource vanished while waiting for it to reach a target status."""

    def __init__(self, description: str) -> None:
        self.description = description
        super().__init__(f"{description}: resource not found while waiting for target status")


class TerminalFailure(LifecycleError):
    """The resource reached a status declared as failing."""

    def __init__(self, status: str, description: str = "") -> None:
        self.status = status
        self.description = description
        prefix = f"{description}: " if description else ""
        super().__init__(f"{prefix}resource reached failure status {status!r}")


class PollTimeout(LifecycleError):
    """The resource did not reach a target status before the timeout."""

    def __init__(self, last_status: str | None, timeout: float, description: str = "") -> None:
        self.last_status = last_status
        self.timeout = timeout
        self.description = description
        prefix = f"{description}: " if description else ""
        super().__init__(
            f"{prefix}timed out after {timeout:g}s waiting for target status "
            f"(last status: {last_status!r})"
        )


class UnexpectedStatus(LifecycleError):
    """Strict polling observed a status outside the declared vocabulary."""

    def __init__(self, status: str, description: str = "") -> None:
        self.status = status
        self.description = description
        prefix = f"{description}: " if description else ""
        super().__init__(f"{prefix}unexpected status {status!r}")


# =============================================================================
# Reconciliation
# =============================================================================


class ImmutableConflict(LifecycleError):
    """An existing remote object has a fixed attribute that differs from desired."""

    def __init__(self, field: str, existing: Any, desired: Any) -> None:
        self.field = field
        self.existing = existing
        self.desired = desired
        super().__init__(
            f"immutable field conflict: {field} differs (existing={existing!r}, "
            f"desired={desired!r}). Adoption aborted; remove {field} or recreate "
            f"the resource with the desired settings."
        )


class ForceNewFieldChanged(LifecycleError):
    """An update tried to change fields that require recreating the resource."""

    def __init__(self, fields: list[str]) -> None:
        self.fields = fields
        super().__init__(
            f"fields {', '.join(fields)} cannot be changed in place; "
            f"the resource must be deleted and recreated"
        )


class ReconcileError(LifecycleError):
    """A reconciler operation failed at a specific stage.

    Attributes:
        operation: create, read, update or delete.
        stage: Step that failed (encode, decode, adopt, validate, create,
            prerequisite, poll, read, update, delete).
        identity: Identity key bound before the failure, if any. Callers
            persist it so a retry resumes from Read instead of re-creating.
        cause: The underlying error, unchanged.
    """

    def __init__(
        self,
        operation: str,
        stage: str,
        cause: BaseException,
        identity: str | None = None,
        kind: str = "",
    ) -> None:
        self.operation = operation
        self.stage = stage
        self.cause = cause
        self.identity = identity
        self.kind = kind
        target = f"{kind} {identity}" if identity else kind or "resource"
        super().__init__(f"{operation} {target} failed during {stage}: {cause}")
