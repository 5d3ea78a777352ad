"""Create/Read/Update/Delete reconciliation for one resource kind.

This module composes the engine components into the four operations a
declarative-config engine invokes:

1. Create: resolve adoption by identity; adopt (then Read), refuse on an
   immutable conflict, or call the remote create under retry, encode the
   returned identity, poll until ready, then Read
2. Read: one fetch (transient errors retried); "not found" clears identity
3. Update: reject force-new changes; per changed mutable group, call the
   remote update under retry and poll until settled; then Read
4. Delete: one existence check ("not found" is success, prerequisites are
   skipped), remote delete under retry, then poll until the resource
   disappears

A ResourceKind supplies everything service specific: its identity layout,
field roles, status vocabularies, client calls and field mapping. The client
capability is passed to the kind's constructor, never looked up globally.

FAILURE SEMANTICS:
Errors leave as ReconcileError naming the failing stage, chained from the
unchanged cause. When an identity is already bound (for example the remote
create succeeded but polling failed), it is carried on the error so that the
caller can persist it; retrying then resumes from Read instead of creating a
second object.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel

from .adoption import AdoptionOutcome, AdoptionResolver, Comparator, FieldCheck, exact
from .config import EngineConfig
from .drift import NOTE_WILL_CREATE, DriftAction, DriftDetector, DriftReport, FieldDrift
from .errors import (
    ErrorClass,
    ForceNewFieldChanged,
    ImmutableConflict,
    NotFoundDuringWait,
    ReconcileError,
    default_classify,
)
from .identity import IdentityCodec
from .poller import PollSpec, StatePoller
from .provenance import OperationProvenance, get_provenance_logger
from .retry import RetryExecutor, RetryPolicy
from .state import FieldRole, ObservedState, Operation
from .timing import call_remote

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=BaseModel)
P = TypeVar("P")

Segments = tuple[str, ...]


@dataclass(frozen=True)
class Prerequisite:
    """A status another resource must reach before a remote mutation.

    Attributes:
        description: Names the awaited resource in logs and errors.
        fetch_status: Returns the awaited resource's status.
        spec: Status vocabulary to wait for.
        absent_ok: Skip the wait when the awaited resource does not exist.
    """

    description: str
    fetch_status: Callable[[], str]
    spec: PollSpec
    absent_ok: bool = False


class ResourceKind(ABC, Generic[D, P]):
    """Service-specific half of a reconciler.

    Remote methods (``remote_*``) are synchronous client calls; the engine
    runs them in a worker thread. They signal absence by raising an error that
    ``classify_error`` maps to ErrorClass.NOT_FOUND.
    """

    name: ClassVar[str]
    codec: ClassVar[IdentityCodec]

    force_new_fields: ClassVar[tuple[str, ...]] = ()
    # Update group name -> fields changed together by one remote update
    update_groups: ClassVar[dict[str, tuple[str, ...]]] = {}
    computed_fields: ClassVar[tuple[str, ...]] = ()
    field_comparators: ClassVar[dict[str, Comparator]] = {}

    # False when identity is only known after create (server-assigned names)
    supports_adoption: ClassVar[bool] = True

    @property
    def mutable_fields(self) -> tuple[str, ...]:
        fields: list[str] = []
        for group_fields in self.update_groups.values():
            fields.extend(f for f in group_fields if f not in fields)
        return tuple(fields)

    def role_of(self, field_name: str) -> FieldRole | None:
        if field_name in self.force_new_fields:
            return FieldRole.FORCE_NEW
        if field_name in self.mutable_fields:
            return FieldRole.MUTABLE
        if field_name in self.computed_fields:
            return FieldRole.COMPUTED
        return None

    def fields_equal(self, field_name: str, desired: Any, actual: Any) -> bool:
        return self.field_comparators.get(field_name, exact)(desired, actual)

    def classify_error(self, error: BaseException) -> ErrorClass:
        return default_classify(error)

    def is_retryable(self, error: BaseException, operation: Operation) -> bool:
        """Operation-specific retryable errors beyond ErrorClass.TRANSIENT."""
        return False

    @abstractmethod
    def poll_spec(self, operation: Operation) -> PollSpec:
        """Status vocabulary awaited after a create, update or delete."""

    @abstractmethod
    def identity_segments(self, desired: D) -> Segments | None:
        """Identity derivable from desired state, or None if server-assigned."""

    @abstractmethod
    def remote_create(self, desired: D) -> Segments:
        """Start creating the resource; return its identity segments."""

    @abstractmethod
    def remote_fetch(self, segments: Segments) -> P:
        """Fetch the typed snapshot of the resource."""

    @abstractmethod
    def status_of(self, properties: P) -> str:
        """Extract the status string from a snapshot."""

    @abstractmethod
    def to_desired(self, properties: P, segments: Segments, prior: D | None) -> D:
        """Map a snapshot back into the desired-state model.

        ``prior`` carries settings the remote object does not report.
        """

    def remote_update(self, segments: Segments, group: str, desired: D) -> None:
        """Apply one update group in place."""
        raise NotImplementedError(f"{self.name} has no mutable fields")

    @abstractmethod
    def remote_delete(self, segments: Segments) -> None:
        """Start deleting the resource."""

    def immutable_checks(self, desired: D) -> list[FieldCheck]:
        """Fields an existing object must match to be adopted."""
        return []

    def prerequisites(
        self, operation: Operation, segments: Segments | None, desired: D | None
    ) -> list[Prerequisite]:
        return []


@dataclass
class ReconcileResult(Generic[D, P]):
    """Outcome of one successful reconciler operation.

    ``identity`` is None when the resource does not exist (Read found it gone,
    or Delete finished).
    """

    kind: str
    operation: Operation
    identity: str | None
    outcome: str
    desired: D | None = None
    observed: ObservedState[P] | None = None
    adopted: bool = False
    changed_groups: list[str] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def exists(self) -> bool:
        return self.identity is not None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class Reconciler(Generic[D, P]):
    """Drives one resource kind through Create/Read/Update/Delete.

    The reconciler keeps no state between calls; identity and desired state
    are passed in per call. Every wait ends early with Cancelled when
    ``cancel_event`` is set.
    """

    def __init__(
        self,
        kind: ResourceKind[D, P],
        config: EngineConfig | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._kind = kind
        self._config = config or EngineConfig()
        self._retry = RetryExecutor(cancel_event)
        self._poller = StatePoller(kind.classify_error, cancel_event)
        self._resolver = AdoptionResolver(kind.classify_error)
        self._drift = DriftDetector(kind.classify_error)

    @property
    def kind(self) -> ResourceKind[D, P]:
        return self._kind

    @property
    def config(self) -> EngineConfig:
        return self._config

    # =========================================================================
    # Public operations
    # =========================================================================

    async def create(self, desired: D) -> ReconcileResult[D, P]:
        """Adopt an existing resource or create a new one, then Read it."""
        return await self._audited(Operation.CREATE, None, partial(self._create, desired))

    async def read(self, identity: str, desired: D | None = None) -> ReconcileResult[D, P]:
        """Fetch the resource once; a missing resource returns identity None."""
        return await self._audited(Operation.READ, identity, partial(self._read, identity, desired))

    async def update(self, identity: str, prior: D, desired: D) -> ReconcileResult[D, P]:
        """Apply changed mutable field groups in place, then Read.

        Raises:
            ReconcileError: With ForceNewFieldChanged if a force-new field
                differs between ``prior`` and ``desired``.
        """
        return await self._audited(
            Operation.UPDATE, identity, partial(self._update, identity, prior, desired)
        )

    async def delete(self, identity: str) -> ReconcileResult[D, P]:
        """Delete the resource and wait for it to disappear."""
        return await self._audited(Operation.DELETE, identity, partial(self._delete, identity))

    def requires_replacement(self, prior: D, desired: D) -> list[str]:
        """Force-new fields that differ between ``prior`` and ``desired``."""
        return self._changed_fields(prior, desired, self._kind.force_new_fields)

    async def plan(self, desired: D, identity: str | None = None) -> DriftReport:
        """Probe the remote system read-only and describe the expected action.

        Remote errors never fail the plan. Only invalid desired state (an
        identity that cannot be encoded) or a corrupt stored identity raise.
        """
        kind = self._kind
        adopting = identity is None

        if identity is None:
            segments = kind.identity_segments(desired)
            if segments is None or not kind.supports_adoption:
                return DriftReport(action=DriftAction.CREATE, notes=[NOTE_WILL_CREATE])
            with self._stage("plan", "encode"):
                identity = kind.codec.encode(*segments)
        else:
            with self._stage("plan", "decode", identity):
                segments = kind.codec.decode(identity)

        bound_identity = identity

        async def fetch() -> ObservedState[P]:
            loop = asyncio.get_running_loop()
            properties = await loop.run_in_executor(None, kind.remote_fetch, segments)
            return ObservedState(
                identity=bound_identity, status=kind.status_of(properties), properties=properties
            )

        report = await self._drift.probe(
            fetch, partial(self._diff, desired, segments), adopting=adopting
        )
        logger.info(
            "Plan probe complete",
            extra={"kind": kind.name, "identity": identity, "action": report.action.value},
        )
        return report

    # =========================================================================
    # Operation bodies
    # =========================================================================

    async def _create(self, desired: D) -> ReconcileResult[D, P]:
        kind = self._kind
        op = Operation.CREATE
        segments = kind.identity_segments(desired)

        if segments is not None and kind.supports_adoption:
            with self._stage(op, "encode"):
                candidate = kind.codec.encode(*segments)

            async def fetch_existing() -> ObservedState[P]:
                return await self._fetch_observed(candidate, segments)

            with self._stage(op, "adopt"):
                decision = await self._resolver.resolve(
                    candidate, fetch_existing, kind.immutable_checks(desired)
                )

            if decision.outcome is AdoptionOutcome.ADOPTABLE:
                logger.info(
                    "Adopting existing resource",
                    extra={"kind": kind.name, "identity": candidate},
                )
                result = await self._read_bound(op, candidate, segments, desired, True)
                result.adopted = True
                result.outcome = "adopted"
                return result

            if decision.outcome is AdoptionOutcome.CONFLICT:
                # SAFETY: field is always set on CONFLICT decisions
                conflict = ImmutableConflict(
                    decision.field or "", decision.existing_value, decision.desired_value
                )
                raise ReconcileError(op.value, "adopt", conflict, kind=kind.name)

        await self._await_prerequisites(op, segments, desired)

        with self._stage(op, "create"):
            fragments = await self._retry.execute(
                partial(kind.remote_create, desired),
                self._policy(op),
                operation=f"create {kind.name}",
            )

        with self._stage(op, "encode"):
            identity = kind.codec.encode(*fragments)

        logger.info(
            "Create accepted, waiting for target status",
            extra={"kind": kind.name, "identity": identity},
        )

        with self._stage(op, "poll", identity):
            await self._poller.wait_for(
                partial(self._fetch_status, fragments),
                self._poll_spec(op),
                description=f"{kind.name} {identity}",
            )

        result = await self._read_bound(op, identity, fragments, desired, True)
        result.outcome = "created"
        return result

    async def _read(self, identity: str, desired: D | None) -> ReconcileResult[D, P]:
        with self._stage(Operation.READ, "decode", identity):
            segments = self._kind.codec.decode(identity)
        return await self._read_bound(Operation.READ, identity, segments, desired, False)

    async def _update(self, identity: str, prior: D, desired: D) -> ReconcileResult[D, P]:
        kind = self._kind
        op = Operation.UPDATE

        with self._stage(op, "decode", identity):
            segments = kind.codec.decode(identity)

        force_new_changed = self.requires_replacement(prior, desired)
        if force_new_changed:
            raise ReconcileError(
                op.value,
                "validate",
                ForceNewFieldChanged(force_new_changed),
                identity=identity,
                kind=kind.name,
            )

        changed_groups = [
            group
            for group, fields in kind.update_groups.items()
            if self._changed_fields(prior, desired, fields)
        ]

        if changed_groups:
            await self._await_prerequisites(op, segments, desired, identity)

        for group in changed_groups:
            logger.info(
                "Updating field group",
                extra={"kind": kind.name, "identity": identity, "group": group},
            )
            with self._stage(op, "update", identity):
                await self._retry.execute(
                    partial(kind.remote_update, segments, group, desired),
                    self._policy(op),
                    operation=f"update {kind.name} {group}",
                )
            with self._stage(op, "poll", identity):
                await self._poller.wait_for(
                    partial(self._fetch_status, segments),
                    self._poll_spec(op),
                    description=f"{kind.name} {identity}",
                )

        result = await self._read_bound(op, identity, segments, desired, True)
        result.changed_groups = changed_groups
        result.outcome = "updated" if changed_groups else "unchanged"
        return result

    async def _delete(self, identity: str) -> ReconcileResult[D, P]:
        kind = self._kind
        op = Operation.DELETE

        with self._stage(op, "decode", identity):
            segments = kind.codec.decode(identity)

        with self._stage(op, "read", identity):
            try:
                await self._fetch_properties(segments)
            except Exception as e:
                if kind.classify_error(e) is not ErrorClass.NOT_FOUND:
                    raise
                logger.info(
                    "Resource already gone, nothing to delete",
                    extra={"kind": kind.name, "identity": identity},
                )
                return ReconcileResult(kind.name, op, None, outcome="gone")

        await self._await_prerequisites(op, segments, None, identity)

        try:
            await self._retry.execute(
                partial(kind.remote_delete, segments),
                self._policy(op),
                operation=f"delete {kind.name}",
            )
        except Exception as e:
            if kind.classify_error(e) is ErrorClass.NOT_FOUND:
                logger.info(
                    "Resource already gone, nothing to delete",
                    extra={"kind": kind.name, "identity": identity},
                )
                return ReconcileResult(kind.name, op, None, outcome="gone")
            raise ReconcileError(op.value, "delete", e, identity=identity, kind=kind.name) from e

        with self._stage(op, "poll", identity):
            await self._poller.wait_for(
                partial(self._fetch_status, segments),
                self._poll_spec(op),
                description=f"{kind.name} {identity}",
            )

        logger.info("Resource deleted", extra={"kind": kind.name, "identity": identity})
        return ReconcileResult(kind.name, op, None, outcome="deleted")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _read_bound(
        self,
        op: Operation,
        identity: str,
        segments: Segments,
        desired: D | None,
        require_exists: bool,
    ) -> ReconcileResult[D, P]:
        kind = self._kind
        with self._stage(op, "read", identity):
            try:
                observed = await self._fetch_observed(identity, segments)
            except Exception as e:
                if require_exists or kind.classify_error(e) is not ErrorClass.NOT_FOUND:
                    raise
                logger.info(
                    "Resource no longer exists, clearing identity",
                    extra={"kind": kind.name, "identity": identity},
                )
                return ReconcileResult(kind.name, op, None, outcome="gone")

        return ReconcileResult(
            kind.name,
            op,
            identity,
            outcome="read",
            desired=kind.to_desired(observed.properties, segments, desired),
            observed=observed,
        )

    async def _fetch_properties(self, segments: Segments) -> P:
        return await self._retry.execute(
            partial(self._kind.remote_fetch, segments),
            self._policy(Operation.READ),
            operation=f"fetch {self._kind.name}",
        )

    async def _fetch_observed(self, identity: str, segments: Segments) -> ObservedState[P]:
        properties = await self._fetch_properties(segments)
        return ObservedState(
            identity=identity, status=self._kind.status_of(properties), properties=properties
        )

    async def _fetch_status(self, segments: Segments) -> str:
        # One attempt per tick; the poller absorbs transient errors within its timeout
        properties = await call_remote(partial(self._kind.remote_fetch, segments))
        return self._kind.status_of(properties)

    async def _await_prerequisites(
        self,
        op: Operation,
        segments: Segments | None,
        desired: D | None,
        identity: str | None = None,
    ) -> None:
        for prerequisite in self._kind.prerequisites(op, segments, desired):
            logger.info(
                "Waiting for prerequisite",
                extra={"kind": self._kind.name, "prerequisite": prerequisite.description},
            )
            with self._stage(op, "prerequisite", identity):
                try:
                    await self._poller.wait_for(
                        prerequisite.fetch_status,
                        self._config.apply_timing(prerequisite.spec, op),
                        description=prerequisite.description,
                    )
                except NotFoundDuringWait:
                    if not prerequisite.absent_ok:
                        raise
                    logger.info(
                        "Prerequisite resource absent, skipping wait",
                        extra={"prerequisite": prerequisite.description},
                    )

    def _policy(self, operation: Operation) -> RetryPolicy:
        kind = self._kind
        return RetryPolicy.from_classifier(
            kind.classify_error,
            extra_retryable=lambda error: kind.is_retryable(error, operation),
            base_delay=self._config.retry_base_delay_seconds,
            delay_increment=self._config.retry_delay_increment_seconds,
            deadline=float(self._config.retry_deadline_seconds),
        )

    def _poll_spec(self, operation: Operation) -> PollSpec:
        return self._config.apply_timing(self._kind.poll_spec(operation), operation)

    def _changed_fields(self, prior: D, desired: D, fields: tuple[str, ...]) -> list[str]:
        changed = []
        for name in fields:
            wanted = getattr(desired, name)
            # Unset optional fields keep whatever the resource has
            if wanted is None:
                continue
            if not self._kind.fields_equal(name, wanted, getattr(prior, name)):
                changed.append(name)
        return changed

    def _diff(self, desired: D, segments: Segments, observed: ObservedState[P]) -> list[FieldDrift]:
        kind = self._kind
        actual = kind.to_desired(observed.properties, segments, desired)
        drifts: list[FieldDrift] = []
        for role, fields in (
            (FieldRole.FORCE_NEW, kind.force_new_fields),
            (FieldRole.MUTABLE, kind.mutable_fields),
        ):
            for name in fields:
                wanted = getattr(desired, name)
                have = getattr(actual, name)
                # Unset optional fields take whatever the service chose
                if wanted is None:
                    continue
                if not kind.fields_equal(name, wanted, have):
                    drifts.append(FieldDrift(field=name, role=role, desired=wanted, actual=have))
        return drifts

    @contextmanager
    def _stage(
        self, operation: Operation | str, stage: str, identity: str | None = None
    ) -> Iterator[None]:
        """Wrap failures of one stage in ReconcileError."""
        op_name = operation.value if isinstance(operation, Operation) else operation
        try:
            yield
        except ReconcileError:
            raise
        except Exception as e:
            raise ReconcileError(op_name, stage, e, identity=identity, kind=self._kind.name) from e

    async def _audited(
        self,
        operation: Operation,
        identity: str | None,
        body: Callable[[], Any],
    ) -> ReconcileResult[D, P]:
        started = time.monotonic()
        started_at = datetime.now(UTC)
        record: OperationProvenance | None = None
        if self._config.enable_audit_logging:
            record = get_provenance_logger().create_provenance(
                self._kind.name, operation.value, identity
            )

        try:
            result: ReconcileResult[D, P] = await body()
        except ReconcileError as e:
            if record is not None:
                record.identity = e.identity or identity
                record.outcome = "failed"
                record.failed_stage = e.stage
                record.error = str(e.cause)
                record.error_type = type(e.cause).__name__
                record.duration_seconds = time.monotonic() - started
                get_provenance_logger().log_provenance(record)
            raise

        result.start_time = started_at
        result.end_time = datetime.now(UTC)
        if record is not None:
            record.identity = result.identity or identity
            record.outcome = result.outcome
            record.adopted = result.adopted
            record.duration_seconds = time.monotonic() - started
            get_provenance_logger().log_provenance(record)
        return result
