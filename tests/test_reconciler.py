"""Tests for Create/Read/Update/Delete reconciliation.

Uses an in-memory "widget" service whose objects move through
PROVISIONING → RUNNING after a create and DELETING → gone after a delete.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import ClassVar

import pytest
from pydantic import BaseModel

from lifecycle.adoption import Comparator, FieldCheck, location_equal
from lifecycle.config import EngineConfig
from lifecycle.drift import DriftAction
from lifecycle.errors import (
    Cancelled,
    ForceNewFieldChanged,
    ImmutableConflict,
    InvalidSegment,
    MalformedIdentity,
    PollTimeout,
    ReconcileError,
    RemoteNotFound,
    RemoteThrottled,
    TerminalFailure,
)
from lifecycle.identity import IdentityCodec
from lifecycle.poller import PollSpec
from lifecycle.reconciler import Prerequisite, Reconciler, ResourceKind, Segments
from lifecycle.state import FieldRole, Operation


class WidgetSpec(BaseModel):
    group: str
    name: str
    region: str | None = None
    size: int | None = None
    labels: dict[str, str] | None = None


@dataclass
class Widget:
    group: str
    name: str
    region: str
    size: int = 1
    labels: dict[str, str] = field(default_factory=dict)
    status: str = "RUNNING"


class WidgetService:
    """In-memory remote service with scripted status progressions."""

    def __init__(self, provisioning_steps: int = 2, final_status: str = "RUNNING") -> None:
        self.provisioning_steps = provisioning_steps
        self.final_status = final_status
        self.widgets: dict[tuple[str, str], Widget] = {}
        self.pending: dict[tuple[str, str], deque[str]] = {}
        self.deleting: set[tuple[str, str]] = set()
        self.errors: dict[str, deque[BaseException]] = {}
        self.calls: list[str] = []

    def fail_next(self, operation: str, *errors: BaseException) -> None:
        self.errors.setdefault(operation, deque()).extend(errors)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        queue = self.errors.get(operation)
        if queue:
            raise queue.popleft()

    def create(self, spec: WidgetSpec) -> None:
        self._enter("create")
        key = (spec.group, spec.name)
        self.widgets[key] = Widget(
            group=spec.group,
            name=spec.name,
            region=spec.region or "westeurope",
            size=spec.size or 1,
            labels=dict(spec.labels or {}),
            status=self.final_status,
        )
        self.pending[key] = deque(["PROVISIONING"] * self.provisioning_steps)

    def get(self, group: str, name: str) -> Widget:
        self._enter("get")
        key = (group, name)
        if key not in self.widgets:
            raise RemoteNotFound(f"widget {group}/{name}")
        if key in self.deleting and not self.pending.get(key):
            del self.widgets[key]
            self.deleting.discard(key)
            raise RemoteNotFound(f"widget {group}/{name}")
        widget = self.widgets[key]
        queue = self.pending.get(key)
        status = queue.popleft() if queue else widget.status
        return Widget(widget.group, widget.name, widget.region, widget.size, dict(widget.labels), status)

    def update(self, group: str, name: str, **changes: object) -> None:
        self._enter("update")
        widget = self.widgets[(group, name)]
        for key, value in changes.items():
            setattr(widget, key, value)
        self.pending[(group, name)] = deque(["UPDATING"])

    def delete(self, group: str, name: str) -> None:
        self._enter("delete")
        key = (group, name)
        if key not in self.widgets:
            raise RemoteNotFound(f"widget {group}/{name}")
        self.deleting.add(key)
        self.pending[key] = deque(["DELETING"])


class WidgetKind(ResourceKind[WidgetSpec, Widget]):
    name: ClassVar[str] = "widget"
    codec: ClassVar[IdentityCodec] = IdentityCodec(("group", "name"))

    force_new_fields: ClassVar[tuple[str, ...]] = ("group", "name", "region")
    update_groups: ClassVar[dict[str, tuple[str, ...]]] = {
        "size": ("size",),
        "labels": ("labels",),
    }
    computed_fields: ClassVar[tuple[str, ...]] = ("status",)
    field_comparators: ClassVar[dict[str, Comparator]] = {"region": location_equal}

    def __init__(self, service: WidgetService, prerequisite: Prerequisite | None = None) -> None:
        self.service = service
        self.prerequisite = prerequisite

    def poll_spec(self, operation: Operation) -> PollSpec:
        if operation is Operation.DELETE:
            return PollSpec.until_absent(pending_statuses={"DELETING"})
        return PollSpec(
            target_statuses={"RUNNING"},
            pending_statuses={"PROVISIONING", "UPDATING"},
            fail_statuses={"FAILED"},
        )

    def identity_segments(self, desired: WidgetSpec) -> Segments:
        return (desired.group, desired.name)

    def remote_create(self, desired: WidgetSpec) -> Segments:
        self.service.create(desired)
        return (desired.group, desired.name)

    def remote_fetch(self, segments: Segments) -> Widget:
        return self.service.get(*segments)

    def status_of(self, properties: Widget) -> str:
        return properties.status

    def to_desired(self, properties: Widget, segments: Segments, prior: WidgetSpec | None) -> WidgetSpec:
        return WidgetSpec(
            group=properties.group,
            name=properties.name,
            region=properties.region,
            size=properties.size,
            labels=dict(properties.labels),
        )

    def remote_update(self, segments: Segments, group: str, desired: WidgetSpec) -> None:
        match group:
            case "size":
                self.service.update(*segments, size=desired.size)
            case "labels":
                self.service.update(*segments, labels=dict(desired.labels or {}))

    def remote_delete(self, segments: Segments) -> None:
        self.service.delete(*segments)

    def immutable_checks(self, desired: WidgetSpec) -> list[FieldCheck]:
        return [
            FieldCheck(
                field="region",
                desired=desired.region,
                extract=lambda observed: observed.properties.region,
                equals=location_equal,
            )
        ]

    def prerequisites(
        self, operation: Operation, segments: Segments | None, desired: WidgetSpec | None
    ) -> list[Prerequisite]:
        if self.prerequisite is None or operation is not Operation.DELETE:
            return []
        return [self.prerequisite]


@pytest.fixture
def service() -> WidgetService:
    return WidgetService()


@pytest.fixture
def reconciler(service: WidgetService, fast_config: EngineConfig) -> Reconciler[WidgetSpec, Widget]:
    return Reconciler(WidgetKind(service), fast_config)


def seed(service: WidgetService, **overrides: object) -> Widget:
    widget = Widget(group="g1", name="w1", region="westeurope")
    for key, value in overrides.items():
        setattr(widget, key, value)
    service.widgets[(widget.group, widget.name)] = widget
    return widget


DESIRED = WidgetSpec(group="g1", name="w1", region="West Europe", size=2, labels={"env": "dev"})


class TestCreate:
    """Tests for Reconciler.create."""

    @pytest.mark.asyncio
    async def test_creates_and_waits_until_running(self, reconciler, service) -> None:
        result = await reconciler.create(DESIRED)

        assert result.outcome == "created"
        assert result.identity == "g1:w1"
        assert result.adopted is False
        assert result.observed is not None
        assert result.observed.status == "RUNNING"
        assert result.desired.size == 2
        assert service.calls.count("create") == 1
        # Adoption lookup, two PROVISIONING polls, RUNNING poll, final read
        assert service.calls.count("get") == 5

    @pytest.mark.asyncio
    async def test_adopts_matching_resource(self, reconciler, service) -> None:
        """An existing object with matching fixed fields is adopted, not re-created."""
        seed(service, size=5)

        result = await reconciler.create(DESIRED)

        assert result.outcome == "adopted"
        assert result.adopted is True
        assert result.identity == "g1:w1"
        assert result.desired.size == 5
        assert "create" not in service.calls

    @pytest.mark.asyncio
    async def test_refuses_conflicting_resource(self, reconciler, service) -> None:
        seed(service, region="northeurope")

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.create(DESIRED)

        error = exc_info.value
        assert error.stage == "adopt"
        assert error.identity is None
        assert isinstance(error.cause, ImmutableConflict)
        assert error.cause.field == "region"
        assert error.cause.existing == "northeurope"
        assert "create" not in service.calls

    @pytest.mark.asyncio
    async def test_rejects_delimiter_in_identity(self, reconciler, service) -> None:
        """Invalid identities fail before any remote call."""
        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.create(WidgetSpec(group="g:1", name="w1"))

        assert exc_info.value.stage == "encode"
        assert isinstance(exc_info.value.cause, InvalidSegment)
        assert service.calls == []

    @pytest.mark.asyncio
    async def test_retries_transient_create(self, reconciler, service) -> None:
        service.fail_next("create", RemoteThrottled("429"))

        result = await reconciler.create(DESIRED)

        assert result.outcome == "created"
        assert service.calls.count("create") == 2

    @pytest.mark.asyncio
    async def test_fatal_create_error_is_chained(self, reconciler, service) -> None:
        cause = ValueError("invalid size")
        service.fail_next("create", cause)

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.create(DESIRED)

        assert exc_info.value.stage == "create"
        assert exc_info.value.cause is cause
        assert exc_info.value.__cause__ is cause
        assert exc_info.value.identity is None

    @pytest.mark.asyncio
    async def test_poll_failure_carries_identity(self, fast_config) -> None:
        """Once the remote create succeeded the identity survives a failed wait."""
        service = WidgetService(final_status="FAILED")
        reconciler = Reconciler(WidgetKind(service), fast_config)

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.create(DESIRED)

        assert exc_info.value.stage == "poll"
        assert exc_info.value.identity == "g1:w1"
        assert isinstance(exc_info.value.cause, TerminalFailure)

    @pytest.mark.asyncio
    async def test_cancel_during_wait_carries_identity(self, fast_config) -> None:
        service = WidgetService()
        cancel_event = asyncio.Event()
        reconciler = Reconciler(WidgetKind(service), fast_config, cancel_event)
        service.create = _then_cancel(service.create, cancel_event)

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.create(DESIRED)

        assert isinstance(exc_info.value.cause, Cancelled)
        assert exc_info.value.identity == "g1:w1"

    @pytest.mark.asyncio
    async def test_throttled_wait_ends_at_create_timeout(self, fast_config) -> None:
        """Status reads that keep failing are bounded by the create timeout,
        not by the much longer retry deadline."""
        config = replace(
            fast_config,
            create_timeout_seconds=1,
            retry_deadline_seconds=30,
            poll_interval_seconds=0.05,
        )
        service = WidgetService()
        service.create = _then_throttle_reads(service)
        reconciler = Reconciler(WidgetKind(service), config)
        started = time.monotonic()

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.create(DESIRED)

        assert time.monotonic() - started < 10
        assert exc_info.value.stage == "poll"
        assert exc_info.value.identity == "g1:w1"
        assert isinstance(exc_info.value.cause, PollTimeout)
        assert service.calls.count("create") == 1


def _then_cancel(create, cancel_event: asyncio.Event):
    loop = asyncio.get_running_loop()

    def wrapped(spec: WidgetSpec) -> None:
        create(spec)
        loop.call_soon_threadsafe(cancel_event.set)

    return wrapped


def _then_throttle_reads(service: WidgetService):
    create = service.create

    def wrapped(spec: WidgetSpec) -> None:
        create(spec)
        service.fail_next("get", *[RemoteThrottled("429")] * 1000)

    return wrapped


class TestRead:
    """Tests for Reconciler.read."""

    @pytest.mark.asyncio
    async def test_maps_observed_state(self, reconciler, service) -> None:
        seed(service, size=3, labels={"team": "data"})

        result = await reconciler.read("g1:w1")

        assert result.exists
        assert result.outcome == "read"
        assert result.desired.size == 3
        assert result.desired.labels == {"team": "data"}

    @pytest.mark.asyncio
    async def test_missing_resource_clears_identity(self, reconciler) -> None:
        result = await reconciler.read("g1:w1")

        assert result.identity is None
        assert result.outcome == "gone"
        assert not result.exists

    @pytest.mark.asyncio
    async def test_malformed_identity(self, reconciler, service) -> None:
        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.read("g1:w1:extra")

        assert exc_info.value.stage == "decode"
        assert isinstance(exc_info.value.cause, MalformedIdentity)
        assert service.calls == []

    @pytest.mark.asyncio
    async def test_retries_transient_fetch(self, reconciler, service) -> None:
        seed(service)
        service.fail_next("get", RemoteThrottled("busy"))

        result = await reconciler.read("g1:w1")

        assert result.exists


class TestUpdate:
    """Tests for Reconciler.update."""

    @pytest.mark.asyncio
    async def test_rejects_force_new_change(self, reconciler, service) -> None:
        seed(service)
        prior = WidgetSpec(group="g1", name="w1", region="westeurope")
        desired = WidgetSpec(group="g1", name="w1", region="northeurope", size=3)

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.update("g1:w1", prior, desired)

        assert exc_info.value.stage == "validate"
        assert isinstance(exc_info.value.cause, ForceNewFieldChanged)
        assert exc_info.value.cause.fields == ["region"]
        assert "update" not in service.calls

    @pytest.mark.asyncio
    async def test_updates_only_changed_groups(self, reconciler, service) -> None:
        seed(service, size=1, labels={"env": "dev"})
        prior = WidgetSpec(group="g1", name="w1", region="westeurope", size=1, labels={"env": "dev"})

        result = await reconciler.update("g1:w1", prior, DESIRED)

        assert result.outcome == "updated"
        assert result.changed_groups == ["size"]
        assert service.calls.count("update") == 1
        assert service.widgets[("g1", "w1")].size == 2
        assert result.observed.status == "RUNNING"

    @pytest.mark.asyncio
    async def test_unchanged(self, reconciler, service) -> None:
        seed(service, size=2, labels={"env": "dev"})

        result = await reconciler.update("g1:w1", DESIRED, DESIRED)

        assert result.outcome == "unchanged"
        assert result.changed_groups == []
        assert "update" not in service.calls

    @pytest.mark.asyncio
    async def test_unset_fields_are_left_alone(self, reconciler, service) -> None:
        seed(service, size=7)
        prior = WidgetSpec(group="g1", name="w1", region="westeurope", size=7)
        desired = WidgetSpec(group="g1", name="w1")

        result = await reconciler.update("g1:w1", prior, desired)

        assert result.outcome == "unchanged"

    def test_requires_replacement(self, reconciler) -> None:
        prior = WidgetSpec(group="g1", name="w1", region="westeurope")
        assert reconciler.requires_replacement(prior, DESIRED) == []
        assert reconciler.requires_replacement(
            prior, WidgetSpec(group="g1", name="w1", region="eastus")
        ) == ["region"]


class TestDelete:
    """Tests for Reconciler.delete."""

    @pytest.mark.asyncio
    async def test_deletes_and_waits_until_gone(self, reconciler, service) -> None:
        seed(service)

        result = await reconciler.delete("g1:w1")

        assert result.outcome == "deleted"
        assert result.identity is None
        assert service.widgets == {}

    @pytest.mark.asyncio
    async def test_absent_resource_is_success(self, reconciler, service) -> None:
        result = await reconciler.delete("g1:w1")

        assert result.outcome == "gone"
        assert service.calls == ["get"]

    @pytest.mark.asyncio
    async def test_absent_resource_skips_failing_prerequisite(self, service, fast_config) -> None:
        """Nothing to delete means nothing to wait for, even if the parent is stuck."""
        fetched: list[str] = []

        def parent_status() -> str:
            fetched.append("STOPPED")
            return "STOPPED"

        prerequisite = Prerequisite(
            description="parent p1",
            fetch_status=parent_status,
            spec=PollSpec(target_statuses={"READY"}, fail_statuses={"STOPPED"}),
        )
        reconciler = Reconciler(WidgetKind(service, prerequisite), fast_config)

        result = await reconciler.delete("g1:w1")

        assert result.outcome == "gone"
        assert fetched == []
        assert "delete" not in service.calls

    @pytest.mark.asyncio
    async def test_throttled_status_read_during_delete(self, reconciler, service) -> None:
        seed(service)
        original_delete = service.delete

        def delete(group: str, name: str) -> None:
            original_delete(group, name)
            service.fail_next("get", RemoteThrottled("429"))

        service.delete = delete

        result = await reconciler.delete("g1:w1")

        assert result.outcome == "deleted"
        assert service.widgets == {}

    @pytest.mark.asyncio
    async def test_fatal_delete_error(self, reconciler, service) -> None:
        seed(service)
        service.fail_next("delete", PermissionError("locked"))

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.delete("g1:w1")

        assert exc_info.value.stage == "delete"
        assert exc_info.value.identity == "g1:w1"

    @pytest.mark.asyncio
    async def test_waits_for_prerequisite(self, service, fast_config) -> None:
        statuses = deque(["STARTING", "STARTING", "READY"])
        fetched: list[str] = []

        def parent_status() -> str:
            status = statuses.popleft()
            fetched.append(status)
            return status

        prerequisite = Prerequisite(
            description="parent p1",
            fetch_status=parent_status,
            spec=PollSpec(target_statuses={"READY"}, pending_statuses={"STARTING"}),
        )
        reconciler = Reconciler(WidgetKind(service, prerequisite), fast_config)
        seed(service)

        result = await reconciler.delete("g1:w1")

        assert result.outcome == "deleted"
        assert fetched == ["STARTING", "STARTING", "READY"]

    @pytest.mark.asyncio
    async def test_absent_prerequisite_skipped_when_allowed(self, service, fast_config) -> None:
        def parent_status() -> str:
            raise RemoteNotFound("parent gone")

        prerequisite = Prerequisite(
            description="parent p1",
            fetch_status=parent_status,
            spec=PollSpec(target_statuses={"READY"}),
            absent_ok=True,
        )
        reconciler = Reconciler(WidgetKind(service, prerequisite), fast_config)
        seed(service)

        result = await reconciler.delete("g1:w1")

        assert result.outcome == "deleted"

    @pytest.mark.asyncio
    async def test_absent_prerequisite_fails_otherwise(self, service, fast_config) -> None:
        def parent_status() -> str:
            raise RemoteNotFound("parent gone")

        prerequisite = Prerequisite(
            description="parent p1",
            fetch_status=parent_status,
            spec=PollSpec(target_statuses={"READY"}),
        )
        reconciler = Reconciler(WidgetKind(service, prerequisite), fast_config)
        seed(service)

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.delete("g1:w1")

        assert exc_info.value.stage == "prerequisite"
        assert "delete" not in service.calls


class TestPlan:
    """Tests for Reconciler.plan."""

    @pytest.mark.asyncio
    async def test_missing_resource_will_be_created(self, reconciler) -> None:
        report = await reconciler.plan(DESIRED)
        assert report.action is DriftAction.CREATE

    @pytest.mark.asyncio
    async def test_existing_unbound_resource_will_be_adopted(self, reconciler, service) -> None:
        seed(service, size=2, labels={"env": "dev"})
        report = await reconciler.plan(DESIRED)
        assert report.action is DriftAction.ADOPT

    @pytest.mark.asyncio
    async def test_bound_resource_with_mutable_drift(self, reconciler, service) -> None:
        seed(service, size=1, labels={"env": "dev"})

        report = await reconciler.plan(DESIRED, "g1:w1")

        assert report.action is DriftAction.UPDATE
        assert [(d.field, d.role) for d in report.drifts] == [("size", FieldRole.MUTABLE)]

    @pytest.mark.asyncio
    async def test_bound_resource_with_force_new_drift(self, reconciler, service) -> None:
        seed(service, region="northeurope", size=2, labels={"env": "dev"})

        report = await reconciler.plan(DESIRED, "g1:w1")

        assert report.action is DriftAction.REPLACE

    @pytest.mark.asyncio
    async def test_remote_errors_do_not_fail_plan(self, reconciler, service) -> None:
        service.fail_next("get", RemoteThrottled("busy"))

        report = await reconciler.plan(DESIRED, "g1:w1")

        assert report.action is DriftAction.UNKNOWN


class TestAudit:
    """Every operation emits one provenance record."""

    @pytest.mark.asyncio
    async def test_success_record(self, reconciler, service, caplog) -> None:
        seed(service)
        with caplog.at_level(logging.INFO, logger="lifecycle.provenance"):
            await reconciler.read("g1:w1")

        records = [r for r in caplog.records if r.name == "lifecycle.provenance"]
        assert len(records) == 1
        assert records[0].outcome == "read"
        assert records[0].identity == "g1:w1"

    @pytest.mark.asyncio
    async def test_failure_record(self, reconciler, service, caplog) -> None:
        seed(service, region="northeurope")
        with caplog.at_level(logging.INFO, logger="lifecycle.provenance"):
            with pytest.raises(ReconcileError):
                await reconciler.create(DESIRED)

        record = [r for r in caplog.records if r.name == "lifecycle.provenance"][-1]
        assert record.levelno == logging.ERROR
        assert record.provenance["failed_stage"] == "adopt"
        assert record.provenance["error_type"] == "ImmutableConflict"

    @pytest.mark.asyncio
    async def test_result_timing(self, reconciler, service) -> None:
        seed(service)
        result = await reconciler.read("g1:w1")
        assert result.end_time is not None
        assert result.duration_seconds >= 0
