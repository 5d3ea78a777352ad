"""Manifest runners for the lifecycle engine.

Each declaration in a manifest is driven through its kind's reconciler:

1. Plan: read-only drift probe per declaration, plus deletion of orphans
2. Apply: Read by stored identity, then Create (adopting if possible),
   Update in place, or Replace (Delete + Create) when a force-new field
   changed; identities in state that are no longer declared are deleted
3. Destroy: Delete every stored identity, dependents first

SECRETLESS ARCHITECTURE:
Azure access always goes through a managed identity credential; credential
secrets in the environment abort the run before any API call.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .arm import ArmClient
from .config import AzureConfig, ConfigurationError, EngineConfig
from .database import PostgresDatabaseKind
from .drift import DriftAction, DriftReport
from .errors import Cancelled, ForceNewFieldChanged, ReconcileError
from .generic_resource import GenericResourceKind
from .models import BaseSpec, GenericResourceSpec, Manifest, get_spec_class
from .reconciler import Reconciler, ResourceKind
from .resource_group import ResourceGroupKind
from .security import SecretlessViolationError, log_security_audit_event
from .spec_loader import SpecLoadError, load_manifest, order_declarations, parse_declaration_spec
from .state_store import ResourceRecord, StateStore, StateStoreError

logger = logging.getLogger(__name__)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _STANDARD_RECORD_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


_STANDARD_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


# =============================================================================
# Results
# =============================================================================


class ApplyAction(str, Enum):
    """What apply did for one declaration."""

    CREATED = "created"
    ADOPTED = "adopted"
    UPDATED = "updated"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ResourcePlan:
    """Plan entry for one declaration or orphaned state record."""

    name: str
    kind: str
    action: DriftAction
    identity: str | None = None
    notes: list[str] = field(default_factory=list)
    report: DriftReport | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind,
            "action": self.action.value,
            "identity": self.identity,
            "notes": list(self.notes),
        }
        if self.report is not None:
            data["drifts"] = self.report.to_dict()["drifts"]
        return data


@dataclass
class ResourceOutcome:
    """Apply or destroy result for one declaration."""

    name: str
    kind: str
    action: ApplyAction
    identity: str | None = None
    error: str | None = None


@dataclass
class RunResult:
    """Result of one apply or destroy run."""

    outcomes: list[ResourceOutcome] = field(default_factory=list)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.cancelled and all(
            o.action not in (ApplyAction.FAILED, ApplyAction.SKIPPED) for o in self.outcomes
        )

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


# =============================================================================
# Kind wiring
# =============================================================================


def build_kind(kind_name: str, client: ArmClient, desired: BaseSpec) -> ResourceKind[Any, Any]:
    """Instantiate the resource kind serving ``desired``."""
    match kind_name:
        case "resource-group":
            return ResourceGroupKind(client)
        case "generic-resource":
            assert isinstance(desired, GenericResourceSpec)
            return GenericResourceKind(client, desired.api_version)
        case "postgres-database":
            return PostgresDatabaseKind(client)
        case _:
            raise ValueError(f"Unknown kind '{kind_name}'")


def _record_spec(record: ResourceRecord) -> BaseSpec:
    return get_spec_class(record.kind).model_validate(record.desired)


class ManifestRunner:
    """Plans, applies and destroys manifests against one subscription."""

    def __init__(
        self,
        client: ArmClient,
        store: StateStore,
        engine_config: EngineConfig | None = None,
        default_location: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._engine_config = engine_config or EngineConfig()
        self._default_location = default_location
        self._cancel_event = cancel_event or asyncio.Event()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def _reconciler(self, kind_name: str, desired: BaseSpec) -> Reconciler[Any, Any]:
        kind = build_kind(kind_name, self._client, desired)
        return Reconciler(kind, self._engine_config, self._cancel_event)

    # -------------------------------------------------------------------------
    # Plan
    # -------------------------------------------------------------------------

    async def plan(self, manifest: Manifest) -> list[ResourcePlan]:
        """Describe what apply would do, without mutating anything."""
        records = self._store.load()
        plans: list[ResourcePlan] = []

        for declaration in order_declarations(manifest.resources):
            desired = parse_declaration_spec(declaration, self._default_location)
            reconciler = self._reconciler(declaration.kind, desired)
            record = records.get(declaration.name)

            if record is not None and record.kind != declaration.kind:
                plans.append(
                    ResourcePlan(
                        name=declaration.name,
                        kind=declaration.kind,
                        action=DriftAction.REPLACE,
                        identity=record.identity,
                        notes=[f"Kind changes from {record.kind}; the resource will be replaced."],
                    )
                )
                continue

            identity = record.identity if record else None
            report = await reconciler.plan(desired, identity)
            if identity is not None and report.action is DriftAction.CREATE:
                report.notes = ["Resource in state no longer exists and will be recreated."]
            plans.append(
                ResourcePlan(
                    name=declaration.name,
                    kind=declaration.kind,
                    action=report.action,
                    identity=identity,
                    notes=list(report.notes),
                    report=report,
                )
            )

        declared = {declaration.name for declaration in manifest.resources}
        for name, record in records.items():
            if name not in declared:
                plans.append(
                    ResourcePlan(
                        name=name,
                        kind=record.kind,
                        action=DriftAction.DELETE,
                        identity=record.identity,
                        notes=["No longer declared; the resource will be deleted."],
                    )
                )
        return plans

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    async def apply(self, manifest: Manifest) -> RunResult:
        """Drive every declaration to its desired state, then delete orphans."""
        records = self._store.load()
        result = RunResult()
        unsuccessful: set[str] = set()

        for declaration in order_declarations(manifest.resources):
            if self._cancel_event.is_set():
                result.cancelled = True
                break

            blocked = [dep for dep in declaration.depends_on if dep in unsuccessful]
            if blocked:
                logger.warning(
                    "Skipping resource with failed dependencies",
                    extra={"resource": declaration.name, "dependencies": blocked},
                )
                unsuccessful.add(declaration.name)
                result.outcomes.append(
                    ResourceOutcome(
                        name=declaration.name,
                        kind=declaration.kind,
                        action=ApplyAction.SKIPPED,
                        error=f"dependencies failed: {', '.join(blocked)}",
                    )
                )
                continue

            desired = parse_declaration_spec(declaration, self._default_location)
            outcome = await self._apply_one(declaration.name, declaration.kind, desired, records)
            if outcome.action is ApplyAction.FAILED:
                unsuccessful.add(declaration.name)
            result.outcomes.append(outcome)
            self._store.save(records)

        if not result.cancelled and not unsuccessful:
            declared = {declaration.name for declaration in manifest.resources}
            orphans = [name for name in reversed(list(records)) if name not in declared]
            for name in orphans:
                if self._cancel_event.is_set():
                    result.cancelled = True
                    break
                result.outcomes.append(await self._delete_one(name, records))
                self._store.save(records)

        result.end_time = datetime.now(UTC)
        return result

    async def _apply_one(
        self,
        name: str,
        kind_name: str,
        desired: BaseSpec,
        records: dict[str, ResourceRecord],
    ) -> ResourceOutcome:
        reconciler = self._reconciler(kind_name, desired)
        record = records.get(name)
        action = ApplyAction.CREATED

        try:
            if record is not None and record.kind != kind_name:
                await self._delete_record(record)
                del records[name]
                record = None
                action = ApplyAction.REPLACED

            if record is not None:
                prior = _record_spec(record)
                current = await reconciler.read(record.identity, prior)
                if not current.exists:
                    del records[name]
                    record = None
                elif reconciler.requires_replacement(current.desired, desired):
                    logger.info(
                        "Force-new fields changed, replacing resource",
                        extra={"resource": name, "identity": record.identity},
                    )
                    await reconciler.delete(record.identity)
                    del records[name]
                    record = None
                    action = ApplyAction.REPLACED
                else:
                    updated = await reconciler.update(record.identity, current.desired, desired)
                    records[name] = ResourceRecord(kind_name, record.identity, desired.to_state())
                    action = (
                        ApplyAction.UPDATED if updated.changed_groups else ApplyAction.UNCHANGED
                    )
                    return self._outcome(name, kind_name, action, record.identity)

            created = await reconciler.create(desired)
            # SAFETY: create always returns a bound identity
            assert created.identity is not None
            records[name] = ResourceRecord(kind_name, created.identity, desired.to_state())
            if created.adopted and action is ApplyAction.CREATED:
                action = ApplyAction.ADOPTED
            return self._outcome(name, kind_name, action, created.identity)

        except ReconcileError as e:
            if e.identity and name not in records:
                # Remote object exists; keep it so the next run resumes from Read
                records[name] = ResourceRecord(kind_name, e.identity, desired.to_state())
            if isinstance(e.cause, ForceNewFieldChanged):
                logger.error("Update rejected", extra={"resource": name, "error": str(e)})
            return self._failed(name, kind_name, e)

    async def _delete_record(self, record: ResourceRecord) -> None:
        spec = _record_spec(record)
        await self._reconciler(record.kind, spec).delete(record.identity)

    async def _delete_one(self, name: str, records: dict[str, ResourceRecord]) -> ResourceOutcome:
        record = records[name]
        try:
            await self._delete_record(record)
        except ReconcileError as e:
            return self._failed(name, record.kind, e)
        del records[name]
        return self._outcome(name, record.kind, ApplyAction.DELETED, record.identity)

    # -------------------------------------------------------------------------
    # Destroy
    # -------------------------------------------------------------------------

    async def destroy(self, manifest: Manifest | None = None) -> RunResult:
        """Delete every resource in state, dependents first."""
        records = self._store.load()
        result = RunResult()

        order: list[str] = []
        if manifest is not None:
            order = [
                d.name for d in reversed(order_declarations(manifest.resources)) if d.name in records
            ]
        order.extend(name for name in reversed(list(records)) if name not in order)

        for name in order:
            if self._cancel_event.is_set():
                result.cancelled = True
                break
            result.outcomes.append(await self._delete_one(name, records))
            self._store.save(records)

        result.end_time = datetime.now(UTC)
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _outcome(
        self, name: str, kind_name: str, action: ApplyAction, identity: str | None
    ) -> ResourceOutcome:
        logger.info(
            "Resource reconciled",
            extra={"resource": name, "kind": kind_name, "action": action.value},
        )
        if action is not ApplyAction.UNCHANGED:
            log_security_audit_event(
                "mutation",
                kind_name,
                identity=identity,
                action=action.value,
                result="success",
            )
        return ResourceOutcome(name=name, kind=kind_name, action=action, identity=identity)

    def _failed(self, name: str, kind_name: str, error: ReconcileError) -> ResourceOutcome:
        if isinstance(error.cause, Cancelled):
            self._cancel_event.set()
        logger.error(
            "Resource failed",
            extra={
                "resource": name,
                "kind": kind_name,
                "stage": error.stage,
                "error": str(error),
                "error_type": type(error.cause).__name__,
            },
        )
        log_security_audit_event(
            "mutation",
            kind_name,
            identity=error.identity,
            action=error.operation,
            result="failure",
            error_type=type(error.cause).__name__,
        )
        return ResourceOutcome(
            name=name,
            kind=kind_name,
            action=ApplyAction.FAILED,
            identity=error.identity,
            error=str(error),
        )


# =============================================================================
# Entry points
# =============================================================================


def build_runner(state_file: Path | None = None) -> ManifestRunner:
    """Build a runner from environment configuration.

    Raises:
        ConfigurationError: If configuration is invalid.
        SecretlessViolationError: If credential secrets are present.
    """
    azure_config = AzureConfig.from_env()
    if state_file is not None:
        azure_config = dataclasses.replace(azure_config, state_file=state_file)
    engine_config = EngineConfig.from_env()

    logger.info(
        "Starting lifecycle engine",
        extra={
            "subscription_id": azure_config.subscription_id,
            "location": azure_config.location,
            "state_file": str(azure_config.state_file),
        },
    )
    return ManifestRunner(
        client=ArmClient.from_config(azure_config),
        store=StateStore(azure_config.state_file),
        engine_config=engine_config,
        default_location=azure_config.location,
    )


def install_signal_handlers(runner: ManifestRunner) -> None:
    """Cancel in-flight waits on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling", extra={"signal": sig.name})
        runner.cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))


async def run_command(
    command: str,
    manifest_path: Path | None,
    state_file: Path | None = None,
) -> tuple[int, list[ResourcePlan] | RunResult | None]:
    """Run plan, apply or destroy.

    Returns:
        Exit code (0 success, 1 failure, 2 security violation) and the
        command's result, if it ran.
    """
    try:
        manifest = load_manifest(manifest_path) if manifest_path is not None else None
        runner = build_runner(state_file)
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1, None
    except SecretlessViolationError as e:
        # SECURITY: credential secrets in the environment are fatal
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"env_vars": e.env_vars},
        )
        return 2, None

    install_signal_handlers(runner)

    try:
        match command:
            case "plan":
                assert manifest is not None
                plans = await runner.plan(manifest)
                return 0, plans
            case "apply":
                assert manifest is not None
                result = await runner.apply(manifest)
            case "destroy":
                result = await runner.destroy(manifest)
            case _:
                raise ValueError(f"Unknown command: {command}")
    except (SpecLoadError, StateStoreError) as e:
        logger.error("Run aborted", extra={"error": str(e)})
        return 1, None

    logger.info(
        "Run complete",
        extra={
            "command": command,
            "success": result.success,
            "cancelled": result.cancelled,
            "duration_seconds": result.duration_seconds,
        },
    )
    return (0 if result.success else 1), result
