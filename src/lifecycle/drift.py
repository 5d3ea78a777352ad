"""Plan-time drift probing.

During planning the engine looks at the remote system read-only and annotates
the plan: will the resource be created, adopted, updated in place or replaced?
A probe never fails planning because of a remote error; permission problems,
throttling and unknown failures become advisory notes instead.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ErrorClass, default_classify
from .state import FieldRole, ObservedState
from .timing import call_remote

logger = logging.getLogger(__name__)

NOTE_PERMISSION_DENIED = (
    "Insufficient permission for read-only detection during plan; "
    "proceeding without confirming the remote state."
)
NOTE_TRANSIENT = (
    "Throttling or temporary error during plan detection; "
    "proceeding without adoption confirmation."
)
NOTE_UNKNOWN = "Could not confirm the remote state during plan (unknown error)."
NOTE_WILL_CREATE = "Resource does not exist and will be created on apply."
NOTE_WILL_ADOPT = "Detected existing resource and will adopt it on apply."


def _plain(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, exclude_none=True)
    return value


class DriftAction(str, Enum):
    """What apply is expected to do for a resource."""

    NONE = "none"
    CREATE = "create"
    ADOPT = "adopt"
    UPDATE = "update"
    REPLACE = "replace"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"

    # Resource in state that is no longer declared
    DELETE = "delete"


@dataclass(frozen=True)
class FieldDrift:
    """A desired field that differs from the observed value."""

    field: str
    role: FieldRole
    desired: Any
    actual: Any


@dataclass
class DriftReport:
    """Advisory plan annotation for one resource.

    Attributes:
        action: Expected apply action.
        notes: Human-readable advisories.
        drifts: Field differences, if the resource was observed.
        error_class: Classification of the probe error, if any.
        observed: The observed state, if the fetch succeeded.
    """

    action: DriftAction
    notes: list[str] = field(default_factory=list)
    drifts: list[FieldDrift] = field(default_factory=list)
    error_class: ErrorClass | None = None
    observed: ObservedState[Any] | None = None

    @property
    def exists(self) -> bool:
        return self.observed is not None

    @property
    def has_drift(self) -> bool:
        return bool(self.drifts)

    def fields_with_role(self, role: FieldRole) -> list[str]:
        return [d.field for d in self.drifts if d.role is role]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "action": self.action.value,
            "notes": list(self.notes),
            "drifts": [
                {
                    "field": d.field,
                    "role": d.role.value,
                    "desired": _plain(d.desired),
                    "actual": _plain(d.actual),
                }
                for d in self.drifts
            ],
            "error_class": self.error_class.value if self.error_class else None,
            "status": self.observed.status if self.observed else None,
        }


class DriftDetector:
    """Best-effort remote probe used only while planning."""

    def __init__(
        self, classifier: Callable[[BaseException], ErrorClass] = default_classify
    ) -> None:
        self._classify = classifier

    async def probe(
        self,
        fetch: Callable[[], Any],
        compare: Callable[[ObservedState[Any]], list[FieldDrift]] | None = None,
        *,
        adopting: bool = False,
    ) -> DriftReport:
        """Fetch the remote object and describe the expected apply action.

        Args:
            fetch: Returns the ObservedState or raises.
            compare: Lists field drift between desired and observed state.
            adopting: The resource is not yet bound to an identity, so an
                existing object will be adopted rather than updated.

        Returns:
            A DriftReport. Remote errors never propagate.
        """
        try:
            observed: ObservedState[Any] = await call_remote(fetch)
        except Exception as e:
            error_class = self._classify(e)
            if error_class is ErrorClass.NOT_FOUND:
                return DriftReport(
                    action=DriftAction.CREATE,
                    notes=[NOTE_WILL_CREATE],
                    error_class=error_class,
                )

            note = {
                ErrorClass.PERMISSION_DENIED: NOTE_PERMISSION_DENIED,
                ErrorClass.TRANSIENT: NOTE_TRANSIENT,
            }.get(error_class, NOTE_UNKNOWN)
            logger.warning(
                "Drift probe failed, continuing plan",
                extra={"error_class": error_class.value, "error": str(e)},
            )
            return DriftReport(action=DriftAction.UNKNOWN, notes=[note], error_class=error_class)

        drifts = compare(observed) if compare is not None else []
        report = DriftReport(action=DriftAction.NONE, drifts=drifts, observed=observed)
        force_new = report.fields_with_role(FieldRole.FORCE_NEW)
        mutable = report.fields_with_role(FieldRole.MUTABLE)

        if adopting:
            if force_new:
                report.action = DriftAction.CONFLICT
                report.notes.append(
                    f"Detected existing resource whose fixed field(s) {', '.join(force_new)} "
                    f"differ; adoption will be refused on apply."
                )
            else:
                report.action = DriftAction.ADOPT
                report.notes.append(NOTE_WILL_ADOPT)
                if mutable:
                    report.notes.append(
                        f"Field(s) {', '.join(mutable)} differ and won't be aligned "
                        f"in this apply."
                    )
        elif force_new:
            report.action = DriftAction.REPLACE
            report.notes.append(
                f"Field(s) {', '.join(force_new)} cannot change in place; "
                f"the resource will be replaced."
            )
        elif mutable:
            report.action = DriftAction.UPDATE

        return report
