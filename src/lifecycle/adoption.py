"""Adopt-or-create resolution.

Remote create calls are not idempotent: re-running Create after a partial
failure finds the object already there. Before creating, the reconciler asks
the resolver whether an object with the same identity exists. If it does, its
fixed attributes are compared with the desired ones; a match is adopted, a
mismatch is a conflict that can never be fixed in place.

Comparison is field specific. Azure region names compare case- and
whitespace-insensitively, character sets case-insensitively, and composite
values such as "charset,collation" against the joined observed parts.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ErrorClass, default_classify
from .state import ObservedState
from .timing import call_remote

logger = logging.getLogger(__name__)

Comparator = Callable[[Any, Any], bool]


# =============================================================================
# Comparators
# =============================================================================


def exact(desired: Any, actual: Any) -> bool:
    return desired == actual


def case_insensitive(desired: Any, actual: Any) -> bool:
    if desired is None or actual is None:
        return desired is actual
    return str(desired).casefold() == str(actual).casefold()


def normalize_location(location: str | None) -> str:
    """Canonical Azure region name ("West Europe" -> "westeurope")."""
    if not location:
        return ""
    return "".join(location.split()).lower()


def location_equal(desired: Any, actual: Any) -> bool:
    return normalize_location(desired) == normalize_location(actual)


def joined_case_insensitive(separator: str = ",") -> Comparator:
    """Compare a possibly composite desired value to observed parts.

    A desired value containing the separator must match all observed parts
    joined by it; a single desired value is compared with the first part only.
    Observed values may be a sequence of parts or an already joined string.
    """

    def compare(desired: Any, actual: Any) -> bool:
        if isinstance(actual, list | tuple):
            parts = [str(part) for part in actual]
        else:
            parts = str(actual).split(separator)
        wanted = str(desired)
        if separator in wanted:
            return wanted.casefold() == separator.join(parts).casefold()
        return bool(parts) and wanted.casefold() == parts[0].casefold()

    return compare


def _as_plain(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, exclude_none=True)
    return value


def subset_equal(desired: Any, actual: Any) -> bool:
    """Desired mappings match if every declared key matches recursively.

    Keys the service filled in on its own (defaults, computed properties) are
    ignored. Lists compare element-wise with the same rule.
    """
    desired = _as_plain(desired)
    actual = _as_plain(actual)

    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return not desired and actual is None
        return all(k in actual and subset_equal(v, actual[k]) for k, v in desired.items())

    if isinstance(desired, list | tuple):
        if not isinstance(actual, list | tuple) or len(desired) != len(actual):
            return False
        return all(subset_equal(d, a) for d, a in zip(desired, actual, strict=True))

    return desired == actual


# =============================================================================
# Checks and decisions
# =============================================================================


@dataclass(frozen=True)
class FieldCheck:
    """One immutable field to verify before adopting.

    Attributes:
        field: Desired-state field name, reported in conflicts.
        desired: Desired value.
        extract: Pulls the comparable value out of the observed state.
        equals: Field-specific equality.
        skip_if_unset: Skip the check when the desired value is None or "".
    """

    field: str
    desired: Any
    extract: Callable[[ObservedState[Any]], Any]
    equals: Comparator = exact
    skip_if_unset: bool = True


class AdoptionOutcome(str, Enum):
    NOT_FOUND = "not_found"
    ADOPTABLE = "adoptable"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class AdoptionDecision:
    """Result of one resolution; only steers the Create call that asked."""

    outcome: AdoptionOutcome
    existing: ObservedState[Any] | None = None
    field: str | None = None
    existing_value: Any = None
    desired_value: Any = None

    @classmethod
    def not_found(cls) -> AdoptionDecision:
        return cls(outcome=AdoptionOutcome.NOT_FOUND)

    @classmethod
    def adoptable(cls, existing: ObservedState[Any]) -> AdoptionDecision:
        return cls(outcome=AdoptionOutcome.ADOPTABLE, existing=existing)

    @classmethod
    def conflicting(
        cls,
        field: str,
        existing_value: Any,
        desired_value: Any,
        existing: ObservedState[Any] | None = None,
    ) -> AdoptionDecision:
        return cls(
            outcome=AdoptionOutcome.CONFLICT,
            existing=existing,
            field=field,
            existing_value=existing_value,
            desired_value=desired_value,
        )


class AdoptionResolver:
    """Decides between create, adopt and conflict for one identity."""

    def __init__(
        self, classifier: Callable[[BaseException], ErrorClass] = default_classify
    ) -> None:
        self._classify = classifier

    async def resolve(
        self,
        identity: str,
        fetch_existing: Callable[[], Any],
        immutable_fields: Sequence[FieldCheck],
    ) -> AdoptionDecision:
        """Look up ``identity`` and check the immutable fields.

        Args:
            identity: Encoded identity the desired state maps to.
            fetch_existing: Returns the ObservedState, or raises "not found".
            immutable_fields: Checks applied in order; the first mismatch wins.

        Raises:
            Exception: Any fetch error other than "not found", unchanged.
        """
        try:
            existing: ObservedState[Any] = await call_remote(fetch_existing)
        except Exception as e:
            if self._classify(e) is ErrorClass.NOT_FOUND:
                logger.debug("No existing resource to adopt", extra={"identity": identity})
                return AdoptionDecision.not_found()
            raise

        for check in immutable_fields:
            if check.skip_if_unset and check.desired in (None, ""):
                continue
            actual = check.extract(existing)
            if not check.equals(check.desired, actual):
                logger.warning(
                    "Existing resource conflicts with immutable field",
                    extra={
                        "identity": identity,
                        "field": check.field,
                        "existing_value": str(actual),
                        "desired_value": str(check.desired),
                    },
                )
                return AdoptionDecision.conflicting(
                    check.field, actual, check.desired, existing=existing
                )

        logger.info("Existing resource is adoptable", extra={"identity": identity})
        return AdoptionDecision.adoptable(existing)
