"""Observed state and field roles shared by the engine components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Generic, TypeVar

P = TypeVar("P")


class Operation(str, Enum):
    """Reconciler operations."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class FieldRole(str, Enum):
    """How a desired-state field may change over the resource lifetime."""

    # Change requires delete + create
    FORCE_NEW = "force_new"

    # Changed in place by Update
    MUTABLE = "mutable"

    # Assigned by the service, read-only
    COMPUTED = "computed"


@dataclass(frozen=True)
class ObservedState(Generic[P]):
    """Snapshot of a remote object from one fetch.

    Replaced wholesale on every Read; never merged.

    Attributes:
        identity: Encoded identity the snapshot was fetched for.
        status: Service-specific status string.
        properties: Per-kind typed snapshot of the remote fields.
        fetched_at: When the fetch completed.
    """

    identity: str
    status: str
    properties: P
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))
