"""Operation provenance for audit.

Every reconciler operation is stamped with one structured record that answers:
- "What happened to this resource, and when?"
- "Was it created by us or adopted?"
- "Which engine build and source revision ran it?"

Records go to the structured logger (JSON on stderr when the CLI configures
logging), so they can be shipped to Log Analytics with the container logs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
ENGINE_VERSION = os.environ.get("LCE_VERSION", "dev")


@dataclass
class OperationProvenance:
    """Provenance record for one reconciler operation."""

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Engine identity
    engine_version: str = ENGINE_VERSION
    instance_id: str = ""
    git_commit_sha: str = ""

    # Resource
    kind: str = ""
    operation: str = ""
    identity: str | None = None

    # Outcome: created, adopted, updated, unchanged, read, gone, deleted
    outcome: str = ""
    adopted: bool = False

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    failed_stage: str | None = None
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records for audit."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        kind: str,
        operation: str,
        identity: str | None = None,
    ) -> OperationProvenance:
        """Create a new provenance record for an operation.

        Args:
            kind: Resource kind name.
            operation: create, read, update or delete.
            identity: Identity key, when already known.
        """
        return OperationProvenance(
            engine_version=ENGINE_VERSION,
            instance_id=self._instance_id,
            git_commit_sha=self._git_commit_sha,
            kind=kind,
            operation=operation,
            identity=identity,
        )

    def log_provenance(self, provenance: OperationProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.ERROR if provenance.error else logging.INFO

        logger.log(
            log_level,
            "Operation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "kind": provenance.kind,
                "operation": provenance.operation,
                "identity": provenance.identity,
                "outcome": provenance.outcome,
                "adopted": provenance.adopted,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
