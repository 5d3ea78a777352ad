"""Persistent identity state for manifest runs.

The engine itself keeps no state between calls. The command-line front end
records, per declaration name, the kind, the encoded identity and the last
applied desired state, so the next run can Read/Update/Delete by identity.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .config import MAX_STATE_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


@dataclass
class ResourceRecord:
    """State of one declared resource."""

    kind: str
    identity: str
    desired: dict[str, Any] = field(default_factory=dict)


class StateStore:
    """JSON state file, replaced atomically on save.

    Records keep insertion order, which is creation order; teardown walks it
    backwards.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, ResourceRecord]:
        """Load all records; a missing file is an empty state.

        Raises:
            StateStoreError: If the file is unreadable, too large or corrupt.
        """
        if not self._path.exists():
            return {}

        try:
            size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        # SECURITY: Check file size before reading to prevent DoS
        if size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Corrupt state file {self._path}: {e}") from e

        if not isinstance(raw, dict) or raw.get("version") != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state file format in {self._path} "
                f"(expected version {STATE_FORMAT_VERSION})"
            )

        records: dict[str, ResourceRecord] = {}
        for name, entry in (raw.get("resources") or {}).items():
            try:
                records[name] = ResourceRecord(
                    kind=entry["kind"],
                    identity=entry["identity"],
                    desired=dict(entry.get("desired") or {}),
                )
            except (KeyError, TypeError) as e:
                raise StateStoreError(
                    f"Corrupt entry '{name}' in state file {self._path}: {e}"
                ) from e
        return records

    def save(self, records: dict[str, ResourceRecord]) -> None:
        """Write all records, replacing the file atomically.

        Raises:
            StateStoreError: If the file cannot be written.
        """
        payload = {
            "version": STATE_FORMAT_VERSION,
            "resources": {name: asdict(record) for name, record in records.items()},
        }
        directory = self._path.parent if str(self._path.parent) else Path(".")

        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".lce-state-", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2)
                    handle.write("\n")
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug("State saved", extra={"path": str(self._path), "resources": len(records)})
