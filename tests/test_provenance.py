"""Tests for operation provenance tracking."""

from __future__ import annotations

import logging
from datetime import UTC
from unittest.mock import patch

import pytest

from lifecycle.provenance import (
    ENGINE_VERSION,
    OperationProvenance,
    ProvenanceLogger,
    get_provenance_logger,
)


class TestOperationProvenance:
    """Tests for OperationProvenance dataclass."""

    def test_default_values(self) -> None:
        """Default provenance has expected values."""
        provenance = OperationProvenance()
        assert provenance.kind == ""
        assert provenance.engine_version == ENGINE_VERSION
        assert provenance.identity is None
        assert provenance.adopted is False
        assert provenance.failed_stage is None
        assert provenance.error is None

    def test_timestamp_is_utc(self) -> None:
        """Timestamp uses UTC timezone."""
        assert OperationProvenance().timestamp.tzinfo is UTC

    def test_to_dict(self) -> None:
        """to_dict converts to a serializable dictionary."""
        provenance = OperationProvenance(
            kind="postgres-database",
            operation="create",
            identity="rg:srv:db",
            outcome="adopted",
            adopted=True,
        )
        result = provenance.to_dict()

        assert result["kind"] == "postgres-database"
        assert result["identity"] == "rg:srv:db"
        assert result["adopted"] is True
        assert isinstance(result["timestamp"], str)
        assert result["timestamp"].endswith("+00:00")


class TestProvenanceLogger:
    """Tests for ProvenanceLogger class."""

    def test_reads_environment(self) -> None:
        """Logger stamps records with build and instance metadata."""
        with patch.dict(
            "os.environ",
            {"GIT_COMMIT_SHA": "abc123", "CONTAINER_INSTANCE_ID": "instance-7"},
        ):
            provenance_logger = ProvenanceLogger()

        record = provenance_logger.create_provenance("resource-group", "delete", "sub:rg")
        assert record.git_commit_sha == "abc123"
        assert record.instance_id == "instance-7"
        assert record.operation == "delete"
        assert record.identity == "sub:rg"

    def test_success_logs_info(self, caplog: pytest.LogCaptureFixture) -> None:
        """Completed operations log at INFO with flattened fields."""
        record = ProvenanceLogger().create_provenance("resource-group", "create")
        record.outcome = "created"

        with caplog.at_level(logging.INFO, logger="lifecycle.provenance"):
            ProvenanceLogger().log_provenance(record)

        logged = caplog.records[-1]
        assert logged.levelno == logging.INFO
        assert logged.outcome == "created"
        assert logged.provenance["kind"] == "resource-group"

    def test_failure_logs_error(self, caplog: pytest.LogCaptureFixture) -> None:
        """Failed operations log at ERROR."""
        record = ProvenanceLogger().create_provenance("resource-group", "create")
        record.error = "boom"
        record.failed_stage = "poll"

        with caplog.at_level(logging.INFO, logger="lifecycle.provenance"):
            ProvenanceLogger().log_provenance(record)

        assert caplog.records[-1].levelno == logging.ERROR


class TestGetProvenanceLogger:
    """Tests for the global provenance logger."""

    def test_returns_singleton(self) -> None:
        """Repeated calls return the same instance."""
        assert get_provenance_logger() is get_provenance_logger()
