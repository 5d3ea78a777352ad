"""Configuration management with validation.

Timing configuration is validated at construction so that a bad value fails
at startup rather than in the middle of a long-running wait.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .poller import PollSpec
from .state import Operation


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CREATE_TIMEOUT_SECONDS = 600
DEFAULT_UPDATE_TIMEOUT_SECONDS = 600
DEFAULT_DELETE_TIMEOUT_SECONDS = 300
MIN_OPERATION_TIMEOUT_SECONDS = 1
MAX_OPERATION_TIMEOUT_SECONDS = 6 * 3600

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_INITIAL_DELAY_SECONDS = 5.0
MAX_POLL_INTERVAL_SECONDS = 300.0

DEFAULT_RETRY_BASE_DELAY_SECONDS = 3.0
DEFAULT_RETRY_DELAY_INCREMENT_SECONDS = 3.0
DEFAULT_RETRY_DEADLINE_SECONDS = 600
MAX_RETRY_DELAY_SECONDS = 120.0

DEFAULT_STATE_FILE = "lce-state.json"

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max state file
MAX_RESOURCES_PER_MANIFEST = 500

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


def _get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def _get_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number: {value}") from e


def _get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class EngineConfig:
    """Timing and retry configuration shared by all resource kinds.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Per-operation wait budgets
    create_timeout_seconds: int = DEFAULT_CREATE_TIMEOUT_SECONDS
    update_timeout_seconds: int = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete_timeout_seconds: int = DEFAULT_DELETE_TIMEOUT_SECONDS

    # Polling
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS

    # Linear backoff for transient failures
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_delay_increment_seconds: float = DEFAULT_RETRY_DELAY_INCREMENT_SECONDS
    retry_deadline_seconds: int = DEFAULT_RETRY_DEADLINE_SECONDS

    # Emit one audit record per reconciler operation
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        for name in ("create_timeout_seconds", "update_timeout_seconds", "delete_timeout_seconds"):
            value = getattr(self, name)
            if not (MIN_OPERATION_TIMEOUT_SECONDS <= value <= MAX_OPERATION_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                    f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
                )

        if not (0 <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS):
            errors.append(
                f"poll_interval_seconds must be between 0 and {MAX_POLL_INTERVAL_SECONDS}"
            )
        if self.initial_delay_seconds < 0:
            errors.append("initial_delay_seconds must not be negative")

        for name in ("retry_base_delay_seconds", "retry_delay_increment_seconds"):
            value = getattr(self, name)
            if not (0 <= value <= MAX_RETRY_DELAY_SECONDS):
                errors.append(f"{name} must be between 0 and {MAX_RETRY_DELAY_SECONDS}")

        if self.retry_deadline_seconds < 0:
            errors.append("retry_deadline_seconds must not be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def timeout_for(self, operation: Operation) -> int:
        """Wait budget for an operation (reads use the create budget)."""
        match operation:
            case Operation.UPDATE:
                return self.update_timeout_seconds
            case Operation.DELETE:
                return self.delete_timeout_seconds
            case _:
                return self.create_timeout_seconds

    def apply_timing(self, spec: PollSpec, operation: Operation) -> PollSpec:
        """Stamp this configuration's timing onto a kind's status vocabulary."""
        return spec.with_timing(
            timeout=float(self.timeout_for(operation)),
            poll_interval=self.poll_interval_seconds,
            initial_delay=self.initial_delay_seconds,
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            LCE_CREATE_TIMEOUT: Create wait budget in seconds (default: 600)
            LCE_UPDATE_TIMEOUT: Update wait budget in seconds (default: 600)
            LCE_DELETE_TIMEOUT: Delete wait budget in seconds (default: 300)
            LCE_POLL_INTERVAL: Seconds between status fetches (default: 5)
            LCE_INITIAL_DELAY: Seconds before the first status fetch (default: 5)
            LCE_RETRY_BASE_DELAY: First retry delay in seconds (default: 3)
            LCE_RETRY_DELAY_INCREMENT: Added per retry in seconds (default: 3)
            LCE_RETRY_DEADLINE: Total retry budget in seconds (default: 600)
            LCE_AUDIT_LOGGING: Emit per-operation audit records (default: true)
        """
        return cls(
            create_timeout_seconds=_get_int("LCE_CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
            update_timeout_seconds=_get_int("LCE_UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
            delete_timeout_seconds=_get_int("LCE_DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            poll_interval_seconds=_get_float("LCE_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            initial_delay_seconds=_get_float("LCE_INITIAL_DELAY", DEFAULT_INITIAL_DELAY_SECONDS),
            retry_base_delay_seconds=_get_float(
                "LCE_RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS
            ),
            retry_delay_increment_seconds=_get_float(
                "LCE_RETRY_DELAY_INCREMENT", DEFAULT_RETRY_DELAY_INCREMENT_SECONDS
            ),
            retry_deadline_seconds=_get_int("LCE_RETRY_DEADLINE", DEFAULT_RETRY_DEADLINE_SECONDS),
            enable_audit_logging=_get_bool("LCE_AUDIT_LOGGING", True),
        )


@dataclass(frozen=True)
class AzureConfig:
    """Azure target configuration for the command-line front end.

    SECURITY: Authentication is always managed identity; only the optional
    user-assigned client ID is configurable.
    """

    subscription_id: str
    location: str = ""
    client_id: str | None = None
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> AzureConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            AZURE_LOCATION: Default location for declarations without one
            AZURE_CLIENT_ID: User-assigned managed identity client ID (optional)
            LCE_STATE_FILE: Path of the identity state file (default: lce-state.json)
        """
        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            state_file=Path(os.environ.get("LCE_STATE_FILE", DEFAULT_STATE_FILE)),
        )
