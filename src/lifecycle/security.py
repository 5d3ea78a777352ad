"""Secretless credential acquisition and security audit events.

The engine authenticates to Azure with a managed identity only. Any
service principal secret, certificate or password in the environment stops a
run before the first Azure call, and every credential handed out or mutation
made is recorded as a structured audit event.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable(s) {env_vars} set. The lifecycle engine "
    "authenticates with managed identity only; unset them and assign a managed "
    "identity with the required RBAC roles instead."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment.

    Attributes:
        env_vars: Names of the offending variables (never their values).
    """

    def __init__(self, env_vars: list[str]) -> None:
        self.env_vars = env_vars
        super().__init__(SECRETLESS_VIOLATION_MESSAGE.format(env_vars=", ".join(env_vars)))


def detect_credential_env_vars(environ: Mapping[str, str] | None = None) -> list[str]:
    """Names of forbidden credential variables set to a non-empty value."""
    env = os.environ if environ is None else environ
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if env.get(name)]


def enforce_secretless_architecture(environ: Mapping[str, str] | None = None) -> None:
    """Refuse to continue if any credential secret is in the environment.

    Args:
        environ: Environment to inspect; defaults to ``os.environ``.

    Raises:
        SecretlessViolationError: Listing every forbidden variable found.
    """
    detected = detect_credential_env_vars(environ)
    if detected:
        logger.critical(
            "Secretless architecture violation",
            extra={
                "security_event": "credential_detected",
                "env_vars": detected,
                "action": "run_blocked",
            },
        )
        raise SecretlessViolationError(detected)

    logger.debug("No credential secrets in environment")


def _redact_client_id(client_id: str) -> str:
    return client_id[:8] + "..." if len(client_id) > 8 else client_id


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Return a managed identity credential once the environment is clean.

    Args:
        client_id: Client ID of a user-assigned identity; None selects the
            system-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_architecture()

    identity_type = "user-assigned" if client_id else "system-assigned"
    log_security_audit_event(
        "credential_issued",
        "managed-identity",
        identity=_redact_client_id(client_id) if client_id else None,
        action=identity_type,
        result="success",
    )
    if client_id:
        return ManagedIdentityCredential(client_id=client_id)
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    kind: str,
    *,
    identity: str | None = None,
    action: str | None = None,
    result: str | None = None,
    error_type: str | None = None,
) -> None:
    """Log one audit event with structured fields for SIEM ingestion.

    Args:
        event_type: credential_issued, mutation, ...
        kind: Resource kind (or credential type) acted on.
        identity: Engine identity of the resource, if bound.
        action: What was done (created, deleted, ...).
        result: success or failure.
        error_type: Exception class name on failure.
    """
    fields = {
        "security_audit": True,
        "event_type": event_type,
        "kind": kind,
        "identity": identity,
        "action": action,
        "result": result,
    }
    if error_type is not None:
        fields["error_type"] = error_type
    logger.info(f"Security audit: {event_type}", extra=fields)
