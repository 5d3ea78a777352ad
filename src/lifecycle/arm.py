"""Azure Resource Manager binding for the resource kinds.

Thin synchronous wrapper over ResourceManagementClient. Long-running
operations are started with the SDK's begin_* calls and never awaited here:
the reconciler's state poller observes their progress through plain GETs, so
the same timeout and cancellation rules apply to every kind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    GenericResource,
    ResourceGroup,
    ResourceGroupPatchable,
)

from .config import AzureConfig
from .errors import ErrorClass, default_classify
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)

# HTTP status codes ARM returns for throttling and temporary unavailability
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# ARM error codes that clear up on their own
TRANSIENT_ERROR_CODES = frozenset(
    {
        "AnotherOperationInProgress",
        "RetryableError",
        "ServerBusy",
        "ServiceUnavailable",
        "TooManyRequests",
    }
)


def azure_error_code(error: HttpResponseError) -> str | None:
    odata = getattr(error, "error", None)
    return getattr(odata, "code", None) if odata is not None else None


def classify_azure_error(error: BaseException) -> ErrorClass:
    """Sort azure-core errors into the engine's error classes."""
    if isinstance(error, ResourceNotFoundError):
        return ErrorClass.NOT_FOUND
    if isinstance(error, ClientAuthenticationError):
        return ErrorClass.PERMISSION_DENIED
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, HttpResponseError):
        status_code = error.status_code
        if status_code == 404:
            return ErrorClass.NOT_FOUND
        if status_code in (401, 403):
            return ErrorClass.PERMISSION_DENIED
        if status_code in TRANSIENT_STATUS_CODES:
            return ErrorClass.TRANSIENT
        if azure_error_code(error) in TRANSIENT_ERROR_CODES:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL
    return default_classify(error)


# =============================================================================
# Resource IDs
# =============================================================================


@dataclass(frozen=True)
class ArmResourceId:
    """Parsed resource group scoped ARM resource ID.

    For nested resources ``resource_type`` and ``name`` hold every level,
    e.g. ``flexibleServers/databases`` and ``server1/db1``.
    """

    subscription_id: str
    resource_group: str
    provider_namespace: str
    resource_type: str
    name: str

    @property
    def full_type(self) -> str:
        return f"{self.provider_namespace}/{self.resource_type}"


def resource_group_id(subscription_id: str, name: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{name}"


def resource_id(
    subscription_id: str,
    resource_group: str,
    provider_namespace: str,
    resource_type: str,
    name: str,
) -> str:
    """Build an ARM resource ID, interleaving nested types with their names."""
    types = resource_type.split("/")
    names = name.split("/")
    if len(types) != len(names):
        raise ValueError(
            f"resource type {resource_type!r} has {len(types)} level(s) "
            f"but name {name!r} has {len(names)}"
        )
    path = "/".join(f"{t}/{n}" for t, n in zip(types, names, strict=True))
    return f"{resource_group_id(subscription_id, resource_group)}/providers/{provider_namespace}/{path}"


def parse_resource_id(arm_id: str) -> ArmResourceId:
    """Parse a resource group scoped ARM resource ID.

    Azure resource IDs follow the pattern:
    /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}[/{type}/{name}...]

    Raises:
        ValueError: If the ID does not follow the pattern.
    """
    scope, sep, provider_portion = arm_id.partition("/providers/")
    scope_parts = scope.strip("/").split("/")
    if (
        not sep
        or len(scope_parts) != 4
        or scope_parts[0].lower() != "subscriptions"
        or scope_parts[2].lower() != "resourcegroups"
    ):
        raise ValueError(f"Not a resource group scoped resource ID: {arm_id}")

    # The provider portion is like: Microsoft.Network/virtualNetworks/myVnet
    segments = provider_portion.strip("/").split("/")
    if len(segments) < 3 or len(segments) % 2 != 1 or not all(segments):
        raise ValueError(f"Malformed provider path in resource ID: {arm_id}")

    return ArmResourceId(
        subscription_id=scope_parts[1],
        resource_group=scope_parts[3],
        provider_namespace=segments[0],
        resource_type="/".join(segments[1::2]),
        name="/".join(segments[2::2]),
    )


# =============================================================================
# Client
# =============================================================================


class ArmClient:
    """Resource group and generic resource calls used by the kinds."""

    def __init__(self, subscription_id: str, credential: TokenCredential) -> None:
        self._subscription_id = subscription_id
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    @classmethod
    def from_config(cls, config: AzureConfig) -> ArmClient:
        """Build a client authenticated with managed identity.

        SECURITY: Secretless architecture - always use managed identity.
        """
        credential = get_managed_identity_credential(config.client_id)
        return cls(config.subscription_id, credential)

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    # -------------------------------------------------------------------------
    # Resource groups
    # -------------------------------------------------------------------------

    def get_resource_group(self, name: str) -> ResourceGroup:
        return self._client.resource_groups.get(resource_group_name=name)

    def create_resource_group(
        self, name: str, location: str, tags: dict[str, str] | None = None
    ) -> ResourceGroup:
        logger.debug("PUT resource group", extra={"resource_group": name, "location": location})
        return self._client.resource_groups.create_or_update(
            resource_group_name=name,
            parameters=ResourceGroup(location=location, tags=tags),
        )

    def update_resource_group_tags(self, name: str, tags: dict[str, str]) -> ResourceGroup:
        logger.debug("PATCH resource group tags", extra={"resource_group": name})
        return self._client.resource_groups.update(
            resource_group_name=name,
            parameters=ResourceGroupPatchable(tags=tags),
        )

    def begin_delete_resource_group(self, name: str) -> Any:
        logger.debug("DELETE resource group", extra={"resource_group": name})
        return self._client.resource_groups.begin_delete(resource_group_name=name)

    # -------------------------------------------------------------------------
    # Generic resources
    # -------------------------------------------------------------------------

    def get_resource(self, arm_id: str, api_version: str) -> GenericResource:
        return self._client.resources.get_by_id(resource_id=arm_id, api_version=api_version)

    def begin_put_resource(
        self, arm_id: str, api_version: str, parameters: GenericResource
    ) -> Any:
        logger.debug("PUT resource", extra={"resource_id": arm_id, "api_version": api_version})
        return self._client.resources.begin_create_or_update_by_id(
            resource_id=arm_id,
            api_version=api_version,
            parameters=parameters,
        )

    def begin_patch_resource(
        self, arm_id: str, api_version: str, parameters: GenericResource
    ) -> Any:
        logger.debug("PATCH resource", extra={"resource_id": arm_id, "api_version": api_version})
        return self._client.resources.begin_update_by_id(
            resource_id=arm_id,
            api_version=api_version,
            parameters=parameters,
        )

    def begin_delete_resource(self, arm_id: str, api_version: str) -> Any:
        logger.debug("DELETE resource", extra={"resource_id": arm_id, "api_version": api_version})
        return self._client.resources.begin_delete_by_id(
            resource_id=arm_id,
            api_version=api_version,
        )
