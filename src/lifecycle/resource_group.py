"""Resource group kind."""

from __future__ import annotations

import logging
from typing import ClassVar

from azure.core.exceptions import HttpResponseError
from azure.mgmt.resource.resources.models import ResourceGroup

from .adoption import Comparator, FieldCheck, location_equal
from .arm import ArmClient, azure_error_code, classify_azure_error
from .errors import ErrorClass
from .identity import IdentityCodec
from .models import ResourceGroupSpec
from .poller import PollSpec
from .reconciler import ResourceKind, Segments
from .state import Operation

logger = logging.getLogger(__name__)

PROVISIONING_PENDING = frozenset({"Accepted", "Creating", "Updating", "Running"})
PROVISIONING_FAILED = frozenset({"Failed", "Canceled"})


def provisioning_state_of(group: ResourceGroup) -> str:
    properties = group.properties
    return (properties.provisioning_state if properties else None) or "Succeeded"


class ResourceGroupKind(ResourceKind[ResourceGroupSpec, ResourceGroup]):
    """Resource groups in the client's subscription."""

    name: ClassVar[str] = "resource-group"
    codec: ClassVar[IdentityCodec] = IdentityCodec(("subscription_id", "name"))

    force_new_fields: ClassVar[tuple[str, ...]] = ("name", "location")
    update_groups: ClassVar[dict[str, tuple[str, ...]]] = {"tags": ("tags",)}
    computed_fields: ClassVar[tuple[str, ...]] = ("resource_id", "provisioning_state")
    field_comparators: ClassVar[dict[str, Comparator]] = {"location": location_equal}

    def __init__(self, client: ArmClient) -> None:
        self._client = client

    def classify_error(self, error: BaseException) -> ErrorClass:
        return classify_azure_error(error)

    def is_retryable(self, error: BaseException, operation: Operation) -> bool:
        # Re-creating a group that is still being torn down
        return (
            operation is Operation.CREATE
            and isinstance(error, HttpResponseError)
            and azure_error_code(error) == "ResourceGroupBeingDeleted"
        )

    def poll_spec(self, operation: Operation) -> PollSpec:
        if operation is Operation.DELETE:
            return PollSpec.until_absent(pending_statuses={"Deleting"})
        return PollSpec(
            target_statuses={"Succeeded"},
            pending_statuses=PROVISIONING_PENDING,
            fail_statuses=PROVISIONING_FAILED,
        )

    def identity_segments(self, desired: ResourceGroupSpec) -> Segments:
        return (self._client.subscription_id, desired.name)

    def _group_name(self, segments: Segments) -> str:
        subscription_id, name = segments
        if subscription_id != self._client.subscription_id:
            raise ValueError(
                f"Resource group {name} belongs to subscription {subscription_id}, "
                f"client is bound to {self._client.subscription_id}"
            )
        return name

    def remote_create(self, desired: ResourceGroupSpec) -> Segments:
        group = self._client.create_resource_group(
            desired.name, desired.location, desired.tags or None
        )
        return (self._client.subscription_id, group.name or desired.name)

    def remote_fetch(self, segments: Segments) -> ResourceGroup:
        return self._client.get_resource_group(self._group_name(segments))

    def status_of(self, properties: ResourceGroup) -> str:
        return provisioning_state_of(properties)

    def to_desired(
        self,
        properties: ResourceGroup,
        segments: Segments,
        prior: ResourceGroupSpec | None,
    ) -> ResourceGroupSpec:
        return ResourceGroupSpec(
            name=properties.name or segments[1],
            location=properties.location,
            tags=dict(properties.tags or {}),
        )

    def remote_update(self, segments: Segments, group: str, desired: ResourceGroupSpec) -> None:
        match group:
            case "tags":
                self._client.update_resource_group_tags(self._group_name(segments), desired.tags)
            case _:
                raise ValueError(f"Unknown update group for {self.name}: {group}")

    def remote_delete(self, segments: Segments) -> None:
        self._client.begin_delete_resource_group(self._group_name(segments))

    def immutable_checks(self, desired: ResourceGroupSpec) -> list[FieldCheck]:
        return [
            FieldCheck(
                field="location",
                desired=desired.location,
                extract=lambda observed: observed.properties.location,
                equals=location_equal,
            ),
        ]
