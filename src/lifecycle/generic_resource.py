"""Generic ARM resource kind.

Manages any resource group scoped, top-level ARM resource through the
provider-agnostic ``resources`` API. Tags are patched on their own; SKU and
properties are re-applied with a full PUT.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from azure.mgmt.resource.resources.models import GenericResource, Sku

from .adoption import Comparator, FieldCheck, case_insensitive, location_equal, subset_equal
from .arm import ArmClient, classify_azure_error, parse_resource_id, resource_id
from .errors import ErrorClass
from .identity import IdentityCodec
from .models import GenericResourceSpec, SkuSpec
from .poller import PollSpec
from .reconciler import ResourceKind, Segments
from .state import Operation

logger = logging.getLogger(__name__)

PROVISIONING_PENDING = frozenset({"Accepted", "Creating", "Updating", "Provisioning", "Running"})
PROVISIONING_FAILED = frozenset({"Failed", "Canceled"})


def provisioning_state_of(resource: GenericResource) -> str:
    """Provisioning state from ``properties``; resources without one are ready."""
    properties = resource.properties
    if isinstance(properties, dict):
        state = properties.get("provisioningState")
        if state:
            return str(state)
    return "Succeeded"


class GenericResourceKind(ResourceKind[GenericResourceSpec, GenericResource]):
    """Any ARM resource addressed by group, type and name.

    One instance serves one API version, since ARM needs it on every call.
    """

    name: ClassVar[str] = "generic-resource"
    codec: ClassVar[IdentityCodec] = IdentityCodec(("resource_group", "resource_type", "name"))

    force_new_fields: ClassVar[tuple[str, ...]] = (
        "resource_group",
        "provider_namespace",
        "resource_type",
        "name",
        "location",
        "kind",
    )
    update_groups: ClassVar[dict[str, tuple[str, ...]]] = {
        "tags": ("tags",),
        "configuration": ("sku", "properties"),
    }
    computed_fields: ClassVar[tuple[str, ...]] = ("resource_id", "provisioning_state")
    field_comparators: ClassVar[dict[str, Comparator]] = {
        "provider_namespace": case_insensitive,
        "resource_type": case_insensitive,
        "location": location_equal,
        "kind": case_insensitive,
        "sku": subset_equal,
        "properties": subset_equal,
    }

    def __init__(self, client: ArmClient, api_version: str) -> None:
        self._client = client
        self._api_version = api_version

    @property
    def api_version(self) -> str:
        return self._api_version

    def classify_error(self, error: BaseException) -> ErrorClass:
        return classify_azure_error(error)

    def poll_spec(self, operation: Operation) -> PollSpec:
        if operation is Operation.DELETE:
            return PollSpec.until_absent(pending_statuses={"Deleting"})
        return PollSpec(
            target_statuses={"Succeeded"},
            pending_statuses=PROVISIONING_PENDING,
            fail_statuses=PROVISIONING_FAILED,
        )

    def identity_segments(self, desired: GenericResourceSpec) -> Segments:
        return (
            desired.resource_group,
            f"{desired.provider_namespace}/{desired.resource_type}",
            desired.name,
        )

    def _arm_id(self, segments: Segments) -> str:
        resource_group, full_type, name = segments
        namespace, _, resource_type = full_type.partition("/")
        return resource_id(
            self._client.subscription_id, resource_group, namespace, resource_type, name
        )

    def _put_parameters(self, desired: GenericResourceSpec) -> GenericResource:
        sku: Sku | None = None
        if desired.sku is not None:
            sku = Sku(**desired.sku.model_dump(exclude_none=True))
        return GenericResource(
            location=desired.location,
            tags=desired.tags or None,
            kind=desired.kind,
            sku=sku,
            properties=desired.properties,
        )

    def remote_create(self, desired: GenericResourceSpec) -> Segments:
        arm_id = self._arm_id(self.identity_segments(desired))
        self._client.begin_put_resource(arm_id, self._api_version, self._put_parameters(desired))
        parsed = parse_resource_id(arm_id)
        return (parsed.resource_group, parsed.full_type, parsed.name)

    def remote_fetch(self, segments: Segments) -> GenericResource:
        return self._client.get_resource(self._arm_id(segments), self._api_version)

    def status_of(self, properties: GenericResource) -> str:
        return provisioning_state_of(properties)

    def to_desired(
        self,
        properties: GenericResource,
        segments: Segments,
        prior: GenericResourceSpec | None,
    ) -> GenericResourceSpec:
        resource_group, full_type, name = segments
        if properties.id:
            parsed = parse_resource_id(properties.id)
            resource_group, full_type, name = parsed.resource_group, parsed.full_type, parsed.name
        namespace, _, resource_type = full_type.partition("/")

        sku: SkuSpec | None = None
        if properties.sku is not None and properties.sku.name:
            sku = SkuSpec(
                name=properties.sku.name,
                tier=properties.sku.tier,
                size=properties.sku.size,
                family=properties.sku.family,
                capacity=properties.sku.capacity,
            )

        remote_properties: dict[str, Any] = (
            dict(properties.properties) if isinstance(properties.properties, dict) else {}
        )
        return GenericResourceSpec(
            resource_group=resource_group,
            provider_namespace=namespace,
            resource_type=resource_type,
            name=name,
            api_version=prior.api_version if prior else self._api_version,
            location=properties.location,
            kind=properties.kind,
            sku=sku,
            properties=remote_properties,
            tags=dict(properties.tags or {}),
        )

    def remote_update(self, segments: Segments, group: str, desired: GenericResourceSpec) -> None:
        arm_id = self._arm_id(segments)
        match group:
            case "tags":
                self._client.begin_patch_resource(
                    arm_id, self._api_version, GenericResource(tags=desired.tags)
                )
            case "configuration":
                self._client.begin_put_resource(
                    arm_id, self._api_version, self._put_parameters(desired)
                )
            case _:
                raise ValueError(f"Unknown update group for {self.name}: {group}")

    def remote_delete(self, segments: Segments) -> None:
        self._client.begin_delete_resource(self._arm_id(segments), self._api_version)

    def immutable_checks(self, desired: GenericResourceSpec) -> list[FieldCheck]:
        return [
            FieldCheck(
                field="location",
                desired=desired.location,
                extract=lambda observed: observed.properties.location,
                equals=location_equal,
            ),
            FieldCheck(
                field="kind",
                desired=desired.kind,
                extract=lambda observed: observed.properties.kind,
                equals=case_insensitive,
            ),
        ]
