"""PostgreSQL flexible server database kind.

Databases are children of a server that must be ``Ready`` before they can be
dropped. Charset and collation are fixed at creation; an existing database is
only adopted when its character set matches the declared one.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import ClassVar

from azure.mgmt.resource.resources.models import GenericResource

from .adoption import Comparator, FieldCheck, case_insensitive, joined_case_insensitive
from .arm import ArmClient, classify_azure_error, resource_id
from .errors import ErrorClass
from .generic_resource import provisioning_state_of
from .identity import IdentityCodec
from .models import PostgresDatabaseSpec
from .poller import PollSpec
from .reconciler import Prerequisite, ResourceKind, Segments
from .state import Operation

logger = logging.getLogger(__name__)

POSTGRES_NAMESPACE = "Microsoft.DBforPostgreSQL"
POSTGRES_API_VERSION = "2022-12-01"

SERVER_READY = "Ready"
SERVER_PENDING = frozenset({"Starting", "Stopping", "Updating", "Dropping"})
# Settled states that never become Ready without operator action
SERVER_FAILED = frozenset({"Stopped", "Disabled"})
_SERVER_STATES = {
    state.lower(): state for state in {SERVER_READY, *SERVER_PENDING, *SERVER_FAILED}
}

character_set_equal = joined_case_insensitive(",")


def _character_set_parts(database: GenericResource) -> tuple[str, ...]:
    properties = database.properties
    if not isinstance(properties, dict):
        return ()
    return tuple(
        str(properties[key]) for key in ("charset", "collation") if properties.get(key)
    )


class PostgresDatabaseKind(ResourceKind[PostgresDatabaseSpec, GenericResource]):
    """Databases on an existing PostgreSQL flexible server."""

    name: ClassVar[str] = "postgres-database"
    codec: ClassVar[IdentityCodec] = IdentityCodec(("resource_group", "server_name", "name"))

    force_new_fields: ClassVar[tuple[str, ...]] = (
        "resource_group",
        "server_name",
        "name",
        "character_set",
    )
    computed_fields: ClassVar[tuple[str, ...]] = ("resource_id",)
    field_comparators: ClassVar[dict[str, Comparator]] = {
        "server_name": case_insensitive,
        "character_set": character_set_equal,
    }

    def __init__(self, client: ArmClient) -> None:
        self._client = client

    def classify_error(self, error: BaseException) -> ErrorClass:
        return classify_azure_error(error)

    def poll_spec(self, operation: Operation) -> PollSpec:
        if operation is Operation.DELETE:
            return PollSpec.until_absent(pending_statuses={"Deleting"})
        return PollSpec(
            target_statuses={"Succeeded"},
            pending_statuses={"Accepted", "Creating", "InProgress"},
            fail_statuses={"Failed", "Canceled"},
        )

    def identity_segments(self, desired: PostgresDatabaseSpec) -> Segments:
        return (desired.resource_group, desired.server_name, desired.name)

    def _server_id(self, resource_group: str, server_name: str) -> str:
        return resource_id(
            self._client.subscription_id,
            resource_group,
            POSTGRES_NAMESPACE,
            "flexibleServers",
            server_name,
        )

    def _database_id(self, segments: Segments) -> str:
        resource_group, server_name, name = segments
        return resource_id(
            self._client.subscription_id,
            resource_group,
            POSTGRES_NAMESPACE,
            "flexibleServers/databases",
            f"{server_name}/{name}",
        )

    def _server_state(self, resource_group: str, server_name: str) -> str:
        server = self._client.get_resource(
            self._server_id(resource_group, server_name), POSTGRES_API_VERSION
        )
        properties = server.properties if isinstance(server.properties, dict) else {}
        state = str(properties.get("state") or "")
        return _SERVER_STATES.get(state.lower(), state)

    def remote_create(self, desired: PostgresDatabaseSpec) -> Segments:
        segments = self.identity_segments(desired)
        properties: dict[str, str] = {}
        if desired.charset:
            properties["charset"] = desired.charset
        if desired.collation:
            properties["collation"] = desired.collation
        self._client.begin_put_resource(
            self._database_id(segments),
            POSTGRES_API_VERSION,
            GenericResource(properties=properties),
        )
        return segments

    def remote_fetch(self, segments: Segments) -> GenericResource:
        return self._client.get_resource(self._database_id(segments), POSTGRES_API_VERSION)

    def status_of(self, properties: GenericResource) -> str:
        return provisioning_state_of(properties)

    def to_desired(
        self,
        properties: GenericResource,
        segments: Segments,
        prior: PostgresDatabaseSpec | None,
    ) -> PostgresDatabaseSpec:
        resource_group, server_name, name = segments
        parts = _character_set_parts(properties)
        return PostgresDatabaseSpec(
            resource_group=resource_group,
            server_name=server_name,
            name=name,
            character_set=",".join(parts) if parts else None,
        )

    def remote_delete(self, segments: Segments) -> None:
        self._client.begin_delete_resource(self._database_id(segments), POSTGRES_API_VERSION)

    def immutable_checks(self, desired: PostgresDatabaseSpec) -> list[FieldCheck]:
        return [
            FieldCheck(
                field="character_set",
                desired=desired.character_set,
                extract=lambda observed: _character_set_parts(observed.properties),
                equals=character_set_equal,
            ),
        ]

    def prerequisites(
        self,
        operation: Operation,
        segments: Segments | None,
        desired: PostgresDatabaseSpec | None,
    ) -> list[Prerequisite]:
        if operation is not Operation.DELETE or segments is None:
            return []
        resource_group, server_name, _ = segments
        return [
            Prerequisite(
                description=f"postgres server {server_name}",
                fetch_status=partial(self._server_state, resource_group, server_name),
                spec=PollSpec(
                    target_statuses={SERVER_READY},
                    pending_statuses=SERVER_PENDING,
                    fail_statuses=SERVER_FAILED,
                ),
                # A dropped server takes its databases with it
                absent_ok=True,
            ),
        ]
