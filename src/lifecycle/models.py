"""Pydantic models for declared desired state with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. The desired-state values the reconcilers compare and apply
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# ARM names never contain the identity delimiter; rejecting it here keeps
# identity encoding failures out of apply.
_RESOURCE_GROUP_NAME_PATTERN = re.compile(r"^[-\w.()]+$")
_RESOURCE_NAME_PATTERN = re.compile(r"^[-\w.]+$")
_NAMESPACE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*(\.[A-Za-z][A-Za-z0-9]*)+$")
_DECLARATION_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


# =============================================================================
# Base Models
# =============================================================================


class BaseSpec(BaseModel):
    """Base desired-state model."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    def to_state(self) -> dict[str, Any]:
        """Serialize for the state file."""
        return self.model_dump(mode="json", by_alias=True)


def _validate_name(value: str, pattern: re.Pattern[str], what: str) -> str:
    if not pattern.match(value):
        raise ValueError(f"{what} contains invalid characters: {value!r}")
    if value.endswith("."):
        raise ValueError(f"{what} must not end with a period: {value!r}")
    return value


# =============================================================================
# Resource group
# =============================================================================


class ResourceGroupSpec(BaseSpec):
    """Azure resource group."""

    name: Annotated[str, Field(min_length=1, max_length=90)]
    location: Annotated[str, Field(min_length=1)]
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v, _RESOURCE_GROUP_NAME_PATTERN, "Resource group name")


# =============================================================================
# Generic ARM resource
# =============================================================================


class SkuSpec(BaseModel):
    """SKU of an ARM resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    tier: str | None = None
    size: str | None = None
    family: str | None = None
    capacity: int | None = None


class GenericResourceSpec(BaseSpec):
    """Any resource group scoped, top-level ARM resource."""

    resource_group: Annotated[str, Field(min_length=1, max_length=90, alias="resourceGroup")]
    provider_namespace: str = Field(alias="providerNamespace")
    resource_type: str = Field(alias="resourceType")
    name: Annotated[str, Field(min_length=1, max_length=260)]
    api_version: str = Field(alias="apiVersion")
    location: Annotated[str, Field(min_length=1)]
    kind: str | None = None
    sku: SkuSpec | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("resource_group")
    @classmethod
    def validate_resource_group(cls, v: str) -> str:
        return _validate_name(v, _RESOURCE_GROUP_NAME_PATTERN, "Resource group name")

    @field_validator("provider_namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        if not _NAMESPACE_PATTERN.match(v):
            raise ValueError(f"providerNamespace must look like 'Microsoft.Storage': {v!r}")
        return v

    @field_validator("resource_type")
    @classmethod
    def validate_resource_type(cls, v: str) -> str:
        if not v or not v.isalnum():
            raise ValueError(
                f"resourceType must be a single top-level type such as 'storageAccounts': {v!r}"
            )
        return v

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v, _RESOURCE_NAME_PATTERN, "Resource name")

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if not re.match(r"^\d{4}-\d{2}-\d{2}(-preview)?$", v):
            raise ValueError(f"apiVersion must look like '2023-01-01': {v!r}")
        return v


# =============================================================================
# PostgreSQL flexible server database
# =============================================================================


class PostgresDatabaseSpec(BaseSpec):
    """Database on an existing PostgreSQL flexible server.

    ``character_set`` is either a charset ("UTF8") or "charset,collation"
    ("UTF8,en_US.utf8"). Every field is fixed for the database lifetime.
    """

    resource_group: Annotated[str, Field(min_length=1, max_length=90, alias="resourceGroup")]
    server_name: Annotated[str, Field(min_length=3, max_length=63, alias="serverName")]
    name: Annotated[str, Field(min_length=1, max_length=63)]
    character_set: str | None = Field(None, alias="characterSet")

    @field_validator("resource_group")
    @classmethod
    def validate_resource_group(cls, v: str) -> str:
        return _validate_name(v, _RESOURCE_GROUP_NAME_PATTERN, "Resource group name")

    @field_validator("server_name", "name")
    @classmethod
    def validate_names(cls, v: str) -> str:
        return _validate_name(v, _RESOURCE_NAME_PATTERN, "Name")

    @field_validator("character_set")
    @classmethod
    def validate_character_set(cls, v: str | None) -> str | None:
        if v is None:
            return v
        parts = v.split(",")
        if len(parts) > 2 or not all(p.strip() for p in parts):
            raise ValueError(f"characterSet must be 'charset' or 'charset,collation': {v!r}")
        return ",".join(p.strip() for p in parts)

    @property
    def charset(self) -> str | None:
        return self.character_set.split(",")[0] if self.character_set else None

    @property
    def collation(self) -> str | None:
        if self.character_set and "," in self.character_set:
            return self.character_set.split(",")[1]
        return None


# =============================================================================
# Manifest
# =============================================================================


class ResourceDeclaration(BaseModel):
    """One named resource in a manifest."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=128)]
    kind: str
    spec: dict[str, Any] = Field(default_factory=dict)

    # Declaration names that must be applied first
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _DECLARATION_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must be lowercase alphanumerics, '-' or '_': {v!r}"
            )
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in SPEC_REGISTRY:
            raise ValueError(f"Unknown kind '{v}'. Valid kinds: {list(SPEC_REGISTRY)}")
        return v


class Manifest(BaseModel):
    """A set of resource declarations applied together."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field("lifecycle/v1", alias="apiVersion")
    resources: list[ResourceDeclaration] = Field(default_factory=list)

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v != "lifecycle/v1":
            raise ValueError(f"Unsupported apiVersion '{v}'. Supported: lifecycle/v1")
        return v


# =============================================================================
# Registry
# =============================================================================

SPEC_REGISTRY: dict[str, type[BaseSpec]] = {
    "resource-group": ResourceGroupSpec,
    "generic-resource": GenericResourceSpec,
    "postgres-database": PostgresDatabaseSpec,
}


def get_spec_class(kind: str) -> type[BaseSpec]:
    """Get the desired-state model for a kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    spec_class = SPEC_REGISTRY.get(kind)
    if spec_class is None:
        valid_kinds = list(SPEC_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return spec_class
