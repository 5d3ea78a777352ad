"""Manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_RESOURCES_PER_MANIFEST
from .models import BaseSpec, Manifest, ResourceDeclaration, get_spec_class

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _format_validation_error(e: ValidationError, source: str) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        msg = error["msg"]
        errors.append(f"  - {loc}: {msg}")
    error_list = "\n".join(errors)
    return f"Validation failed for {source}:\n{error_list}"


def load_manifest(path: Path) -> Manifest:
    """Load and validate a manifest from YAML.

    Raises:
        SpecLoadError: If the manifest cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest file must contain a YAML mapping: {path}")

    try:
        manifest = Manifest.model_validate(raw_data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(e, str(path))) from e

    if len(manifest.resources) > MAX_RESOURCES_PER_MANIFEST:
        raise SpecLoadError(
            f"Manifest declares {len(manifest.resources)} resources, "
            f"maximum is {MAX_RESOURCES_PER_MANIFEST}: {path}"
        )

    names = [declaration.name for declaration in manifest.resources]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise SpecLoadError(f"Duplicate resource names in {path}: {duplicates}")

    # Fail on unknown references and cycles before touching Azure
    order_declarations(manifest.resources)

    logger.info(
        "Loaded manifest from %s",
        path,
        extra={"resource_count": len(manifest.resources)},
    )
    return manifest


def parse_declaration_spec(
    declaration: ResourceDeclaration, default_location: str = ""
) -> BaseSpec:
    """Validate a declaration's spec against its kind's model.

    Args:
        declaration: The manifest entry.
        default_location: Location applied when the kind takes one and the
            declaration leaves it out.

    Raises:
        SpecLoadError: If the spec fails validation.
    """
    try:
        spec_class = get_spec_class(declaration.kind)
    except ValueError as e:
        raise SpecLoadError(str(e)) from e

    data: dict[str, Any] = dict(declaration.spec)
    if default_location and "location" in spec_class.model_fields:
        data.setdefault("location", default_location)

    try:
        return spec_class.model_validate(data)
    except ValidationError as e:
        raise SpecLoadError(
            _format_validation_error(e, f"resource '{declaration.name}'")
        ) from e


def order_declarations(declarations: list[ResourceDeclaration]) -> list[ResourceDeclaration]:
    """Return declarations with dependencies first.

    Declarations that do not depend on each other keep manifest order.

    Raises:
        SpecLoadError: On references to undeclared names or dependency cycles.
    """
    by_name = {declaration.name: declaration for declaration in declarations}

    for declaration in declarations:
        unknown = [dep for dep in declaration.depends_on if dep not in by_name]
        if unknown:
            raise SpecLoadError(
                f"Resource '{declaration.name}' depends on undeclared resources: {unknown}"
            )

    # Kahn's algorithm
    in_degree = {declaration.name: len(set(declaration.depends_on)) for declaration in declarations}
    dependents: dict[str, list[str]] = {name: [] for name in by_name}
    for declaration in declarations:
        for dep in set(declaration.depends_on):
            dependents[dep].append(declaration.name)

    position = {name: index for index, name in enumerate(by_name)}
    ready = [name for name, degree in in_degree.items() if degree == 0]
    ordered: list[ResourceDeclaration] = []

    while ready:
        ready.sort(key=position.__getitem__)
        current = ready.pop(0)
        ordered.append(by_name[current])
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)

    if len(ordered) != len(declarations):
        cycle_nodes = [name for name, degree in in_degree.items() if degree > 0]
        raise SpecLoadError(f"Circular dependency detected involving: {cycle_nodes}")

    return ordered
