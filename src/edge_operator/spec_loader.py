"""Declaration loading with validation.

All file operations enforce size limits so a runaway file cannot exhaust
memory. Input validation is performed at the boundary: what leaves this
module is a validated ResourceGraph.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import EdgeSpec, validate_attributes
from .resource_graph import ResourceGraph

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declaration file
SPEC_FILE_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when declaration loading or validation fails."""

    pass


def _format_errors(e: ValidationError, prefix: str = "") -> list[str]:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        if prefix:
            loc = f"{prefix}.{loc}" if loc else prefix
        errors.append(f"  - {loc}: {error['msg']}")
    return errors


def spec_files(spec_path: Path) -> list[Path]:
    """Return the declaration files at ``spec_path`` (a file or a directory).

    Raises:
        SpecLoadError: If the path does not exist.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec path not found: {spec_path}")
    if spec_path.is_dir():
        return sorted(
            p for p in spec_path.iterdir() if p.is_file() and p.suffix in SPEC_FILE_SUFFIXES
        )
    return [spec_path]


def load_spec_file(spec_file: Path) -> EdgeSpec:
    """Load and validate one declaration file.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    # Check file size before reading
    try:
        file_size = spec_file.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_file}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_file}"
        )

    try:
        content = spec_file.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_file}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_file}: {e}") from e

    if raw_data is None:
        # Empty file declares nothing
        return EdgeSpec()

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_file}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        # Kubernetes-style format: apiVersion, kind, metadata, spec
        spec_data: Any = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_file}")
    else:
        spec_data = raw_data

    try:
        spec = EdgeSpec.model_validate(spec_data)
    except ValidationError as e:
        error_list = "\n".join(_format_errors(e))
        raise SpecLoadError(f"Validation failed for {spec_file}:\n{error_list}") from e

    # Attribute errors are collected per resource so one run reports them all
    errors: list[str] = []
    for index, decl in enumerate(spec.resources):
        try:
            validate_attributes(decl.kind, decl.name, decl.attributes)
        except ValidationError as e:
            errors.extend(_format_errors(e, f"resources.{index}.attributes"))
    if errors:
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_file}:\n{error_list}")

    return spec


def load_spec(spec_path: Path) -> EdgeSpec:
    """Load every declaration file at ``spec_path`` into one EdgeSpec.

    Raises:
        SpecLoadError: If any file fails to load, or resources collide across files.
    """
    spec = EdgeSpec()
    for spec_file in spec_files(spec_path):
        try:
            spec = spec.merge(load_spec_file(spec_file))
        except ValidationError as e:
            error_list = "\n".join(_format_errors(e))
            raise SpecLoadError(f"Conflicting declarations in {spec_file}:\n{error_list}") from e

    logger.info(
        "Loaded declarations",
        extra={"spec_path": str(spec_path), "resource_count": len(spec.resources)},
    )
    return spec


def load_graph(spec_path: Path) -> ResourceGraph:
    """Load declarations and build the validated desired graph.

    Raises:
        SpecLoadError: If the declarations are invalid.
        UnresolvedDependency: If a depends_on entry matches no resource.
        CycleDetected: If the dependencies form a cycle.
    """
    return load_spec(spec_path).to_graph()
