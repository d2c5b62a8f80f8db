"""Observed state and its persistence.

ObservedState is the operator's view of live resources: for each resource id,
whether it exists and its last-known attributes. It is refreshed by the
fetcher at the start of every pass and mutated only by the apply executor as
actions complete (single writer). Readers take snapshots.

The StateStore persists the managed set between passes (load at pass start,
persist at pass end). Persisted records keep each resource's dependencies so
that resources removed from the declaration can still be deleted in
dependency order.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .resource_graph import ResourceKind

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

# Bounded to keep a corrupt or hostile state file from exhausting memory
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024


class StateFileError(Exception):
    """Raised when the persisted state cannot be read or written."""

    pass


@dataclass(frozen=True)
class ObservedResource:
    """Last-known live record of one resource."""

    resource_id: str
    kind: ResourceKind
    exists: bool
    attributes: Mapping[str, Any] = field(default_factory=dict)
    dependencies: frozenset[str] = field(default_factory=frozenset)
    # True when the owning backend could not be read this pass
    stale: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "attributes", copy.deepcopy(dict(self.attributes)))
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))

    @classmethod
    def missing(
        cls, resource_id: str, kind: ResourceKind, dependencies: frozenset[str] = frozenset()
    ) -> ObservedResource:
        return cls(resource_id=resource_id, kind=kind, exists=False, dependencies=dependencies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "attributes": copy.deepcopy(dict(self.attributes)),
            "dependencies": sorted(self.dependencies),
        }

    @classmethod
    def from_dict(cls, resource_id: str, data: Mapping[str, Any]) -> ObservedResource:
        return cls(
            resource_id=resource_id,
            kind=ResourceKind(data["kind"]),
            exists=True,
            attributes=data.get("attributes") or {},
            dependencies=frozenset(data.get("dependencies") or ()),
        )


class ObservedState:
    """Mapping of resource id to ObservedResource.

    Not thread-safe. The executor mutates it from the event loop thread only;
    other readers must use snapshot().
    """

    def __init__(self, records: Mapping[str, ObservedResource] | None = None) -> None:
        self._records: dict[str, ObservedResource] = dict(records or {})
        self.unavailable_kinds: set[ResourceKind] = set()

    def __contains__(self, rid: object) -> bool:
        return rid in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def get(self, rid: str) -> ObservedResource | None:
        return self._records.get(rid)

    def exists(self, rid: str) -> bool:
        record = self._records.get(rid)
        return record is not None and record.exists

    def records(self) -> list[ObservedResource]:
        return [self._records[rid] for rid in sorted(self._records)]

    def existing(self) -> list[ObservedResource]:
        return [r for r in self.records() if r.exists]

    def set(self, record: ObservedResource) -> None:
        self._records[record.resource_id] = record

    def mark_deleted(self, rid: str) -> None:
        record = self._records.get(rid)
        if record is not None:
            self._records[rid] = ObservedResource.missing(rid, record.kind, record.dependencies)

    def snapshot(self) -> Mapping[str, ObservedResource]:
        """Return a read-only copy safe to hand to concurrent readers."""
        return MappingProxyType(dict(self._records))

    def copy(self) -> ObservedState:
        clone = ObservedState(self._records)
        clone.unavailable_kinds = set(self.unavailable_kinds)
        return clone

    def to_dict(self) -> dict[str, Any]:
        """Serialize the existing resources in persisted-state format."""
        return {
            "version": STATE_FORMAT_VERSION,
            "updated_at": datetime.now(UTC).isoformat(),
            "resources": {r.resource_id: r.to_dict() for r in self.existing()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ObservedState:
        version = data.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StateFileError(f"Unsupported state format version: {version!r}")
        resources = data.get("resources") or {}
        if not isinstance(resources, Mapping):
            raise StateFileError("State 'resources' must be a mapping")
        records: dict[str, ObservedResource] = {}
        for rid, record in resources.items():
            try:
                records[rid] = ObservedResource.from_dict(rid, record)
            except (KeyError, ValueError, TypeError) as e:
                raise StateFileError(f"Invalid state record for '{rid}': {e}") from e
        return cls(records)


class StateStore:
    """JSON file persistence for ObservedState."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ObservedState:
        """Load the persisted state, or an empty state if none exists.

        Raises:
            StateFileError: If the file exists but cannot be parsed.
        """
        if not self._path.exists():
            logger.info("No persisted state, starting empty", extra={"path": str(self._path)})
            return ObservedState()

        try:
            if self._path.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateFileError(
                    f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes"
                )
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateFileError(f"Failed to read state file {self._path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateFileError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise StateFileError(f"State file must contain a JSON object: {self._path}")

        state = ObservedState.from_dict(data)
        logger.info(
            "Loaded persisted state",
            extra={"path": str(self._path), "resource_count": len(state)},
        )
        return state

    def persist(self, state: ObservedState) -> None:
        """Atomically write the existing resources of ``state``.

        Raises:
            StateFileError: If the file cannot be written.
        """
        payload = json.dumps(state.to_dict(), indent=2, sort_keys=True)
        directory = self._path.parent
        try:
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateFileError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug(
            "Persisted state",
            extra={"path": str(self._path), "resource_count": len(state.existing())},
        )
