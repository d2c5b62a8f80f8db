"""Desired resource graph.

A ResourceGraph is the in-memory form of the declared configuration:
typed Resource nodes keyed by id, with dependencies as explicit edges.
Names in declarations are resolved to ids when the graph is built, so
nothing at apply time depends on name-string matching.

INVARIANTS:
- Resources are immutable; a changed declaration yields a new Resource
- Every dependency id resolves to a resource in the same graph
- The dependency relation is acyclic (checked by validate())
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import GraphError, UnresolvedDependency

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Resource kinds managed by the operator."""

    INGRESS_ROUTE = "IngressRoute"
    ALB = "ALB"
    TARGET_GROUP = "TargetGroup"
    LISTENER = "Listener"
    WAF_ACL = "WAFAcl"
    WAF_RULE = "WAFRule"
    WAF_ASSOCIATION = "WAFAssociation"
    DNS_RECORD = "DNSRecord"


def resource_id(kind: ResourceKind, name: str) -> str:
    """Build the canonical id for a resource, e.g. ``ALB/k8s-alb``."""
    return f"{kind.value}/{name}"


def split_resource_id(rid: str) -> tuple[ResourceKind, str]:
    """Split a canonical id back into kind and name.

    Raises:
        ValueError: If the id is not of the form ``Kind/name``.
    """
    kind_value, sep, name = rid.partition("/")
    if not sep or not name:
        raise ValueError(f"Malformed resource id: {rid!r}")
    return ResourceKind(kind_value), name


def _freeze(value: Any) -> Any:
    """Recursively convert mappings to read-only proxies and lists to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of the freezing applied to Resource attributes.

    Backends and serializers receive plain dicts and lists.
    """
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple | list):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class Resource:
    """A typed node of the desired graph."""

    kind: ResourceKind
    id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    dependencies: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Resource id cannot be empty")
        # Bypass frozen to store private copies
        object.__setattr__(self, "attributes", _freeze(copy.deepcopy(dict(self.attributes))))
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))

    @property
    def name(self) -> str:
        """Declared name (the part of the id after the kind)."""
        return self.id.partition("/")[2]

    def plain_attributes(self) -> dict[str, Any]:
        """Return a mutable deep copy of the attributes."""
        return thaw(self.attributes)

    def with_attributes(self, attributes: Mapping[str, Any]) -> Resource:
        """Return a new Resource replacing the attributes wholesale."""
        return Resource(
            kind=self.kind,
            id=self.id,
            attributes=attributes,
            dependencies=self.dependencies,
        )


class ResourceGraph:
    """The full set of desired resources plus their dependency relation."""

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        self._resources: dict[str, Resource] = {}
        for resource in resources:
            self.add(resource)

    def add(self, resource: Resource) -> None:
        """Add a resource to the graph.

        Raises:
            GraphError: If a resource with the same id already exists.
        """
        if resource.id in self._resources:
            raise GraphError(f"Duplicate resource id: {resource.id}")
        self._resources[resource.id] = resource

    def __contains__(self, rid: object) -> bool:
        return rid in self._resources

    def __iter__(self) -> Iterator[Resource]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, rid: str) -> Resource | None:
        return self._resources.get(rid)

    def __getitem__(self, rid: str) -> Resource:
        return self._resources[rid]

    @property
    def ids(self) -> list[str]:
        return sorted(self._resources)

    def dependencies_of(self, rid: str) -> frozenset[str]:
        return self._resources[rid].dependencies

    def dependents(self, rid: str) -> set[str]:
        """Return ids of resources that directly depend on ``rid``."""
        return {r.id for r in self._resources.values() if rid in r.dependencies}

    def transitive_dependents(self, rid: str) -> set[str]:
        """Return ids of all resources that depend on ``rid``, directly or not."""
        seen: set[str] = set()
        frontier = [rid]
        while frontier:
            current = frontier.pop()
            for dependent in self.dependents(current):
                if dependent not in seen:
                    seen.add(dependent)
                    frontier.append(dependent)
        return seen

    def adjacency(self) -> dict[str, frozenset[str]]:
        """Return the dependency relation as ``{id: dependency ids}``."""
        return {rid: r.dependencies for rid, r in self._resources.items()}

    def validate(self) -> None:
        """Check the graph invariants.

        Raises:
            UnresolvedDependency: If a dependency id is not in the graph.
            GraphError: If a resource depends on itself.
            CycleDetected: If the dependency relation has a cycle.
        """
        for resource in self._resources.values():
            if resource.id in resource.dependencies:
                raise GraphError(f"Resource '{resource.id}' cannot depend on itself")
            missing = sorted(d for d in resource.dependencies if d not in self._resources)
            if missing:
                raise UnresolvedDependency(
                    f"Resource '{resource.id}' depends on unknown resources: {missing}"
                )

        # Imported here to avoid a circular import; the builder owns cycle detection
        from .dependency import detect_cycle

        detect_cycle(self.adjacency())

        logger.debug("Resource graph validated", extra={"resource_count": len(self)})
