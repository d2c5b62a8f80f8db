"""Tests for the desired resource graph."""

from __future__ import annotations

import pytest

from edge_operator.errors import CycleDetected, GraphError, UnresolvedDependency
from edge_operator.resource_graph import (
    Resource,
    ResourceGraph,
    ResourceKind,
    resource_id,
    split_resource_id,
    thaw,
)


def _resource(rid: str, *deps: str, **attributes: object) -> Resource:
    kind, _ = split_resource_id(rid)
    return Resource(kind=kind, id=rid, attributes=attributes, dependencies=frozenset(deps))


class TestResourceIds:
    """Tests for the Kind/name id format."""

    def test_resource_id(self) -> None:
        """Ids join kind and name with a slash."""
        assert resource_id(ResourceKind.ALB, "k8s-alb") == "ALB/k8s-alb"

    def test_split_resource_id(self) -> None:
        """Ids split back into kind and name."""
        assert split_resource_id("DNSRecord/app") == (ResourceKind.DNS_RECORD, "app")

    @pytest.mark.parametrize("rid", ["ALB", "ALB/", "Nope/x"])
    def test_split_malformed(self, rid: str) -> None:
        """Malformed ids and unknown kinds are rejected."""
        with pytest.raises(ValueError):
            split_resource_id(rid)


class TestResource:
    """Tests for Resource immutability."""

    def test_attributes_are_frozen(self) -> None:
        """Attributes cannot be mutated after construction."""
        resource = _resource("ALB/a", subnets=["s-1", "s-2"], tags={"k": "v"})

        with pytest.raises(TypeError):
            resource.attributes["tags"]["k"] = "changed"  # type: ignore[index]
        assert resource.attributes["subnets"] == ("s-1", "s-2")

    def test_attributes_are_copied(self) -> None:
        """Mutating the source dict does not affect the resource."""
        source = {"tags": {"k": "v"}}
        resource = Resource(kind=ResourceKind.ALB, id="ALB/a", attributes=source)

        source["tags"]["k"] = "changed"

        assert resource.attributes["tags"]["k"] == "v"

    def test_plain_attributes_round_trip(self) -> None:
        """plain_attributes() returns mutable dicts and lists."""
        resource = _resource("ALB/a", subnets=["s-1"], tags={"k": "v"})
        plain = resource.plain_attributes()

        plain["subnets"].append("s-2")

        assert plain == {"subnets": ["s-1", "s-2"], "tags": {"k": "v"}}
        assert resource.attributes["subnets"] == ("s-1",)

    def test_name(self) -> None:
        """The declared name is the part after the kind."""
        assert _resource("TargetGroup/tg").name == "tg"

    def test_empty_id(self) -> None:
        """An empty id is rejected."""
        with pytest.raises(ValueError):
            Resource(kind=ResourceKind.ALB, id="")

    def test_with_attributes(self) -> None:
        """with_attributes() keeps identity and dependencies."""
        resource = _resource("Listener/l", "ALB/a", port=80)
        updated = resource.with_attributes({"port": 443})

        assert updated.id == resource.id
        assert updated.dependencies == resource.dependencies
        assert updated.attributes["port"] == 443
        assert resource.attributes["port"] == 80

    def test_thaw_nested(self) -> None:
        """thaw() converts nested proxies and tuples."""
        resource = _resource("WAFRule/r", statement={"and": [{"a": 1}]})
        assert thaw(resource.attributes) == {"statement": {"and": [{"a": 1}]}}


class TestResourceGraph:
    """Tests for ResourceGraph structure and validation."""

    def test_add_and_lookup(self) -> None:
        """Resources are retrievable by id."""
        graph = ResourceGraph([_resource("ALB/a"), _resource("DNSRecord/d", "ALB/a")])

        assert len(graph) == 2
        assert "ALB/a" in graph
        assert graph["DNSRecord/d"].dependencies == frozenset({"ALB/a"})
        assert graph.get("ALB/missing") is None
        assert graph.ids == ["ALB/a", "DNSRecord/d"]

    def test_duplicate_id(self) -> None:
        """Adding the same id twice is an error."""
        graph = ResourceGraph([_resource("ALB/a")])
        with pytest.raises(GraphError, match="Duplicate"):
            graph.add(_resource("ALB/a"))

    def test_dependents(self) -> None:
        """dependents() and transitive_dependents() follow reverse edges."""
        graph = ResourceGraph(
            [
                _resource("ALB/a"),
                _resource("TargetGroup/t", "ALB/a"),
                _resource("Listener/l", "TargetGroup/t", "ALB/a"),
                _resource("WAFAcl/w"),
            ]
        )

        assert graph.dependents("ALB/a") == {"TargetGroup/t", "Listener/l"}
        assert graph.dependents("TargetGroup/t") == {"Listener/l"}
        assert graph.transitive_dependents("ALB/a") == {"TargetGroup/t", "Listener/l"}
        assert graph.transitive_dependents("WAFAcl/w") == set()

    def test_validate_ok(self) -> None:
        """A well-formed graph validates."""
        graph = ResourceGraph([_resource("ALB/a"), _resource("DNSRecord/d", "ALB/a")])
        graph.validate()

    def test_validate_unresolved(self) -> None:
        """A dependency outside the graph is reported."""
        graph = ResourceGraph([_resource("DNSRecord/d", "ALB/missing")])
        with pytest.raises(UnresolvedDependency, match="ALB/missing"):
            graph.validate()

    def test_validate_self_dependency(self) -> None:
        """A resource cannot depend on itself."""
        graph = ResourceGraph([_resource("ALB/a", "ALB/a")])
        with pytest.raises(GraphError, match="itself"):
            graph.validate()

    def test_validate_cycle(self) -> None:
        """A cycle is reported with the nodes involved."""
        graph = ResourceGraph(
            [
                _resource("ALB/a", "DNSRecord/d"),
                _resource("DNSRecord/d", "ALB/a"),
                _resource("WAFAcl/w"),
            ]
        )
        with pytest.raises(CycleDetected) as exc_info:
            graph.validate()
        assert exc_info.value.nodes == ["ALB/a", "DNSRecord/d"]
