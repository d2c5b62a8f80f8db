"""Dependency ordering and execution scheduling.

This module implements dependency management for a reconciliation pass:
1. Dependency graph construction from resource declarations
2. Topological sorting for execution order (dependencies first)
3. Reverse ordering for deletes (dependents first)
4. Cycle detection to reject graphs that can never be applied
5. Rank assignment: layers of steps that may run concurrently

DESIGN PHILOSOPHY:
- Resources declare dependencies via `depends_on` in their declaration
- The builder never executes anything; it only orders plan steps
- A cycle is fatal for the pass: no partial schedule is ever produced

EXAMPLE DECLARATION:
```yaml
- kind: Listener
  name: https
  depends_on:
    - k8s-alb   # Listener lives on the load balancer
    - tg        # and forwards to the target group
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from .differ import Action, Plan
from .errors import CycleDetected

if TYPE_CHECKING:
    from .resource_graph import ResourceGraph

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    node_id: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource (or plan step) dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_adjacency(cls, adjacency: Mapping[str, Iterable[str]]) -> DependencyGraph:
        graph = cls()
        for node_id in sorted(adjacency):
            graph.add_node(node_id, sorted(adjacency[node_id]))
        return graph

    @classmethod
    def from_resource_graph(cls, resources: ResourceGraph) -> DependencyGraph:
        return cls.from_adjacency(resources.adjacency())

    def add_node(self, node_id: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            node_id: Resource id or plan step key.
            depends_on: Ids this node depends on.
        """
        if node_id in self.nodes:
            # Update existing node
            if depends_on:
                self.nodes[node_id].depends_on = depends_on
        else:
            self.nodes[node_id] = DependencyNode(
                node_id=node_id,
                depends_on=depends_on or [],
            )

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(node_id=dep)

    def _dependents(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.node_id)
        return dependents

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CycleDetected: If a cycle is detected.
        """
        self.ranks()

    def ranks(self) -> list[list[str]]:
        """Group nodes into ranks; every node's dependencies sit in earlier ranks.

        Nodes in the same rank have no edge between them. Each rank is sorted
        for deterministic ordering.

        Raises:
            CycleDetected: If a cycle is detected.
        """
        dependents = self._dependents()
        in_degree: dict[str, int] = {
            node_id: len(set(node.depends_on)) for node_id, node in self.nodes.items()
        }

        # Kahn's algorithm, one layer at a time
        result: list[list[str]] = []
        current = sorted(node for node, degree in in_degree.items() if degree == 0)
        processed = 0

        while current:
            result.append(current)
            processed += len(current)
            following: list[str] = []
            for node in current:
                for dependent in set(dependents[node]):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        following.append(dependent)
            current = sorted(following)

        if processed != len(self.nodes):
            # Cycle detected - report the nodes still waiting on each other
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CycleDetected(cycle_nodes)

        return result

    def topological_sort(self) -> list[str]:
        """Return node ids in dependency order (dependencies first).

        Raises:
            CycleDetected: If a cycle is detected.
        """
        return [node for rank in self.ranks() for node in rank]

    def reverse_topological_sort(self) -> list[str]:
        """Return node ids with dependents before their dependencies.

        Raises:
            CycleDetected: If a cycle is detected.
        """
        return [node for rank in reversed(self.ranks()) for node in rank]


def detect_cycle(adjacency: Mapping[str, Iterable[str]]) -> None:
    """Raise CycleDetected if ``adjacency`` ({id: dependency ids}) has a cycle."""
    DependencyGraph.from_adjacency(adjacency).validate()


def topological_order(resources: ResourceGraph) -> list[str]:
    """Resource ids of ``resources`` with dependencies first."""
    return DependencyGraph.from_resource_graph(resources).topological_sort()


def rank(resources: ResourceGraph) -> list[list[str]]:
    """Layers of mutually independent resource ids, dependencies in earlier layers."""
    return DependencyGraph.from_resource_graph(resources).ranks()


def delete_order(adjacency: Mapping[str, Iterable[str]]) -> list[str]:
    """Ids of ``adjacency`` with dependents first, e.g. association before web ACL."""
    return DependencyGraph.from_adjacency(adjacency).reverse_topological_sort()


def build_schedule(plan: Plan) -> Plan:
    """Assign blocking edges and ranks to the steps of ``plan``.

    Blocking rules:
    - Create/Update(X) waits for Create/Update of X's dependencies.
    - Delete(X) waits for every step of every resource that depends on X,
      now or as last applied (dependents are removed or rebound first), and
      for Create(X) when X is being replaced, so the new instance is up
      before the old goes away.
    - Delete(X) of an undeclared X also waits for the fresh Creates of its
      kind: a renamed resource is created under its new id before the old
      one goes away.

    Creates and Updates never wait for a Delete; Deletes wait on each other
    only along last-applied dependencies.

    Args:
        plan: Plan as returned by the differ.

    Returns:
        A new Plan whose steps carry ``blocked_by`` and are ordered rank by
        rank, followed by the NoOp steps.

    Raises:
        CycleDetected: If the steps cannot be ordered.
    """
    active = [s for s in plan.steps if s.action != Action.NO_OP]
    forward = {s.resource_id: s for s in active if s.action in (Action.CREATE, Action.UPDATE)}

    blockers: dict[str, set[str]] = {}
    for step in active:
        rid = step.resource_id
        keys: set[str] = set()
        if step.action == Action.DELETE:
            for other in active:
                if other.resource_id == rid:
                    continue
                if rid in other.resource.dependencies or rid in other.prior_dependencies:
                    keys.add(other.key)
            if step.replace and rid in forward:
                keys.add(forward[rid].key)
            if not step.replace:
                keys.update(
                    s.key
                    for s in forward.values()
                    if s.action == Action.CREATE and not s.replace and s.kind == step.kind
                )
        else:
            for dep in step.resource.dependencies:
                if dep in forward:
                    keys.add(forward[dep].key)
        blockers[step.key] = keys

    rank_keys = DependencyGraph.from_adjacency(blockers).ranks()

    by_key = {
        step.key: replace(step, blocked_by=frozenset(blockers[step.key])) for step in active
    }
    ranks = [[by_key[key] for key in sorted(keys, key=_rank_sort_key)] for keys in rank_keys]
    no_ops = [s for s in plan.steps if s.action == Action.NO_OP]

    logger.debug(
        "Execution schedule built",
        extra={"rank_count": len(ranks), "step_count": len(active)},
    )
    return Plan(steps=[s for rank in ranks for s in rank] + no_ops, ranks=ranks)


def _rank_sort_key(key: str) -> tuple[str, str]:
    action, _, rid = key.partition(":")
    return rid, action

