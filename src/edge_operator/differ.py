"""Desired-state differ.

compute_plan() compares the desired ResourceGraph with the ObservedState and
returns a Plan: one step per resource action. It performs no I/O and never
mutates its inputs.

DECISION TABLE (per resource):
- absent from observed state             -> Create
- exists, all desired attributes equal   -> NoOp
- exists, only mutable attributes differ -> Update
- exists, an immutable attribute differs -> Replace (Create new, Delete old)
- exists, dependencies moved             -> Update, or Replace if it can not rebind
- exists, no longer declared             -> Delete

Replacing a resource changes its physical identity, so its dependents must
rebind: kinds that can repoint in place get an Update, the others are
replaced as well.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from .diff_normalizer import DiffNormalizer
from .resource_graph import Resource, ResourceGraph, ResourceKind, thaw
from .state import ObservedState

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Plan actions."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NO_OP = "NoOp"


@dataclass(frozen=True)
class KindRules:
    """Planning semantics of a resource kind.

    Attributes:
        immutable: Attributes that force replacement when changed.
        updatable: Whether the backend can update the resource in place.
        rebind_in_place: Whether the resource can repoint to a replaced
            dependency with an Update instead of being replaced itself.
    """

    immutable: frozenset[str] = frozenset()
    updatable: bool = True
    rebind_in_place: bool = True


KIND_RULES: dict[ResourceKind, KindRules] = {
    ResourceKind.INGRESS_ROUTE: KindRules(immutable=frozenset({"name", "namespace"})),
    ResourceKind.ALB: KindRules(immutable=frozenset({"name", "scheme"})),
    ResourceKind.TARGET_GROUP: KindRules(
        immutable=frozenset({"name", "protocol", "port", "vpc_id", "target_type"}),
    ),
    # A listener rebinding to a new load balancer is recreated there by update
    ResourceKind.LISTENER: KindRules(),
    ResourceKind.WAF_ACL: KindRules(immutable=frozenset({"name", "scope"})),
    # Rules live inside their web ACL; update upserts into the current one
    ResourceKind.WAF_RULE: KindRules(immutable=frozenset({"name"})),
    ResourceKind.WAF_ASSOCIATION: KindRules(updatable=False, rebind_in_place=False),
    ResourceKind.DNS_RECORD: KindRules(immutable=frozenset({"zone_id", "name", "type"})),
}


STALE_REASON = "observed state unavailable"


def rules_for(kind: ResourceKind) -> KindRules:
    return KIND_RULES.get(kind, KindRules())


@dataclass(frozen=True)
class PlanStep:
    """A single planned action on one resource.

    For Delete steps ``resource`` is rebuilt from the observed record, so its
    attributes are the last-known live attributes of the instance to remove.
    """

    resource: Resource
    action: Action
    replace: bool = False
    changed_attributes: tuple[str, ...] = ()
    prior_attributes: Mapping[str, Any] = field(default_factory=dict)
    reason: str = ""
    # Dependencies the live instance was last applied with
    prior_dependencies: frozenset[str] = frozenset()
    # Keys of steps that must succeed before this one may start
    blocked_by: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "prior_attributes", MappingProxyType(dict(self.prior_attributes)))

    @property
    def resource_id(self) -> str:
        return self.resource.id

    @property
    def kind(self) -> ResourceKind:
        return self.resource.kind

    @property
    def key(self) -> str:
        return step_key(self.action, self.resource.id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "action": self.action.value,
            "replace": self.replace,
        }
        if self.changed_attributes:
            data["changed_attributes"] = list(self.changed_attributes)
        if self.reason:
            data["reason"] = self.reason
        if self.blocked_by:
            data["blocked_by"] = sorted(self.blocked_by)
        return data


def step_key(action: Action, rid: str) -> str:
    return f"{action.value}:{rid}"


@dataclass
class Plan:
    """Ordered sequence of plan steps.

    ``ranks`` is filled by the dependency graph builder; steps in the same
    rank have no ordering relative to each other.
    """

    steps: list[PlanStep] = field(default_factory=list)
    ranks: list[list[PlanStep]] = field(default_factory=list)

    @property
    def actionable(self) -> list[PlanStep]:
        """Steps that change something (everything but NoOp)."""
        return [s for s in self.steps if s.action != Action.NO_OP]

    @property
    def is_noop(self) -> bool:
        return not self.actionable

    def count(self, action: Action) -> int:
        return sum(1 for s in self.steps if s.action == action)

    @property
    def replace_count(self) -> int:
        return sum(1 for s in self.steps if s.replace and s.action == Action.CREATE)

    def step(self, key: str) -> PlanStep | None:
        for s in self.steps:
            if s.key == key:
                return s
        return None

    def to_dict(self) -> dict[str, Any]:
        """Machine-readable plan for dry-run previews."""
        return {
            "summary": {
                "create": self.count(Action.CREATE),
                "update": self.count(Action.UPDATE),
                "delete": self.count(Action.DELETE),
                "replace": self.replace_count,
                "no_op": self.count(Action.NO_OP),
            },
            "ranks": [[s.to_dict() for s in rank] for rank in self.ranks],
            "steps": [s.to_dict() for s in self.steps],
        }


def compute_plan(
    graph: ResourceGraph,
    observed: ObservedState,
    normalizer: DiffNormalizer | None = None,
) -> Plan:
    """Diff the desired graph against observed state.

    Args:
        graph: Validated desired graph.
        observed: Observed state for every desired and previously managed id.
        normalizer: Attribute normalizer; defaults to the built-in rules.

    Returns:
        Plan with unordered steps (ranks are assigned by the graph builder).
    """
    normalizer = normalizer or DiffNormalizer()
    decisions: dict[str, Action] = {}
    replaced: set[str] = set()
    changes: dict[str, list[str]] = {}
    reasons: dict[str, str] = {}

    for resource in graph:
        record = observed.get(resource.id)
        if record is not None and record.stale:
            logger.warning(
                "Observed state is stale, leaving resource untouched",
                extra={"resource_id": resource.id, "kind": resource.kind.value},
            )
            decisions[resource.id] = Action.NO_OP
            reasons[resource.id] = STALE_REASON
            continue

        if record is None or not record.exists:
            decisions[resource.id] = Action.CREATE
            continue

        changed = normalizer.changed_attributes(
            resource.kind.value, resource.attributes, record.attributes
        )
        changes[resource.id] = changed
        rebound = record.dependencies != resource.dependencies
        if not changed and not rebound:
            decisions[resource.id] = Action.NO_OP
            continue

        rules = rules_for(resource.kind)
        immutable_changed = sorted(set(changed) & rules.immutable)
        rebind_reason = (
            f"dependencies changed: {sorted(record.dependencies)} -> "
            f"{sorted(resource.dependencies)}"
        )
        if immutable_changed:
            reasons[resource.id] = f"immutable attributes changed: {immutable_changed}"
        elif not rules.updatable:
            reasons[resource.id] = "kind does not support in-place update"
        elif rebound and not rules.rebind_in_place:
            reasons[resource.id] = rebind_reason
        else:
            decisions[resource.id] = Action.UPDATE
            if rebound and not changed:
                reasons[resource.id] = rebind_reason
            continue
        decisions[resource.id] = Action.CREATE
        replaced.add(resource.id)

    _propagate_replacements(graph, decisions, replaced, reasons)

    steps: list[PlanStep] = []
    for resource in graph:
        rid = resource.id
        action = decisions[rid]
        record = observed.get(rid)
        prior = dict(record.attributes) if record is not None and record.exists else {}
        bound = record.dependencies if record is not None else frozenset()
        steps.append(
            PlanStep(
                resource=resource,
                action=action,
                replace=rid in replaced,
                changed_attributes=tuple(changes.get(rid, ())),
                prior_attributes=prior,
                reason=reasons.get(rid, ""),
                prior_dependencies=bound,
            )
        )
        if rid in replaced and record is not None:
            # The old instance goes away only after its replacement is up
            steps.append(
                PlanStep(
                    resource=_resource_from_record(
                        record.kind, rid, record.attributes, record.dependencies
                    ),
                    action=Action.DELETE,
                    replace=True,
                    prior_attributes=prior,
                    reason=reasons.get(rid, ""),
                    prior_dependencies=bound,
                )
            )

    for record in observed.records():
        if record.resource_id in graph or not record.exists:
            continue
        if record.stale:
            logger.warning(
                "Observed state is stale, not deleting undeclared resource",
                extra={"resource_id": record.resource_id},
            )
            continue
        steps.append(
            PlanStep(
                resource=_resource_from_record(
                    record.kind, record.resource_id, record.attributes, record.dependencies
                ),
                action=Action.DELETE,
                prior_attributes=record.attributes,
                reason="no longer declared",
                prior_dependencies=record.dependencies,
            )
        )

    plan = Plan(steps=sorted(steps, key=lambda s: (s.resource_id, s.action.value)))
    logger.info(
        "Plan computed",
        extra={
            "create": plan.count(Action.CREATE),
            "update": plan.count(Action.UPDATE),
            "delete": plan.count(Action.DELETE),
            "replace": plan.replace_count,
            "no_op": plan.count(Action.NO_OP),
        },
    )
    return plan


def _propagate_replacements(
    graph: ResourceGraph,
    decisions: dict[str, Action],
    replaced: set[str],
    reasons: dict[str, str],
) -> None:
    """Rebind or replace dependents of replaced resources, transitively."""
    frontier = sorted(replaced)
    while frontier:
        rid = frontier.pop()
        for dependent_id in sorted(graph.dependents(rid)):
            if dependent_id in replaced or decisions[dependent_id] == Action.CREATE:
                continue
            if reasons.get(dependent_id) == STALE_REASON:
                continue
            dependent = graph[dependent_id]
            if rules_for(dependent.kind).rebind_in_place:
                if decisions[dependent_id] == Action.NO_OP:
                    decisions[dependent_id] = Action.UPDATE
                    reasons[dependent_id] = f"dependency {rid} replaced"
            else:
                decisions[dependent_id] = Action.CREATE
                replaced.add(dependent_id)
                reasons[dependent_id] = f"dependency {rid} replaced"
                frontier.append(dependent_id)


def _resource_from_record(
    kind: ResourceKind,
    rid: str,
    attributes: Mapping[str, Any],
    dependencies: frozenset[str],
) -> Resource:
    return Resource(kind=kind, id=rid, attributes=thaw(attributes), dependencies=dependencies)
