"""State fetcher: refreshes ObservedState from the live backends.

The fetch covers every resource in the desired graph plus every resource
recorded in the prior (persisted) state, so resources removed from the
declaration are still seen and can be deleted.

Reads run rank by rank in dependency order: a Listener is looked up through
its load balancer's ARN, which is only known once the ALB has been read.
Within a rank, reads run concurrently through the bounded call runner.

PARTIAL STATE:
By default any backend failure aborts the fetch. With allow_partial=True a
failed read is recorded instead: the resource keeps its prior record flagged
stale, and the differ leaves stale resources untouched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from .backends.base import BackendContext, BackendRegistry, BlockingCallRunner
from .dependency import DependencyGraph
from .errors import BackendError
from .resource_graph import Resource, ResourceGraph, thaw
from .state import ObservedResource, ObservedState

logger = logging.getLogger(__name__)


class StateFetcher:
    """Reads live state for a desired graph and the previously managed set."""

    def __init__(self, registry: BackendRegistry, runner: BlockingCallRunner) -> None:
        self._registry = registry
        self._runner = runner

    async def fetch(
        self,
        graph: ResourceGraph,
        prior: ObservedState,
        allow_partial: bool = False,
    ) -> ObservedState:
        """Build a fresh ObservedState.

        Args:
            graph: Validated desired graph.
            prior: State persisted by the previous pass.
            allow_partial: Record read failures as stale instead of raising.

        Returns:
            ObservedState with one record per desired or previously managed id.

        Raises:
            BackendError: If a read fails and allow_partial is False.
            UnsupportedKind: If a kind has no registered backend.
        """
        targets = self._targets(graph, prior)
        adjacency = {
            rid: {dep for dep in resource.dependencies if dep in targets}
            for rid, resource in targets.items()
        }
        ranks = DependencyGraph.from_adjacency(adjacency).ranks()

        observed = ObservedState()
        for rank in ranks:
            records = await asyncio.gather(
                *(
                    self._read_one(targets[rid], prior, observed, allow_partial)
                    for rid in rank
                )
            )
            for record in records:
                observed.set(record)

        stale = [r.resource_id for r in observed.records() if r.stale]
        logger.info(
            "Observed state fetched",
            extra={
                "resource_count": len(observed),
                "existing_count": len(observed.existing()),
                "stale_count": len(stale),
            },
        )
        if stale:
            logger.warning(
                "Observed state is partial",
                extra={
                    "stale_resources": stale,
                    "unavailable_kinds": sorted(k.value for k in observed.unavailable_kinds),
                },
            )
        return observed

    def _targets(self, graph: ResourceGraph, prior: ObservedState) -> dict[str, Resource]:
        targets = {resource.id: resource for resource in graph}
        for record in prior.existing():
            if record.resource_id not in targets:
                targets[record.resource_id] = Resource(
                    kind=record.kind,
                    id=record.resource_id,
                    attributes=thaw(record.attributes),
                    dependencies=record.dependencies,
                )
        return targets

    async def _read_one(
        self,
        resource: Resource,
        prior: ObservedState,
        observed: ObservedState,
        allow_partial: bool,
    ) -> ObservedResource:
        # Every backend must be registered, even in partial mode
        backend = self._registry.get(resource.kind)
        prior_record = prior.get(resource.id)
        # What the live instance is attached to is what was last applied, not what is declared
        bound = (
            prior_record.dependencies if prior_record is not None else resource.dependencies
        )
        ctx = BackendContext(
            resource,
            observed.snapshot(),
            prior_record.attributes if prior_record is not None else None,
        )

        try:
            attributes = await self._runner.call(
                resource.kind, f"read {resource.id}", backend.read, resource, ctx
            )
        except BackendError as e:
            if not allow_partial:
                raise
            logger.warning(
                "Read failed, keeping prior record as stale",
                extra={
                    "resource_id": resource.id,
                    "kind": resource.kind.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            observed.unavailable_kinds.add(resource.kind)
            if prior_record is not None:
                return replace(prior_record, stale=True)
            return replace(
                ObservedResource.missing(resource.id, resource.kind, bound),
                stale=True,
            )

        if attributes is None:
            return ObservedResource.missing(resource.id, resource.kind, bound)
        return ObservedResource(
            resource_id=resource.id,
            kind=resource.kind,
            exists=True,
            attributes=attributes,
            dependencies=bound,
        )
