"""Error taxonomy for reconciliation passes.

Backend errors carry the resource kind they came from and whether they are
worth retrying. Graph errors are structural and abort the whole pass before
any backend write happens.

PROPAGATION:
- BackendUnavailable: transient, retried with backoff by the executor
- ValidationError / PermissionDenied: fail the single action, never retried
- CycleDetected / UnresolvedDependency: fatal for the pass
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .resource_graph import ResourceKind


class ReconcileError(Exception):
    """Base class for all operator errors."""

    pass


class BackendError(ReconcileError):
    """Raised by a backend capability when an API call fails."""

    transient = False

    def __init__(self, kind: ResourceKind | str, message: str = "") -> None:
        self.kind = kind
        kind_name = getattr(kind, "value", kind)
        super().__init__(f"{kind_name}: {message}" if message else str(kind_name))


class BackendUnavailable(BackendError):
    """Backend unreachable, throttled or eventually consistent. Retryable."""

    transient = True


class ValidationError(BackendError):
    """Attributes violate backend constraints. Fatal for that resource only."""

    pass


class PermissionDenied(BackendError):
    """Caller lacks permission for the operation. Never retried."""

    pass


class UnsupportedKind(BackendError):
    """No backend capability is registered for a resource kind."""

    pass


class GraphError(ReconcileError):
    """Raised when a resource graph violates its structural invariants."""

    pass


class UnresolvedDependency(GraphError):
    """Raised when a dependency id does not resolve within the graph."""

    pass


class CycleDetected(GraphError):
    """Raised when the dependency relation contains a cycle."""

    def __init__(self, nodes: list[str]) -> None:
        self.nodes = nodes
        super().__init__(f"Circular dependency detected involving: {nodes}")
