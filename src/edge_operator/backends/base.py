"""Backend capability interface.

Every resource kind is served by one capability object implementing
read/create/update/delete. Capabilities are plain synchronous objects wrapping
blocking SDK clients; the fetcher and executor call them through
BlockingCallRunner, which bounds concurrency and enforces call timeouts.

ERROR CONTRACT:
Capabilities translate SDK exceptions at this boundary and raise only
BackendError subclasses (BackendUnavailable, ValidationError,
PermissionDenied). Read returns None for a resource that does not exist.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol, TypeVar, runtime_checkable

from ..errors import UnsupportedKind, ValidationError
from ..resource_graph import Resource, ResourceKind
from ..state import ObservedResource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackendContext:
    """What a capability may know about the rest of the world during a call.

    Attributes:
        resource_id: Id of the resource being operated on.
        prior: Last-known live attributes of the resource (empty if none),
            typically carrying physical identifiers such as ARNs.
    """

    def __init__(
        self,
        resource: Resource,
        observed: Mapping[str, ObservedResource],
        prior: Mapping[str, Any] | None = None,
    ) -> None:
        self._resource = resource
        self._observed = observed
        self.resource_id = resource.id
        self.prior: Mapping[str, Any] = dict(prior or {})

    def dependency(self, kind: ResourceKind) -> Mapping[str, Any] | None:
        """Observed attributes of the dependency of ``kind``, or None if it does not exist."""
        for dep_id in sorted(self._resource.dependencies):
            record = self._observed.get(dep_id)
            if record is not None and record.kind == kind and record.exists:
                return record.attributes
        return None

    def require(self, kind: ResourceKind) -> Mapping[str, Any]:
        """Like dependency(), but a missing dependency is a validation error."""
        attributes = self.dependency(kind)
        if attributes is None:
            raise ValidationError(
                self._resource.kind,
                f"{self.resource_id} requires an existing {kind.value} dependency",
            )
        return attributes


@runtime_checkable
class ResourceBackend(Protocol):
    """Capability object for one resource kind."""

    kind: ResourceKind

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        """Return live attributes, or None if the resource does not exist."""
        ...

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        """Create the resource and return its live attributes."""
        ...

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        """Converge an existing resource to ``resource`` and return live attributes."""
        ...

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        """Delete the instance described by ``resource`` (last-known attributes).

        Deleting a resource that is already gone is not an error.
        """
        ...


class BackendRegistry:
    """Dispatch table from resource kind to capability object."""

    def __init__(self, backends: Iterable[ResourceBackend] = ()) -> None:
        self._backends: dict[ResourceKind, ResourceBackend] = {}
        for backend in backends:
            self.register(backend)

    def register(self, backend: ResourceBackend) -> None:
        if backend.kind in self._backends:
            logger.warning(
                "Replacing registered backend", extra={"kind": backend.kind.value}
            )
        self._backends[backend.kind] = backend

    def get(self, kind: ResourceKind) -> ResourceBackend:
        """Return the capability for ``kind``.

        Raises:
            UnsupportedKind: If no capability is registered.
        """
        try:
            return self._backends[kind]
        except KeyError:
            raise UnsupportedKind(kind, "no backend registered") from None

    @property
    def kinds(self) -> list[ResourceKind]:
        return sorted(self._backends, key=lambda k: k.value)


class BlockingCallRunner:
    """Runs blocking SDK calls off the event loop.

    Concurrency is bounded by an asyncio.Semaphore sized like the thread pool,
    so waiting callers queue on the loop rather than in the pool. A call is
    always awaited to completion and holds its semaphore slot until its worker
    thread is done: a call still running after ``timeout_seconds`` is logged
    as slow, never abandoned, so a mutating call can not be retried on top of
    itself.
    """

    def __init__(self, max_concurrency: int, timeout_seconds: float) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._max_concurrency = max_concurrency
        self._timeout_seconds = timeout_seconds
        self._semaphore: asyncio.Semaphore | None = None
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrency, thread_name_prefix="edge-backend"
        )

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def call(
        self,
        kind: ResourceKind,
        operation: str,
        func: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run ``func(*args)`` in the pool and return its result.

        Raises:
            BackendError: Whatever the capability raised.
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)

        async with self._semaphore:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._pool, functools.partial(func, *args))
            try:
                return await asyncio.wait_for(asyncio.shield(future), self._timeout_seconds)
            except TimeoutError:
                logger.warning(
                    f"{operation} still running after {self._timeout_seconds}s, waiting for it",
                    extra={"kind": kind.value, "timeout_seconds": self._timeout_seconds},
                )
            return await future

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
