"""In-memory cloud state shared by the mock backends.

Instances are keyed by a generated physical id, not by resource id, so a
replacement (new instance, then delete of the old one) behaves like it does
against AWS: both instances exist side by side until the old one is removed.
"""

from __future__ import annotations

import copy
import itertools
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from edge_operator.errors import BackendError


@dataclass
class MockInstance:
    """One live instance of a resource."""

    physical_id: str
    resource_id: str
    kind: str
    attributes: dict[str, Any]
    # Physical ids of the instances this one is attached to
    attached_to: set[str] = field(default_factory=set)


@dataclass
class MockCall:
    """A backend call as seen by the mock."""

    operation: str
    resource_id: str
    started_at: float
    finished_at: float = 0.0
    error: str | None = None


@dataclass
class FailureRule:
    """Raise ``error`` for matching calls, ``times`` times (None = always)."""

    operation: str
    resource_id: str
    error: Callable[[], BackendError]
    times: int | None = 1

    def matches(self, operation: str, resource_id: str) -> bool:
        if self.times is not None and self.times <= 0:
            return False
        return self.operation in (operation, "*") and self.resource_id in (resource_id, "*")


class MockCloudState:
    """Thread-safe store of mock instances with a call log and error injection.

    Usage:
        state = MockCloudState()
        state.inject_failure("create", "Listener/web", lambda: BackendUnavailable("Listener"))
        registry = build_mock_registry(state)
        ...
        assert state.calls_for("create", "Listener/web")
    """

    def __init__(self, latency_seconds: float = 0.0) -> None:
        self._lock = threading.Lock()
        self._instances: dict[str, MockInstance] = {}
        self._counter = itertools.count(1)
        self._failures: list[FailureRule] = []
        self._in_flight = 0
        self.latency_seconds = latency_seconds
        self.calls: list[MockCall] = []
        self.max_in_flight = 0

    # -------------------------------------------------------------------------
    # Error injection and call log
    # -------------------------------------------------------------------------

    def inject_failure(
        self,
        operation: str,
        resource_id: str,
        error: Callable[[], BackendError],
        times: int | None = 1,
    ) -> None:
        """Fail the next ``times`` matching calls; "*" matches any operation or id."""
        with self._lock:
            self._failures.append(FailureRule(operation, resource_id, error, times))

    def begin(self, operation: str, resource_id: str) -> MockCall:
        """Record a call start and raise an injected failure if one matches."""
        call = MockCall(operation=operation, resource_id=resource_id, started_at=time.monotonic())
        with self._lock:
            self.calls.append(call)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            rule = next(
                (r for r in self._failures if r.matches(operation, resource_id)), None
            )
            if rule is not None and rule.times is not None:
                rule.times -= 1

        if self.latency_seconds:
            time.sleep(self.latency_seconds)

        if rule is not None:
            error = rule.error()
            self.end(call, error)
            raise error
        return call

    def end(self, call: MockCall, error: Exception | None = None) -> None:
        with self._lock:
            call.finished_at = time.monotonic()
            call.error = str(error) if error is not None else None
            self._in_flight -= 1

    @contextmanager
    def call(self, operation: str, resource_id: str) -> Iterator[MockCall]:
        """Log a backend call around the block, raising injected failures first."""
        call = self.begin(operation, resource_id)
        try:
            yield call
        except Exception as e:
            self.end(call, e)
            raise
        self.end(call)

    def calls_for(self, operation: str, resource_id: str | None = None) -> list[MockCall]:
        return [
            c
            for c in self.calls
            if c.operation == operation and resource_id in (None, c.resource_id)
        ]

    def write_calls(self) -> list[MockCall]:
        """Every create, update and delete call, in start order."""
        return [c for c in self.calls if c.operation != "read"]

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def add(
        self,
        resource_id: str,
        kind: str,
        attributes: dict[str, Any],
        attached_to: set[str] | None = None,
    ) -> MockInstance:
        """Create an instance and return it."""
        with self._lock:
            physical_id = f"{resource_id}#{next(self._counter)}"
            instance = MockInstance(
                physical_id=physical_id,
                resource_id=resource_id,
                kind=kind,
                attributes={**copy.deepcopy(attributes), "physical_id": physical_id},
                attached_to=set(attached_to or ()),
            )
            self._instances[physical_id] = instance
            return instance

    def get(self, physical_id: str) -> MockInstance | None:
        with self._lock:
            return self._instances.get(physical_id)

    def latest(self, resource_id: str) -> MockInstance | None:
        """Most recently created live instance of ``resource_id``."""
        with self._lock:
            matches = [i for i in self._instances.values() if i.resource_id == resource_id]
            return matches[-1] if matches else None

    def instances(self, resource_id: str | None = None) -> list[MockInstance]:
        with self._lock:
            return [
                i for i in self._instances.values() if resource_id in (None, i.resource_id)
            ]

    def attached(self, physical_id: str) -> list[MockInstance]:
        """Live instances attached to ``physical_id``."""
        with self._lock:
            return [i for i in self._instances.values() if physical_id in i.attached_to]

    def remove(self, physical_id: str) -> None:
        with self._lock:
            self._instances.pop(physical_id, None)

    def resource_ids(self) -> set[str]:
        with self._lock:
            return {i.resource_id for i in self._instances.values()}

    def drift(self, resource_id: str, **attributes: Any) -> None:
        """Change attributes of the live instance behind the operator's back."""
        with self._lock:
            matches = [i for i in self._instances.values() if i.resource_id == resource_id]
            if not matches:
                raise KeyError(resource_id)
            matches[-1].attributes.update(attributes)
