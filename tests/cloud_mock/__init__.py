"""In-memory cloud for testing the reconciliation pipeline.

Provides:
- MockCloudState: thread-safe instance store with error injection and a
  timestamped call log
- MockBackend: one generic capability per resource kind
- build_mock_registry(): a BackendRegistry wired to a MockCloudState
- edge_declaration(): the standard ALB + WAF + DNS declaration used across tests

Usage:
    from cloud_mock import MockCloudState, build_mock_registry

    state = MockCloudState()
    registry = build_mock_registry(state)
"""

from .backends import MockBackend, build_mock_registry
from .declarations import edge_declaration, find, write_declaration
from .state import FailureRule, MockCall, MockCloudState, MockInstance

__all__ = [
    "FailureRule",
    "MockBackend",
    "MockCall",
    "MockCloudState",
    "MockInstance",
    "build_mock_registry",
    "edge_declaration",
    "find",
    "write_declaration",
]
