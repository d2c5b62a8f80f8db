"""Shared fixtures; also puts src/ and the cloud_mock helpers on sys.path."""

import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).parent
sys.path.insert(0, str(TESTS_DIR.parent / "src"))
sys.path.insert(0, str(TESTS_DIR))

from cloud_mock import MockCloudState  # noqa: E402


@pytest.fixture
def cloud() -> MockCloudState:
    """An empty in-memory AWS and Kubernetes account."""
    return MockCloudState()
