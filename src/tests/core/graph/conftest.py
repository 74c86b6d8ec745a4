"""Shared fixtures for graph tests."""

import pytest

from stepgraph.core.graph.state import StateSchema
from tests.core.graph.helpers import LogState


@pytest.fixture
def log_schema() -> StateSchema:
    """Schema with an appending ``log`` field and a replaced ``topic`` field."""
    return StateSchema.from_class(LogState)
