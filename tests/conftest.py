"""
Shared fixtures.
"""

import pytest

from meshobserv.node_store import NodeStore


@pytest.fixture
def store():
    return NodeStore()
