"""Shared pytest fixtures for all tests."""

import pytest

from reflector.client_cache import NamespacedClientCache
from reflector.replication_config import ReplicationConfig
from tests.fakes import FakeCluster


@pytest.fixture
def cluster():
    """Empty in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def clients(cluster):
    """
    Client cache whose handles talk to the in-memory cluster.

    Args:
        cluster: FakeCluster fixture

    Returns:
        NamespacedClientCache backed by FakeSecretApi handles
    """
    return NamespacedClientCache(cluster.handle_factory)


@pytest.fixture
def db_creds_config():
    """
    One rule: ns-a/db-creds -> ns-b/db-creds, ns-c/db-creds.
    """
    return ReplicationConfig.from_document([
        {"source": "ns-a/db-creds", "destination": ["ns-b/db-creds", "ns-c/db-creds"]},
    ])
