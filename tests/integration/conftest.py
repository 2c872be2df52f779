"""
Shared fixtures for integration tests.

Every test gets a fresh SQLite document store in a temporary directory and
the full set of services wired around one Reconciler.
"""

import tempfile

import pytest

from backend.buildboard_server.config import ReconcilerConfig, ServerConfig
from backend.buildboard_server.main import build_services
from backend.buildboard_server.store import DocumentStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def documents(data_dir):
    return DocumentStore(data_dir, wal_mode=False)


@pytest.fixture
def config(data_dir):
    return ServerConfig(reconciler=ReconcilerConfig(min_recount_interval_seconds=0))


@pytest.fixture
def services(documents, config):
    return build_services(documents, config)


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture
def relationships(services):
    return services.relationships


@pytest.fixture
def engagement(services):
    return services.engagement


@pytest.fixture
def leaderboard(services):
    return services.leaderboard


@pytest.fixture
def builds(services):
    return services.builds
