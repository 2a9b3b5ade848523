"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock

from applier import Applier
from backoff import Backoff
from declared import DeclaredCache
from fakes import FakeCluster, no_sleep
from inventory import InventoryStore
from ownership import OwnershipRegistry, Scope


@pytest.fixture
def cluster():
    """An empty in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def fast_backoff():
    """Backoff that never waits."""
    return Backoff(base_delay=0.0, max_delay=0.0, jitter_factor=0.0, max_attempts=3)


@pytest.fixture
def root_scope():
    return Scope(sync_name="root-sync")


@pytest.fixture
def team_scope():
    return Scope(sync_name="repo-sync", namespace="team-a")


@pytest.fixture
def registry():
    return OwnershipRegistry()


@pytest.fixture
def cache():
    return DeclaredCache()


@pytest.fixture
def mock_event_bus():
    bus = AsyncMock()
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def make_inventory(cluster, fast_backoff):
    def factory(scope):
        return InventoryStore(
            cluster, scope, "config-management-system", fast_backoff, sleep=no_sleep
        )

    return factory


@pytest.fixture
def make_applier(cluster, registry, fast_backoff, cache, make_inventory):
    """Factory for an Applier bound to the shared fake cluster."""

    def factory(scope, event_bus=None, owner_registry=None):
        return Applier(
            scope,
            cluster,
            owner_registry or registry,
            make_inventory(scope),
            backoff=fast_backoff,
            event_bus=event_bus,
            cache=cache,
            sleep=no_sleep,
        )

    return factory
