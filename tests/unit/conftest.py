"""Shared fixtures: a store in a temp dir, a controllable clock, and wired engines."""

import pytest

from relationship_service.config import MutationSettings, RelationshipSettings, StoreSettings
from relationship_service.graph.identity import IdentityMap
from relationship_service.graph.mirror import RelationshipGraph
from relationship_service.service import RelationshipService
from relationship_service.services.mutation_engine import MutationEngine
from relationship_service.services.query_engine import QueryEngine
from relationship_service.storage.relationship_store import RelationshipStore
from relationship_helpers import PENDING_TTL, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mutation_settings():
    return MutationSettings(pending_ttl_seconds=PENDING_TTL, sweep_interval_seconds=0.01, sweeper_enabled=False)


@pytest.fixture
async def store(tmp_path):
    store = RelationshipStore(str(tmp_path / "relationships.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def graph():
    return RelationshipGraph()


@pytest.fixture
def identity():
    return IdentityMap()


@pytest.fixture
def engine(store, graph, identity, mutation_settings, clock):
    return MutationEngine(store, graph, identity, mutation_settings, clock=clock)


@pytest.fixture
def queries(graph, identity):
    return QueryEngine(graph, identity)


@pytest.fixture
def settings(tmp_path, mutation_settings):
    return RelationshipSettings(
        store=StoreSettings(db_path=tmp_path / "service.db"),
        mutation=mutation_settings,
    )


@pytest.fixture
async def service(settings, clock):
    service = RelationshipService.from_settings(settings, clock=clock)
    await service.start()
    yield service
    await service.close()

