"""
Process-lifetime context for the relationship subsystem.

One RelationshipService owns the store, the identity map, the mirror, both
engines and the expiry sweeper, and is passed explicitly to whatever command
layer drives it. There is no module-level graph state.

    service = RelationshipService.from_settings(settings)
    await service.start()
    outcome = await service.handle(RelationshipRequest(...))
    result = service.query(QueryRequest(...))
    await service.close()
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from .config import RelationshipSettings
from .config import settings as default_settings
from .graph.audit import AuditReport, audit_edges
from .graph.identity import IdentityMap
from .graph.mirror import RelationshipGraph
from .models.relationship import RelationshipEdge
from .models.requests import QueryRequest, QueryResult, RelationshipOutcome, RelationshipRequest
from .services.expiry_sweeper import ExpirySweeper
from .services.mutation_engine import MutationEngine
from .services.query_engine import QueryEngine
from .storage.relationship_store import RelationshipStore

logger = logging.getLogger(__name__)


class RelationshipService:
    """Wires store, identity map, mirror, engines and sweeper together."""

    def __init__(
        self,
        store: RelationshipStore,
        settings: RelationshipSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or default_settings
        self.store = store
        self.identity = IdentityMap()
        self.graph = RelationshipGraph()
        self.mutations = MutationEngine(store, self.graph, self.identity, self.settings.mutation, clock=clock)
        self.queries = QueryEngine(self.graph, self.identity)
        self.sweeper = ExpirySweeper(self.mutations, interval=self.settings.mutation.sweep_interval_seconds)
        self._started = False

    @classmethod
    def from_settings(cls, settings: RelationshipSettings | None = None, **kwargs: Any) -> "RelationshipService":
        settings = settings or default_settings
        store = RelationshipStore(str(settings.store.db_path), busy_timeout=settings.store.busy_timeout_seconds)
        return cls(store, settings, **kwargs)

    async def start(self) -> None:
        """Initialize the store, load identities, build the mirror, start the sweeper."""
        if self._started:
            return

        await self.store.initialize()
        self.identity.load(await self.store.load_nodes())
        edges = await self.store.load_all_active_edges()
        self.graph.rebuild_from(edges)
        logger.info(f"Relationship mirror built: {len(self.graph)} live edge(s)")

        if self.settings.mutation.sweeper_enabled:
            await self.sweeper.start()
        self._started = True

    async def reconcile(self) -> AuditReport:
        """Rebuild the mirror from the store with mutations paused and audit the result."""
        async with self.mutations.exclusive():
            before = self.graph.snapshot()
            edges = await self.store.load_all_active_edges()
            self.graph.rebuild_from(edges)
            if self.graph.snapshot() != before:
                logger.warning("Relationship mirror drifted from the store and was rebuilt")
            else:
                logger.debug("Relationship mirror consistent with store")

        report = audit_edges(edges)
        if not report.ok:
            logger.error(f"Stored relationships violate invariants: {report}")
        return report

    async def handle(self, request: RelationshipRequest) -> RelationshipOutcome:
        return await self.mutations.handle(request)

    def query(self, request: QueryRequest) -> QueryResult:
        return self.queries.handle(request)

    async def history(self, user_id: int) -> list[RelationshipEdge]:
        """Every edge the user has ever been part of, dissolved ones included."""
        return await self.store.edge_history(self.identity.index_of(user_id))

    async def purge_user(self, user_id: int) -> list[RelationshipEdge]:
        return await self.mutations.purge(user_id)

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.store.close()
        self._started = False
        logger.info("Relationship service closed")
