"""
Mutation engine: the only writer of relationship state.

Every transition follows the same protocol:

    1. acquire the per-node tokens of every endpoint (ascending index order)
    2. check guards against the mirror; a failure raises before any I/O
    3. write inside one store transaction
    4. after COMMIT, apply the identical change to the mirror
    5. release the tokens

A StorageIO failure in step 3 leaves the mirror untouched, so the caller may
resubmit the identical request. A task cancelled before COMMIT leaves no
trace; once COMMIT has landed the mirror update is applied regardless.

Edge lifecycle:

    propose  -> PENDING
    accept   PENDING -> ACTIVE      (non-proposing endpoint, within the window)
    decline  PENDING -> DISSOLVED   (declined by counterpart / withdrawn by proposer)
    expire   PENDING -> DISSOLVED   (window elapsed)
    dissolve ACTIVE  -> DISSOLVED   (either endpoint, or an external authority)
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from ..config import MutationSettings
from ..exceptions import Expired, InvariantViolation, NotFound, StorageIO
from ..graph.identity import IdentityMap
from ..graph.locks import NodeLocks
from ..graph.mirror import RelationshipGraph
from ..models.relationship import DissolveReason, EdgeStatus, RelationKind, RelationshipEdge
from ..models.requests import RelationshipOutcome, RelationshipRequest
from ..storage.relationship_store import RelationshipStore, StoreTransaction

logger = logging.getLogger(__name__)

WriteFn = Callable[[StoreTransaction], Awaitable[list[RelationshipEdge]]]


def _reject(reason: str, message: str, **details) -> InvariantViolation:
    logger.debug(f"Rejected mutation ({reason}): {message}")
    return InvariantViolation(reason, message, **details)


class MutationEngine:
    """Validates and applies relationship changes against store and mirror."""

    def __init__(
        self,
        store: RelationshipStore,
        graph: RelationshipGraph,
        identity: IdentityMap,
        settings: MutationSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.graph = graph
        self.identity = identity
        self.settings = settings or MutationSettings()
        self.clock = clock
        self.locks = NodeLocks()

        # Parentage activations read the whole ancestor chain, not just their endpoints
        self._ancestry = asyncio.Lock()

        # Reconciliation pauses new mutations and waits for in-flight ones
        self._exclusive = asyncio.Lock()
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # ── Locking and commit protocol ─────────────────────────────────────

    @asynccontextmanager
    async def _mutation(self, *nodes: int) -> AsyncIterator[None]:
        async with self._exclusive:
            pass
        self._in_flight += 1
        self._idle.clear()
        try:
            async with self.locks.hold(*nodes):
                yield
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Block new mutations and wait for in-flight ones to finish."""
        async with self._exclusive:
            await self._idle.wait()
            yield

    async def _write_then_apply(
        self,
        write: WriteFn,
        on_commit: Callable[[list[RelationshipEdge]], None] | None = None,
    ) -> list[RelationshipEdge]:
        tx = self.store.begin_transaction()
        edges: list[RelationshipEdge] = []
        try:
            async with tx:
                edges = await write(tx)
        finally:
            if tx.committed:
                for edge in edges:
                    self.graph.apply(edge)
                if on_commit is not None:
                    on_commit(edges)
        return edges

    def _live_edge(self, edge_id: int) -> RelationshipEdge:
        edge = self.graph.get_edge(edge_id)
        if edge is None:
            raise NotFound(f"Relationship {edge_id} does not exist or is dissolved", edge_id=edge_id)
        return edge

    def _is_expired(self, edge: RelationshipEdge, now: float) -> bool:
        return now >= edge.expires_at(self.settings.pending_ttl_seconds)

    # ── Guards ──────────────────────────────────────────────────────────

    def _check_partnership_slots(self, nodes: tuple[int, ...], ignore_edge: int | None = None) -> None:
        for node in nodes:
            partner = self.graph.partner_of(node)
            if partner is not None:
                raise _reject(
                    "monogamy",
                    f"User {self.identity.lookup(node)} already has a partner",
                    node=node,
                )
            pending = [e for e in self.graph.live_edges_of(node, RelationKind.PARTNERSHIP) if e.id != ignore_edge]
            if pending:
                raise _reject(
                    "monogamy",
                    f"User {self.identity.lookup(node)} already has a pending partnership proposal",
                    node=node,
                    edge_id=pending[0].id,
                )

    def _check_no_cycle(self, parent: int, child: int) -> None:
        if self.graph.would_create_cycle(parent, child):
            raise _reject(
                "cycle",
                f"User {self.identity.lookup(child)} is already an ancestor of {self.identity.lookup(parent)}",
                parent=parent,
                child=child,
            )

    def _check_propose(self, kind: RelationKind, a: int, b: int) -> None:
        for node in (a, b):
            if not self.identity.is_active(node):
                raise _reject("inactive_node", f"User {self.identity.lookup(node)} has been deactivated", node=node)

        existing = self.graph.live_edges_between(a, b, kind)
        if kind is RelationKind.PARENTAGE:
            # The reverse direction is a cycle, not a duplicate
            existing = [e for e in existing if e.source == a]
        if existing:
            raise _reject(
                "duplicate",
                f"A {existing[0].status.value} {kind.value} already links these users",
                edge_id=existing[0].id,
            )

        if kind is RelationKind.PARTNERSHIP:
            self._check_partnership_slots((a, b))
        else:
            self._check_no_cycle(a, b)

    # ── Transitions ─────────────────────────────────────────────────────

    async def propose(self, kind: RelationKind, initiator_id: int, target_id: int) -> RelationshipEdge:
        """Create a PENDING edge from initiator to target.

        For PARENTAGE the initiator is the parent. The target must accept.
        """
        if initiator_id == target_id:
            raise _reject("self_reference", "A user cannot relate to themselves", user_id=initiator_id)

        a = self.identity.resolve(initiator_id)
        b = self.identity.resolve(target_id)

        async with self._mutation(a, b):
            self._check_propose(kind, a, b)
            now = self.clock()

            async def write(tx: StoreTransaction) -> list[RelationshipEdge]:
                await tx.insert_node(a, initiator_id, now)
                await tx.insert_node(b, target_id, now)
                return [await tx.insert_edge(kind, a, b, proposer=a, created_at=now)]

            (edge,) = await self._write_then_apply(write)

        logger.info(f"Proposed {kind.value} {edge.id}: {initiator_id} -> {target_id}")
        return edge

    async def accept(self, edge_id: int, by_id: int) -> RelationshipEdge:
        """Activate a pending edge on behalf of its non-proposing endpoint."""
        edge = self._live_edge(edge_id)
        async with self._mutation(*edge.endpoints):
            edge = self._live_edge(edge_id)
            if edge.status is not EdgeStatus.PENDING:
                raise _reject("not_pending", f"Relationship {edge_id} is already {edge.status.value}", edge_id=edge_id)

            by = self.identity.find(by_id)
            if by != edge.counterpart:
                raise _reject(
                    "not_counterpart",
                    f"Only user {self.identity.lookup(edge.counterpart)} can accept relationship {edge_id}",
                    edge_id=edge_id,
                )

            now = self.clock()
            if self._is_expired(edge, now):
                # Left pending; the sweeper or expire() dissolves it
                raise Expired(edge_id, edge.expires_at(self.settings.pending_ttl_seconds))

            if edge.kind is RelationKind.PARTNERSHIP:
                self._check_partnership_slots(edge.endpoints, ignore_edge=edge.id)
                edge = await self._activate_locked(edge, now)
            else:
                async with self._ancestry:
                    self._check_no_cycle(edge.source, edge.target)
                    edge = await self._activate_locked(edge, now)

        logger.info(f"Accepted {edge.kind.value} {edge.id}")
        return edge

    async def _activate_locked(self, edge: RelationshipEdge, now: float) -> RelationshipEdge:
        async def write(tx: StoreTransaction) -> list[RelationshipEdge]:
            return [await tx.update_edge_status(edge, EdgeStatus.ACTIVE, at=now)]

        (activated,) = await self._write_then_apply(write)
        return activated

    async def decline(self, edge_id: int, by_id: int) -> RelationshipEdge:
        """Dissolve a pending edge: declined by the counterpart or withdrawn by the proposer."""
        edge = self._live_edge(edge_id)
        async with self._mutation(*edge.endpoints):
            edge = self._live_edge(edge_id)
            if edge.status is not EdgeStatus.PENDING:
                raise _reject("not_pending", f"Relationship {edge_id} is already {edge.status.value}", edge_id=edge_id)

            by = self.identity.find(by_id)
            if by is None or not edge.touches(by):
                raise _reject("not_participant", f"User {by_id} is not part of relationship {edge_id}", edge_id=edge_id)

            reason = DissolveReason.WITHDRAWN if by == edge.proposer else DissolveReason.DECLINED
            edge = await self._dissolve_locked(edge, reason, self.clock())

        logger.info(f"Proposal {edge.id} {reason.value}")
        return edge

    async def dissolve(self, edge_id: int, by_id: int | None = None) -> RelationshipEdge:
        """End an active edge. ``by_id=None`` acts as an external authority."""
        edge = self._live_edge(edge_id)
        async with self._mutation(*edge.endpoints):
            edge = self._live_edge(edge_id)
            if edge.status is not EdgeStatus.ACTIVE:
                raise _reject("not_active", f"Relationship {edge_id} is {edge.status.value}", edge_id=edge_id)

            if by_id is not None:
                by = self.identity.find(by_id)
                if by is None or not edge.touches(by):
                    raise _reject(
                        "not_participant", f"User {by_id} is not part of relationship {edge_id}", edge_id=edge_id
                    )

            edge = await self._dissolve_locked(edge, DissolveReason.DISSOLVED, self.clock())

        logger.info(f"Dissolved {edge.kind.value} {edge.id}")
        return edge

    async def expire(self, edge_id: int) -> RelationshipEdge:
        """Dissolve a pending edge whose acceptance window has elapsed."""
        edge = self._live_edge(edge_id)
        async with self._mutation(*edge.endpoints):
            edge = self._live_edge(edge_id)
            now = self.clock()
            if edge.status is not EdgeStatus.PENDING:
                raise _reject("not_pending", f"Relationship {edge_id} is already {edge.status.value}", edge_id=edge_id)
            if not self._is_expired(edge, now):
                raise _reject("not_expired", f"Relationship {edge_id} is still within its window", edge_id=edge_id)
            edge = await self._dissolve_locked(edge, DissolveReason.EXPIRED, now)

        logger.info(f"Expired proposal {edge.id}")
        return edge

    async def expire_overdue(self) -> int:
        """Expire every overdue pending edge. Returns how many were expired.

        Edges accepted, declined or already expired by a concurrent request
        between the scan and the lock are skipped. A StorageIO on one edge is
        logged and the sweep moves on to the next.
        """
        now = self.clock()
        overdue = [e for e in self.graph.pending_edges() if self._is_expired(e, now)]
        expired = 0
        failed = 0
        for candidate in overdue:
            async with self._mutation(*candidate.endpoints):
                edge = self.graph.get_edge(candidate.id)
                if edge is None or edge.status is not EdgeStatus.PENDING:
                    continue
                try:
                    await self._dissolve_locked(edge, DissolveReason.EXPIRED, self.clock())
                except StorageIO as e:
                    failed += 1
                    logger.error(f"Could not expire proposal {edge.id}: {e}")
                    continue
                expired += 1
        if expired:
            logger.info(f"Expired {expired} overdue proposal(s)")
        if failed:
            logger.warning(f"{failed} overdue proposal(s) left pending after storage errors")
        return expired

    async def _dissolve_locked(self, edge: RelationshipEdge, reason: DissolveReason, now: float) -> RelationshipEdge:
        async def write(tx: StoreTransaction) -> list[RelationshipEdge]:
            return [await tx.update_edge_status(edge, EdgeStatus.DISSOLVED, reason, at=now)]

        (dissolved,) = await self._write_then_apply(write)
        return dissolved

    async def purge(self, external_id: int) -> list[RelationshipEdge]:
        """Deactivate a user and dissolve every live edge touching them.

        The node keeps its index. With the ``hard`` purge policy the user's
        edge rows are deleted from the store as well.
        """
        index = self.identity.index_of(external_id)
        while True:
            scope = {index} | {e.other(index) for e in self.graph.live_edges_of(index)}
            async with self._mutation(*scope):
                edges = self.graph.live_edges_of(index)
                if not {e.other(index) for e in edges} <= scope:
                    continue  # a new neighbour appeared before we held its token

                now = self.clock()
                hard = self.settings.purge_policy == "hard"

                async def write(tx: StoreTransaction) -> list[RelationshipEdge]:
                    dissolved = [
                        await tx.update_edge_status(e, EdgeStatus.DISSOLVED, DissolveReason.PURGED, at=now)
                        for e in edges
                    ]
                    await tx.insert_node(index, external_id, now)
                    await tx.deactivate_node(index)
                    if hard:
                        await tx.delete_edges_for(index)
                    return dissolved

                dissolved = await self._write_then_apply(write, on_commit=lambda _: self.identity.deactivate(index))
                break

        logger.info(f"Purged user {external_id} ({len(dissolved)} edge(s) dissolved, policy={self.settings.purge_policy})")
        return dissolved

    # ── Request dispatch ────────────────────────────────────────────────

    def _edge_between(self, a_id: int, b_id: int, kind: RelationKind, status: EdgeStatus) -> RelationshipEdge:
        a = self.identity.index_of(a_id)
        b = self.identity.index_of(b_id)
        for edge in self.graph.live_edges_between(a, b, kind):
            if edge.status is status:
                return edge
        raise NotFound(f"No {status.value} {kind.value} between {a_id} and {b_id}")

    async def handle(self, request: RelationshipRequest) -> RelationshipOutcome:
        """Apply a command-layer request addressed by its endpoints."""
        kind = request.relation
        if request.action == "propose":
            edge = await self.propose(kind, request.initiator_id, request.target_id)
        elif request.action == "accept":
            pending = self._edge_between(request.initiator_id, request.target_id, kind, EdgeStatus.PENDING)
            edge = await self.accept(pending.id, request.initiator_id)
        elif request.action == "decline":
            pending = self._edge_between(request.initiator_id, request.target_id, kind, EdgeStatus.PENDING)
            edge = await self.decline(pending.id, request.initiator_id)
        elif request.authority:
            active = self._edge_between(request.source_id, request.target_id, kind, EdgeStatus.ACTIVE)
            edge = await self.dissolve(active.id, None)
        else:
            active = self._edge_between(request.initiator_id, request.target_id, kind, EdgeStatus.ACTIVE)
            edge = await self.dissolve(active.id, request.initiator_id)

        return RelationshipOutcome(
            action=request.action,
            edge_id=edge.id,
            relation=edge.kind,
            status=edge.status,
            source_id=self.identity.lookup(edge.source),
            target_id=self.identity.lookup(edge.target),
            proposer_id=self.identity.lookup(edge.proposer),
        )
