"""
Tests for the mutation engine.

Covers the proposal lifecycle, every guard, the commit protocol under
storage failure and cancellation, and concurrent requests on shared nodes.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from relationship_service.exceptions import Expired, InvariantViolation, NotFound, StorageIO, UnknownNode
from relationship_service.graph.audit import audit_edges
from relationship_service.models.relationship import DissolveReason, EdgeStatus, RelationKind
from relationship_service.models.requests import RelationshipRequest
from relationship_service.storage.relationship_store import StoreTransaction
from relationship_helpers import PENDING_TTL, link

A, B, C, D = 1001, 1002, 1003, 1004


class TestLifecycle:
    """Propose / accept / decline / dissolve."""

    @pytest.mark.asyncio
    async def test_family_scenario(self, engine, store):
        """Partner A-B, child C of A, and the two rejected proposals."""
        proposal = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        assert proposal.status is EdgeStatus.PENDING

        married = await engine.accept(proposal.id, B)
        assert married.status is EdgeStatus.ACTIVE

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.propose(RelationKind.PARTNERSHIP, A, C)
        assert exc_info.value.reason == "monogamy"

        parentage = await link(engine, RelationKind.PARENTAGE, A, C)
        assert parentage.status is EdgeStatus.ACTIVE

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.propose(RelationKind.PARENTAGE, C, A)
        assert exc_info.value.reason == "cycle"

        stored = await store.load_all_active_edges()
        assert {(e.kind, e.status) for e in stored} == {
            (RelationKind.PARTNERSHIP, EdgeStatus.ACTIVE),
            (RelationKind.PARENTAGE, EdgeStatus.ACTIVE),
        }

    @pytest.mark.asyncio
    async def test_mirror_follows_commits(self, engine, graph, identity):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        a, b = identity.index_of(A), identity.index_of(B)

        assert graph.get_edge(edge.id).status is EdgeStatus.PENDING
        assert graph.partner_of(a) is None

        await engine.accept(edge.id, B)
        assert graph.partner_of(a) == b
        assert graph.partner_of(b) == a

        await engine.dissolve(edge.id, A)
        assert graph.get_edge(edge.id) is None
        assert graph.partner_of(a) is None

    @pytest.mark.asyncio
    async def test_decline_by_counterpart(self, engine, store):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)

        declined = await engine.decline(edge.id, B)

        assert declined.dissolved_reason is DissolveReason.DECLINED
        assert (await store.get_edge(edge.id)).status is EdgeStatus.DISSOLVED
        # Both users are free again
        await engine.propose(RelationKind.PARTNERSHIP, A, C)

    @pytest.mark.asyncio
    async def test_withdraw_by_proposer(self, engine):
        edge = await engine.propose(RelationKind.PARENTAGE, A, B)

        withdrawn = await engine.decline(edge.id, A)

        assert withdrawn.dissolved_reason is DissolveReason.WITHDRAWN

    @pytest.mark.asyncio
    async def test_dissolve_by_authority(self, engine, graph, identity):
        edge = await link(engine, RelationKind.PARENTAGE, A, B)

        dissolved = await engine.dissolve(edge.id)

        assert dissolved.dissolved_reason is DissolveReason.DISSOLVED
        assert graph.children_of(identity.index_of(A)) == frozenset()

    @pytest.mark.asyncio
    async def test_dissolved_edge_is_not_found(self, engine):
        edge = await link(engine, RelationKind.PARTNERSHIP, A, B)
        await engine.dissolve(edge.id, B)

        with pytest.raises(NotFound):
            await engine.dissolve(edge.id, B)
        with pytest.raises(NotFound):
            await engine.accept(edge.id, B)

    @pytest.mark.asyncio
    async def test_partners_can_remarry_after_dissolve(self, engine):
        first = await link(engine, RelationKind.PARTNERSHIP, A, B)
        await engine.dissolve(first.id, A)

        second = await link(engine, RelationKind.PARTNERSHIP, A, C)

        assert second.status is EdgeStatus.ACTIVE


class TestGuards:
    @pytest.mark.asyncio
    async def test_third_party_accept_rejected(self, engine, graph):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        await engine.propose(RelationKind.PARENTAGE, C, D)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.accept(edge.id, C)
        assert exc_info.value.reason == "not_counterpart"
        assert graph.get_edge(edge.id).status is EdgeStatus.PENDING

    @pytest.mark.asyncio
    async def test_proposer_cannot_accept_own_proposal(self, engine):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.accept(edge.id, A)
        assert exc_info.value.reason == "not_counterpart"

    @pytest.mark.asyncio
    async def test_unknown_user_cannot_accept(self, engine):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)

        with pytest.raises(InvariantViolation):
            await engine.accept(edge.id, 999_999)

    @pytest.mark.asyncio
    async def test_self_reference_rejected_without_resolving(self, engine, identity):
        with pytest.raises(InvariantViolation) as exc_info:
            await engine.propose(RelationKind.PARENTAGE, A, A)

        assert exc_info.value.reason == "self_reference"
        assert A not in identity

    @pytest.mark.asyncio
    async def test_duplicate_pending_parentage(self, engine):
        await engine.propose(RelationKind.PARENTAGE, A, B)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.propose(RelationKind.PARENTAGE, A, B)
        assert exc_info.value.reason == "duplicate"

    @pytest.mark.asyncio
    async def test_pending_partnership_reserves_both_users(self, engine):
        await engine.propose(RelationKind.PARTNERSHIP, A, B)

        for initiator, target in ((C, B), (A, C)):
            with pytest.raises(InvariantViolation) as exc_info:
                await engine.propose(RelationKind.PARTNERSHIP, initiator, target)
            assert exc_info.value.reason == "monogamy"

    @pytest.mark.asyncio
    async def test_deep_cycle_rejected(self, engine):
        await link(engine, RelationKind.PARENTAGE, A, B)
        await link(engine, RelationKind.PARENTAGE, B, C)
        await link(engine, RelationKind.PARENTAGE, C, D)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.propose(RelationKind.PARENTAGE, D, A)
        assert exc_info.value.reason == "cycle"

    @pytest.mark.asyncio
    async def test_cycle_rechecked_on_accept(self, engine, graph):
        """Two opposite pending proposals cannot both become active."""
        forward = await engine.propose(RelationKind.PARENTAGE, A, B)
        backward = await engine.propose(RelationKind.PARENTAGE, B, A)

        await engine.accept(forward.id, B)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.accept(backward.id, A)
        assert exc_info.value.reason == "cycle"
        assert graph.get_edge(backward.id).status is EdgeStatus.PENDING

    @pytest.mark.asyncio
    async def test_dissolve_requires_participant(self, engine):
        edge = await link(engine, RelationKind.PARTNERSHIP, A, B)
        await engine.propose(RelationKind.PARENTAGE, C, D)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.dissolve(edge.id, C)
        assert exc_info.value.reason == "not_participant"

    @pytest.mark.asyncio
    async def test_dissolve_pending_rejected(self, engine):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.dissolve(edge.id, A)
        assert exc_info.value.reason == "not_active"

    @pytest.mark.asyncio
    async def test_decline_active_rejected(self, engine):
        edge = await link(engine, RelationKind.PARTNERSHIP, A, B)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.decline(edge.id, B)
        assert exc_info.value.reason == "not_pending"


class TestExpiry:
    @pytest.mark.asyncio
    async def test_accept_after_window_raises_expired(self, engine, clock, store, graph):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        clock.advance(PENDING_TTL)

        with pytest.raises(Expired) as exc_info:
            await engine.accept(edge.id, B)
        assert exc_info.value.edge_id == edge.id

        # Rejected before any write; the dissolve is left to expiry
        assert (await store.get_edge(edge.id)).status is EdgeStatus.PENDING
        assert graph.get_edge(edge.id).status is EdgeStatus.PENDING
        with pytest.raises(Expired):
            await engine.accept(edge.id, B)

        await engine.expire(edge.id)
        stored = await store.get_edge(edge.id)
        assert stored.status is EdgeStatus.DISSOLVED
        assert stored.dissolved_reason is DissolveReason.EXPIRED
        assert graph.get_edge(edge.id) is None

        with pytest.raises(NotFound):
            await engine.accept(edge.id, B)

    @pytest.mark.asyncio
    async def test_expired_accept_does_not_touch_store(self, engine, clock):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        clock.advance(PENDING_TTL)

        with patch.object(StoreTransaction, "update_edge_status", new_callable=AsyncMock) as update:
            with pytest.raises(Expired):
                await engine.accept(edge.id, B)

        update.assert_not_called()

    @pytest.mark.asyncio
    async def test_accept_just_inside_window(self, engine, clock):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        clock.advance(PENDING_TTL - 1)

        assert (await engine.accept(edge.id, B)).status is EdgeStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_expire_before_window_rejected(self, engine, clock):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        clock.advance(PENDING_TTL / 2)

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.expire(edge.id)
        assert exc_info.value.reason == "not_expired"

        clock.advance(PENDING_TTL)
        expired = await engine.expire(edge.id)
        assert expired.dissolved_reason is DissolveReason.EXPIRED

    @pytest.mark.asyncio
    async def test_expire_overdue_only_touches_overdue(self, engine, clock, graph):
        old = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        clock.advance(PENDING_TTL / 2)
        fresh = await engine.propose(RelationKind.PARENTAGE, C, D)
        clock.advance(PENDING_TTL / 2)

        assert await engine.expire_overdue() == 1
        assert graph.get_edge(old.id) is None
        assert graph.get_edge(fresh.id).status is EdgeStatus.PENDING
        assert await engine.expire_overdue() == 0

    @pytest.mark.asyncio
    async def test_expire_overdue_continues_past_drifted_edge(self, engine, clock, store, graph):
        drifted = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        later = await engine.propose(RelationKind.PARENTAGE, C, D)
        clock.advance(PENDING_TTL)

        # Dissolve the first edge in the store behind the mirror's back
        async with aiosqlite.connect(store.db_path) as db:
            await db.execute("UPDATE edge SET status = 'dissolved' WHERE id = ?", (drifted.id,))
            await db.commit()

        for _ in range(2):
            await engine.expire_overdue()

        stored = await store.get_edge(later.id)
        assert stored.status is EdgeStatus.DISSOLVED
        assert stored.dissolved_reason is DissolveReason.EXPIRED
        assert graph.get_edge(later.id) is None
        assert graph.get_edge(drifted.id).status is EdgeStatus.PENDING


class TestFailureAtomicity:
    @pytest.mark.asyncio
    async def test_storage_failure_mid_transaction_leaves_no_trace(self, engine, store, graph):
        with patch.object(
            StoreTransaction, "insert_edge", new_callable=AsyncMock, side_effect=StorageIO("disk unavailable")
        ):
            with pytest.raises(StorageIO) as exc_info:
                await engine.propose(RelationKind.PARTNERSHIP, A, B)
        assert exc_info.value.retryable

        assert len(graph) == 0
        assert await store.load_all_active_edges() == []
        assert await store.load_nodes() == []

        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        assert graph.get_edge(edge.id) == edge
        assert [e.id for e in await store.load_all_active_edges()] == [edge.id]

    @pytest.mark.asyncio
    async def test_commit_failure_leaves_no_trace(self, engine, store, graph):
        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)

        with patch.object(StoreTransaction, "_commit", new_callable=AsyncMock, side_effect=StorageIO("commit failed")):
            with pytest.raises(StorageIO):
                await engine.accept(edge.id, B)

        assert graph.get_edge(edge.id).status is EdgeStatus.PENDING
        assert (await store.get_edge(edge.id)).status is EdgeStatus.PENDING

        assert (await engine.accept(edge.id, B)).status is EdgeStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_cancel_before_commit_rolls_back(self, engine, store, graph):
        entered = asyncio.Event()
        original = StoreTransaction.insert_edge

        async def slow_insert(self, *args, **kwargs):
            edge = await original(self, *args, **kwargs)
            entered.set()
            await asyncio.sleep(10)
            return edge

        with patch.object(StoreTransaction, "insert_edge", slow_insert):
            task = asyncio.create_task(engine.propose(RelationKind.PARTNERSHIP, A, B))
            await entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert len(graph) == 0
        assert await store.load_all_active_edges() == []
        assert len(engine.locks) == 0

        edge = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        assert edge.status is EdgeStatus.PENDING


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_proposal_storm_yields_one_pending_partnership(self, engine, graph, identity):
        suitors = list(range(2000, 2020))

        results = await asyncio.gather(
            *(engine.propose(RelationKind.PARTNERSHIP, s, A) for s in suitors),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(f, InvariantViolation) and f.reason == "monogamy" for f in failures)
        assert len(graph.live_edges_of(identity.index_of(A), RelationKind.PARTNERSHIP)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_accepts_keep_monogamy(self, engine, graph, identity):
        """Cross proposals accepted at once: at most one partnership per user."""
        ab = await engine.propose(RelationKind.PARTNERSHIP, A, B)
        cd = await engine.propose(RelationKind.PARTNERSHIP, C, D)

        await asyncio.gather(engine.accept(ab.id, B), engine.accept(cd.id, D))
        results = await asyncio.gather(
            engine.propose(RelationKind.PARTNERSHIP, B, C),
            engine.propose(RelationKind.PARTNERSHIP, A, D),
            return_exceptions=True,
        )

        assert all(isinstance(r, InvariantViolation) for r in results)
        for user in (A, B, C, D):
            node = identity.index_of(user)
            active = [
                e for e in graph.live_edges_of(node, RelationKind.PARTNERSHIP) if e.status is EdgeStatus.ACTIVE
            ]
            assert len(active) == 1

    @pytest.mark.asyncio
    async def test_concurrent_opposite_parentage_accepts(self, engine, graph, identity):
        forward = await engine.propose(RelationKind.PARENTAGE, A, B)
        backward = await engine.propose(RelationKind.PARENTAGE, B, A)

        results = await asyncio.gather(
            engine.accept(forward.id, B),
            engine.accept(backward.id, A),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        a, b = identity.index_of(A), identity.index_of(B)
        assert not (b in graph.children_of(a) and a in graph.children_of(b))

    @pytest.mark.asyncio
    async def test_concurrent_accepts_on_disjoint_nodes_cannot_close_cycle(self, engine, store):
        """A -> B -> C -> D -> A closed by two accepts that share no endpoint."""
        await link(engine, RelationKind.PARENTAGE, A, B)
        await link(engine, RelationKind.PARENTAGE, C, D)
        bc = await engine.propose(RelationKind.PARENTAGE, B, C)
        da = await engine.propose(RelationKind.PARENTAGE, D, A)

        results = await asyncio.gather(
            engine.accept(bc.id, C),
            engine.accept(da.id, A),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvariantViolation)
        assert failures[0].reason == "cycle"
        assert audit_edges(await store.load_all_active_edges()).ok

    @pytest.mark.asyncio
    async def test_exclusive_waits_for_in_flight_mutation(self, engine):
        release = asyncio.Event()
        original = StoreTransaction.insert_edge

        async def gated_insert(self, *args, **kwargs):
            await release.wait()
            return await original(self, *args, **kwargs)

        with patch.object(StoreTransaction, "insert_edge", gated_insert):
            proposal = asyncio.create_task(engine.propose(RelationKind.PARTNERSHIP, A, B))
            await asyncio.sleep(0.01)

            entered = asyncio.Event()

            async def pause():
                async with engine.exclusive():
                    entered.set()

            pauser = asyncio.create_task(pause())
            await asyncio.sleep(0.01)
            assert not entered.is_set()

            release.set()
            await proposal
            await pauser
            assert entered.is_set()


class TestPurge:
    @pytest.mark.asyncio
    async def test_soft_purge_dissolves_and_deactivates(self, engine, store, graph, identity):
        await link(engine, RelationKind.PARTNERSHIP, A, B)
        await link(engine, RelationKind.PARENTAGE, A, C)
        await engine.propose(RelationKind.PARENTAGE, D, A)

        dissolved = await engine.purge(A)

        assert len(dissolved) == 3
        assert all(e.dissolved_reason is DissolveReason.PURGED for e in dissolved)
        assert graph.live_edges_of(identity.index_of(A)) == []
        assert not identity.is_active(identity.index_of(A))
        assert await store.load_all_active_edges() == []
        assert len(await store.edge_history(identity.index_of(A))) == 3

        with pytest.raises(InvariantViolation) as exc_info:
            await engine.propose(RelationKind.PARTNERSHIP, B, A)
        assert exc_info.value.reason == "inactive_node"

    @pytest.mark.asyncio
    async def test_hard_purge_deletes_edge_rows(self, engine, store, identity):
        engine.settings = engine.settings.model_copy(update={"purge_policy": "hard"})
        await link(engine, RelationKind.PARTNERSHIP, A, B)
        kept = await link(engine, RelationKind.PARENTAGE, C, D)

        await engine.purge(A)

        assert await store.edge_history(identity.index_of(A)) == []
        assert [e.id for e in await store.load_all_active_edges()] == [kept.id]
        nodes = {n.external_id: n for n in await store.load_nodes()}
        assert nodes[A].active is False

    @pytest.mark.asyncio
    async def test_purge_unknown_user(self, engine):
        with pytest.raises(UnknownNode):
            await engine.purge(A)


class TestHandle:
    @pytest.mark.asyncio
    async def test_request_round(self, engine):
        proposed = await engine.handle(
            RelationshipRequest(action="propose", relation="Partnership", initiator_id=str(A), target_id=B)
        )
        assert proposed.status is EdgeStatus.PENDING
        assert (proposed.source_id, proposed.target_id, proposed.proposer_id) == (A, B, A)

        accepted = await engine.handle(
            RelationshipRequest(action="accept", relation="partnership", initiator_id=B, target_id=A)
        )
        assert accepted.edge_id == proposed.edge_id
        assert accepted.status is EdgeStatus.ACTIVE

        dissolved = await engine.handle(
            RelationshipRequest(action="dissolve", relation="partnership", initiator_id=A, target_id=B)
        )
        assert dissolved.status is EdgeStatus.DISSOLVED

    @pytest.mark.asyncio
    async def test_authority_dissolve(self, engine):
        await link(engine, RelationKind.PARENTAGE, A, B)

        outcome = await engine.handle(
            RelationshipRequest(
                action="dissolve", relation="parentage", initiator_id=9, target_id=B, authority=True, source_id=A
            )
        )

        assert outcome.status is EdgeStatus.DISSOLVED

    @pytest.mark.asyncio
    async def test_decline_request(self, engine):
        await engine.propose(RelationKind.PARENTAGE, A, B)

        outcome = await engine.handle(
            RelationshipRequest(action="decline", relation="parentage", initiator_id=B, target_id=A)
        )

        assert outcome.status is EdgeStatus.DISSOLVED

    @pytest.mark.asyncio
    async def test_accept_without_proposal(self, engine):
        await engine.propose(RelationKind.PARENTAGE, A, B)

        with pytest.raises(NotFound):
            await engine.handle(
                RelationshipRequest(action="accept", relation="partnership", initiator_id=B, target_id=A)
            )

    @pytest.mark.asyncio
    async def test_request_for_unknown_user(self, engine):
        with pytest.raises(UnknownNode):
            await engine.handle(
                RelationshipRequest(action="accept", relation="partnership", initiator_id=B, target_id=A)
            )
