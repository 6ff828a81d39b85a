"""
In-memory mirror of the live relationship graph.

Nodes are plain integer indices (see IdentityMap); edges reference them by
index only, so the structure holds no object cycles. The mirror holds every
PENDING and ACTIVE edge; dissolved edges live only in the store.

Adjacency views:
    partner   node -> id of its ACTIVE partnership edge (at most one)
    parents   child -> set of parents   (ACTIVE parentage only)
    children  parent -> set of children (ACTIVE parentage only)
    incident  node -> ids of every live edge touching it

The mirror never validates. The mutation engine checks guards first and
only applies a change here after the matching store transaction commits.
Readers take no lock; every accessor returns a copy so that iteration is
safe while a mutation lands between awaits.
"""

from collections import deque
from collections.abc import Iterable, Iterator
from typing import Any

from ..models.relationship import EdgeStatus, RelationKind, RelationshipEdge


class RelationshipGraph:
    """Adjacency mirror of the store's live edges."""

    def __init__(self) -> None:
        self._edges: dict[int, RelationshipEdge] = {}
        self._partner: dict[int, int] = {}
        self._parents: dict[int, set[int]] = {}
        self._children: dict[int, set[int]] = {}
        self._incident: dict[int, set[int]] = {}

    # ── Mutation (engine write path only) ───────────────────────────────

    def add_edge(self, edge: RelationshipEdge) -> None:
        """Insert a live edge. Replaces any previous record with the same id."""
        if edge.id in self._edges:
            self._unindex(self._edges[edge.id])
        self._edges[edge.id] = edge
        self._index(edge)

    def remove_edge(self, edge_id: int) -> RelationshipEdge | None:
        edge = self._edges.pop(edge_id, None)
        if edge is not None:
            self._unindex(edge)
        return edge

    def apply(self, edge: RelationshipEdge) -> None:
        """Reflect a committed status change: live edges are stored, dissolved ones dropped."""
        if edge.status.is_live:
            self.add_edge(edge)
        else:
            self.remove_edge(edge.id)

    def rebuild_from(self, edges: Iterable[RelationshipEdge]) -> None:
        """Discard everything and rebuild from the store's live edges."""
        self._edges.clear()
        self._partner.clear()
        self._parents.clear()
        self._children.clear()
        self._incident.clear()
        for edge in edges:
            if edge.status.is_live:
                self.add_edge(edge)

    def _index(self, edge: RelationshipEdge) -> None:
        for node in edge.endpoints:
            self._incident.setdefault(node, set()).add(edge.id)
        if edge.status is not EdgeStatus.ACTIVE:
            return
        if edge.kind is RelationKind.PARTNERSHIP:
            self._partner[edge.source] = edge.id
            self._partner[edge.target] = edge.id
        else:
            self._children.setdefault(edge.source, set()).add(edge.target)
            self._parents.setdefault(edge.target, set()).add(edge.source)

    def _unindex(self, edge: RelationshipEdge) -> None:
        for node in edge.endpoints:
            _discard(self._incident, node, edge.id)
        if edge.status is not EdgeStatus.ACTIVE:
            return
        if edge.kind is RelationKind.PARTNERSHIP:
            for node in edge.endpoints:
                if self._partner.get(node) == edge.id:
                    del self._partner[node]
        else:
            _discard(self._children, edge.source, edge.target)
            _discard(self._parents, edge.target, edge.source)

    # ── Reads ────────────────────────────────────────────────────────────

    def get_edge(self, edge_id: int) -> RelationshipEdge | None:
        return self._edges.get(edge_id)

    def partner_of(self, node: int) -> int | None:
        edge_id = self._partner.get(node)
        if edge_id is None:
            return None
        return self._edges[edge_id].other(node)

    def parents_of(self, node: int) -> frozenset[int]:
        return frozenset(self._parents.get(node, ()))

    def children_of(self, node: int) -> frozenset[int]:
        return frozenset(self._children.get(node, ()))

    def live_edges_of(self, node: int, kind: RelationKind | None = None) -> list[RelationshipEdge]:
        edges = [self._edges[i] for i in tuple(self._incident.get(node, ())) if i in self._edges]
        if kind is not None:
            edges = [e for e in edges if e.kind is kind]
        return sorted(edges, key=lambda e: e.id)

    def live_edges_between(self, a: int, b: int, kind: RelationKind | None = None) -> list[RelationshipEdge]:
        return [e for e in self.live_edges_of(a, kind) if e.touches(b)]

    def pending_edges(self) -> list[RelationshipEdge]:
        return sorted(
            (e for e in tuple(self._edges.values()) if e.status is EdgeStatus.PENDING),
            key=lambda e: e.id,
        )

    def neighbors(self, node: int) -> Iterator[tuple[RelationKind, str, int]]:
        """Active neighbours as ``(kind, role, other)``; role is how ``other`` relates to ``node``."""
        partner = self.partner_of(node)
        if partner is not None:
            yield RelationKind.PARTNERSHIP, "partner", partner
        for parent in sorted(self.parents_of(node)):
            yield RelationKind.PARENTAGE, "parent", parent
        for child in sorted(self.children_of(node)):
            yield RelationKind.PARENTAGE, "child", child

    def would_create_cycle(self, parent: int, child: int) -> bool:
        """Would an ACTIVE ``parent -> child`` edge close a parentage cycle?

        True when ``child`` is already an ancestor of ``parent`` (or they are
        the same node). Walks upward from ``parent`` through parent links.
        """
        if parent == child:
            return True
        seen = {parent}
        queue = deque([parent])
        while queue:
            node = queue.popleft()
            for ancestor in self.parents_of(node):
                if ancestor == child:
                    return True
                if ancestor not in seen:
                    seen.add(ancestor)
                    queue.append(ancestor)
        return False

    @property
    def nodes(self) -> frozenset[int]:
        """Every node touched by a live edge."""
        return frozenset(n for n, ids in tuple(self._incident.items()) if ids)

    def __len__(self) -> int:
        return len(self._edges)

    def snapshot(self) -> dict[str, Any]:
        """Comparable view of edges, statuses and adjacency."""
        return {
            "edges": {i: e.to_dict() for i, e in sorted(self._edges.items())},
            "partner": dict(sorted(self._partner.items())),
            "parents": {n: sorted(p) for n, p in sorted(self._parents.items()) if p},
            "children": {n: sorted(c) for n, c in sorted(self._children.items()) if c},
        }


def _discard(index: dict[int, set[int]], key: int, value: int) -> None:
    members = index.get(key)
    if members is None:
        return
    members.discard(value)
    if not members:
        del index[key]
