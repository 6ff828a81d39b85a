"""
Read-only structural queries over the relationship mirror.

Queries never touch the store and take no locks. A mutation may land
between two steps of a traversal, so results are consistent with some state
observed during the call rather than one global instant. Absent relations
are explicit empty results; only unknown users raise (UnknownNode).
"""

import logging
from collections import deque
from collections.abc import Callable, Iterator

from ..graph.identity import IdentityMap
from ..graph.mirror import RelationshipGraph
from ..models.relationship import RelationKind
from ..models.requests import PathStep, QueryRequest, QueryResult, RelationshipPath

logger = logging.getLogger(__name__)


class QueryEngine:
    """Path finding, ancestry and family clustering for the command layer."""

    def __init__(self, graph: RelationshipGraph, identity: IdentityMap):
        self.graph = graph
        self.identity = identity

    def relationship_path(self, a_id: int, b_id: int) -> RelationshipPath | None:
        """
        Shortest chain of active relations from ``a_id`` to ``b_id``.

        Breadth-first over partnership and parentage links, both treated as
        undirected. Each step records how the next user relates to the
        previous one (``partner``, ``parent`` or ``child``).

        Returns:
            A zero-step path when ``a_id == b_id``, None when no path exists
        """
        start = self.identity.index_of(a_id)
        goal = self.identity.index_of(b_id)
        if start == goal:
            return RelationshipPath(source_id=a_id, target_id=b_id)

        came_from: dict[int, tuple[int, RelationKind, str]] = {}
        seen = {start}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for kind, role, other in self.graph.neighbors(node):
                if other in seen or not self.identity.is_active(other):
                    continue
                seen.add(other)
                came_from[other] = (node, kind, role)
                if other == goal:
                    return RelationshipPath(source_id=a_id, target_id=b_id, steps=self._unwind(came_from, goal))
                queue.append(other)
        return None

    def _unwind(self, came_from: dict[int, tuple[int, RelationKind, str]], goal: int) -> list[PathStep]:
        steps: list[PathStep] = []
        node = goal
        while node in came_from:
            previous, kind, role = came_from[node]
            steps.append(PathStep(relation=kind, role=role, user_id=self.identity.lookup(node)))
            node = previous
        steps.reverse()
        return steps

    def ancestors(self, user_id: int) -> Iterator[int]:
        """Lazily yield every ancestor, nearest generation first."""
        return self._walk(self.identity.index_of(user_id), self.graph.parents_of)

    def descendants(self, user_id: int) -> Iterator[int]:
        """Lazily yield every descendant, nearest generation first."""
        return self._walk(self.identity.index_of(user_id), self.graph.children_of)

    def _walk(self, start: int, step: Callable[[int], frozenset[int]]) -> Iterator[int]:
        seen = {start}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for nxt in sorted(step(node)):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
                    yield self.identity.lookup(nxt)

    def _depths(self, start: int) -> dict[int, int]:
        depths = {start: 0}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for parent in self.graph.parents_of(node):
                if parent not in depths:
                    depths[parent] = depths[node] + 1
                    queue.append(parent)
        return depths

    def common_ancestor(self, a_id: int, b_id: int) -> int | None:
        """
        Lowest common ancestor of two users in the parentage DAG.

        A user counts as their own ancestor, so a parent is the common
        ancestor of itself and its child. Among candidates the smallest
        combined generation distance wins; ties go to the smaller user ID.
        """
        a_depths = self._depths(self.identity.index_of(a_id))
        b_depths = self._depths(self.identity.index_of(b_id))
        common = a_depths.keys() & b_depths.keys()
        if not common:
            return None
        best = min(common, key=lambda n: (a_depths[n] + b_depths[n], self.identity.lookup(n)))
        return self.identity.lookup(best)

    def family(self, user_id: int) -> list[int]:
        """Everyone connected to ``user_id`` through active relations, the user included."""
        start = self.identity.index_of(user_id)
        seen = {start}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for _, _, other in self.graph.neighbors(node):
                if other not in seen:
                    seen.add(other)
                    queue.append(other)
        return sorted(self.identity.lookup(n) for n in seen)

    def partner_of(self, user_id: int) -> int | None:
        partner = self.graph.partner_of(self.identity.index_of(user_id))
        return self.identity.lookup(partner) if partner is not None else None

    def parents_of(self, user_id: int) -> list[int]:
        return sorted(self.identity.lookup(n) for n in self.graph.parents_of(self.identity.index_of(user_id)))

    def children_of(self, user_id: int) -> list[int]:
        return sorted(self.identity.lookup(n) for n in self.graph.children_of(self.identity.index_of(user_id)))

    def handle(self, request: QueryRequest) -> QueryResult:
        """Answer a QueryRequest; "nothing found" is ``found=False``, never an error."""
        ids = request.subject_ids
        if request.kind == "path":
            path = self.relationship_path(ids[0], ids[1])
            return QueryResult(kind="path", found=path is not None, path=path)
        if request.kind == "common_ancestor":
            ancestor = self.common_ancestor(ids[0], ids[1])
            return QueryResult(kind="common_ancestor", found=ancestor is not None, user_id=ancestor)
        if request.kind == "ancestors":
            users = list(self.ancestors(ids[0]))
        elif request.kind == "descendants":
            users = list(self.descendants(ids[0]))
        else:
            users = self.family(ids[0])
            return QueryResult(kind="family", found=len(users) > 1, user_ids=users)
        return QueryResult(kind=request.kind, found=bool(users), user_ids=users)
