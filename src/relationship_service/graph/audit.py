"""
Invariant audit over a set of stored edges.

Used by reconciliation and by scripts/check_relationships.py to verify that
the durable state itself (not just the mirror) satisfies monogamy,
acyclicity and the no-self-edge rule.
"""

from collections import Counter, deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..models.relationship import EdgeStatus, RelationKind, RelationshipEdge


@dataclass
class AuditReport:
    """Invariant violations found in a set of edges."""

    self_edges: list[int] = field(default_factory=list)  # edge ids
    multiple_partners: dict[int, int] = field(default_factory=dict)  # node -> active partnership count
    cycle_nodes: list[int] = field(default_factory=list)  # nodes on or behind a parentage cycle

    @property
    def ok(self) -> bool:
        return not (self.self_edges or self.multiple_partners or self.cycle_nodes)


def audit_edges(edges: Iterable[RelationshipEdge]) -> AuditReport:
    """Check the invariants over the ACTIVE subset of ``edges``."""
    report = AuditReport()
    partners: Counter[int] = Counter()
    children: dict[int, set[int]] = {}
    indegree: Counter[int] = Counter()
    nodes: set[int] = set()

    for edge in edges:
        if edge.source == edge.target:
            report.self_edges.append(edge.id)
            continue
        if edge.status is not EdgeStatus.ACTIVE:
            continue
        if edge.kind is RelationKind.PARTNERSHIP:
            partners[edge.source] += 1
            partners[edge.target] += 1
        elif edge.target not in children.setdefault(edge.source, set()):
            children[edge.source].add(edge.target)
            indegree[edge.target] += 1
            nodes.update(edge.endpoints)

    report.multiple_partners = {n: c for n, c in sorted(partners.items()) if c > 1}

    # Kahn's algorithm: whatever cannot be peeled off lies on or behind a cycle
    queue = deque(n for n in nodes if indegree[n] == 0)
    peeled: set[int] = set()
    while queue:
        node = queue.popleft()
        peeled.add(node)
        for child in children.get(node, ()):
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)
    report.cycle_nodes = sorted(nodes - peeled)
    return report
