"""
Graph layer for the relationship service.

In-memory structures derived from the durable store:
- IdentityMap: external account ID <-> dense internal node index
- RelationshipGraph: adjacency mirror of live edges with cycle checks
- NodeLocks: per-node tokens serializing mutations in canonical order
"""

from .identity import IdentityMap
from .locks import NodeLocks
from .mirror import RelationshipGraph

__all__ = [
    "IdentityMap",
    "NodeLocks",
    "RelationshipGraph",
]
