from .relationship import DissolveReason, EdgeStatus, RelationKind, RelationshipEdge, UserNode
from .requests import (
    PathStep,
    QueryRequest,
    QueryResult,
    RelationshipOutcome,
    RelationshipPath,
    RelationshipRequest,
)

__all__ = [
    "DissolveReason",
    "EdgeStatus",
    "RelationKind",
    "RelationshipEdge",
    "UserNode",
    "PathStep",
    "QueryRequest",
    "QueryResult",
    "RelationshipOutcome",
    "RelationshipPath",
    "RelationshipRequest",
]
