"""
Relationship graph service.

Durable, invariant-preserving graph of declared relationships between chat
users (partnership and parent/child links) with structural queries over it.
"""

__version__ = "0.1.0"

from .exceptions import Expired, InvariantViolation, NotFound, RelationshipError, StorageIO, UnknownNode
from .factory import create_relationship_service
from .models.relationship import EdgeStatus, RelationKind
from .models.requests import QueryRequest, QueryResult, RelationshipOutcome, RelationshipRequest
from .service import RelationshipService

__all__ = [
    "Expired",
    "InvariantViolation",
    "NotFound",
    "RelationshipError",
    "StorageIO",
    "UnknownNode",
    "create_relationship_service",
    "EdgeStatus",
    "RelationKind",
    "QueryRequest",
    "QueryResult",
    "RelationshipOutcome",
    "RelationshipRequest",
    "RelationshipService",
]
