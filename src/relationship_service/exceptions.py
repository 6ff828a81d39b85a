"""Errors raised by the relationship graph core.

Guard failures (UnknownNode, InvariantViolation, NotFound, Expired) are raised
before any durable write. StorageIO is the only retryable kind: when it is
raised the in-memory mirror is unchanged, so resubmitting the identical
request re-evaluates every guard from scratch.
"""

from typing import Any


class RelationshipError(Exception):
    """Base class for every error the core reports to the command layer."""

    retryable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnknownNode(RelationshipError):
    """An identifier or internal index that was never resolved."""

    def __init__(self, identifier: int, *, internal: bool = False):
        self.identifier = identifier
        self.internal = internal
        label = "internal index" if internal else "user"
        super().__init__(f"Unknown {label}: {identifier}", details={"identifier": identifier, "internal": internal})


class InvariantViolation(RelationshipError):
    """A request that would break monogamy, acyclicity, or uniqueness.

    Attributes:
        reason: Stable machine-readable code (``monogamy``, ``cycle``,
            ``self_reference``, ``duplicate``, ``not_counterpart``,
            ``not_pending``, ``not_active``, ``not_expired``,
            ``not_participant``, ``inactive_node``)
    """

    def __init__(self, reason: str, message: str | None = None, **details: Any):
        self.reason = reason
        super().__init__(message or f"Invariant violation: {reason}", details={"reason": reason, **details})


class StorageIO(RelationshipError):
    """The durable store is unavailable or a transaction failed."""

    retryable = True


class NotFound(RelationshipError):
    """The referenced edge does not exist or is already dissolved."""

    def __init__(self, message: str, edge_id: int | None = None):
        self.edge_id = edge_id
        super().__init__(message, details={"edge_id": edge_id})


class Expired(RelationshipError):
    """Accept attempted on a pending edge past its window."""

    def __init__(self, edge_id: int, expired_at: float):
        self.edge_id = edge_id
        self.expired_at = expired_at
        super().__init__(
            f"Proposal {edge_id} expired at {expired_at:.0f}",
            details={"edge_id": edge_id, "expired_at": expired_at},
        )
