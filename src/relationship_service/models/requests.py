"""Typed requests and results exchanged with the command layer.

The command layer parses user text into one of these models; the core never
sees command text. Constructing a model performs all shape validation
(identifier ranges, subject counts), leaving graph guards to the engines.
"""

from __future__ import annotations

from typing import Literal, Self

from pydantic import BaseModel, Field, model_validator

from .relationship import EdgeStatus, RelationKind
from .validators import ExternalId, MutationAction, QueryKind, RelationKindInput


class RelationshipRequest(BaseModel):
    """A mutation addressed by its two endpoints.

    ``propose``: initiator proposes ``relation`` to target. For parentage the
    initiator is the parent and the target the child.
    ``accept`` / ``decline``: initiator answers the pending proposal between
    the two users (decline by the proposer withdraws it).
    ``dissolve``: initiator ends the active relation with target. With
    ``authority=True`` the initiator acts as an external moderator and need
    not be an endpoint; ``source_id`` then names the first endpoint.
    """

    action: MutationAction
    relation: RelationKindInput
    initiator_id: ExternalId
    target_id: ExternalId
    authority: bool = False
    source_id: ExternalId | None = None

    @model_validator(mode="after")
    def authority_only_dissolves(self) -> Self:
        if self.authority and self.action != "dissolve":
            raise ValueError("authority may only be used with 'dissolve'")
        if self.authority and self.source_id is None:
            raise ValueError("source_id is required for an authority dissolve")
        return self


class RelationshipOutcome(BaseModel):
    """Result of a successful mutation, expressed in external IDs."""

    action: MutationAction
    edge_id: int
    relation: RelationKind
    status: EdgeStatus
    source_id: int
    target_id: int
    proposer_id: int


class QueryRequest(BaseModel):
    """A read-only structural query."""

    kind: QueryKind
    subject_ids: list[ExternalId] = Field(min_length=1, max_length=2)

    @model_validator(mode="after")
    def subject_count_matches_kind(self) -> Self:
        expected = 2 if self.kind in {"path", "common_ancestor"} else 1
        if len(self.subject_ids) != expected:
            raise ValueError(f"'{self.kind}' query takes {expected} subject id(s), got {len(self.subject_ids)}")
        return self


class PathStep(BaseModel):
    """One hop of a relationship path: how the next user relates to the previous one."""

    relation: RelationKind
    role: Literal["partner", "parent", "child"]
    user_id: int


class RelationshipPath(BaseModel):
    """Shortest chain of active relations between two users."""

    source_id: int
    target_id: int
    steps: list[PathStep] = []

    @property
    def length(self) -> int:
        return len(self.steps)


class QueryResult(BaseModel):
    """Outcome of a QueryRequest. ``found`` is False for an explicit empty answer."""

    kind: QueryKind
    found: bool
    path: RelationshipPath | None = None
    user_id: int | None = None
    user_ids: list[int] = []
