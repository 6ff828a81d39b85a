# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Relationship graph records: user nodes and typed edges."""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class RelationKind(str, Enum):
    """Kind of relationship an edge records."""

    PARTNERSHIP = "partnership"  # undirected, exclusive
    PARENTAGE = "parentage"  # directed parent -> child


class EdgeStatus(str, Enum):
    """Lifecycle state of an edge."""

    PENDING = "pending"
    ACTIVE = "active"
    DISSOLVED = "dissolved"

    @property
    def is_live(self) -> bool:
        return self is not EdgeStatus.DISSOLVED


class DissolveReason(str, Enum):
    """Why an edge reached DISSOLVED."""

    DISSOLVED = "dissolved"  # explicit dissolve of an active edge
    DECLINED = "declined"  # counterpart refused the proposal
    WITHDRAWN = "withdrawn"  # proposer cancelled the proposal
    EXPIRED = "expired"
    PURGED = "purged"


@dataclass
class UserNode:
    """One external user identifier known to the graph."""

    index: int
    external_id: int
    active: bool = True
    created_at: float = field(default_factory=time.time)


@dataclass
class RelationshipEdge:
    """A typed link between two nodes.

    For PARENTAGE, ``source`` is the parent and ``target`` the child. For
    PARTNERSHIP the direction only records who proposed to whom.
    """

    id: int
    kind: RelationKind
    source: int
    target: int
    proposer: int
    status: EdgeStatus = EdgeStatus.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float | None = None
    dissolved_reason: DissolveReason | None = None

    @property
    def endpoints(self) -> tuple[int, int]:
        return self.source, self.target

    @property
    def counterpart(self) -> int:
        """The endpoint that must accept a pending edge."""
        return self.target if self.proposer == self.source else self.source

    def other(self, node: int) -> int:
        """Return the endpoint opposite ``node``."""
        if node == self.source:
            return self.target
        if node == self.target:
            return self.source
        raise ValueError(f"Node {node} is not an endpoint of edge {self.id}")

    def touches(self, node: int) -> bool:
        return node == self.source or node == self.target

    def expires_at(self, ttl_seconds: float) -> float:
        return self.created_at + ttl_seconds

    def with_status(
        self, status: EdgeStatus, reason: DissolveReason | None = None, at: float | None = None
    ) -> "RelationshipEdge":
        """Copy of this edge after a status transition."""
        return replace(
            self,
            status=status,
            dissolved_reason=reason if status is EdgeStatus.DISSOLVED else None,
            updated_at=at if at is not None else time.time(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source": self.source,
            "target": self.target,
            "proposer": self.proposer,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "dissolved_reason": self.dissolved_reason.value if self.dissolved_reason else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelationshipEdge":
        """Create instance from dictionary (or sqlite row mapping)."""
        reason = data.get("dissolved_reason")
        return cls(
            id=data["id"],
            kind=RelationKind(data["kind"]),
            source=data["source"],
            target=data["target"],
            proposer=data["proposer"],
            status=EdgeStatus(data["status"]),
            created_at=data["created_at"],
            updated_at=data.get("updated_at"),
            dissolved_reason=DissolveReason(reason) if reason else None,
        )
