"""Shared Pydantic types for the request/response boundary.

Identifiers arrive from the chat platform as unsigned 64-bit account IDs,
sometimes as strings (snowflakes exceed JavaScript's safe integer range).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BeforeValidator, Field

from .relationship import RelationKind

UINT64_MAX = 2**64 - 1


def coerce_external_id(v: Any) -> Any:
    """Accept ``int`` or a decimal string.

    * ``"  42 "`` → ``42``
    * ``42`` → ``42``

    Anything else is passed through for the int validator to reject.
    """
    if isinstance(v, str):
        stripped = v.strip()
        if stripped.isdigit():
            return int(stripped)
    return v


ExternalId = Annotated[int, BeforeValidator(coerce_external_id), Field(ge=0, le=UINT64_MAX)]
"""Opaque unsigned 64-bit account ID supplied by the external identity system."""


def coerce_relation_kind(v: Any) -> Any:
    """Case-insensitive relation kind: ``"Partnership"`` → ``RelationKind.PARTNERSHIP``."""
    if isinstance(v, str):
        return v.strip().lower()
    return v


RelationKindInput = Annotated[RelationKind, BeforeValidator(coerce_relation_kind)]


# ---------------------------------------------------------------------------
# Literal enums
# ---------------------------------------------------------------------------

MutationAction = Literal["propose", "accept", "decline", "dissolve"]
QueryKind = Literal["path", "ancestors", "descendants", "common_ancestor", "family"]
