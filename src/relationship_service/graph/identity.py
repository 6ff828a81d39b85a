"""
Bidirectional map between external account IDs and internal node indices.

Both directions are held by one object and only ever mutated together under
one lock, so an index is never shared by two external IDs and vice versa.
Indices are dense, assigned once, and never reused: deactivating a user
keeps its index reserved.
"""

import logging
import threading
from collections.abc import Iterable

from ..exceptions import UnknownNode
from ..models.relationship import UserNode

logger = logging.getLogger(__name__)


class IdentityMap:
    """Two-way table of ``external_id <-> index`` plus an active flag per node."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_external: dict[int, int] = {}
        self._by_index: dict[int, int] = {}
        self._inactive: set[int] = set()
        self._next_index = 0

    def load(self, nodes: Iterable[UserNode]) -> None:
        """Seed the map from persisted nodes (startup only)."""
        with self._lock:
            self._by_external.clear()
            self._by_index.clear()
            self._inactive.clear()
            highest = -1
            for node in nodes:
                self._by_external[node.external_id] = node.index
                self._by_index[node.index] = node.external_id
                if not node.active:
                    self._inactive.add(node.index)
                highest = max(highest, node.index)
            self._next_index = highest + 1
        logger.info(f"Identity map loaded {len(self._by_index)} nodes (next index {self._next_index})")

    def resolve(self, external_id: int) -> int:
        """Return the index for ``external_id``, assigning a new one if unseen.

        Compare-and-insert: concurrent calls for the same unseen ID observe
        the same index.
        """
        index = self._by_external.get(external_id)
        if index is not None:
            return index
        with self._lock:
            index = self._by_external.get(external_id)
            if index is None:
                index = self._next_index
                self._next_index += 1
                self._by_external[external_id] = index
                self._by_index[index] = external_id
                logger.debug(f"Assigned index {index} to user {external_id}")
            return index

    def find(self, external_id: int) -> int | None:
        """Return the index for ``external_id`` or None if it was never resolved."""
        return self._by_external.get(external_id)

    def index_of(self, external_id: int) -> int:
        """Return the index for a known ``external_id`` without creating one."""
        index = self._by_external.get(external_id)
        if index is None:
            raise UnknownNode(external_id)
        return index

    def lookup(self, index: int) -> int:
        """Return the external ID for ``index``."""
        external_id = self._by_index.get(index)
        if external_id is None:
            raise UnknownNode(index, internal=True)
        return external_id

    def is_active(self, index: int) -> bool:
        return index in self._by_index and index not in self._inactive

    def deactivate(self, index: int) -> None:
        with self._lock:
            if index not in self._by_index:
                raise UnknownNode(index, internal=True)
            self._inactive.add(index)

    def __contains__(self, external_id: object) -> bool:
        return external_id in self._by_external

    def __len__(self) -> int:
        return len(self._by_index)
