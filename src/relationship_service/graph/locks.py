"""
Per-node mutual exclusion for the mutation write path.

A mutation holds the token of every node it touches from guard check to
mirror update. Tokens are always acquired in ascending index order, so two
mutations sharing a node serialize and no acquisition order can deadlock.
Idle tokens are dropped to keep the table proportional to in-flight work.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class NodeLocks:
    """Registry of ``asyncio.Lock`` tokens keyed by node index."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._waiters: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, *nodes: int) -> AsyncIterator[None]:
        """Acquire the tokens for ``nodes`` (duplicates ignored) in canonical order."""
        ordered = sorted(set(nodes))
        for node in ordered:
            self._waiters[node] = self._waiters.get(node, 0) + 1
            self._locks.setdefault(node, asyncio.Lock())

        acquired: list[int] = []
        try:
            for node in ordered:
                await self._locks[node].acquire()
                acquired.append(node)
            yield
        finally:
            for node in reversed(acquired):
                self._locks[node].release()
            for node in ordered:
                self._waiters[node] -= 1
                if self._waiters[node] == 0:
                    del self._waiters[node]
                    del self._locks[node]

    def is_held(self, node: int) -> bool:
        lock = self._locks.get(node)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
