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

"""
Durable relationship store.

SQLite via aiosqlite is the source of truth for nodes and edges. Every write
goes through a StoreTransaction, which holds one connection and one
``BEGIN IMMEDIATE`` transaction: either all of its statements commit or none
do. Reads open a short-lived connection each, as the mirror (not the store)
serves the hot query path.

External account IDs are unsigned 64-bit and do not fit SQLite's signed
INTEGER, so they are stored as decimal TEXT.
"""

import asyncio
import logging
import os
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager

import aiosqlite

from ..exceptions import StorageIO
from ..models.relationship import DissolveReason, EdgeStatus, RelationKind, RelationshipEdge, UserNode

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS node (
        idx INTEGER PRIMARY KEY,
        external_id TEXT NOT NULL UNIQUE,
        active INTEGER NOT NULL DEFAULT 1,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS edge (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL CHECK (kind IN ('partnership', 'parentage')),
        source INTEGER NOT NULL REFERENCES node(idx),
        target INTEGER NOT NULL REFERENCES node(idx),
        proposer INTEGER NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('pending', 'active', 'dissolved')),
        created_at REAL NOT NULL,
        updated_at REAL,
        dissolved_reason TEXT,
        CHECK (source <> target)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_edge_source ON edge(source)",
    "CREATE INDEX IF NOT EXISTS idx_edge_target ON edge(target)",
    "CREATE INDEX IF NOT EXISTS idx_edge_status ON edge(status)",
]

_EDGE_COLUMNS = "id, kind, source, target, proposer, status, created_at, updated_at, dissolved_reason"


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Re-raise driver and filesystem failures as StorageIO."""
    try:
        yield
    except (sqlite3.Error, OSError) as e:
        logger.error(f"Relationship store {operation} failed: {e}")
        raise StorageIO(f"Relationship store {operation} failed: {e}", details={"operation": operation}) from e


def _row_to_edge(row: aiosqlite.Row) -> RelationshipEdge:
    return RelationshipEdge.from_dict(dict(row))


class StoreTransaction:
    """
    One atomic unit of writes.

    Used as ``async with store.begin_transaction() as tx``. Clean exit commits;
    any exception (cancellation included) rolls back. The COMMIT itself is
    shielded: once dispatched it runs to completion even if the awaiting task
    is cancelled, and ``committed`` reports whether it landed.
    """

    def __init__(self, db_path: str, timeout: float):
        self._db_path = db_path
        self._timeout = timeout
        self._conn: aiosqlite.Connection | None = None
        self.committed = False

    async def __aenter__(self) -> "StoreTransaction":
        with _storage_errors("begin"):
            self._conn = await aiosqlite.connect(self._db_path, timeout=self._timeout, isolation_level=None)
            try:
                self._conn.row_factory = aiosqlite.Row
                await self._conn.execute("PRAGMA foreign_keys = ON")
                await self._conn.execute("BEGIN IMMEDIATE")
            except BaseException:
                await self._conn.close()
                self._conn = None
                raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        conn = self._conn
        if conn is None:
            return False
        try:
            if exc_type is None:
                commit = asyncio.ensure_future(self._commit(conn))
                try:
                    await asyncio.shield(commit)
                except asyncio.CancelledError:
                    # Commit is the point of no return: let it finish, then propagate
                    await commit
                    self.committed = True
                    raise
                self.committed = True
            else:
                await self._rollback(conn)
        finally:
            self._conn = None
            await conn.close()
        return False

    async def _commit(self, conn: aiosqlite.Connection) -> None:
        try:
            with _storage_errors("commit"):
                await conn.execute("COMMIT")
        except StorageIO:
            await self._rollback(conn)
            raise

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            # Closing the connection discards the transaction regardless
            logger.warning(f"Rollback failed, connection will be discarded: {e}")

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("StoreTransaction must be used as an async context manager")
        return self._conn

    # ── Writes ───────────────────────────────────────────────────────────

    async def insert_node(self, index: int, external_id: int, created_at: float | None = None) -> None:
        """Persist a node if it is not stored yet (idempotent)."""
        with _storage_errors("insert_node"):
            await self._connection().execute(
                "INSERT OR IGNORE INTO node (idx, external_id, active, created_at) VALUES (?, ?, 1, ?)",
                (index, str(external_id), created_at if created_at is not None else time.time()),
            )

    async def insert_edge(
        self,
        kind: RelationKind,
        source: int,
        target: int,
        proposer: int,
        created_at: float | None = None,
    ) -> RelationshipEdge:
        """Insert a PENDING edge and return it with its assigned id."""
        created_at = created_at if created_at is not None else time.time()
        with _storage_errors("insert_edge"):
            cursor = await self._connection().execute(
                """
                INSERT INTO edge (kind, source, target, proposer, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (kind.value, source, target, proposer, EdgeStatus.PENDING.value, created_at),
            )
        return RelationshipEdge(
            id=cursor.lastrowid,
            kind=kind,
            source=source,
            target=target,
            proposer=proposer,
            status=EdgeStatus.PENDING,
            created_at=created_at,
        )

    async def update_edge_status(
        self,
        edge: RelationshipEdge,
        status: EdgeStatus,
        reason: DissolveReason | None = None,
        at: float | None = None,
    ) -> RelationshipEdge:
        """Move ``edge`` to ``status`` and return the updated record.

        The UPDATE is conditional on the edge still holding the status the
        caller validated against; a mismatch means the mirror has drifted
        from the store and fails the transaction.
        """
        updated = edge.with_status(status, reason, at)
        with _storage_errors("update_edge_status"):
            cursor = await self._connection().execute(
                """
                UPDATE edge SET status = ?, dissolved_reason = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    updated.status.value,
                    updated.dissolved_reason.value if updated.dissolved_reason else None,
                    updated.updated_at,
                    edge.id,
                    edge.status.value,
                ),
            )
        if cursor.rowcount != 1:
            raise StorageIO(
                f"Edge {edge.id} is not {edge.status.value} in the store; mirror needs reconciliation",
                details={"edge_id": edge.id, "expected_status": edge.status.value},
            )
        return updated

    async def deactivate_node(self, index: int) -> None:
        with _storage_errors("deactivate_node"):
            await self._connection().execute("UPDATE node SET active = 0 WHERE idx = ?", (index,))

    async def delete_edges_for(self, index: int) -> int:
        """Physically remove every edge touching ``index``. Returns rows deleted."""
        with _storage_errors("delete_edges_for"):
            cursor = await self._connection().execute(
                "DELETE FROM edge WHERE source = ? OR target = ?",
                (index, index),
            )
        return cursor.rowcount


class RelationshipStore:
    """Async SQLite store for relationship nodes and edges."""

    def __init__(self, db_path: str, busy_timeout: float = 5.0):
        """
        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a writer waits for another writer's lock
        """
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._initialized = False

    async def initialize(self) -> None:
        """Create the schema if it does not exist."""
        if self._initialized:
            return

        with _storage_errors("initialize"):
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                for stmt in SCHEMA_STATEMENTS:
                    await db.execute(stmt)
                await db.commit()

        self._initialized = True
        logger.info(f"Relationship store initialized at {self.db_path}")

    def begin_transaction(self) -> StoreTransaction:
        """Start an atomic write unit (use with ``async with``)."""
        return StoreTransaction(self.db_path, self.busy_timeout)

    async def load_nodes(self) -> list[UserNode]:
        """Every node ever stored, active or not."""
        with _storage_errors("load_nodes"):
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                cursor = await db.execute("SELECT idx, external_id, active, created_at FROM node ORDER BY idx")
                rows = await cursor.fetchall()
        return [
            UserNode(index=row[0], external_id=int(row[1]), active=bool(row[2]), created_at=row[3]) for row in rows
        ]

    async def load_all_active_edges(self) -> list[RelationshipEdge]:
        """Every live (pending or active) edge between active nodes, in id order.

        Used only at startup and for reconciliation of the mirror.
        """
        with _storage_errors("load_all_active_edges"):
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT e.id, e.kind, e.source, e.target, e.proposer, e.status,
                           e.created_at, e.updated_at, e.dissolved_reason
                    FROM edge e
                    JOIN node s ON s.idx = e.source
                    JOIN node t ON t.idx = e.target
                    WHERE e.status IN ('pending', 'active') AND s.active = 1 AND t.active = 1
                    ORDER BY e.id
                    """
                )
                rows = await cursor.fetchall()
        return [_row_to_edge(row) for row in rows]

    async def get_edge(self, edge_id: int) -> RelationshipEdge | None:
        """Fetch one edge in any status."""
        with _storage_errors("get_edge"):
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(f"SELECT {_EDGE_COLUMNS} FROM edge WHERE id = ?", (edge_id,))
                row = await cursor.fetchone()
        return _row_to_edge(row) if row else None

    async def edge_history(self, index: int) -> list[RelationshipEdge]:
        """Every edge touching ``index``, dissolved ones included, oldest first."""
        with _storage_errors("edge_history"):
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    f"SELECT {_EDGE_COLUMNS} FROM edge WHERE source = ? OR target = ? ORDER BY id",
                    (index, index),
                )
                rows = await cursor.fetchall()
        return [_row_to_edge(row) for row in rows]

    async def close(self) -> None:
        """Close database connections."""
        # Connections are per operation, so nothing stays open
        pass
