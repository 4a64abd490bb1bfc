"""Memory records and the persistent memory store.

A **memory** is one stored unit of knowledge.  Its content is an opaque
encoded payload (plus an optional human-readable rendering) produced by the
host's encoder; this package never interprets it beyond handing it to the
rollup summariser.

Every memory carries:

- a ``type`` -- ``entity``, ``lesson``, ``error`` or ``relation``;
- a ``scope`` -- ``global`` or ``project`` (with an optional project hash);
- an ``importance`` in ``[1, 9]`` set at creation;
- a derived ``usefulness_score`` in ``[1.0, 9.0]`` maintained by
  :mod:`memevolve.scoring`;
- a lifecycle ``status`` -- ``active``, ``archived`` (reversible) or
  ``consolidated`` (terminal, always with a ``parent_id``);
- a hierarchy ``level`` -- 1 raw, 2 pattern, 3 principle.

This module provides:

* :class:`Memory` -- a dataclass mapping 1:1 onto a ``memories`` row.
* :class:`MemoryStore` -- async CRUD plus the synchronous ``*_in``
  helpers used inside :meth:`~memevolve.storage.Storage.execute_transaction`
  callbacks by the consolidation and pruning engines.

Usage::

    from memevolve.memories import MemoryStore

    store = MemoryStore(storage, config)
    memory = await store.create("Use WAL for concurrent readers", importance=6)
    await store.record_access([memory.id])
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Iterable

from memevolve.config import EvolutionConfig
from memevolve.errors import InvariantViolation, NotFound
from memevolve.storage import Storage, days_between, to_iso, utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MEMORY_TYPES: tuple[str, ...] = ("entity", "lesson", "error", "relation")
"""Allowed values for the ``memories.type`` column."""

SCOPES: tuple[str, ...] = ("global", "project")

STATUSES: tuple[str, ...] = ("active", "archived", "consolidated")

MIN_LEVEL = 1
MAX_LEVEL = 3


# ---------------------------------------------------------------------------
# Memory dataclass
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """In-memory representation of a single ``memories`` row.

    Parameters
    ----------
    id:
        Store-assigned primary key.  Immutable.
    type:
        One of :data:`MEMORY_TYPES`.
    content:
        Opaque encoded payload.
    decoded_cache:
        Human-readable rendering of *content*, when the encoder produced one.
    scope:
        ``global`` or ``project``.
    project_hash:
        Identifier of the owning project for project-scoped memories.
    importance:
        Integer priority in ``[1, 9]``.
    usefulness_score:
        Derived score in ``[1.0, 9.0]``.
    times_helpful / times_unhelpful:
        Monotonic feedback counters.
    status:
        One of :data:`STATUSES`.
    level:
        Hierarchy depth, ``1``-``3``.
    parent_id:
        Id of the abstraction this memory was consolidated into.  Set
        exactly when ``status == "consolidated"``.
    created_at / accessed_at:
        ISO-8601 UTC timestamps.
    access_count:
        Number of recorded retrievals.
    last_decay:
        ISO-8601 timestamp of the last score recomputation, or ``None``.
    """

    id: int
    type: str
    content: str
    decoded_cache: str | None = None
    scope: str = "global"
    project_hash: str | None = None
    importance: int = 5
    usefulness_score: float = 5.0
    times_helpful: int = 0
    times_unhelpful: int = 0
    status: str = "active"
    level: int = 1
    parent_id: int | None = None
    created_at: str = ""
    accessed_at: str = ""
    access_count: int = 0
    last_decay: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> Memory:
        """Create a :class:`Memory` from a :class:`sqlite3.Row`."""
        return cls(
            id=row["id"],
            type=row["type"],
            content=row["content"],
            decoded_cache=row["decoded_cache"],
            scope=row["scope"],
            project_hash=row["project_hash"],
            importance=row["importance"],
            usefulness_score=row["usefulness_score"],
            times_helpful=row["times_helpful"],
            times_unhelpful=row["times_unhelpful"],
            status=row["status"],
            level=row["level"],
            parent_id=row["parent_id"],
            created_at=row["created_at"],
            accessed_at=row["accessed_at"],
            access_count=row["access_count"],
            last_decay=row["last_decay"],
        )

    @property
    def text(self) -> str:
        """Best available readable text: the decoded cache, else the payload."""
        return self.decoded_cache or self.content

    def days_since_access(self, now: datetime | None = None) -> float:
        """Fractional days since the memory was last accessed."""
        return days_between(self.accessed_at, now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_type(memory_type: str) -> None:
    if memory_type not in MEMORY_TYPES:
        raise ValueError(
            f"Invalid memory type {memory_type!r}. "
            f"Must be one of: {', '.join(MEMORY_TYPES)}"
        )


def _validate_scope(scope: str) -> None:
    if scope not in SCOPES:
        raise ValueError(
            f"Invalid scope {scope!r}. Must be one of: {', '.join(SCOPES)}"
        )


def _validate_importance(importance: int) -> None:
    if isinstance(importance, bool) or not isinstance(importance, int):
        raise ValueError(f"Importance must be an integer, got {importance!r}")
    if not 1 <= importance <= 9:
        raise ValueError(f"Importance must be between 1 and 9, got {importance}")


def _validate_level(level: int) -> None:
    if not MIN_LEVEL <= level <= MAX_LEVEL:
        raise ValueError(f"Level must be between 1 and 3, got {level}")


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


# ---------------------------------------------------------------------------
# Memory store
# ---------------------------------------------------------------------------


class MemoryStore:
    """Async persistent store for memories.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    config:
        The engine configuration (for the neutral score prior).
    """

    def __init__(self, storage: Storage, config: EvolutionConfig) -> None:
        self._storage = storage
        self._config = config

    # ------------------------------------------------------------------
    # Synchronous helpers for use inside transactions
    # ------------------------------------------------------------------

    @staticmethod
    def fetch_in(conn: sqlite3.Connection, memory_id: int) -> Memory:
        """Load one memory on *conn*, raising :class:`NotFound` if absent."""
        row = conn.execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Memory {memory_id} not found", memory_id=memory_id)
        return Memory.from_row(row)

    @staticmethod
    def insert_in(
        conn: sqlite3.Connection,
        *,
        content: str,
        type: str,
        importance: int,
        usefulness_score: float,
        scope: str = "global",
        project_hash: str | None = None,
        decoded_cache: str | None = None,
        level: int = 1,
    ) -> int:
        """Insert a new active memory on *conn* and return its id."""
        now = to_iso(utc_now())
        cursor = conn.execute(
            """
            INSERT INTO memories
                (type, content, decoded_cache, scope, project_hash, importance,
                 usefulness_score, status, level, created_at, accessed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?)
            """,
            (
                type,
                content,
                decoded_cache,
                scope,
                project_hash,
                importance,
                usefulness_score,
                level,
                now,
                now,
            ),
        )
        return cursor.lastrowid or 0

    @staticmethod
    def set_status_in(
        conn: sqlite3.Connection,
        memory_id: int,
        status: str,
        parent_id: int | None = None,
    ) -> Memory:
        """Transition *memory_id* to *status* on *conn*.

        Raises
        ------
        NotFound
            If the memory does not exist.
        InvariantViolation
            If the transition would break the lifecycle rules: leaving the
            terminal ``consolidated`` state, or entering it without a
            parent at the next level.
        """
        if status not in STATUSES:
            raise ValueError(
                f"Invalid status {status!r}. Must be one of: {', '.join(STATUSES)}"
            )
        memory = MemoryStore.fetch_in(conn, memory_id)

        if memory.status == "consolidated":
            raise InvariantViolation(
                f"Memory {memory_id} is consolidated into #{memory.parent_id}; "
                "its status can no longer change",
                memory_id=memory_id,
            )

        if status == "consolidated":
            if parent_id is None:
                raise InvariantViolation(
                    f"Cannot consolidate memory {memory_id} without a parent",
                    memory_id=memory_id,
                )
            parent = MemoryStore.fetch_in(conn, parent_id)
            expected = min(MAX_LEVEL, memory.level + 1)
            if parent.level != expected:
                raise InvariantViolation(
                    f"Parent #{parent_id} of memory {memory_id} is at level "
                    f"{parent.level}, expected {expected}",
                    memory_id=memory_id,
                )
        else:
            parent_id = None

        conn.execute(
            "UPDATE memories SET status = ?, parent_id = ? WHERE id = ?",
            (status, parent_id, memory_id),
        )
        memory.status = status
        memory.parent_id = parent_id
        return memory

    @staticmethod
    def delete_in(conn: sqlite3.Connection, memory_id: int) -> Memory:
        """Hard-delete *memory_id* on *conn*.

        Its stored embedding and every relationship edge touching it go with
        it (``ON DELETE CASCADE``).  The feedback log is left untouched.

        Raises
        ------
        InvariantViolation
            If consolidated memories still point at it as their parent.
        """
        memory = MemoryStore.fetch_in(conn, memory_id)
        orphans = conn.execute(
            "SELECT COUNT(*) FROM memories WHERE parent_id = ?", (memory_id,)
        ).fetchone()[0]
        if orphans:
            raise InvariantViolation(
                f"Memory {memory_id} is the parent of {orphans} consolidated "
                "memories and cannot be deleted",
                memory_id=memory_id,
            )
        conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return memory

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        content: str,
        type: str = "lesson",
        importance: int = 5,
        scope: str = "global",
        project_hash: str | None = None,
        decoded_cache: str | None = None,
    ) -> Memory:
        """Create a new level-1 active memory at the neutral score.

        Raises
        ------
        ValueError
            If *content* is empty or *type*, *scope* or *importance* are
            out of range.
        """
        if not content or not content.strip():
            raise ValueError("Memory content must not be empty")
        _validate_type(type)
        _validate_scope(scope)
        _validate_importance(importance)
        neutral = self._config.scoring.neutral_score

        def _do_create(conn: sqlite3.Connection) -> Memory:
            new_id = self.insert_in(
                conn,
                content=content,
                type=type,
                importance=importance,
                usefulness_score=neutral,
                scope=scope,
                project_hash=project_hash,
                decoded_cache=decoded_cache,
            )
            return self.fetch_in(conn, new_id)

        memory = await self._storage.execute_transaction(_do_create)
        log.info("Created memory %d (%s, importance=%d)", memory.id, type, importance)
        return memory

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, memory_id: int) -> Memory:
        """Return the memory with *memory_id* regardless of status.

        Raises
        ------
        NotFound
            If no such memory exists.
        """
        rows = await self._storage.execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        )
        if not rows:
            raise NotFound(f"Memory {memory_id} not found", memory_id=memory_id)
        return Memory.from_row(rows[0])

    async def get_many(self, memory_ids: Iterable[int]) -> dict[int, Memory]:
        """Fetch several memories at once.  Missing ids are omitted."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        rows = await self._storage.execute(
            f"SELECT * FROM memories WHERE id IN ({_placeholders(len(ids))})",
            tuple(ids),
        )
        return {row["id"]: Memory.from_row(row) for row in rows}

    async def query(
        self,
        *,
        status: str | None = None,
        levels: Iterable[int] | None = None,
        scope: str | None = None,
        project_hash: str | None = None,
        visible_to: str | None = None,
        exclude_ids: Iterable[int] = (),
        max_score: float | None = None,
        accessed_before: datetime | None = None,
        order_by: str = "id",
        limit: int | None = None,
    ) -> list[Memory]:
        """Return memories matching every given filter.

        Parameters
        ----------
        status:
            Restrict to one lifecycle status.
        levels:
            Restrict to these hierarchy levels.
        scope / project_hash:
            Restrict by scope and owning project.
        visible_to:
            Only global memories and those owned by this project hash.
        exclude_ids:
            Leave these ids out.
        max_score:
            Only memories with ``usefulness_score`` strictly below this.
        accessed_before:
            Only memories last accessed at or before this moment.
        order_by:
            ``"id"`` (creation order), ``"score"`` (lowest first) or
            ``"accessed"`` (oldest access first).
        limit:
            Maximum number of rows.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if levels is not None:
            level_list = list(levels)
            for lvl in level_list:
                _validate_level(lvl)
            clauses.append(f"level IN ({_placeholders(len(level_list))})")
            params.extend(level_list)
        if scope is not None:
            _validate_scope(scope)
            clauses.append("scope = ?")
            params.append(scope)
        if project_hash is not None:
            clauses.append("project_hash = ?")
            params.append(project_hash)
        if visible_to is not None:
            clauses.append("(scope = 'global' OR project_hash = ?)")
            params.append(visible_to)
        excluded = list(exclude_ids)
        if excluded:
            clauses.append(f"id NOT IN ({_placeholders(len(excluded))})")
            params.extend(excluded)
        if max_score is not None:
            clauses.append("usefulness_score < ?")
            params.append(max_score)
        if accessed_before is not None:
            clauses.append("accessed_at <= ?")
            params.append(to_iso(accessed_before))

        orderings = {
            "id": "id ASC",
            "score": "usefulness_score ASC, id ASC",
            "accessed": "accessed_at ASC, id ASC",
        }
        if order_by not in orderings:
            raise ValueError(f"Invalid order_by {order_by!r}")

        sql = "SELECT * FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {orderings[order_by]}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = await self._storage.execute(sql, tuple(params))
        return [Memory.from_row(row) for row in rows]

    async def list_by_status(self, status: str, limit: int = 50) -> list[Memory]:
        """Most recently accessed memories with the given *status*."""
        if status not in STATUSES:
            raise ValueError(
                f"Invalid status {status!r}. Must be one of: {', '.join(STATUSES)}"
            )
        rows = await self._storage.execute(
            "SELECT * FROM memories WHERE status = ? "
            "ORDER BY accessed_at DESC, id DESC LIMIT ?",
            (status, limit),
        )
        return [Memory.from_row(row) for row in rows]

    async def children(self, parent_id: int) -> list[Memory]:
        """Memories that were consolidated into *parent_id*."""
        rows = await self._storage.execute(
            "SELECT * FROM memories WHERE parent_id = ? ORDER BY id",
            (parent_id,),
        )
        return [Memory.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_status(
        self,
        memory_id: int,
        status: str,
        parent_id: int | None = None,
    ) -> Memory:
        """Transition a memory's lifecycle status atomically.

        See :meth:`set_status_in` for the rules enforced.
        """
        memory = await self._storage.execute_transaction(
            lambda conn: self.set_status_in(conn, memory_id, status, parent_id)
        )
        log.info("Memory %d -> %s", memory_id, status)
        return memory

    async def update_score(
        self,
        memory_id: int,
        score: float,
        when: datetime | None = None,
    ) -> None:
        """Persist a recomputed usefulness score and stamp ``last_decay``."""
        low = self._config.scoring.min_score
        high = self._config.scoring.max_score
        if not low <= score <= high:
            raise InvariantViolation(
                f"Score {score} for memory {memory_id} outside [{low}, {high}]",
                memory_id=memory_id,
            )
        await self._storage.execute_write(
            "UPDATE memories SET usefulness_score = ?, last_decay = ? WHERE id = ?",
            (score, to_iso(when or utc_now()), memory_id),
        )

    async def record_access(
        self,
        memory_ids: Iterable[int],
        when: datetime | None = None,
    ) -> list[int]:
        """Stamp ``accessed_at`` and bump ``access_count`` for each id.

        Unknown ids are ignored.

        Returns
        -------
        list[int]
            The ids that were actually updated.
        """
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return []
        stamp = to_iso(when or utc_now())

        def _do_access(conn: sqlite3.Connection) -> list[int]:
            rows = conn.execute(
                f"UPDATE memories SET accessed_at = ?, access_count = access_count + 1 "
                f"WHERE id IN ({_placeholders(len(ids))}) RETURNING id",
                (stamp, *ids),
            ).fetchall()
            return sorted(row["id"] for row in rows)

        updated = await self._storage.execute_transaction(_do_access)
        log.debug("Recorded access for %d memories", len(updated))
        return updated

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, memory_id: int) -> Memory:
        """Permanently delete a memory together with its embedding and edges.

        Returns
        -------
        Memory
            The row as it was before deletion.
        """
        memory = await self._storage.execute_transaction(
            lambda conn: self.delete_in(conn, memory_id)
        )
        log.info("Deleted memory %d", memory_id)
        return memory
