"""Relationship edges between memories.

A **relationship** is a weighted edge ``(source_id, target_id, relationship,
strength)`` between two memories.  Although stored with a direction, edges
are symmetric in effect: every reader looks at both endpoints.

Relationship taxonomy:

- **similar** -- learned from co-access; decays over time and is deleted
  once it falls below the floor.
- **derived_from** -- provenance from a consolidated source to the
  abstraction that replaced it; permanent.
- **supersedes** / **contradicts** -- host-asserted structural links.

Strength is positive and capped at ``learning.max_strength`` (10.0).

This module provides:

* :class:`Relationship` -- a dataclass mapping onto a
  ``memory_relationships`` row.
* :class:`RelationshipStore` -- async create/query helpers plus the
  synchronous :meth:`RelationshipStore.upsert_in` used by the learner and
  the consolidation engine inside their transactions.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any

from memevolve.config import EvolutionConfig
from memevolve.storage import Storage, to_iso, utc_now

log = logging.getLogger(__name__)

RELATIONSHIP_TYPES: tuple[str, ...] = (
    "similar",
    "supersedes",
    "contradicts",
    "derived_from",
)
"""Allowed values for the ``memory_relationships.relationship`` column."""


@dataclass
class Relationship:
    """In-memory representation of a single ``memory_relationships`` row."""

    id: int
    source_id: int
    target_id: int
    relationship: str
    strength: float
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Any) -> Relationship:
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            relationship=row["relationship"],
            strength=row["strength"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def other(self, memory_id: int) -> int:
        """The endpoint that is not *memory_id*."""
        return self.target_id if self.source_id == memory_id else self.source_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _validate_relationship(relationship: str) -> None:
    """Raise :class:`ValueError` if *relationship* is not in :data:`RELATIONSHIP_TYPES`."""
    if relationship not in RELATIONSHIP_TYPES:
        raise ValueError(
            f"Invalid relationship {relationship!r}. "
            f"Must be one of: {', '.join(RELATIONSHIP_TYPES)}"
        )


class RelationshipStore:
    """Async persistent store for relationship edges.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    config:
        The engine configuration (for the strength cap).
    """

    def __init__(self, storage: Storage, config: EvolutionConfig) -> None:
        self._storage = storage
        self._max_strength = config.learning.max_strength

    # ------------------------------------------------------------------
    # Synchronous helpers for use inside transactions
    # ------------------------------------------------------------------

    @staticmethod
    def upsert_in(
        conn: sqlite3.Connection,
        source_id: int,
        target_id: int,
        relationship: str,
        strength: float,
        *,
        max_strength: float,
        accumulate: bool = False,
    ) -> None:
        """Insert an edge, or update the existing one for the same triple.

        With *accumulate* the existing strength is increased by *strength*;
        otherwise it is replaced.  The result is capped at *max_strength*.
        """
        now = to_iso(utc_now())
        conn.execute(
            """
            INSERT INTO memory_relationships
                (source_id, target_id, relationship, strength, created_at, updated_at)
            VALUES (:source, :target, :rel, MIN(:cap, :strength), :now, :now)
            ON CONFLICT(source_id, target_id, relationship) DO UPDATE SET
                strength = CASE WHEN :accumulate
                    THEN MIN(:cap, memory_relationships.strength + :strength)
                    ELSE MIN(:cap, :strength)
                END,
                updated_at = excluded.updated_at
            """,
            {
                "source": source_id,
                "target": target_id,
                "rel": relationship,
                "strength": strength,
                "cap": max_strength,
                "accumulate": int(accumulate),
                "now": now,
            },
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        source_id: int,
        target_id: int,
        relationship: str,
        strength: float = 1.0,
    ) -> Relationship:
        """Create an edge, or reset the strength of an existing one.

        Raises
        ------
        ValueError
            If the relationship type is unknown, the strength is not
            positive, or the edge would point a memory at itself.
        """
        _validate_relationship(relationship)
        if strength <= 0:
            raise ValueError(f"Strength must be positive, got {strength}")
        if source_id == target_id:
            raise ValueError(
                f"Cannot create a self-referencing relationship (memory_id={source_id})"
            )

        def _do_upsert(conn: sqlite3.Connection) -> Relationship:
            self.upsert_in(
                conn,
                source_id,
                target_id,
                relationship,
                strength,
                max_strength=self._max_strength,
            )
            row = conn.execute(
                "SELECT * FROM memory_relationships "
                "WHERE source_id = ? AND target_id = ? AND relationship = ?",
                (source_id, target_id, relationship),
            ).fetchone()
            return Relationship.from_row(row)

        edge = await self._storage.execute_transaction(_do_upsert)
        log.info(
            "Upserted relationship %d: memory %d -[%s]-> memory %d (strength=%.2f)",
            edge.id,
            source_id,
            relationship,
            target_id,
            edge.strength,
        )
        return edge

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(
        self, source_id: int, target_id: int, relationship: str
    ) -> Relationship | None:
        """Return the edge for an exact triple, or ``None``."""
        rows = await self._storage.execute(
            "SELECT * FROM memory_relationships "
            "WHERE source_id = ? AND target_id = ? AND relationship = ?",
            (source_id, target_id, relationship),
        )
        return Relationship.from_row(rows[0]) if rows else None

    async def for_memory(
        self,
        memory_id: int,
        relationship: str | None = None,
    ) -> list[Relationship]:
        """All edges touching *memory_id* at either endpoint, strongest first."""
        sql = (
            "SELECT * FROM memory_relationships "
            "WHERE (source_id = ? OR target_id = ?)"
        )
        params: list[Any] = [memory_id, memory_id]
        if relationship is not None:
            _validate_relationship(relationship)
            sql += " AND relationship = ?"
            params.append(relationship)
        sql += " ORDER BY strength DESC, id ASC"
        rows = await self._storage.execute(sql, tuple(params))
        return [Relationship.from_row(r) for r in rows]

    async def count_by_type(self) -> dict[str, int]:
        """Number of edges per relationship type."""
        rows = await self._storage.execute(
            "SELECT relationship, COUNT(*) AS cnt FROM memory_relationships "
            "GROUP BY relationship"
        )
        return {row["relationship"]: row["cnt"] for row in rows}
