"""Access-pattern learning for the memory evolution engine.

Memories that keep being retrieved together are probably related.  The
:class:`AccessPatternLearner` turns that signal into weighted ``similar``
edges and uses them to suggest what else a host may want to surface:

- :meth:`~AccessPatternLearner.record_co_access` -- strengthens one edge per
  unordered pair of a retrieval batch.
- :meth:`~AccessPatternLearner.learn_from_access_patterns` -- reconstructs
  retrieval batches from recent ``accessed_at`` stamps and records them.
- :meth:`~AccessPatternLearner.decay_relationship_strengths` -- lets unused
  associations fade and drops the ones that fall below the floor.
- :meth:`~AccessPatternLearner.suggest_memories` and
  :meth:`~AccessPatternLearner.frequently_co_accessed` -- read the learned
  graph back.

Only ``similar`` edges are learned or decayed here.  ``derived_from``
provenance edges written by consolidation are permanent.

Usage::

    learner = AccessPatternLearner(storage, config)
    await learner.record_co_access([12, 40, 41])
    suggestions = await learner.suggest_memories([12])
"""

from __future__ import annotations

import itertools
import logging
import math
import sqlite3
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Iterable

from memevolve.config import EvolutionConfig
from memevolve.memories import Memory
from memevolve.relationships import RelationshipStore
from memevolve.storage import Storage, from_iso, to_iso, utc_now

log = logging.getLogger(__name__)

_LEARNED_RELATIONSHIP = "similar"


@dataclass
class Suggestion:
    """A memory suggested by the co-access graph."""

    memory: Memory
    strength: float
    """Summed strength of the edges linking it to the query set."""

    def to_dict(self) -> dict[str, Any]:
        return {"memory": self.memory.to_dict(), "strength": self.strength}


@dataclass
class EdgeDecayResult:
    """Outcome of one relationship-decay pass."""

    decayed: int
    removed: int
    factor: float
    floor: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


class AccessPatternLearner:
    """Learns ``similar`` edges from co-access and serves suggestions.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    config:
        The engine configuration; the ``learning`` section supplies the
        increment, cap, decay factor, floor and window defaults.
    """

    def __init__(self, storage: Storage, config: EvolutionConfig) -> None:
        self._storage = storage
        self._cfg = config.learning

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def record_co_access(
        self,
        memory_ids: Iterable[int],
        increment: float | None = None,
    ) -> int:
        """Strengthen the ``similar`` edge of every unordered pair in *memory_ids*.

        Each pair is stored once as ``(min(id), max(id))``.  A new edge starts
        at *increment*; an existing one gains *increment*, capped at
        ``learning.max_strength``.  Duplicate ids are ignored, as are ids
        that do not resolve to a stored memory.

        Returns
        -------
        int
            Number of edges created or strengthened.
        """
        if increment is None:
            increment = self._cfg.co_access_increment
        if increment <= 0:
            raise ValueError(f"Co-access increment must be positive, got {increment}")

        ids = sorted(set(memory_ids))
        if len(ids) < 2:
            return 0
        cap = self._cfg.max_strength

        def _do_co_access(conn: sqlite3.Connection) -> int:
            rows = conn.execute(
                f"SELECT id FROM memories WHERE id IN ({_placeholders(len(ids))})",
                tuple(ids),
            ).fetchall()
            known = sorted(row["id"] for row in rows)
            missing = set(ids) - set(known)
            if missing:
                log.warning(
                    "Co-access ignores unknown memory ids: %s",
                    ", ".join(str(i) for i in sorted(missing)),
                )
            pairs = 0
            for source_id, target_id in itertools.combinations(known, 2):
                RelationshipStore.upsert_in(
                    conn,
                    source_id,
                    target_id,
                    _LEARNED_RELATIONSHIP,
                    increment,
                    max_strength=cap,
                    accumulate=True,
                )
                pairs += 1
            return pairs

        pairs = await self._storage.execute_transaction(_do_co_access)
        log.debug("Co-access recorded for %d pairs", pairs)
        return pairs

    async def learn_from_access_patterns(
        self,
        window_seconds: int | None = None,
    ) -> int:
        """Record co-access for memories retrieved together recently.

        Memories accessed within the last *window_seconds* are grouped into
        ``learning.bucket_seconds`` buckets by their ``accessed_at`` stamp;
        every bucket holding two or more memories counts as one retrieval
        batch.

        Returns
        -------
        int
            Number of pairs strengthened.
        """
        if window_seconds is None:
            window_seconds = self._cfg.access_window_seconds
        bucket_size = self._cfg.bucket_seconds
        cutoff = to_iso(utc_now() - timedelta(seconds=window_seconds))

        rows = await self._storage.execute(
            "SELECT id, accessed_at FROM memories WHERE accessed_at > ? "
            "ORDER BY accessed_at DESC",
            (cutoff,),
        )
        buckets: dict[int, list[int]] = {}
        for row in rows:
            key = math.floor(from_iso(row["accessed_at"]).timestamp() / bucket_size)
            buckets.setdefault(key, []).append(row["id"])

        updated = 0
        for ids in buckets.values():
            if len(ids) >= 2:
                updated += await self.record_co_access(ids)

        log.info(
            "Learned from access patterns: %d batches, %d pairs",
            sum(1 for ids in buckets.values() if len(ids) >= 2),
            updated,
        )
        return updated

    async def decay_relationship_strengths(
        self,
        factor: float | None = None,
        floor: float | None = None,
    ) -> EdgeDecayResult:
        """Multiply every ``similar`` edge's strength by *factor*.

        Edges left below *floor* are deleted.  The update and the delete
        run in one transaction, so two passes with factor ``f`` equal one
        pass with ``f ** 2`` (as long as the floor deletes nothing in
        between).
        """
        if factor is None:
            factor = self._cfg.decay_factor
        if floor is None:
            floor = self._cfg.decay_floor
        if not 0.0 < factor <= 1.0:
            raise ValueError(f"Decay factor must be in (0, 1], got {factor}")
        if floor < 0:
            raise ValueError(f"Decay floor must be >= 0, got {floor}")

        def _do_decay(conn: sqlite3.Connection) -> tuple[int, int]:
            decayed = conn.execute(
                "UPDATE memory_relationships SET strength = strength * ? "
                "WHERE relationship = ?",
                (factor, _LEARNED_RELATIONSHIP),
            ).rowcount
            removed = conn.execute(
                "DELETE FROM memory_relationships "
                "WHERE relationship = ? AND strength < ?",
                (_LEARNED_RELATIONSHIP, floor),
            ).rowcount
            return decayed, removed

        decayed, removed = await self._storage.execute_transaction(_do_decay)
        log.info(
            "Relationship decay applied (factor=%.4f): %d decayed, %d removed",
            factor,
            decayed,
            removed,
        )
        return EdgeDecayResult(decayed=decayed, removed=removed, factor=factor, floor=floor)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def suggest_memories(
        self,
        current_ids: Iterable[int],
        limit: int | None = None,
    ) -> list[Suggestion]:
        """Rank other active memories by their edge strength to *current_ids*.

        The rank of a memory is the sum of the strengths of all ``similar``
        edges linking it to any id in *current_ids*.  Ties go to the higher
        usefulness score, then the lower id.
        """
        if limit is None:
            limit = self._cfg.suggestion_limit
        ids = sorted(set(current_ids))
        if not ids or limit <= 0:
            return []
        ph = _placeholders(len(ids))

        rows = await self._storage.execute(
            f"""
            WITH links AS (
                SELECT target_id AS related_id, strength
                FROM memory_relationships
                WHERE relationship = ? AND source_id IN ({ph})
                UNION ALL
                SELECT source_id AS related_id, strength
                FROM memory_relationships
                WHERE relationship = ? AND target_id IN ({ph})
            )
            SELECT m.*, SUM(l.strength) AS total_strength
            FROM links l
            JOIN memories m ON m.id = l.related_id
            WHERE m.status = 'active' AND l.related_id NOT IN ({ph})
            GROUP BY m.id
            ORDER BY total_strength DESC, m.usefulness_score DESC, m.id ASC
            LIMIT ?
            """,
            (_LEARNED_RELATIONSHIP, *ids, _LEARNED_RELATIONSHIP, *ids, *ids, limit),
        )
        return [
            Suggestion(memory=Memory.from_row(row), strength=row["total_strength"])
            for row in rows
        ]

    async def frequently_co_accessed(
        self,
        memory_id: int,
        min_strength: float = 0.5,
        limit: int = 5,
    ) -> list[Suggestion]:
        """Active memories most strongly co-accessed with *memory_id*."""
        rows = await self._storage.execute(
            """
            SELECT m.*, r.strength AS total_strength
            FROM memory_relationships r
            JOIN memories m
              ON m.id = CASE WHEN r.source_id = ? THEN r.target_id ELSE r.source_id END
            WHERE (r.source_id = ? OR r.target_id = ?)
              AND r.relationship = ?
              AND r.strength >= ?
              AND m.status = 'active'
            ORDER BY r.strength DESC, m.id ASC
            LIMIT ?
            """,
            (memory_id, memory_id, memory_id, _LEARNED_RELATIONSHIP, min_strength, limit),
        )
        return [
            Suggestion(memory=Memory.from_row(row), strength=row["total_strength"])
            for row in rows
        ]
