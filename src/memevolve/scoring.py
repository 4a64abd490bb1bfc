"""Usefulness scoring and the batch score-decay pass.

The usefulness score ranks a memory by combining its fixed importance with
three evolving signals::

    helpful_ratio = (helpful + 1) / (helpful + unhelpful + 2)
    recency_boost = 0.98 ** min(days_since_access, 365)
    access_boost  = ln(access_count + 1) / 10

    score = clamp(importance * (0.5 + 0.3 * helpful_ratio
                                + 0.15 * recency_boost
                                + 0.05 * access_boost), 1.0, 9.0)

The helpful ratio is Bayesian-smoothed with a uniform prior so a single
feedback event cannot saturate it.  The formula itself is the pure function
:func:`usefulness_score`; :class:`UsefulnessScorer` applies it to stored
memories and persists the result together with a ``last_decay`` stamp.

Scores decay implicitly: the recency term shrinks as time passes without an
access, so re-running :meth:`UsefulnessScorer.decay_all` periodically lowers
the scores of memories nobody retrieves.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from memevolve.config import EvolutionConfig, ScoringConfig
from memevolve.memories import Memory, MemoryStore
from memevolve.storage import Storage, to_iso, utc_now

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure scoring function
# ---------------------------------------------------------------------------


def usefulness_score(
    importance: int,
    times_helpful: int,
    times_unhelpful: int,
    days_since_access: float,
    access_count: int,
    config: ScoringConfig | None = None,
) -> float:
    """Compute a usefulness score in ``[min_score, max_score]``.

    Deterministic in its inputs and free of side effects.

    Parameters
    ----------
    importance:
        The memory's importance (1-9).
    times_helpful / times_unhelpful:
        Aggregate feedback counters.
    days_since_access:
        Fractional days since the last retrieval.  Negative values (clock
        skew) are treated as zero.
    access_count:
        Number of recorded retrievals.
    config:
        Formula weights; defaults to :class:`~memevolve.config.ScoringConfig`.
    """
    cfg = config or ScoringConfig()

    helpful_ratio = (times_helpful + 1) / (times_helpful + times_unhelpful + 2)
    days = min(max(0.0, days_since_access), cfg.recency_cap_days)
    recency_boost = cfg.recency_base**days
    access_boost = math.log(max(0, access_count) + 1) / 10

    raw = importance * (
        cfg.base_weight
        + cfg.helpful_weight * helpful_ratio
        + cfg.recency_weight * recency_boost
        + cfg.access_weight * access_boost
    )
    return min(cfg.max_score, max(cfg.min_score, raw))


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class DecayResult:
    """Outcome of one batch score-decay pass.

    ``updated`` holds one ``{"id", "old_score", "new_score"}`` entry per
    active memory that was rescored.
    """

    updated: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def count(self) -> int:
        return len(self.updated)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["count"] = self.count
        return d


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


class UsefulnessScorer:
    """Applies :func:`usefulness_score` to stored memories.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    memories:
        The :class:`~memevolve.memories.MemoryStore` to read from and
        persist scores through.
    config:
        The engine configuration.
    """

    def __init__(
        self,
        storage: Storage,
        memories: MemoryStore,
        config: EvolutionConfig,
    ) -> None:
        self._storage = storage
        self._memories = memories
        self._cfg = config.scoring

    def score(self, memory: Memory, now: datetime | None = None) -> float:
        """Score *memory* as of *now* without persisting anything."""
        return usefulness_score(
            memory.importance,
            memory.times_helpful,
            memory.times_unhelpful,
            memory.days_since_access(now),
            memory.access_count,
            self._cfg,
        )

    async def rescore(self, memory_id: int, now: datetime | None = None) -> Memory:
        """Recompute and persist the score of one memory.

        Raises
        ------
        NotFound
            If *memory_id* does not exist.
        """
        memory = await self._memories.get(memory_id)
        now = now or utc_now()
        new_score = self.score(memory, now)
        await self._memories.update_score(memory_id, new_score, now)
        log.debug(
            "Rescored memory %d: %.3f -> %.3f",
            memory_id,
            memory.usefulness_score,
            new_score,
        )
        memory.usefulness_score = new_score
        memory.last_decay = to_iso(now)
        return memory

    async def decay_all(
        self,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> DecayResult:
        """Rescore every active memory exactly once.

        Only ``usefulness_score`` and ``last_decay`` are written; status
        and level are never touched.  All updates commit together.

        Parameters
        ----------
        dry_run:
            Compute the new scores without writing them.
        now:
            Reference time for the recency term.
        """
        result = DecayResult(dry_run=dry_run)
        now = now or utc_now()
        stamp = to_iso(now)
        low, high = self._cfg.min_score, self._cfg.max_score

        active = await self._memories.query(status="active")
        pending: list[tuple[float, str, int]] = []
        for memory in active:
            new_score = self.score(memory, now)
            if not low <= new_score <= high:
                # Unreachable while the formula clamps; guard per item.
                log.error(
                    "Score %.3f for memory %d escaped [%.1f, %.1f]; skipping",
                    new_score,
                    memory.id,
                    low,
                    high,
                )
                result.failures.append(
                    {"id": memory.id, "error": "score out of range"}
                )
                continue
            pending.append((new_score, stamp, memory.id))
            result.updated.append(
                {
                    "id": memory.id,
                    "old_score": memory.usefulness_score,
                    "new_score": new_score,
                }
            )

        if not dry_run and pending:

            def _do_decay(conn: sqlite3.Connection) -> None:
                conn.executemany(
                    "UPDATE memories SET usefulness_score = ?, last_decay = ? "
                    "WHERE id = ? AND status = 'active'",
                    pending,
                )

            await self._storage.execute_transaction(_do_decay)

        log.info(
            "Score decay %s: %d memories rescored",
            "previewed" if dry_run else "applied",
            result.count,
        )
        return result
