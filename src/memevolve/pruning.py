"""Safety-gated pruning of low-value memories.

A memory is a pruning candidate when it is active, its usefulness score is
below ``min_usefulness`` and it has not been accessed for ``max_age_days``.
Two hard safety rules then apply regardless of the thresholds:

- memories with ``importance >= 8`` are never pruned;
- memories accessed within the last 7 days are never pruned.

Both limits are module constants, not configuration.  Both exclusions are
reported as warnings naming the memory and the reason.  Survivors are
archived (reversible with :meth:`PruningEngine.restore`) or, with
``permanent=True``, deleted together with their embedding and edges.  Each
memory is pruned in its own transaction, and the safety rules are checked
again inside it.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Mapping

from memevolve.config import EvolutionConfig
from memevolve.errors import InvariantViolation, NotFound
from memevolve.memories import Memory, MemoryStore
from memevolve.storage import Storage, days_between, utc_now

log = logging.getLogger(__name__)

PROTECTED_IMPORTANCE = 8
"""Memories at or above this importance are never pruned."""

RECENT_ACCESS_DAYS = 7
"""Memories accessed within this many whole days are never pruned."""

_BYTES_OVERHEAD = 100


@dataclass
class PruneResult:
    """Outcome of one pruning pass.

    Attributes
    ----------
    pruned:
        One detail dict per selected memory (``id``, ``type``,
        ``usefulness_score``, ``days_since_access``, ``importance``,
        ``preview``).  In a dry run these are the memories that *would* be
        pruned.
    skipped:
        Candidates excluded by a safety rule, each ``{"id", "reason"}``.
    failures:
        Memories whose prune was aborted, each ``{"id", "error"}``.
    warnings:
        Human-readable notes, one per exclusion or failure.
    estimated_bytes:
        Rough storage reclaimed by the pruned memories.
    """

    pruned: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    estimated_bytes: int = 0
    dry_run: bool = False
    permanent: bool = False

    @property
    def pruned_ids(self) -> list[int]:
        return [p["id"] for p in self.pruned]

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "permanent": self.permanent,
            "memories_pruned": len(self.pruned),
            "pruned_ids": self.pruned_ids,
            "pruned": self.pruned,
            "estimated_bytes": self.estimated_bytes,
            "skipped": self.skipped,
            "failures": self.failures,
            "warnings": self.warnings,
        }


def estimate_size(memory: Memory) -> int:
    """Approximate bytes a memory occupies."""
    return len(memory.content) + len(memory.decoded_cache or "") + _BYTES_OVERHEAD


class PruningEngine:
    """Selects and archives (or deletes) low-value memories.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    memories:
        The :class:`~memevolve.memories.MemoryStore` to query candidates from.
    config:
        The engine configuration; the ``pruning`` section supplies the
        default thresholds and their accepted ranges.
    """

    def __init__(
        self,
        storage: Storage,
        memories: MemoryStore,
        config: EvolutionConfig,
    ) -> None:
        self._storage = storage
        self._memories = memories
        self._cfg = config.pruning

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    def safety_exclusion(self, memory: Memory, now: datetime | None = None) -> str | None:
        """Return the reason *memory* may never be pruned, or ``None``."""
        if memory.importance >= PROTECTED_IMPORTANCE:
            return f"importance={memory.importance}"
        days = math.floor(days_between(memory.accessed_at, now))
        if days < RECENT_ACCESS_DAYS:
            return f"accessed {days} days ago"
        return None

    # ------------------------------------------------------------------
    # Prune
    # ------------------------------------------------------------------

    async def prune(
        self,
        min_usefulness: float | None = None,
        max_age_days: int | None = None,
        permanent: bool = False,
        dry_run: bool = False,
        *,
        project_hash: str | None = None,
        scores: Mapping[int, float] | None = None,
        now: datetime | None = None,
    ) -> PruneResult:
        """Run one pruning pass.

        Parameters
        ----------
        min_usefulness:
            Candidates score strictly below this (default 2.0, range 0.5-5).
        max_age_days:
            Candidates were last accessed at least this many days ago
            (default 90, range 7-365).
        permanent:
            Delete instead of archive.
        dry_run:
            Select and report only.
        project_hash:
            Only consider global memories and those of this project.
        scores:
            Usefulness scores to select on instead of the stored ones, keyed
            by memory id.  Lets a preview see the scores a pending decay
            pass would write.  Only accepted with ``dry_run``.
        now:
            Reference time for ages.

        Raises
        ------
        ValueError
            If a threshold is outside its accepted range, or *scores* is
            given for a live run.
        """
        cfg = self._cfg
        if min_usefulness is None:
            min_usefulness = cfg.min_usefulness
        if max_age_days is None:
            max_age_days = cfg.max_age_days
        if not cfg.min_usefulness_floor <= min_usefulness <= cfg.min_usefulness_ceiling:
            raise ValueError(
                f"min_usefulness must be between {cfg.min_usefulness_floor} and "
                f"{cfg.min_usefulness_ceiling}, got {min_usefulness}"
            )
        if not cfg.max_age_floor <= max_age_days <= cfg.max_age_ceiling:
            raise ValueError(
                f"max_age_days must be between {cfg.max_age_floor} and "
                f"{cfg.max_age_ceiling}, got {max_age_days}"
            )
        if scores is not None and not dry_run:
            raise ValueError("Score overrides are only accepted for dry runs")

        now = now or utc_now()
        result = PruneResult(dry_run=dry_run, permanent=permanent)
        accessed_before = now - timedelta(days=max_age_days)

        if scores is None:
            candidates = await self._memories.query(
                status="active",
                visible_to=project_hash,
                max_score=min_usefulness,
                accessed_before=accessed_before,
                order_by="score",
                limit=cfg.candidate_limit,
            )
        else:
            candidates = await self._rescored_candidates(
                scores, min_usefulness, accessed_before, project_hash
            )

        selected: list[Memory] = []
        for memory in candidates:
            reason = self.safety_exclusion(memory, now)
            if reason is not None:
                self._record_exclusion(result, memory, reason, now)
                continue
            selected.append(memory)

        for memory in selected:
            if not dry_run:
                try:
                    await self._prune_one(memory.id, permanent, now)
                except (InvariantViolation, NotFound) as exc:
                    log.error("Prune of memory %d aborted: %s", memory.id, exc)
                    result.failures.append({"id": memory.id, "error": str(exc)})
                    result.warnings.append(f"Failed to prune memory #{memory.id}: {exc}")
                    continue
            result.pruned.append(self._detail(memory, now))
            result.estimated_bytes += estimate_size(memory)

        if not result.pruned and not result.warnings:
            result.warnings.append("No memories eligible for pruning.")

        if not dry_run and result.pruned:
            await self._storage.log_action(
                "prune",
                {
                    "permanent": permanent,
                    "min_usefulness": min_usefulness,
                    "max_age_days": max_age_days,
                    "pruned": len(result.pruned),
                    "estimated_bytes": result.estimated_bytes,
                },
                result.pruned_ids,
            )

        log.info(
            "Prune %s: %d %s, %d excluded, %d failed",
            "previewed" if dry_run else "applied",
            len(result.pruned),
            "deleted" if permanent else "archived",
            len(result.skipped),
            len(result.failures),
        )
        return result

    async def _rescored_candidates(
        self,
        scores: Mapping[int, float],
        min_usefulness: float,
        accessed_before: datetime,
        project_hash: str | None,
    ) -> list[Memory]:
        """Candidates as the stored query would return them under *scores*."""
        pool = await self._memories.query(
            status="active",
            visible_to=project_hash,
            accessed_before=accessed_before,
        )
        rescored = [
            replace(m, usefulness_score=scores.get(m.id, m.usefulness_score)) for m in pool
        ]
        eligible = [m for m in rescored if m.usefulness_score < min_usefulness]
        eligible.sort(key=lambda m: (m.usefulness_score, m.id))
        return eligible[: self._cfg.candidate_limit]

    def _record_exclusion(
        self, result: PruneResult, memory: Memory, reason: str, now: datetime
    ) -> None:
        if memory.importance >= PROTECTED_IMPORTANCE:
            message = (
                f"Skipping high-importance memory #{memory.id} "
                f"(importance={memory.importance})"
            )
        else:
            days = math.floor(days_between(memory.accessed_at, now))
            message = f"Skipping recently accessed memory #{memory.id} ({days} days ago)"
        log.warning("Prune excluded memory %d: %s", memory.id, reason)
        result.skipped.append({"id": memory.id, "reason": reason})
        result.warnings.append(message)

    def _detail(self, memory: Memory, now: datetime) -> dict[str, Any]:
        limit = self._cfg.preview_chars
        preview = memory.text[:limit]
        if len(memory.text) > limit:
            preview += "..."
        return {
            "id": memory.id,
            "type": memory.type,
            "usefulness_score": round(memory.usefulness_score, 2),
            "days_since_access": math.floor(days_between(memory.accessed_at, now)),
            "importance": memory.importance,
            "preview": preview,
        }

    async def _prune_one(self, memory_id: int, permanent: bool, now: datetime) -> None:
        """Archive or delete one memory, re-checking the safety rules atomically."""

        def _do_prune(conn: sqlite3.Connection) -> None:
            current = MemoryStore.fetch_in(conn, memory_id)
            if current.status != "active":
                raise InvariantViolation(
                    f"Memory {memory_id} is {current.status}, not active",
                    memory_id=memory_id,
                )
            reason = self.safety_exclusion(current, now)
            if reason is not None:
                raise InvariantViolation(
                    f"Refusing to prune protected memory {memory_id} ({reason})",
                    memory_id=memory_id,
                )
            if permanent:
                MemoryStore.delete_in(conn, memory_id)
            else:
                MemoryStore.set_status_in(conn, memory_id, "archived")

        await self._storage.execute_transaction(_do_prune)
        log.debug("Memory %d %s", memory_id, "deleted" if permanent else "archived")

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(self, memory_id: int) -> Memory:
        """Return an archived memory to ``active``.

        Restoring an already active memory is a no-op.

        Raises
        ------
        NotFound
            If the memory does not exist (e.g. it was permanently pruned).
        InvariantViolation
            If the memory has been consolidated.
        """

        def _do_restore(conn: sqlite3.Connection) -> Memory:
            current = MemoryStore.fetch_in(conn, memory_id)
            if current.status == "active":
                return current
            return MemoryStore.set_status_in(conn, memory_id, "active")

        memory = await self._storage.execute_transaction(_do_restore)
        log.info("Restored memory %d", memory_id)
        return memory
