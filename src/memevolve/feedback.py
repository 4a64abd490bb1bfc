"""Feedback recording.

Hosts report how useful a retrieved memory turned out to be with one of four
feedback types:

- ``helpful`` -- increments ``times_helpful``.
- ``unhelpful`` / ``incorrect`` -- increment ``times_unhelpful``.
- ``outdated`` -- increments neither counter; it marks the memory as stale
  without penalising its future helpful ratio.

Every event is appended to the ``memory_feedback`` audit log (which is never
updated or deleted) and the memory's usefulness score is recomputed in the
same transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from memevolve.errors import NotFound
from memevolve.memories import MemoryStore
from memevolve.scoring import UsefulnessScorer
from memevolve.storage import Storage, to_iso, utc_now

log = logging.getLogger(__name__)

FEEDBACK_TYPES: tuple[str, ...] = ("helpful", "unhelpful", "outdated", "incorrect")
"""Allowed values for ``memory_feedback.feedback_type``."""

_HELPFUL_TYPES = frozenset({"helpful"})
_UNHELPFUL_TYPES = frozenset({"unhelpful", "incorrect"})


@dataclass
class FeedbackEvent:
    """One row of the append-only feedback log."""

    id: int
    memory_id: int
    feedback_type: str
    context: str | None
    created_at: str
    usefulness_score: float | None = None
    """Score of the memory right after this event (only set when recorded)."""

    @classmethod
    def from_row(cls, row: Any) -> FeedbackEvent:
        return cls(
            id=row["id"],
            memory_id=row["memory_id"],
            feedback_type=row["feedback_type"],
            context=row["context"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FeedbackBatchResult:
    """Outcome of :meth:`FeedbackRecorder.record_many`."""

    recorded: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feedback_recorded": len(self.recorded),
            "memories_updated": self.recorded,
            "warnings": self.warnings,
        }


@dataclass
class FeedbackHistory:
    """Recent feedback for one memory plus per-type totals over the whole log."""

    memory_id: int
    events: list[FeedbackEvent]
    summary: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "events": [e.to_dict() for e in self.events],
            "summary": self.summary,
        }


def _validate_feedback_type(feedback_type: str) -> None:
    if feedback_type not in FEEDBACK_TYPES:
        raise ValueError(
            f"Invalid feedback type {feedback_type!r}. "
            f"Must be one of: {', '.join(FEEDBACK_TYPES)}"
        )


class FeedbackRecorder:
    """Records feedback events and keeps usefulness scores current.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    scorer:
        Used to recompute the score after the counters change.
    """

    def __init__(self, storage: Storage, scorer: UsefulnessScorer) -> None:
        self._storage = storage
        self._scorer = scorer

    async def record(
        self,
        memory_id: int,
        feedback_type: str,
        context: str | None = None,
    ) -> FeedbackEvent:
        """Append a feedback event and rescore the memory.

        The event insert, the counter increment and the score update
        commit as one transaction.

        Raises
        ------
        ValueError
            If *feedback_type* is not one of :data:`FEEDBACK_TYPES`.
        NotFound
            If *memory_id* does not exist.
        """
        _validate_feedback_type(feedback_type)
        scorer = self._scorer

        def _do_record(conn: sqlite3.Connection) -> FeedbackEvent:
            memory = MemoryStore.fetch_in(conn, memory_id)
            now = utc_now()
            stamp = to_iso(now)

            cursor = conn.execute(
                "INSERT INTO memory_feedback (memory_id, feedback_type, context, created_at) "
                "VALUES (?, ?, ?, ?)",
                (memory_id, feedback_type, context, stamp),
            )
            if feedback_type in _HELPFUL_TYPES:
                memory.times_helpful += 1
            elif feedback_type in _UNHELPFUL_TYPES:
                memory.times_unhelpful += 1

            new_score = scorer.score(memory, now)
            conn.execute(
                "UPDATE memories SET times_helpful = ?, times_unhelpful = ?, "
                "usefulness_score = ?, last_decay = ? WHERE id = ?",
                (
                    memory.times_helpful,
                    memory.times_unhelpful,
                    new_score,
                    stamp,
                    memory_id,
                ),
            )
            return FeedbackEvent(
                id=cursor.lastrowid or 0,
                memory_id=memory_id,
                feedback_type=feedback_type,
                context=context,
                created_at=stamp,
                usefulness_score=new_score,
            )

        event = await self._storage.execute_transaction(_do_record)
        log.info(
            "Recorded %s feedback for memory %d (score now %.2f)",
            feedback_type,
            memory_id,
            event.usefulness_score,
        )
        return event

    async def record_many(
        self,
        memory_ids: Iterable[int],
        feedback_type: str,
        context: str | None = None,
    ) -> FeedbackBatchResult:
        """Record the same feedback for several memories.

        Unknown ids produce a warning instead of aborting the batch.
        """
        _validate_feedback_type(feedback_type)
        result = FeedbackBatchResult()
        for memory_id in dict.fromkeys(memory_ids):
            try:
                event = await self.record(memory_id, feedback_type, context)
            except NotFound:
                log.warning("Feedback for unknown memory %d ignored", memory_id)
                result.warnings.append(f"Memory #{memory_id} not found")
                continue
            result.recorded.append(
                {"id": memory_id, "new_usefulness_score": event.usefulness_score}
            )
        return result

    async def history(self, memory_id: int, limit: int = 20) -> FeedbackHistory:
        """Most recent feedback events for *memory_id*, newest first."""
        rows = await self._storage.execute(
            "SELECT * FROM memory_feedback WHERE memory_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (memory_id, limit),
        )
        totals = await self._storage.execute(
            "SELECT feedback_type, COUNT(*) AS cnt FROM memory_feedback "
            "WHERE memory_id = ? GROUP BY feedback_type",
            (memory_id,),
        )
        summary = {t: 0 for t in FEEDBACK_TYPES}
        summary.update({row["feedback_type"]: row["cnt"] for row in totals})
        return FeedbackHistory(
            memory_id=memory_id,
            events=[FeedbackEvent.from_row(r) for r in rows],
            summary=summary,
        )
