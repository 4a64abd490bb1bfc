"""Tests for the feedback recorder."""

from __future__ import annotations

import pytest

from memevolve.config import EvolutionConfig
from memevolve.errors import NotFound
from memevolve.feedback import FEEDBACK_TYPES, FeedbackRecorder
from memevolve.memories import MemoryStore
from memevolve.scoring import UsefulnessScorer
from memevolve.storage import Storage

from tests.conftest import count_rows, fetch_memory, insert_memory


@pytest.fixture
def recorder(storage: Storage, config: EvolutionConfig) -> FeedbackRecorder:
    memories = MemoryStore(storage, config)
    return FeedbackRecorder(storage, UsefulnessScorer(storage, memories, config))


class TestRecord:
    """Tests for ``FeedbackRecorder.record``."""

    async def test_helpful_increments_helpful(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        mid = await insert_memory(storage, "lesson")

        event = await recorder.record(mid, "helpful", "solved the bug")

        row = await fetch_memory(storage, mid)
        assert row["times_helpful"] == 1
        assert row["times_unhelpful"] == 0
        assert event.feedback_type == "helpful"
        assert event.context == "solved the bug"
        # ratio 2/3, accessed moments ago
        assert row["usefulness_score"] == pytest.approx(4.25, abs=1e-3)
        assert event.usefulness_score == pytest.approx(row["usefulness_score"])
        assert row["last_decay"] is not None

    @pytest.mark.parametrize("feedback_type", ["unhelpful", "incorrect"])
    async def test_negative_types_increment_unhelpful(
        self, storage: Storage, recorder: FeedbackRecorder, feedback_type: str
    ) -> None:
        mid = await insert_memory(storage, "lesson")
        await recorder.record(mid, feedback_type)
        row = await fetch_memory(storage, mid)
        assert row["times_helpful"] == 0
        assert row["times_unhelpful"] == 1
        assert row["usefulness_score"] < 4.0

    async def test_outdated_touches_no_counter_but_is_logged(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        mid = await insert_memory(storage, "lesson")
        await recorder.record(mid, "outdated")
        row = await fetch_memory(storage, mid)
        assert row["times_helpful"] == 0
        assert row["times_unhelpful"] == 0
        assert await count_rows(storage, "memory_feedback", "memory_id = ?", (mid,)) == 1

    async def test_always_rescores(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        """A stale stored score is replaced even by counter-neutral feedback."""
        mid = await insert_memory(storage, "lesson", usefulness_score=8.5)
        await recorder.record(mid, "outdated")
        row = await fetch_memory(storage, mid)
        assert row["usefulness_score"] == pytest.approx(4.0, abs=1e-3)

    async def test_counters_never_decrease(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        mid = await insert_memory(storage, "lesson")
        last = (0, 0)
        for feedback_type in ("helpful", "unhelpful", "outdated", "incorrect", "helpful"):
            await recorder.record(mid, feedback_type)
            row = await fetch_memory(storage, mid)
            current = (row["times_helpful"], row["times_unhelpful"])
            assert current[0] >= last[0] and current[1] >= last[1]
            last = current
        assert last == (2, 2)

    async def test_unknown_memory_raises_and_logs_nothing(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        with pytest.raises(NotFound) as exc_info:
            await recorder.record(404, "helpful")
        assert exc_info.value.memory_id == 404
        assert exc_info.value.code == "NOT_FOUND"
        assert await count_rows(storage, "memory_feedback") == 0

    async def test_invalid_type(self, storage: Storage, recorder: FeedbackRecorder) -> None:
        mid = await insert_memory(storage, "lesson")
        with pytest.raises(ValueError, match="Invalid feedback type"):
            await recorder.record(mid, "great")

    async def test_archived_memory_accepts_feedback(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        mid = await insert_memory(storage, "lesson", status="archived")
        await recorder.record(mid, "helpful")
        row = await fetch_memory(storage, mid)
        assert row["times_helpful"] == 1
        assert row["status"] == "archived"


class TestRecordMany:
    """Tests for batch feedback."""

    async def test_unknown_ids_become_warnings(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        a = await insert_memory(storage, "a")
        b = await insert_memory(storage, "b")

        result = await recorder.record_many([a, 999, b, a], "helpful")

        assert [r["id"] for r in result.recorded] == [a, b]
        assert result.warnings == ["Memory #999 not found"]
        d = result.to_dict()
        assert d["feedback_recorded"] == 2
        assert d["memories_updated"][0]["new_usefulness_score"] > 4.0

    async def test_invalid_type_rejected_up_front(self, recorder: FeedbackRecorder) -> None:
        with pytest.raises(ValueError):
            await recorder.record_many([1], "meh")


class TestHistory:
    """Tests for ``FeedbackRecorder.history``."""

    async def test_newest_first_with_summary(
        self, storage: Storage, recorder: FeedbackRecorder
    ) -> None:
        mid = await insert_memory(storage, "lesson")
        other = await insert_memory(storage, "other")
        await recorder.record(mid, "helpful", "first")
        await recorder.record(mid, "helpful", "second")
        await recorder.record(mid, "outdated", "third")
        await recorder.record(other, "unhelpful")

        history = await recorder.history(mid, limit=2)

        assert [e.context for e in history.events] == ["third", "second"]
        assert history.summary == {"helpful": 2, "unhelpful": 0, "outdated": 1, "incorrect": 0}
        assert set(history.to_dict()["summary"]) == set(FEEDBACK_TYPES)

    async def test_empty_history(self, recorder: FeedbackRecorder) -> None:
        history = await recorder.history(1)
        assert history.events == []
        assert sum(history.summary.values()) == 0
