"""Tests for the usefulness formula and the batch score-decay pass."""

from __future__ import annotations

import math
from datetime import timedelta

import pytest

from memevolve.config import EvolutionConfig, ScoringConfig
from memevolve.errors import NotFound
from memevolve.memories import MemoryStore
from memevolve.scoring import UsefulnessScorer, usefulness_score
from memevolve.storage import Storage, from_iso, utc_now

from tests.conftest import fetch_memory, insert_memory


@pytest.fixture
def scorer(storage: Storage, config: EvolutionConfig) -> UsefulnessScorer:
    return UsefulnessScorer(storage, MemoryStore(storage, config), config)


# -----------------------------------------------------------------------
# 1. Pure formula
# -----------------------------------------------------------------------


class TestUsefulnessScore:
    """Tests for the pure ``usefulness_score`` function."""

    def test_fresh_memory_scores_four(self) -> None:
        """importance 5, no feedback, accessed now, never retrieved -> 4.0."""
        assert usefulness_score(5, 0, 0, 0.0, 0) == pytest.approx(4.0)

    def test_helpful_feedback_raises_score(self) -> None:
        base = usefulness_score(5, 0, 0, 0.0, 0)
        assert usefulness_score(5, 3, 0, 0.0, 0) > base
        assert usefulness_score(5, 0, 3, 0.0, 0) < base

    def test_single_feedback_does_not_saturate_ratio(self) -> None:
        """One helpful event moves the ratio to 2/3, not to 1."""
        expected = 5 * (0.5 + 0.3 * (2 / 3) + 0.15 * 1.0)
        assert usefulness_score(5, 1, 0, 0.0, 0) == pytest.approx(expected)

    def test_recency_decays_exponentially(self) -> None:
        expected = 5 * (0.5 + 0.3 * 0.5 + 0.15 * 0.98**30)
        assert usefulness_score(5, 0, 0, 30.0, 0) == pytest.approx(expected)

    def test_recency_capped_at_365_days(self) -> None:
        assert usefulness_score(5, 0, 0, 365.0, 0) == usefulness_score(5, 0, 0, 5000.0, 0)

    def test_access_boost_uses_natural_log(self) -> None:
        expected = 5 * (0.5 + 0.3 * 0.5 + 0.15 + 0.05 * math.log(10) / 10)
        assert usefulness_score(5, 0, 0, 0.0, 9) == pytest.approx(expected)

    def test_negative_days_treated_as_zero(self) -> None:
        assert usefulness_score(5, 0, 0, -3.0, 0) == pytest.approx(4.0)

    def test_clamped_to_upper_bound(self) -> None:
        assert usefulness_score(9, 10_000, 0, 0.0, 1_000_000) == 9.0

    def test_clamped_to_lower_bound(self) -> None:
        assert usefulness_score(1, 0, 10_000, 365.0, 0) == 1.0

    @pytest.mark.parametrize("importance", range(1, 10))
    @pytest.mark.parametrize("days", [0.0, 1.5, 90.0, 400.0])
    def test_always_within_bounds(self, importance: int, days: float) -> None:
        for helpful, unhelpful in ((0, 0), (50, 0), (0, 50)):
            score = usefulness_score(importance, helpful, unhelpful, days, 3)
            assert 1.0 <= score <= 9.0

    def test_custom_weights(self) -> None:
        cfg = ScoringConfig(base_weight=1.0, helpful_weight=0.0, recency_weight=0.0, access_weight=0.0)
        assert usefulness_score(4, 7, 2, 10.0, 5, cfg) == pytest.approx(4.0)


# -----------------------------------------------------------------------
# 2. Scorer over stored memories
# -----------------------------------------------------------------------


class TestScorer:
    """Tests for ``UsefulnessScorer.score`` and ``rescore``."""

    async def test_score_uses_stored_counters(
        self, storage: Storage, config: EvolutionConfig, scorer: UsefulnessScorer
    ) -> None:
        mid = await insert_memory(storage, "fresh lesson")
        row = await fetch_memory(storage, mid)
        memory = await MemoryStore(storage, config).get(mid)
        assert scorer.score(memory, from_iso(row["accessed_at"])) == pytest.approx(4.0)

    async def test_rescore_persists_score_and_stamp(
        self, storage: Storage, scorer: UsefulnessScorer
    ) -> None:
        mid = await insert_memory(storage, "old lesson", days_ago=60)
        memory = await scorer.rescore(mid)

        row = await fetch_memory(storage, mid)
        assert row["usefulness_score"] == pytest.approx(memory.usefulness_score)
        assert row["usefulness_score"] < 5.0
        assert row["last_decay"] is not None

    async def test_rescore_unknown_memory(self, scorer: UsefulnessScorer) -> None:
        with pytest.raises(NotFound):
            await scorer.rescore(9999)


# -----------------------------------------------------------------------
# 3. Batch decay
# -----------------------------------------------------------------------


class TestDecayAll:
    """Tests for the batch decay pass."""

    async def test_rescores_every_active_memory(
        self, storage: Storage, scorer: UsefulnessScorer
    ) -> None:
        a = await insert_memory(storage, "a", days_ago=100)
        b = await insert_memory(storage, "b", days_ago=10)

        result = await scorer.decay_all()

        assert {u["id"] for u in result.updated} == {a, b}
        assert result.count == 2
        row_a = await fetch_memory(storage, a)
        row_b = await fetch_memory(storage, b)
        assert row_a["usefulness_score"] < row_b["usefulness_score"] < 5.0

    async def test_skips_archived_and_consolidated(
        self, storage: Storage, scorer: UsefulnessScorer
    ) -> None:
        parent = await insert_memory(storage, "parent", level=2)
        archived = await insert_memory(storage, "archived", status="archived", days_ago=200)
        child = await insert_memory(
            storage, "child", status="consolidated", parent_id=parent, days_ago=200
        )

        result = await scorer.decay_all()

        assert [u["id"] for u in result.updated] == [parent]
        for mid in (archived, child):
            row = await fetch_memory(storage, mid)
            assert row["usefulness_score"] == 5.0
            assert row["last_decay"] is None

    async def test_never_changes_status_or_level(
        self, storage: Storage, scorer: UsefulnessScorer
    ) -> None:
        mid = await insert_memory(storage, "x", level=2, days_ago=400)
        await scorer.decay_all()
        row = await fetch_memory(storage, mid)
        assert row["status"] == "active"
        assert row["level"] == 2

    async def test_dry_run_writes_nothing(
        self, storage: Storage, scorer: UsefulnessScorer
    ) -> None:
        mid = await insert_memory(storage, "x", days_ago=100)

        result = await scorer.decay_all(dry_run=True)

        assert result.dry_run is True
        assert result.updated[0]["new_score"] < 5.0
        row = await fetch_memory(storage, mid)
        assert row["usefulness_score"] == 5.0
        assert row["last_decay"] is None

    async def test_reference_time(
        self, storage: Storage, scorer: UsefulnessScorer
    ) -> None:
        """A later reference time yields lower scores for the same memory."""
        await insert_memory(storage, "x")
        now = utc_now()
        soon = await scorer.decay_all(dry_run=True, now=now)
        later = await scorer.decay_all(dry_run=True, now=now + timedelta(days=50))
        assert later.updated[0]["new_score"] < soon.updated[0]["new_score"]

    async def test_empty_store(self, scorer: UsefulnessScorer) -> None:
        result = await scorer.decay_all()
        assert result.count == 0
        assert result.to_dict()["count"] == 0
