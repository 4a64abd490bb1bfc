"""Tests for safety-gated pruning and restore."""

from __future__ import annotations

import pytest

from memevolve.config import EvolutionConfig, PruningConfig, load_config
from memevolve.errors import InvariantViolation, NotFound
from memevolve.learning import AccessPatternLearner
from memevolve.memories import MemoryStore
from memevolve.pruning import (
    PROTECTED_IMPORTANCE,
    RECENT_ACCESS_DAYS,
    PruningEngine,
    estimate_size,
)
from memevolve.storage import Storage, serialize_embedding, to_iso, utc_now

from tests.conftest import count_rows, fetch_memory, insert_memory


@pytest.fixture
def pruner(storage: Storage, config: EvolutionConfig) -> PruningEngine:
    return PruningEngine(storage, MemoryStore(storage, config), config)


# -----------------------------------------------------------------------
# 1. Selection
# -----------------------------------------------------------------------


class TestSelection:
    """Which memories a pass selects."""

    async def test_low_score_old_memory_archived(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        mid = await insert_memory(
            storage, "stale tip", usefulness_score=1.5, importance=5, days_ago=120
        )

        result = await pruner.prune(min_usefulness=2.0, max_age_days=90)

        assert result.pruned_ids == [mid]
        assert result.warnings == []
        assert (await fetch_memory(storage, mid))["status"] == "archived"
        detail = result.pruned[0]
        assert detail["days_since_access"] == 120
        assert detail["importance"] == 5
        assert detail["preview"] == "stale tip"

    async def test_high_importance_excluded_with_warning(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        mid = await insert_memory(
            storage, "critical", usefulness_score=1.5, importance=8, days_ago=120
        )

        result = await pruner.prune(min_usefulness=2.0, max_age_days=90)

        assert result.pruned == []
        assert result.skipped == [{"id": mid, "reason": "importance=8"}]
        assert result.warnings == [f"Skipping high-importance memory #{mid} (importance=8)"]
        assert (await fetch_memory(storage, mid))["status"] == "active"

    async def test_recently_accessed_never_selected(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        mid = await insert_memory(storage, "fresh", usefulness_score=1.0, days_ago=3)

        result = await pruner.prune(min_usefulness=5.0, max_age_days=7)

        assert result.pruned == []
        assert result.warnings == ["No memories eligible for pruning."]
        assert (await fetch_memory(storage, mid))["status"] == "active"

    async def test_recent_access_guard_reported(
        self, storage: Storage, tmp_path
    ) -> None:
        cfg = load_config(
            environ={},
            db_path=tmp_path / "memevolve.db",
            backup_dir=tmp_path / "backups",
            backup_count=0,
            pruning=PruningConfig(max_age_floor=1),
        )
        pruner = PruningEngine(storage, MemoryStore(storage, cfg), cfg)
        mid = await insert_memory(storage, "fivish days", usefulness_score=1.0, days_ago=5.2)

        result = await pruner.prune(min_usefulness=2.0, max_age_days=3)

        assert result.pruned == []
        assert result.warnings == [f"Skipping recently accessed memory #{mid} (5 days ago)"]
        assert result.skipped[0]["reason"] == "accessed 5 days ago"

    @pytest.mark.parametrize(
        ("score", "days_ago"),
        [(2.0, 120), (2.5, 120), (1.5, 80)],
    )
    async def test_thresholds(
        self, storage: Storage, pruner: PruningEngine, score: float, days_ago: float
    ) -> None:
        """Score must be strictly below the minimum and age at least max_age_days."""
        await insert_memory(storage, "x", usefulness_score=score, days_ago=days_ago)
        result = await pruner.prune(min_usefulness=2.0, max_age_days=90)
        assert result.pruned == []

    async def test_only_active_memories(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        parent = await insert_memory(storage, "parent", level=2)
        await insert_memory(storage, "archived", usefulness_score=1.0, days_ago=200, status="archived")
        await insert_memory(
            storage,
            "consolidated",
            usefulness_score=1.0,
            days_ago=200,
            status="consolidated",
            parent_id=parent,
        )
        result = await pruner.prune()
        assert result.pruned == []

    async def test_lowest_scores_first(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        a = await insert_memory(storage, "a", usefulness_score=1.8, days_ago=100)
        b = await insert_memory(storage, "b", usefulness_score=1.1, days_ago=100)
        result = await pruner.prune(dry_run=True)
        assert result.pruned_ids == [b, a]

    async def test_project_filter(self, storage: Storage, pruner: PruningEngine) -> None:
        glob = await insert_memory(storage, "g", usefulness_score=1.0, days_ago=100)
        mine = await insert_memory(
            storage, "m", usefulness_score=1.0, days_ago=100, scope="project", project_hash="me"
        )
        await insert_memory(
            storage, "t", usefulness_score=1.0, days_ago=100, scope="project", project_hash="them"
        )
        result = await pruner.prune(dry_run=True, project_hash="me")
        assert result.pruned_ids == [glob, mine]

    async def test_project_filter_applied_before_candidate_limit(
        self, storage: Storage, tmp_path
    ) -> None:
        cfg = load_config(
            environ={},
            db_path=tmp_path / "memevolve.db",
            backup_dir=tmp_path / "backups",
            backup_count=0,
            pruning=PruningConfig(candidate_limit=2),
        )
        pruner = PruningEngine(storage, MemoryStore(storage, cfg), cfg)
        for i in range(3):
            await insert_memory(
                storage,
                f"theirs {i}",
                usefulness_score=1.1,
                days_ago=100,
                scope="project",
                project_hash="them",
            )
        mine = await insert_memory(
            storage, "mine", usefulness_score=1.5, days_ago=100, scope="project", project_hash="mine"
        )

        result = await pruner.prune(dry_run=True, project_hash="mine")

        assert result.pruned_ids == [mine]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_usefulness": 0.1},
            {"min_usefulness": 6.0},
            {"max_age_days": 3},
            {"max_age_days": 400},
        ],
    )
    async def test_parameter_ranges(self, pruner: PruningEngine, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            await pruner.prune(**kwargs)

    @pytest.mark.parametrize("importance", [8, 9])
    @pytest.mark.parametrize("min_usefulness", [0.5, 2.0, 5.0])
    async def test_protected_for_any_threshold(
        self,
        storage: Storage,
        pruner: PruningEngine,
        importance: int,
        min_usefulness: float,
    ) -> None:
        await insert_memory(
            storage, "vip", importance=importance, usefulness_score=1.0, days_ago=365
        )
        result = await pruner.prune(min_usefulness=min_usefulness, max_age_days=7)
        assert result.pruned == []

    async def test_safety_limits_ignore_environment(
        self, storage: Storage, tmp_path
    ) -> None:
        cfg = load_config(
            environ={
                "MEMEVOLVE_DB_PATH": str(tmp_path / "memevolve.db"),
                "MEMEVOLVE_BACKUP_COUNT": "0",
                "MEMEVOLVE_PRUNING__PROTECTED_IMPORTANCE": "10",
                "MEMEVOLVE_PRUNING__RECENT_ACCESS_DAYS": "0",
            }
        )
        pruner = PruningEngine(storage, MemoryStore(storage, cfg), cfg)
        mid = await insert_memory(
            storage, "vip", importance=9, usefulness_score=4.9, days_ago=120
        )

        result = await pruner.prune(5.0, 90)

        assert result.pruned == []
        assert result.skipped == [{"id": mid, "reason": "importance=9"}]
        assert (await fetch_memory(storage, mid))["status"] == "active"
        assert (PROTECTED_IMPORTANCE, RECENT_ACCESS_DAYS) == (8, 7)


# -----------------------------------------------------------------------
# 2. Dry run and reporting
# -----------------------------------------------------------------------


class TestDryRun:
    async def test_dry_run_matches_live_run(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        for i in range(4):
            await insert_memory(storage, f"m{i}", usefulness_score=1.0 + i * 0.4, days_ago=100)
        await insert_memory(storage, "vip", importance=9, usefulness_score=1.0, days_ago=100)

        preview = await pruner.prune(dry_run=True)

        assert await count_rows(storage, "memories", "status = 'active'") == 5
        live = await pruner.prune()
        assert live.pruned_ids == preview.pruned_ids
        assert live.warnings == preview.warnings
        assert await count_rows(storage, "memories", "status = 'archived'") == len(live.pruned)

    async def test_score_overrides_drive_selection(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        rising = await insert_memory(storage, "rising", usefulness_score=1.0, days_ago=100)
        falling = await insert_memory(storage, "falling", usefulness_score=5.0, days_ago=100)
        sinking = await insert_memory(storage, "sinking", usefulness_score=4.0, days_ago=100)
        await insert_memory(storage, "fresh", usefulness_score=5.0, days_ago=1)

        result = await pruner.prune(
            dry_run=True, scores={rising: 3.0, falling: 1.2, sinking: 1.8}
        )

        assert result.pruned_ids == [falling, sinking]
        assert result.pruned[0]["usefulness_score"] == 1.2
        assert (await fetch_memory(storage, falling))["usefulness_score"] == 5.0

    async def test_score_overrides_rejected_for_live_runs(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        mid = await insert_memory(storage, "x", usefulness_score=5.0, days_ago=100)
        with pytest.raises(ValueError, match="dry runs"):
            await pruner.prune(scores={mid: 1.0})
        assert (await fetch_memory(storage, mid))["status"] == "active"

    async def test_estimated_bytes_and_preview(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        content = "x" * 150
        await insert_memory(
            storage, content, usefulness_score=1.0, days_ago=100, decoded_cache="y" * 150
        )
        result = await pruner.prune(dry_run=True)
        assert result.estimated_bytes == 150 + 150 + 100
        assert result.pruned[0]["preview"] == "y" * 100 + "..."
        d = result.to_dict()
        assert d["memories_pruned"] == 1
        assert d["dry_run"] is True

    async def test_audit_entry_only_for_live_runs(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        mid = await insert_memory(storage, "x", usefulness_score=1.0, days_ago=100)
        await pruner.prune(dry_run=True)
        assert await storage.history() == []
        await pruner.prune()
        history = await storage.history()
        assert history[0]["action"] == "prune"
        assert history[0]["memories_affected"] == [mid]


# -----------------------------------------------------------------------
# 3. Permanent pruning
# -----------------------------------------------------------------------


class TestPermanent:
    async def test_deletes_memory_embedding_and_edges(
        self, storage: Storage, config: EvolutionConfig, pruner: PruningEngine
    ) -> None:
        doomed = await insert_memory(storage, "doomed", usefulness_score=1.0, days_ago=100)
        keeper = await insert_memory(storage, "keeper", importance=9)
        await AccessPatternLearner(storage, config).record_co_access([doomed, keeper])
        now = to_iso(utc_now())
        await storage.execute_write(
            "INSERT INTO memory_embeddings (memory_id, vector, model, dims, created_at) "
            "VALUES (?, ?, 'nomic-embed-text', 2, ?)",
            (doomed, serialize_embedding([1.0, 0.0]), now),
        )
        await storage.execute_write(
            "INSERT INTO memory_feedback (memory_id, feedback_type, created_at) "
            "VALUES (?, 'unhelpful', ?)",
            (doomed, now),
        )

        result = await pruner.prune(permanent=True)

        assert result.pruned_ids == [doomed]
        assert result.permanent is True
        assert await fetch_memory(storage, doomed) is None
        assert await count_rows(storage, "memory_embeddings") == 0
        assert await count_rows(storage, "memory_relationships") == 0
        # the feedback trail outlives the memory
        assert await count_rows(storage, "memory_feedback") == 1

    async def test_parent_of_consolidated_memories_not_deleted(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        parent = await insert_memory(storage, "pattern", level=2, usefulness_score=1.0, days_ago=100)
        await insert_memory(storage, "source", status="consolidated", parent_id=parent)

        result = await pruner.prune(permanent=True)

        assert result.pruned == []
        assert result.failures[0]["id"] == parent
        assert f"Failed to prune memory #{parent}" in result.warnings[0]
        assert await fetch_memory(storage, parent) is not None


# -----------------------------------------------------------------------
# 4. Restore
# -----------------------------------------------------------------------


class TestRestore:
    async def test_restore_archived(self, storage: Storage, pruner: PruningEngine) -> None:
        mid = await insert_memory(storage, "x", usefulness_score=1.0, days_ago=100)
        await pruner.prune()

        memory = await pruner.restore(mid)

        assert memory.status == "active"
        assert (await fetch_memory(storage, mid))["status"] == "active"

    async def test_restore_active_is_noop(self, storage: Storage, pruner: PruningEngine) -> None:
        mid = await insert_memory(storage, "x")
        assert (await pruner.restore(mid)).status == "active"

    async def test_restore_consolidated_refused(
        self, storage: Storage, pruner: PruningEngine
    ) -> None:
        parent = await insert_memory(storage, "p", level=2)
        mid = await insert_memory(storage, "c", status="consolidated", parent_id=parent)
        with pytest.raises(InvariantViolation):
            await pruner.restore(mid)

    async def test_restore_deleted(self, pruner: PruningEngine) -> None:
        with pytest.raises(NotFound):
            await pruner.restore(31337)


class TestSafetyExclusion:
    async def test_reasons(self, storage: Storage, config: EvolutionConfig, pruner: PruningEngine) -> None:
        memories = MemoryStore(storage, config)
        vip = await memories.get(await insert_memory(storage, "vip", importance=8, days_ago=100))
        fresh = await memories.get(await insert_memory(storage, "fresh", days_ago=2.5))
        old = await memories.get(await insert_memory(storage, "old", days_ago=100))

        assert pruner.safety_exclusion(vip) == "importance=8"
        assert pruner.safety_exclusion(fresh) == "accessed 2 days ago"
        assert pruner.safety_exclusion(old) is None
        assert estimate_size(old) == len("old") + 100
