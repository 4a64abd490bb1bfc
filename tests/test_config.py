"""Tests for configuration defaults, validation and the env-var loader."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from memevolve.config import (
    EvolutionConfig,
    LearningConfig,
    PruningConfig,
    load_config,
)


class TestDefaults:
    def test_section_defaults(self) -> None:
        cfg = EvolutionConfig()
        assert cfg.scoring.neutral_score == 5.0
        assert cfg.scoring.recency_base == 0.98
        assert cfg.learning.co_access_increment == 0.1
        assert cfg.learning.max_strength == 10.0
        assert cfg.learning.decay_factor == 0.95
        assert cfg.consolidation.similarity_threshold == 0.85
        assert (cfg.consolidation.min_threshold, cfg.consolidation.max_threshold) == (0.5, 0.99)
        assert not hasattr(cfg.consolidation, "max_level")
        assert cfg.pruning.min_usefulness == 2.0
        assert cfg.pruning.max_age_days == 90
        assert cfg.embedding.model == "nomic-embed-text"

    def test_paths_expanded(self) -> None:
        cfg = EvolutionConfig()
        assert "~" not in str(cfg.db_path)
        assert cfg.db_path == Path("~/.memevolve/memevolve.db").expanduser()

    def test_frozen(self) -> None:
        cfg = EvolutionConfig()
        with pytest.raises(FrozenInstanceError):
            cfg.backup_count = 3  # type: ignore[misc]


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"backup_count": -1},
            {"learning": LearningConfig(decay_factor=0.0)},
            {"learning": LearningConfig(decay_factor=1.1)},
            {"learning": LearningConfig(max_strength=0.0)},
            {"pruning": PruningConfig(max_age_floor=0)},
            {"pruning": PruningConfig(max_age_floor=30, max_age_ceiling=10)},
        ],
    )
    def test_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            EvolutionConfig(**kwargs)


class TestLoadConfig:
    """Tests for ``load_config``."""

    def test_empty_environment_gives_defaults(self) -> None:
        assert load_config(environ={}) == EvolutionConfig()

    def test_nested_override(self) -> None:
        cfg = load_config(
            environ={
                "MEMEVOLVE_PRUNING__MAX_AGE_DAYS": "120",
                "MEMEVOLVE_CONSOLIDATION__SIMILARITY_THRESHOLD": "0.9",
                "MEMEVOLVE_CONSOLIDATION__DISTILL": "true",
                "MEMEVOLVE_EMBEDDING__MODEL": "mxbai-embed-large",
            }
        )
        assert cfg.pruning.max_age_days == 120
        assert cfg.consolidation.similarity_threshold == 0.9
        assert cfg.consolidation.distill is True
        assert cfg.embedding.model == "mxbai-embed-large"

    def test_top_level_override(self, tmp_path: Path) -> None:
        cfg = load_config(
            environ={
                "MEMEVOLVE_DB_PATH": str(tmp_path / "x.db"),
                "MEMEVOLVE_BACKUP_COUNT": "2",
            }
        )
        assert cfg.db_path == tmp_path / "x.db"
        assert cfg.backup_count == 2

    def test_invalid_env_value(self) -> None:
        with pytest.raises(ValueError, match="MEMEVOLVE_PRUNING__MAX_AGE_DAYS"):
            load_config(environ={"MEMEVOLVE_PRUNING__MAX_AGE_DAYS": "soon"})

    def test_keyword_overrides_win(self, tmp_path: Path) -> None:
        cfg = load_config(
            environ={"MEMEVOLVE_BACKUP_COUNT": "2"},
            backup_count=0,
            db_path=tmp_path / "y.db",
        )
        assert cfg.backup_count == 0
        assert cfg.db_path == tmp_path / "y.db"

    def test_unknown_override(self) -> None:
        with pytest.raises(ValueError, match="Unknown config fields"):
            load_config(environ={}, colour="blue")

    def test_not_cached(self) -> None:
        first = load_config(environ={"MEMEVOLVE_BACKUP_COUNT": "1"})
        second = load_config(environ={"MEMEVOLVE_BACKUP_COUNT": "4"})
        assert (first.backup_count, second.backup_count) == (1, 4)

    def test_pruning_safety_limits_not_configurable(self) -> None:
        cfg = load_config(
            environ={
                "MEMEVOLVE_PRUNING__PROTECTED_IMPORTANCE": "10",
                "MEMEVOLVE_PRUNING__RECENT_ACCESS_DAYS": "0",
            }
        )
        assert cfg == EvolutionConfig()
        assert not hasattr(cfg.pruning, "protected_importance")
        with pytest.raises(ValueError, match="Unknown config fields"):
            load_config(environ={}, protected_importance=10)
