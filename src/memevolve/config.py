"""Central configuration for the memory evolution engine.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``MEMEVOLVE_`` (nested keys use
double underscores, e.g. ``MEMEVOLVE_PRUNING__MAX_AGE_DAYS=120``).

There is no process-wide cached instance: build a config with
:func:`load_config` and hand it to :class:`~memevolve.engine.EvolutionEngine`
(which passes it down to every component).

Usage::

    from memevolve.config import load_config

    cfg = load_config()
    print(cfg.consolidation.similarity_threshold)
    print(cfg.pruning.max_age_days)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Mapping, TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ScoringConfig:
    """Parameters of the usefulness formula."""

    neutral_score: float = 5.0
    """Score given to a freshly created memory before any feedback."""

    min_score: float = 1.0
    max_score: float = 9.0

    recency_base: float = 0.98
    """Per-day multiplier of the recency boost (``base ** days``)."""

    recency_cap_days: float = 365.0
    """Days beyond which the recency boost stops shrinking."""

    base_weight: float = 0.5
    helpful_weight: float = 0.3
    recency_weight: float = 0.15
    access_weight: float = 0.05


@dataclass(frozen=True, slots=True)
class LearningConfig:
    """Parameters for co-access relationship learning."""

    co_access_increment: float = 0.1
    max_strength: float = 10.0
    decay_factor: float = 0.95
    decay_floor: float = 0.1

    access_window_seconds: int = 300
    """How far back :meth:`learn_from_access_patterns` looks."""

    bucket_seconds: int = 5
    """Accesses landing in the same bucket count as one retrieval batch."""

    suggestion_limit: int = 3


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters for similarity clustering and abstraction."""

    similarity_threshold: float = 0.85
    min_threshold: float = 0.5
    max_threshold: float = 0.99
    candidate_limit: int = 500
    topic_threshold: float = 0.5
    """Minimum similarity to the topic for topic-focused consolidation."""

    rollup_max_chars: int = 500
    distill: bool = False
    """Use a local LLM to distil rollups instead of the plain template."""

    distill_model: str = "llama3.2:3b"
    distill_timeout: float = 15.0


@dataclass(frozen=True, slots=True)
class PruningConfig:
    """Default thresholds and their accepted ranges for pruning.

    The safety rules are not configurable; see :mod:`memevolve.pruning`.
    """

    min_usefulness: float = 2.0
    min_usefulness_floor: float = 0.5
    min_usefulness_ceiling: float = 5.0
    max_age_days: int = 90
    max_age_floor: int = 7
    max_age_ceiling: int = 365
    candidate_limit: int = 200
    preview_chars: int = 100


@dataclass(frozen=True, slots=True)
class EmbeddingConfig:
    """Settings for the Ollama embedding backend."""

    ollama_url: str = "http://localhost:11434"
    model: str = "nomic-embed-text"
    batch_size: int = 32
    timeout: float = 30.0


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EvolutionConfig:
    """Root configuration object for the evolution engine.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.memevolve/memevolve.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.memevolve/backups"))
    backup_count: int = 5

    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    pruning: PruningConfig = field(default_factory=PruningConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)

    def __post_init__(self) -> None:
        # Expand ~ in path fields.  We use object.__setattr__ because the
        # dataclass is frozen.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        object.__setattr__(self, "backup_dir", Path(self.backup_dir).expanduser())

        if self.backup_count < 0:
            raise ValueError(f"backup_count must be >= 0, got {self.backup_count}")
        if not 0.0 < self.learning.decay_factor <= 1.0:
            raise ValueError(
                f"learning.decay_factor must be in (0, 1], got {self.learning.decay_factor}"
            )
        if self.learning.max_strength <= 0:
            raise ValueError(
                f"learning.max_strength must be positive, got {self.learning.max_strength}"
            )
        if not 1 <= self.pruning.max_age_floor <= self.pruning.max_age_ceiling:
            raise ValueError(
                "pruning.max_age_floor must be between 1 and max_age_ceiling, "
                f"got {self.pruning.max_age_floor}"
            )


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MEMEVOLVE_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str, environ: Mapping[str, str]) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]

        if hasattr(field_type, "__dataclass_fields__"):
            nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix, environ)
            continue

        raw = environ.get(f"{prefix}{f.name}".upper())
        if raw is None:
            continue
        try:
            kwargs[f.name] = _coerce(raw, field_type)
        except ValueError as exc:
            raise ValueError(
                f"Invalid value {raw!r} for {prefix}{f.name.upper()}: {exc}"
            ) from exc

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    environ: Mapping[str, str] | None = None,
    **overrides: object,
) -> EvolutionConfig:
    """Build an :class:`EvolutionConfig` from defaults and the environment.

    Parameters
    ----------
    environ:
        Mapping to read ``MEMEVOLVE_*`` variables from.  Defaults to
        :data:`os.environ`.
    overrides:
        Top-level fields to set explicitly (e.g. ``db_path=tmp / "x.db"``).
        These win over the environment.
    """
    env = os.environ if environ is None else environ
    cfg = _load_dataclass(EvolutionConfig, _ENV_PREFIX, env)
    if not overrides:
        return cfg

    values = {f.name: getattr(cfg, f.name) for f in fields(EvolutionConfig)}
    unknown = set(overrides) - set(values)
    if unknown:
        raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")
    values.update(overrides)
    return EvolutionConfig(**values)  # type: ignore[arg-type]
