"""Shared fixtures and helpers for the memevolve test suite."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Sequence

import pytest

from memevolve.config import EvolutionConfig, load_config
from memevolve.embeddings import EmbeddingEngine
from memevolve.engine import EvolutionEngine
from memevolve.errors import CollaboratorUnavailable
from memevolve.storage import Storage, to_iso, utc_now

DIMS = 32
RESERVED_AXES = 4
"""Axes 0-3 are for vectors tests spell out; unknown texts get one of the rest."""


# ---------------------------------------------------------------------------
# Fake embedding collaborator
# ---------------------------------------------------------------------------


def pad(vector: Sequence[float]) -> list[float]:
    """Extend a short vector with zeros up to ``DIMS``."""
    return [float(v) for v in vector] + [0.0] * (DIMS - len(vector))


class FakeEmbeddings(EmbeddingEngine):
    """EmbeddingEngine whose vectors come from a text -> vector map.

    Texts not in the map get their own one-hot axis, so unrelated texts
    are orthogonal to each other and to every mapped vector.  Only the
    Ollama call is replaced; caching and stored vectors use the real code.
    """

    def __init__(
        self,
        storage: Storage,
        config: EvolutionConfig,
        vectors: dict[str, Sequence[float]] | None = None,
    ) -> None:
        super().__init__(storage, config)
        self.vectors: dict[str, Sequence[float]] = dict(vectors or {})
        self.failing: set[str] = set()
        self.healthy = True
        self.calls: list[list[str]] = []
        self._axes: dict[str, int] = {}

    async def health_check(self) -> bool:
        return self.healthy

    async def _embed_uncached(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        for text in texts:
            if text in self.failing:
                raise CollaboratorUnavailable(f"cannot embed {text!r}")
        return [self._vector_for(text) for text in texts]

    def _vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return pad(self.vectors[text])
        if text not in self._axes:
            self._axes[text] = RESERVED_AXES + len(self._axes) % (DIMS - RESERVED_AXES)
        vec = [0.0] * DIMS
        vec[self._axes[text]] = 1.0
        return vec


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config(tmp_path: Path) -> EvolutionConfig:
    """Default configuration pointed at a temp directory.

    The environment is ignored so a developer's ``MEMEVOLVE_*`` variables
    cannot leak into the tests.  Backups are disabled.
    """
    return load_config(
        environ={},
        db_path=tmp_path / "memevolve.db",
        backup_dir=tmp_path / "backups",
        backup_count=0,
    )


@pytest.fixture
async def storage(config: EvolutionConfig) -> Storage:
    """Provide an initialized Storage instance backed by ``tmp_path``."""
    s = Storage(config)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
def fake_embeddings(storage: Storage, config: EvolutionConfig) -> FakeEmbeddings:
    """Embedding collaborator with an empty vector map.

    Tests register vectors with ``fake_embeddings.vectors[text] = [...]``
    before the text is first embedded.
    """
    return FakeEmbeddings(storage, config)


@pytest.fixture
async def engine(
    config: EvolutionConfig,
    storage: Storage,
    fake_embeddings: FakeEmbeddings,
) -> EvolutionEngine:
    """Provide an open EvolutionEngine over the shared storage and fake embeddings."""
    e = EvolutionEngine(config, storage=storage, embeddings=fake_embeddings)
    await e.open()
    yield e  # type: ignore[misc]
    await e.close()


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing MemoryStore
# ---------------------------------------------------------------------------


async def insert_memory(
    storage: Storage,
    content: str,
    memory_type: str = "lesson",
    importance: int = 5,
    usefulness_score: float = 5.0,
    times_helpful: int = 0,
    times_unhelpful: int = 0,
    status: str = "active",
    level: int = 1,
    parent_id: int | None = None,
    scope: str = "global",
    project_hash: str | None = None,
    access_count: int = 0,
    days_ago: float = 0.0,
    decoded_cache: str | None = None,
) -> int:
    """Insert a memory directly via SQL (no embedding, no validation).

    ``days_ago`` backdates both ``created_at`` and ``accessed_at``.
    Returns the auto-generated memory ID.
    """
    stamp = to_iso(utc_now() - timedelta(days=days_ago))
    return await storage.execute_write(
        """
        INSERT INTO memories
            (type, content, decoded_cache, scope, project_hash, importance,
             usefulness_score, times_helpful, times_unhelpful, status, level,
             parent_id, created_at, accessed_at, access_count)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            memory_type,
            content,
            decoded_cache,
            scope,
            project_hash,
            importance,
            usefulness_score,
            times_helpful,
            times_unhelpful,
            status,
            level,
            parent_id,
            stamp,
            stamp,
            access_count,
        ),
    )


async def fetch_memory(storage: Storage, memory_id: int) -> dict[str, Any] | None:
    """Return the raw ``memories`` row as a dict, or ``None``."""
    rows = await storage.execute("SELECT * FROM memories WHERE id = ?", (memory_id,))
    return dict(rows[0]) if rows else None


async def count_rows(storage: Storage, table: str, where: str = "1=1", params: tuple = ()) -> int:
    """Count rows of *table* matching *where*."""
    rows = await storage.execute(
        f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params
    )
    return rows[0]["cnt"]


async def edge_strength(
    storage: Storage,
    source_id: int,
    target_id: int,
    relationship: str = "similar",
) -> float | None:
    """Strength of one edge, or ``None`` if it does not exist."""
    rows = await storage.execute(
        "SELECT strength FROM memory_relationships "
        "WHERE source_id = ? AND target_id = ? AND relationship = ?",
        (source_id, target_id, relationship),
    )
    return rows[0]["strength"] if rows else None
