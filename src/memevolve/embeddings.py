"""Embedding and similarity collaborator backed by a local Ollama daemon.

:class:`EmbeddingEngine` turns text into vectors with Ollama's embedding
endpoint, caches vectors by content hash in ``embedding_cache`` and keeps one
stored vector per memory in ``memory_embeddings``.  Vectors are packed with
:func:`sqlite_vec.serialize_float32`.

Failures talking to Ollama surface as
:class:`~memevolve.errors.CollaboratorUnavailable`; callers running batch
passes turn that into a warning for the affected item.

Usage::

    from memevolve.embeddings import EmbeddingEngine

    embeddings = EmbeddingEngine(storage, config)
    if await embeddings.health_check():
        vec = await embeddings.embed_text("Prefer WAL mode for SQLite")
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from typing import Any, Iterable, Sequence

import httpx
import ollama

from memevolve.config import EvolutionConfig
from memevolve.errors import CollaboratorUnavailable
from memevolve.storage import (
    Storage,
    deserialize_embedding,
    serialize_embedding,
    to_iso,
    utc_now,
)

log = logging.getLogger(__name__)


def content_hash(text: str, model: str) -> str:
    """Cache key for *text* embedded with *model*."""
    return hashlib.sha256(f"{model}\x00{text}".encode("utf-8")).hexdigest()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, in ``[-1, 1]``.

    Returns ``0.0`` when either vector has zero magnitude.

    Raises
    ------
    ValueError
        If the vectors differ in length.
    """
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


class EmbeddingEngine:
    """Ollama-backed embedding provider with a SQLite vector cache.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    config:
        The engine configuration; the ``embedding`` section supplies the
        daemon URL, model, batch size and timeout.
    client:
        Optional pre-built :class:`ollama.AsyncClient`.  Created lazily on
        first use otherwise.
    """

    def __init__(
        self,
        storage: Storage,
        config: EvolutionConfig,
        client: Any | None = None,
    ) -> None:
        self._storage = storage
        self._cfg = config.embedding
        self._client = client

    @property
    def model(self) -> str:
        return self._cfg.model

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        """Return ``True`` if the daemon answers and the model is pulled."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self._cfg.ollama_url}/api/tags")
        except httpx.HTTPError as exc:
            log.warning("Ollama health check failed: %s", exc)
            return False
        if resp.status_code != 200:
            log.warning("Ollama health check returned HTTP %d", resp.status_code)
            return False
        models = [m.get("name", "") for m in resp.json().get("models", [])]
        if not any(self._cfg.model in name for name in models):
            log.warning("Ollama model %s is not available", self._cfg.model)
            return False
        return True

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def embed_text(self, text: str) -> list[float]:
        """Embed one text, consulting the cache first.

        Raises
        ------
        CollaboratorUnavailable
            If Ollama cannot produce the embedding.
        """
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts, sending cache misses in configured batches."""
        if not texts:
            return []
        keys = [content_hash(t, self._cfg.model) for t in texts]
        cached = await self._cache_lookup(keys)

        missing = [i for i, key in enumerate(keys) if key not in cached]
        size = max(1, self._cfg.batch_size)
        for start in range(0, len(missing), size):
            chunk = missing[start : start + size]
            vectors = await self._embed_uncached([texts[i] for i in chunk])
            if len(vectors) != len(chunk):
                raise CollaboratorUnavailable(
                    f"Ollama returned {len(vectors)} embeddings for {len(chunk)} texts"
                )
            for i, vec in zip(chunk, vectors):
                cached[keys[i]] = vec
            await self._cache_store([(keys[i], vec) for i, vec in zip(chunk, vectors)])

        return [cached[key] for key in keys]

    async def _embed_uncached(self, texts: list[str]) -> list[list[float]]:
        """Call Ollama for *texts*.  Overridable seam for tests."""
        if self._client is None:
            self._client = ollama.AsyncClient(host=self._cfg.ollama_url)
        try:
            response = await asyncio.wait_for(
                self._client.embed(model=self._cfg.model, input=texts),
                timeout=self._cfg.timeout,
            )
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError, asyncio.TimeoutError) as exc:
            raise CollaboratorUnavailable(f"Embedding request failed: {exc}") from exc
        return [list(vec) for vec in response.embeddings]

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        """Cosine similarity between two vectors."""
        return cosine_similarity(a, b)

    # ------------------------------------------------------------------
    # Stored memory vectors
    # ------------------------------------------------------------------

    async def stored_vectors(self, memory_ids: Iterable[int]) -> dict[int, list[float]]:
        """Load stored vectors for *memory_ids* in one query.

        Vectors written with a different model are ignored.
        """
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = await self._storage.execute(
            f"SELECT memory_id, vector FROM memory_embeddings "
            f"WHERE model = ? AND memory_id IN ({placeholders})",
            (self._cfg.model, *ids),
        )
        return {row["memory_id"]: deserialize_embedding(row["vector"]) for row in rows}

    async def store_vector(self, memory_id: int, vector: Sequence[float]) -> None:
        """Persist *vector* as the stored embedding of *memory_id*."""
        await self._storage.execute_write(
            "INSERT INTO memory_embeddings (memory_id, vector, model, dims, created_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(memory_id) DO UPDATE SET vector = excluded.vector, "
            "model = excluded.model, dims = excluded.dims, created_at = excluded.created_at",
            (
                memory_id,
                serialize_embedding(list(vector)),
                self._cfg.model,
                len(vector),
                to_iso(utc_now()),
            ),
        )

    async def embed_and_store(self, memory_id: int, text: str) -> list[float]:
        """Embed *text* and store it as the vector of *memory_id*."""
        vector = await self.embed_text(text)
        await self.store_vector(memory_id, vector)
        log.debug("Stored %d-dim embedding for memory %d", len(vector), memory_id)
        return vector

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def _cache_lookup(self, keys: list[str]) -> dict[str, list[float]]:
        unique = list(dict.fromkeys(keys))
        placeholders = ",".join("?" * len(unique))
        rows = await self._storage.execute(
            f"SELECT content_hash, embedding FROM embedding_cache "
            f"WHERE content_hash IN ({placeholders})",
            tuple(unique),
        )
        return {row["content_hash"]: deserialize_embedding(row["embedding"]) for row in rows}

    async def _cache_store(self, entries: list[tuple[str, list[float]]]) -> None:
        if not entries:
            return
        stamp = to_iso(utc_now())
        await self._storage.execute_many(
            "INSERT OR REPLACE INTO embedding_cache "
            "(content_hash, embedding, model, created_at) VALUES (?, ?, ?, ?)",
            [(key, serialize_embedding(vec), self._cfg.model, stamp) for key, vec in entries],
        )
