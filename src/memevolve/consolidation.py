"""Similarity-based consolidation of memories into higher-level abstractions.

When :meth:`ConsolidationEngine.consolidate` runs it:

1. **Selects candidates** -- active memories at level 1 (or the levels
   passed in ``levels``), optionally narrowed to those close to a topic.
2. **Snapshots vectors** -- stored embeddings are loaded once; candidates
   without one are embedded now.  A candidate whose embedding fails is left
   out of this pass.
3. **Clusters** -- greedy, anchor-based, single pass in candidate order.
   Each unassigned memory opens a cluster and absorbs every later
   unassigned memory whose similarity *to the anchor* reaches the
   threshold.  Membership is not transitive: two members may be dissimilar
   to each other.  Singletons are dropped.  Levels are clustered
   separately so a parent always sits exactly one level above its sources
   (capped at 3).
4. **Abstracts** -- each cluster gets a rollup text from the summariser,
   ``combined_importance = min(9, max(importance) + floor(log2(n)))`` and
   ``new_level = min(3, level + 1)``.
5. **Commits** (unless ``dry_run``) -- per cluster, in one transaction: the
   abstraction is created, every source becomes ``consolidated`` with
   ``parent_id`` pointing at it, and a ``derived_from`` edge carrying the
   cluster's average pairwise similarity links each source to it.  The new
   abstraction is then embedded; failure there is only a warning.

Consolidation is best-effort: without a reachable embedding collaborator it
reports zero clusters with a warning.  Given the same store state a dry run
and a live run assign identical clusters.

Usage::

    engine = ConsolidationEngine(storage, memories, config, embeddings)
    preview = await engine.consolidate(dry_run=True)
    result = await engine.consolidate(threshold=0.9)
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from memevolve.config import EvolutionConfig
from memevolve.embeddings import EmbeddingEngine
from memevolve.errors import CollaboratorUnavailable, InvariantViolation, NotFound
from memevolve.memories import MAX_LEVEL, Memory, MemoryStore
from memevolve.relationships import RelationshipStore
from memevolve.storage import Storage
from memevolve.summarizer import TemplateSummarizer

log = logging.getLogger(__name__)

_ABSTRACTION_TYPE = "lesson"
_PROVENANCE_RELATIONSHIP = "derived_from"
_MIN_PROVENANCE_STRENGTH = 0.01


# ---------------------------------------------------------------------------
# Clustering (pure)
# ---------------------------------------------------------------------------


def greedy_clusters(
    ids: Sequence[int],
    similarity: Callable[[int, int], float],
    threshold: float,
) -> list[list[int]]:
    """Anchor-based single-pass clustering.

    Parameters
    ----------
    ids:
        Candidate ids in the order they should be considered.
    similarity:
        Symmetric similarity lookup between two ids.
    threshold:
        Minimum similarity to the anchor for a candidate to join.

    Returns
    -------
    list[list[int]]
        Clusters of two or more ids, anchor first, in discovery order.
    """
    assigned: set[int] = set()
    clusters: list[list[int]] = []
    for i, anchor in enumerate(ids):
        if anchor in assigned:
            continue
        cluster = [anchor]
        assigned.add(anchor)
        for other in ids[i + 1 :]:
            if other in assigned:
                continue
            if similarity(anchor, other) >= threshold:
                cluster.append(other)
                assigned.add(other)
        if len(cluster) >= 2:
            clusters.append(cluster)
    return clusters


def average_pairwise_similarity(
    ids: Sequence[int],
    similarity: Callable[[int, int], float],
) -> float:
    """Mean similarity over every unordered pair of *ids* (0.0 for fewer than two)."""
    pairs = [(a, b) for i, a in enumerate(ids) for b in ids[i + 1 :]]
    if not pairs:
        return 0.0
    return sum(similarity(a, b) for a, b in pairs) / len(pairs)


def combined_importance(importances: Sequence[int], cluster_size: int) -> int:
    """``min(9, max(importances) + floor(log2(cluster_size)))``."""
    return min(9, max(importances) + int(math.floor(math.log2(cluster_size))))


def provenance_strength(average_similarity: float) -> float:
    """Strength of a cluster's ``derived_from`` edges; always positive."""
    return max(_MIN_PROVENANCE_STRENGTH, average_similarity)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationCluster:
    """One cluster found (and, in a live run, committed) by a pass."""

    memory_ids: list[int]
    source_level: int
    new_level: int
    average_similarity: float
    combined_importance: int
    scope: str
    project_hash: str | None
    rollup: str
    abstraction_id: int | None = None

    @property
    def size(self) -> int:
        return len(self.memory_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_ids": list(self.memory_ids),
            "size": self.size,
            "source_level": self.source_level,
            "new_level": self.new_level,
            "average_similarity": round(self.average_similarity, 4),
            "combined_importance": self.combined_importance,
            "scope": self.scope,
            "project_hash": self.project_hash,
            "rollup": self.rollup,
            "abstraction_id": self.abstraction_id,
        }


@dataclass
class ConsolidationResult:
    """Summary of one consolidation pass.

    Attributes
    ----------
    clusters:
        Every cluster found.  In a live run, ``abstraction_id`` is set on
        the ones that were committed.
    skipped:
        Candidates left out of clustering, each ``{"id", "reason"}``.
    failures:
        Clusters whose commit was aborted, each ``{"memory_ids", "error"}``.
    warnings:
        Human-readable notes (collaborator unavailable, nothing to do, ...).
    dry_run:
        Whether this was a preview (no mutations).
    """

    clusters: list[ConsolidationCluster] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False
    threshold: float = 0.0

    @property
    def abstractions_created(self) -> list[int]:
        return [c.abstraction_id for c in self.clusters if c.abstraction_id is not None]

    @property
    def memories_consolidated(self) -> int:
        if self.dry_run:
            return sum(c.size for c in self.clusters)
        return sum(c.size for c in self.clusters if c.abstraction_id is not None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "threshold": self.threshold,
            "clusters_found": len(self.clusters),
            "memories_consolidated": self.memories_consolidated,
            "abstractions_created": self.abstractions_created,
            "clusters": [c.to_dict() for c in self.clusters],
            "skipped": self.skipped,
            "failures": self.failures,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# ConsolidationEngine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Clusters similar memories and replaces them with abstractions.

    Parameters
    ----------
    storage:
        An initialised :class:`~memevolve.storage.Storage` instance.
    memories:
        The :class:`~memevolve.memories.MemoryStore` used to read candidates.
    config:
        The engine configuration.
    embeddings:
        Embedding/similarity collaborator.  ``None`` turns every pass into
        a no-op with a warning.
    summarizer:
        Produces the rollup text; defaults to
        :class:`~memevolve.summarizer.TemplateSummarizer`.
    """

    def __init__(
        self,
        storage: Storage,
        memories: MemoryStore,
        config: EvolutionConfig,
        embeddings: EmbeddingEngine | None = None,
        summarizer: TemplateSummarizer | None = None,
    ) -> None:
        self._storage = storage
        self._memories = memories
        self._cfg = config.consolidation
        self._neutral_score = config.scoring.neutral_score
        self._max_strength = config.learning.max_strength
        self._embeddings = embeddings
        self._summarizer = summarizer or TemplateSummarizer(self._cfg.rollup_max_chars)

    async def consolidate(
        self,
        threshold: float | None = None,
        dry_run: bool = False,
        *,
        topic: str | None = None,
        levels: Sequence[int] = (1,),
        scope: str | None = None,
        project_hash: str | None = None,
        candidates: Sequence[Memory] | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> ConsolidationResult:
        """Run one consolidation pass.

        Parameters
        ----------
        threshold:
            Similarity threshold; defaults to
            ``consolidation.similarity_threshold`` and must lie within
            ``[min_threshold, max_threshold]``.
        dry_run:
            Report the clusters without writing anything.
        topic:
            Only consider candidates whose similarity to this text reaches
            ``consolidation.topic_threshold``.
        levels:
            Hierarchy levels eligible for clustering (default level 1).
        scope / project_hash:
            Restrict candidates by scope and owning project.
        candidates:
            Explicit candidate set.  Still restricted to active memories at
            the eligible levels.
        exclude_ids:
            Memories to leave out, e.g. those a preceding prune preview
            selected.

        Raises
        ------
        ValueError
            If *threshold* or *levels* are out of range.
        """
        if threshold is None:
            threshold = self._cfg.similarity_threshold
        if not self._cfg.min_threshold <= threshold <= self._cfg.max_threshold:
            raise ValueError(
                f"Threshold must be between {self._cfg.min_threshold} and "
                f"{self._cfg.max_threshold}, got {threshold}"
            )
        level_set = sorted(set(levels))
        if not level_set or any(not 1 <= lvl <= MAX_LEVEL for lvl in level_set):
            raise ValueError(f"Levels must be within 1-{MAX_LEVEL}, got {list(levels)}")

        result = ConsolidationResult(dry_run=dry_run, threshold=threshold)
        excluded = set(exclude_ids)

        if self._embeddings is None:
            result.warnings.append(
                "Embeddings not available; consolidation skipped."
            )
            log.warning("Consolidation skipped: no embedding collaborator configured")
            return result
        if not await self._embeddings.health_check():
            result.warnings.append(
                "Embedding service unavailable; consolidation skipped."
            )
            log.warning("Consolidation skipped: embedding service unavailable")
            return result

        # --- 1. Candidates -------------------------------------------------
        if candidates is None:
            pool = await self._memories.query(
                status="active",
                levels=level_set,
                scope=scope,
                project_hash=project_hash,
                exclude_ids=excluded,
                limit=self._cfg.candidate_limit,
            )
        else:
            pool = [
                m
                for m in candidates
                if m.status == "active" and m.level in level_set and m.id not in excluded
            ]

        if len(pool) < 2:
            result.warnings.append("Not enough memories to consolidate (need at least 2).")
            return result

        # --- 2. Vector snapshot -------------------------------------------
        vectors = await self._snapshot_vectors(pool, dry_run, result)

        if topic:
            try:
                topic_vec = await self._embeddings.embed_text(topic)
            except CollaboratorUnavailable as exc:
                result.warnings.append(f"Could not embed topic {topic!r}: {exc}")
                log.warning("Consolidation skipped: topic embedding failed: %s", exc)
                return result
            focused = {
                mid: vec
                for mid, vec in vectors.items()
                if self._embeddings.similarity(topic_vec, vec) >= self._cfg.topic_threshold
            }
            log.debug("Topic %r kept %d of %d candidates", topic, len(focused), len(vectors))
            vectors = focused

        pool = [m for m in pool if m.id in vectors]
        by_id = {m.id: m for m in pool}
        similarity = self._similarity_lookup(vectors)

        # --- 3/4. Cluster and abstract, level by level --------------------
        for level in level_set:
            ids = [m.id for m in pool if m.level == level]
            for member_ids in greedy_clusters(ids, similarity, threshold):
                sources = [by_id[mid] for mid in member_ids]
                result.clusters.append(
                    await self._describe_cluster(sources, level, similarity)
                )

        if not result.clusters:
            result.warnings.append(
                f"No similar memory clusters found at threshold {threshold}."
            )

        # --- 5. Commit -----------------------------------------------------
        if not dry_run:
            for cluster in result.clusters:
                await self._commit_cluster(cluster, result)

            if result.abstractions_created:
                affected: list[int] = []
                for cluster in result.clusters:
                    if cluster.abstraction_id is not None:
                        affected.extend(cluster.memory_ids)
                        affected.append(cluster.abstraction_id)
                await self._storage.log_action(
                    "consolidate",
                    {
                        "threshold": threshold,
                        "clusters": len(result.abstractions_created),
                        "memories_consolidated": result.memories_consolidated,
                    },
                    affected,
                )

        log.info(
            "Consolidation %s: %d clusters, %d memories, %d skipped, %d failed",
            "previewed" if dry_run else "applied",
            len(result.clusters),
            result.memories_consolidated,
            len(result.skipped),
            len(result.failures),
        )
        return result

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def _snapshot_vectors(
        self,
        pool: Sequence[Memory],
        dry_run: bool,
        result: ConsolidationResult,
    ) -> dict[int, list[float]]:
        """Load one vector per candidate, embedding those without one.

        A candidate whose embedding fails is recorded in
        ``result.skipped`` and left out of this pass.  Fresh vectors are
        persisted only in live runs.
        """
        assert self._embeddings is not None
        vectors = await self._embeddings.stored_vectors(m.id for m in pool)
        for memory in pool:
            if memory.id in vectors:
                continue
            try:
                vec = await self._embeddings.embed_text(memory.text)
            except CollaboratorUnavailable as exc:
                log.warning("Excluding memory %d from consolidation: %s", memory.id, exc)
                result.skipped.append({"id": memory.id, "reason": f"embedding failed: {exc}"})
                result.warnings.append(f"Memory #{memory.id} could not be embedded")
                continue
            vectors[memory.id] = vec
            if not dry_run:
                await self._embeddings.store_vector(memory.id, vec)
        return vectors

    def _similarity_lookup(
        self, vectors: dict[int, list[float]]
    ) -> Callable[[int, int], float]:
        """Memoised similarity over the frozen *vectors* snapshot."""
        assert self._embeddings is not None
        similarity_fn = self._embeddings.similarity
        cache: dict[tuple[int, int], float] = {}

        def lookup(a: int, b: int) -> float:
            key = (a, b) if a < b else (b, a)
            if key not in cache:
                cache[key] = similarity_fn(vectors[a], vectors[b])
            return cache[key]

        return lookup

    # ------------------------------------------------------------------
    # Cluster description and commit
    # ------------------------------------------------------------------

    async def _describe_cluster(
        self,
        sources: list[Memory],
        level: int,
        similarity: Callable[[int, int], float],
    ) -> ConsolidationCluster:
        ids = [m.id for m in sources]
        has_global = any(m.scope == "global" for m in sources)
        scope = "global" if has_global else "project"
        project_hash = None
        if scope == "project":
            project_hash = next((m.project_hash for m in sources if m.project_hash), None)
        return ConsolidationCluster(
            memory_ids=ids,
            source_level=level,
            new_level=min(MAX_LEVEL, level + 1),
            average_similarity=average_pairwise_similarity(ids, similarity),
            combined_importance=combined_importance([m.importance for m in sources], len(sources)),
            scope=scope,
            project_hash=project_hash,
            rollup=await self._summarizer.summarize(sources),
        )

    async def _commit_cluster(
        self,
        cluster: ConsolidationCluster,
        result: ConsolidationResult,
    ) -> None:
        """Persist one cluster atomically, then embed its abstraction."""
        strength = provenance_strength(cluster.average_similarity)
        neutral = self._neutral_score
        cap = self._max_strength

        def _do_commit(conn: sqlite3.Connection) -> int:
            for source_id in cluster.memory_ids:
                current = MemoryStore.fetch_in(conn, source_id)
                if current.status != "active":
                    raise InvariantViolation(
                        f"Memory {source_id} is {current.status}, no longer active",
                        memory_id=source_id,
                    )
            new_id = MemoryStore.insert_in(
                conn,
                content=cluster.rollup,
                decoded_cache=cluster.rollup,
                type=_ABSTRACTION_TYPE,
                importance=cluster.combined_importance,
                usefulness_score=neutral,
                scope=cluster.scope,
                project_hash=cluster.project_hash,
                level=cluster.new_level,
            )
            for source_id in cluster.memory_ids:
                MemoryStore.set_status_in(conn, source_id, "consolidated", new_id)
                RelationshipStore.upsert_in(
                    conn,
                    source_id,
                    new_id,
                    _PROVENANCE_RELATIONSHIP,
                    strength,
                    max_strength=cap,
                )
            return new_id

        try:
            new_id = await self._storage.execute_transaction(_do_commit)
        except (InvariantViolation, NotFound) as exc:
            log.error(
                "Cluster %s not consolidated: %s", cluster.memory_ids, exc
            )
            result.failures.append({"memory_ids": list(cluster.memory_ids), "error": str(exc)})
            return

        cluster.abstraction_id = new_id
        log.info(
            "Consolidated memories %s into #%d (level %d, importance %d)",
            cluster.memory_ids,
            new_id,
            cluster.new_level,
            cluster.combined_importance,
        )

        assert self._embeddings is not None
        try:
            await self._embeddings.embed_and_store(new_id, cluster.rollup)
        except CollaboratorUnavailable as exc:
            log.warning("Failed to embed abstraction %d: %s", new_id, exc)
            result.warnings.append(f"Failed to embed consolidated memory #{new_id}: {exc}")
