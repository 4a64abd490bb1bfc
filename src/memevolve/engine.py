"""Facade over the memory evolution components.

:class:`EvolutionEngine` owns one :class:`~memevolve.storage.Storage` handle
and the collaborators handed to it at construction, wires up the scorer,
feedback recorder, access-pattern learner, consolidation engine and pruning
engine, and exposes them through one async API with an explicit
:meth:`~EvolutionEngine.open` / :meth:`~EvolutionEngine.close` lifecycle.

Batch passes (decay, prune, consolidate, evolve) run under the ``evolution``
advisory lock; a pass that cannot take it returns an empty result with a
warning instead of waiting.

Usage::

    from memevolve import EvolutionEngine, load_config

    async with EvolutionEngine(load_config()) as engine:
        memory = await engine.create_memory("Prefer WAL for SQLite", importance=6)
        await engine.record_feedback(memory.id, "helpful")
        report = await engine.evolve(dry_run=True)
        print(report.to_dict())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from memevolve.config import EvolutionConfig, load_config
from memevolve.consolidation import ConsolidationEngine, ConsolidationResult
from memevolve.embeddings import EmbeddingEngine
from memevolve.errors import CollaboratorUnavailable
from memevolve.feedback import FeedbackBatchResult, FeedbackEvent, FeedbackHistory, FeedbackRecorder
from memevolve.learning import AccessPatternLearner, EdgeDecayResult, Suggestion
from memevolve.memories import Memory, MemoryStore
from memevolve.pruning import PruneResult, PruningEngine
from memevolve.relationships import RelationshipStore
from memevolve.requests import (
    CoAccessRequest,
    ConsolidateRequest,
    DecayRequest,
    EvolveRequest,
    FeedbackRequest,
    PruneRequest,
    Request,
    RestoreRequest,
    SuggestRequest,
)
from memevolve.scoring import DecayResult, UsefulnessScorer
from memevolve.storage import Storage, utc_now
from memevolve.summarizer import OllamaSummarizer, TemplateSummarizer

log = logging.getLogger(__name__)

_EVOLUTION_LOCK = "evolution"
_LOCK_BUSY = "Another evolution pass is running; skipped."


@dataclass
class EvolutionReport:
    """Combined outcome of :meth:`EvolutionEngine.evolve`."""

    decay: DecayResult | None = None
    relationships: EdgeDecayResult | None = None
    prune: PruneResult | None = None
    consolidation: ConsolidationResult | None = None
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "decay": self.decay.to_dict() if self.decay else None,
            "relationships": self.relationships.to_dict() if self.relationships else None,
            "prune": self.prune.to_dict() if self.prune else None,
            "consolidation": self.consolidation.to_dict() if self.consolidation else None,
            "warnings": self.warnings,
        }


class EvolutionEngine:
    """Entry point for hosts driving memory evolution.

    Parameters
    ----------
    config:
        Engine configuration.  Defaults to :func:`~memevolve.config.load_config`.
    storage:
        An existing storage handle.  When omitted the engine creates one
        from ``config.db_path`` and closes it in :meth:`close`; an injected
        handle is left open for its owner.
    embeddings:
        Embedding/similarity collaborator.  When omitted and
        *use_embeddings* is true, an Ollama-backed
        :class:`~memevolve.embeddings.EmbeddingEngine` is created.
    summarizer:
        Rollup collaborator.  Defaults to
        :class:`~memevolve.summarizer.OllamaSummarizer` when
        ``consolidation.distill`` is set, else the template rollup.
    use_embeddings:
        ``False`` runs without any embedding collaborator (consolidation
        becomes a no-op with a warning).
    """

    def __init__(
        self,
        config: EvolutionConfig | None = None,
        *,
        storage: Storage | None = None,
        embeddings: EmbeddingEngine | None = None,
        summarizer: TemplateSummarizer | None = None,
        use_embeddings: bool = True,
    ) -> None:
        self._config = config or load_config()
        self._storage = storage
        self._owns_storage = storage is None
        self._embeddings = embeddings
        self._summarizer = summarizer
        self._use_embeddings = use_embeddings

        self._memories: MemoryStore | None = None
        self._relationships: RelationshipStore | None = None
        self._scorer: UsefulnessScorer | None = None
        self._feedback: FeedbackRecorder | None = None
        self._learner: AccessPatternLearner | None = None
        self._consolidator: ConsolidationEngine | None = None
        self._pruner: PruningEngine | None = None
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Initialise storage and build every component.  Idempotent."""
        if self._open:
            return
        cfg = self._config

        if self._storage is None:
            self._storage = Storage(cfg)
        if not self._storage.initialized:
            await self._storage.initialize()

        if self._embeddings is None and self._use_embeddings:
            self._embeddings = EmbeddingEngine(self._storage, cfg)
        if self._summarizer is None:
            self._summarizer = (
                OllamaSummarizer(cfg)
                if cfg.consolidation.distill
                else TemplateSummarizer(cfg.consolidation.rollup_max_chars)
            )

        self._memories = MemoryStore(self._storage, cfg)
        self._relationships = RelationshipStore(self._storage, cfg)
        self._scorer = UsefulnessScorer(self._storage, self._memories, cfg)
        self._feedback = FeedbackRecorder(self._storage, self._scorer)
        self._learner = AccessPatternLearner(self._storage, cfg)
        self._consolidator = ConsolidationEngine(
            self._storage, self._memories, cfg, self._embeddings, self._summarizer
        )
        self._pruner = PruningEngine(self._storage, self._memories, cfg)

        self._open = True
        log.info("Evolution engine opened (%s)", self._storage.db_path)

    async def close(self) -> None:
        """Release the storage handle if this engine created it."""
        if self._storage is not None and self._owns_storage:
            await self._storage.close()
        self._open = False
        log.info("Evolution engine closed")

    async def __aenter__(self) -> EvolutionEngine:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if not self._open:
            raise RuntimeError("Engine not open. Call await engine.open() first.")

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> EvolutionConfig:
        return self._config

    @property
    def storage(self) -> Storage:
        self._ensure_open()
        assert self._storage is not None
        return self._storage

    @property
    def memories(self) -> MemoryStore:
        self._ensure_open()
        assert self._memories is not None
        return self._memories

    @property
    def relationships(self) -> RelationshipStore:
        self._ensure_open()
        assert self._relationships is not None
        return self._relationships

    @property
    def scorer(self) -> UsefulnessScorer:
        self._ensure_open()
        assert self._scorer is not None
        return self._scorer

    @property
    def learner(self) -> AccessPatternLearner:
        self._ensure_open()
        assert self._learner is not None
        return self._learner

    @property
    def feedback(self) -> FeedbackRecorder:
        self._ensure_open()
        assert self._feedback is not None
        return self._feedback

    @property
    def consolidator(self) -> ConsolidationEngine:
        self._ensure_open()
        assert self._consolidator is not None
        return self._consolidator

    @property
    def pruner(self) -> PruningEngine:
        self._ensure_open()
        assert self._pruner is not None
        return self._pruner

    # ------------------------------------------------------------------
    # Memories, feedback and access
    # ------------------------------------------------------------------

    async def create_memory(
        self,
        content: str,
        type: str = "lesson",
        importance: int = 5,
        scope: str = "global",
        project_hash: str | None = None,
        decoded_cache: str | None = None,
    ) -> Memory:
        """Store a new level-1 memory and embed it when embeddings are available."""
        memory = await self.memories.create(
            content,
            type=type,
            importance=importance,
            scope=scope,
            project_hash=project_hash,
            decoded_cache=decoded_cache,
        )
        if self._embeddings is not None:
            try:
                await self._embeddings.embed_and_store(memory.id, memory.text)
            except CollaboratorUnavailable as exc:
                log.warning(
                    "Failed to embed memory %d; it will be embedded at the next "
                    "consolidation pass: %s",
                    memory.id,
                    exc,
                )
        return memory

    async def get_memory(self, memory_id: int) -> Memory:
        return await self.memories.get(memory_id)

    async def record_feedback(
        self,
        memory_id: int,
        feedback_type: str,
        context: str | None = None,
    ) -> FeedbackEvent:
        return await self.feedback.record(memory_id, feedback_type, context)

    async def record_feedback_many(
        self,
        memory_ids: Iterable[int],
        feedback_type: str,
        context: str | None = None,
    ) -> FeedbackBatchResult:
        return await self.feedback.record_many(memory_ids, feedback_type, context)

    async def feedback_history(self, memory_id: int, limit: int = 20) -> FeedbackHistory:
        return await self.feedback.history(memory_id, limit)

    async def record_access(
        self,
        memory_ids: Iterable[int],
        learn: bool = True,
    ) -> list[int]:
        """Record a retrieval batch and, with *learn*, its co-access."""
        updated = await self.memories.record_access(memory_ids)
        if learn and len(updated) >= 2:
            await self.learner.record_co_access(updated)
        return updated

    async def record_co_access(
        self,
        memory_ids: Iterable[int],
        increment: float | None = None,
    ) -> int:
        return await self.learner.record_co_access(memory_ids, increment)

    async def suggest_memories(
        self,
        current_ids: Iterable[int],
        limit: int | None = None,
    ) -> list[Suggestion]:
        return await self.learner.suggest_memories(current_ids, limit)

    async def decay_relationships(
        self,
        factor: float | None = None,
        floor: float | None = None,
    ) -> EdgeDecayResult:
        return await self.learner.decay_relationship_strengths(factor, floor)

    # ------------------------------------------------------------------
    # Batch passes
    # ------------------------------------------------------------------

    async def decay(self, dry_run: bool = False) -> DecayResult:
        """Rescore every active memory under the evolution lock."""
        async with self.storage.advisory_lock(_EVOLUTION_LOCK) as acquired:
            if not acquired:
                return self._busy(DecayResult(dry_run=dry_run))
            return await self.scorer.decay_all(dry_run=dry_run)

    async def consolidate(
        self,
        threshold: float | None = None,
        dry_run: bool = False,
        **kwargs: Any,
    ) -> ConsolidationResult:
        """Run a consolidation pass under the evolution lock.

        Extra keyword arguments go to
        :meth:`~memevolve.consolidation.ConsolidationEngine.consolidate`.
        """
        async with self.storage.advisory_lock(_EVOLUTION_LOCK) as acquired:
            if not acquired:
                return self._busy(
                    ConsolidationResult(
                        dry_run=dry_run,
                        threshold=threshold or self._config.consolidation.similarity_threshold,
                    )
                )
            return await self.consolidator.consolidate(threshold, dry_run, **kwargs)

    async def prune(
        self,
        min_usefulness: float | None = None,
        max_age_days: int | None = None,
        permanent: bool = False,
        dry_run: bool = False,
        **kwargs: Any,
    ) -> PruneResult:
        """Run a pruning pass under the evolution lock."""
        async with self.storage.advisory_lock(_EVOLUTION_LOCK) as acquired:
            if not acquired:
                return self._busy(PruneResult(dry_run=dry_run, permanent=permanent))
            return await self.pruner.prune(
                min_usefulness, max_age_days, permanent, dry_run, **kwargs
            )

    async def restore(self, memory_id: int) -> Memory:
        return await self.pruner.restore(memory_id)

    async def evolve(
        self,
        decay: bool = True,
        prune: bool = True,
        consolidate: bool = True,
        dry_run: bool = False,
    ) -> EvolutionReport:
        """Decay, then prune, then consolidate, holding the lock throughout.

        Relationship decay runs with the score decay in live runs only.  A
        dry run previews each stage against the state the earlier stages
        would leave: pruning selects on the decayed scores, and memories
        it would archive are not consolidation candidates.
        """
        report = EvolutionReport(dry_run=dry_run)
        now = utc_now()
        async with self.storage.advisory_lock(_EVOLUTION_LOCK) as acquired:
            if not acquired:
                log.warning("Evolution skipped: lock held by another pass")
                report.warnings.append(_LOCK_BUSY)
                return report

            decayed_scores: dict[int, float] | None = None
            if decay:
                report.decay = await self.scorer.decay_all(dry_run=dry_run, now=now)
                if dry_run:
                    decayed_scores = {u["id"]: u["new_score"] for u in report.decay.updated}
                else:
                    report.relationships = await self.learner.decay_relationship_strengths()
            if prune:
                report.prune = await self.pruner.prune(
                    dry_run=dry_run, scores=decayed_scores, now=now
                )
            if consolidate:
                report.consolidation = await self.consolidator.consolidate(
                    dry_run=dry_run,
                    exclude_ids=report.prune.pruned_ids if report.prune else (),
                )

        for part in (report.decay, report.prune, report.consolidation):
            if part is not None:
                report.warnings.extend(part.warnings)
        log.info("Evolution %s complete", "preview" if dry_run else "run")
        return report

    def _busy(self, result: Any) -> Any:
        log.warning("Batch pass skipped: evolution lock held by another pass")
        result.warnings.append(_LOCK_BUSY)
        return result

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def list_by_status(self, status: str, limit: int = 50) -> list[Memory]:
        return await self.memories.list_by_status(status, limit)

    async def children(self, parent_id: int) -> list[Memory]:
        return await self.memories.children(parent_id)

    async def history(self, limit: int = 20) -> list[dict[str, Any]]:
        return await self.storage.history(limit)

    async def stats(self) -> dict[str, Any]:
        """Counts by status, level, type and scope plus relationship totals."""
        storage = self.storage
        grouped: dict[str, dict[str, int]] = {}
        for column in ("status", "level", "type", "scope"):
            rows = await storage.execute(
                f"SELECT {column} AS key, COUNT(*) AS cnt FROM memories GROUP BY {column}"
            )
            grouped[column] = {str(row["key"]): row["cnt"] for row in rows}

        agg = await storage.execute(
            "SELECT COUNT(*) AS total, AVG(usefulness_score) AS avg_score "
            "FROM memories WHERE status = 'active'"
        )
        avg_score = agg[0]["avg_score"] if agg else None

        return {
            "total": sum(grouped["status"].values()),
            "by_status": grouped["status"],
            "by_level": grouped["level"],
            "by_type": grouped["type"],
            "by_scope": grouped["scope"],
            "active": agg[0]["total"] if agg else 0,
            "avg_usefulness": round(float(avg_score), 3) if avg_score is not None else None,
            "relationships": await self.relationships.count_by_type(),
            "embeddings_enabled": self._embeddings is not None,
        }

    # ------------------------------------------------------------------
    # Request dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, request: Request) -> dict[str, Any]:
        """Execute a validated request and return a JSON-friendly dict.

        Build *request* with :func:`~memevolve.requests.parse_request`.
        """
        if isinstance(request, FeedbackRequest):
            batch = await self.record_feedback_many(
                request.memory_ids, request.feedback, request.context
            )
            return batch.to_dict()
        if isinstance(request, ConsolidateRequest):
            consolidation = await self.consolidate(
                request.threshold,
                request.dry_run,
                topic=request.topic,
                levels=request.levels,
            )
            return consolidation.to_dict()
        if isinstance(request, PruneRequest):
            pruned = await self.prune(
                request.min_usefulness,
                request.max_age_days,
                request.permanent,
                request.dry_run,
            )
            return pruned.to_dict()
        if isinstance(request, RestoreRequest):
            memory = await self.restore(request.memory_id)
            return {"restored": memory.to_dict()}
        if isinstance(request, DecayRequest):
            decayed = await self.decay(request.dry_run)
            out = decayed.to_dict()
            if request.relationships and not request.dry_run:
                out["relationships"] = (await self.decay_relationships()).to_dict()
            return out
        if isinstance(request, CoAccessRequest):
            pairs = await self.record_co_access(request.memory_ids, request.increment)
            return {"pairs_updated": pairs}
        if isinstance(request, SuggestRequest):
            suggestions = await self.suggest_memories(request.memory_ids, request.limit)
            return {"suggestions": [s.to_dict() for s in suggestions]}
        if isinstance(request, EvolveRequest):
            report = await self.evolve(
                request.decay, request.prune, request.consolidate, request.dry_run
            )
            return report.to_dict()
        raise TypeError(f"Unsupported request type: {type(request).__name__}")
