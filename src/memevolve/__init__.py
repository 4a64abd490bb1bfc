"""memevolve -- usefulness scoring, consolidation and pruning for memories.

Quick start::

    from memevolve import EvolutionEngine, load_config

    async def main():
        async with EvolutionEngine(load_config()) as engine:
            memory = await engine.create_memory("Prefer WAL for SQLite", importance=6)
            await engine.record_feedback(memory.id, "helpful")
            report = await engine.evolve(dry_run=True)

For lower-level access, import from submodules::

    from memevolve.scoring import usefulness_score, UsefulnessScorer
    from memevolve.learning import AccessPatternLearner
    from memevolve.consolidation import ConsolidationEngine, ConsolidationResult
    from memevolve.pruning import PruningEngine, PruneResult
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from memevolve.config import EvolutionConfig, load_config
from memevolve.engine import EvolutionEngine, EvolutionReport
from memevolve.errors import (
    CollaboratorUnavailable,
    InvalidRequest,
    InvariantViolation,
    MemEvolveError,
    NotFound,
    StoreFailure,
)
from memevolve.memories import Memory, MEMORY_TYPES
from memevolve.relationships import Relationship, RELATIONSHIP_TYPES
from memevolve.requests import parse_request

__all__ = [
    "__version__",
    "EvolutionConfig",
    "load_config",
    "EvolutionEngine",
    "EvolutionReport",
    "MemEvolveError",
    "NotFound",
    "CollaboratorUnavailable",
    "InvariantViolation",
    "StoreFailure",
    "InvalidRequest",
    "Memory",
    "MEMORY_TYPES",
    "Relationship",
    "RELATIONSHIP_TYPES",
    "parse_request",
]
