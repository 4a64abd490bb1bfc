"""Rollup text for consolidated clusters.

The consolidation engine decides *that* a cluster needs an abstraction and
*which* memories feed it; producing the actual text is delegated here.

- :class:`TemplateSummarizer` -- deterministic rollup that headlines the
  cluster and quotes the first source.
- :class:`OllamaSummarizer` -- asks a small local model to distil the
  sources into one general statement, falling back to the template when the
  model is unreachable, slow, or answers with something unusable.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

import ollama

from memevolve.config import EvolutionConfig
from memevolve.memories import Memory

log = logging.getLogger(__name__)

_MIN_DISTILLED_CHARS = 20
_GENERIC_PREFIXES = (
    "here is",
    "here's",
    "sure",
    "the following",
    "these memories",
    "i cannot",
    "i can't",
)
_SNIPPET_CHARS = 200
_MAX_SNIPPETS = 10


class TemplateSummarizer:
    """Plain-text rollup of a cluster.

    Produces::

        [PATTERN from N <type> memories]

        Common pattern:
        <first source, truncated>

        (Consolidated from N similar memories)

    where ``<type>`` is the shared memory type or ``mixed``.
    """

    def __init__(self, max_chars: int = 500) -> None:
        self._max_chars = max_chars

    def rollup(self, sources: Sequence[Memory]) -> str:
        if not sources:
            return ""
        types = {m.type for m in sources}
        type_label = types.pop() if len(types) == 1 else "mixed"
        first = sources[0].text
        if len(first) > self._max_chars:
            first = first[: self._max_chars] + "..."
        count = len(sources)
        return (
            f"[PATTERN from {count} {type_label} memories]\n\n"
            f"Common pattern:\n{first}\n\n"
            f"(Consolidated from {count} similar memories)"
        )

    async def summarize(self, sources: Sequence[Memory]) -> str:
        return self.rollup(sources)


class OllamaSummarizer(TemplateSummarizer):
    """Distils clusters with a local generative model.

    Parameters
    ----------
    config:
        Engine configuration.  ``consolidation.distill_model`` and
        ``consolidation.distill_timeout`` choose the model and the per-call
        deadline; ``embedding.ollama_url`` locates the daemon.
    client:
        Optional pre-built :class:`ollama.AsyncClient`.
    """

    def __init__(self, config: EvolutionConfig, client: Any | None = None) -> None:
        super().__init__(config.consolidation.rollup_max_chars)
        self._model = config.consolidation.distill_model
        self._timeout = config.consolidation.distill_timeout
        self._url = config.embedding.ollama_url
        self._client = client

    async def summarize(self, sources: Sequence[Memory]) -> str:
        """Distilled rollup of *sources*, or the template rollup on any failure."""
        fallback = self.rollup(sources)
        if not sources:
            return fallback

        if self._client is None:
            self._client = ollama.AsyncClient(host=self._url)

        snippets = "\n".join(
            f"- {m.text[:_SNIPPET_CHARS]}" for m in sources[:_MAX_SNIPPETS]
        )
        prompt = (
            "You are a memory consolidation assistant. "
            "Summarise the following related memories into a single, "
            "concise general lesson (1-2 sentences). "
            "Output only the lesson, no preamble:\n\n"
            f"{snippets}"
        )
        try:
            response = await asyncio.wait_for(
                self._client.generate(model=self._model, prompt=prompt),
                timeout=self._timeout,
            )
        except Exception as exc:
            log.warning("Distillation failed, using template rollup: %s", exc)
            return fallback

        distilled = (response.response or "").strip()
        if not self._is_acceptable(distilled):
            log.debug("Distillation rejected (%r); using template rollup", distilled[:100])
            return fallback
        return f"{distilled}\n\n(Consolidated from {len(sources)} similar memories)"

    @staticmethod
    def _is_acceptable(text: str) -> bool:
        if len(text) < _MIN_DISTILLED_CHARS:
            return False
        return not text.lower().startswith(_GENERIC_PREFIXES)
