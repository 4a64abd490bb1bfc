"""Typed requests accepted by :meth:`EvolutionEngine.dispatch`.

Hosts usually receive loosely typed payloads (tool calls, JSON bodies,
command-line flags).  :func:`parse_request` turns such a mapping into one of
the frozen request dataclasses below, checking types and ranges on the way,
so the engine itself only ever sees validated input.

Each payload names its variant with a ``kind`` key::

    parse_request({"kind": "prune", "min_usefulness": 1.5, "dry_run": True})
    parse_request({"kind": "feedback", "memory_ids": [3, 4], "feedback": "helpful"})
"""

from __future__ import annotations

from dataclasses import MISSING, dataclass, fields
from typing import Any, ClassVar, Mapping, Union

from memevolve.config import EvolutionConfig
from memevolve.errors import InvalidRequest
from memevolve.feedback import FEEDBACK_TYPES

# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------


def _bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidRequest(f"{name} must be a boolean, got {value!r}")
    return value


def _int(name: str, value: Any, low: int | None = None, high: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"{name} must be an integer, got {value!r}")
    if (low is not None and value < low) or (high is not None and value > high):
        raise InvalidRequest(f"{name} must be between {low} and {high}, got {value}")
    return value


def _float(name: str, value: Any, low: float | None = None, high: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequest(f"{name} must be a number, got {value!r}")
    value = float(value)
    if (low is not None and value < low) or (high is not None and value > high):
        raise InvalidRequest(f"{name} must be between {low} and {high}, got {value}")
    return value


def _str(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{name} must be a non-empty string, got {value!r}")
    return value


def _ids(name: str, value: Any) -> tuple[int, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise InvalidRequest(f"{name} must be a list of memory ids, got {value!r}")
    if not value:
        raise InvalidRequest(f"{name} must not be empty")
    return tuple(_int(name, v, low=1) for v in value)


# ---------------------------------------------------------------------------
# Request variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeedbackRequest:
    kind: ClassVar[str] = "feedback"

    memory_ids: tuple[int, ...]
    feedback: str
    context: str | None = None


@dataclass(frozen=True)
class ConsolidateRequest:
    kind: ClassVar[str] = "consolidate"

    threshold: float | None = None
    dry_run: bool = False
    topic: str | None = None
    levels: tuple[int, ...] = (1,)


@dataclass(frozen=True)
class PruneRequest:
    kind: ClassVar[str] = "prune"

    min_usefulness: float | None = None
    max_age_days: int | None = None
    permanent: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class RestoreRequest:
    kind: ClassVar[str] = "restore"

    memory_id: int


@dataclass(frozen=True)
class DecayRequest:
    """Rescore active memories; with ``relationships`` also decay learned edges."""

    kind: ClassVar[str] = "decay"

    dry_run: bool = False
    relationships: bool = True


@dataclass(frozen=True)
class CoAccessRequest:
    kind: ClassVar[str] = "co_access"

    memory_ids: tuple[int, ...]
    increment: float | None = None


@dataclass(frozen=True)
class SuggestRequest:
    kind: ClassVar[str] = "suggest"

    memory_ids: tuple[int, ...]
    limit: int | None = None


@dataclass(frozen=True)
class EvolveRequest:
    kind: ClassVar[str] = "evolve"

    decay: bool = True
    prune: bool = True
    consolidate: bool = True
    dry_run: bool = False


Request = Union[
    FeedbackRequest,
    ConsolidateRequest,
    PruneRequest,
    RestoreRequest,
    DecayRequest,
    CoAccessRequest,
    SuggestRequest,
    EvolveRequest,
]

REQUEST_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (
        FeedbackRequest,
        ConsolidateRequest,
        PruneRequest,
        RestoreRequest,
        DecayRequest,
        CoAccessRequest,
        SuggestRequest,
        EvolveRequest,
    )
}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _validate_field(
    kind: str, name: str, value: Any, config: EvolutionConfig
) -> Any:
    """Coerce and range-check one payload field."""
    cons = config.consolidation
    prune = config.pruning

    if name in ("dry_run", "permanent", "decay", "prune", "consolidate", "relationships"):
        return _bool(name, value)
    if name == "memory_ids":
        return _ids(name, value)
    if name == "memory_id":
        return _int(name, value, low=1)
    if name == "feedback":
        if value not in FEEDBACK_TYPES:
            raise InvalidRequest(
                f"feedback must be one of: {', '.join(FEEDBACK_TYPES)}; got {value!r}"
            )
        return value
    if name == "levels":
        return tuple(_int(name, lvl, 1, 3) for lvl in _ids(name, value))
    if value is None:
        return None
    if name in ("context", "topic"):
        return _str(name, value)
    if name == "threshold":
        return _float(name, value, cons.min_threshold, cons.max_threshold)
    if name == "min_usefulness":
        return _float(name, value, prune.min_usefulness_floor, prune.min_usefulness_ceiling)
    if name == "max_age_days":
        return _int(name, value, prune.max_age_floor, prune.max_age_ceiling)
    if name == "increment":
        increment = _float(name, value, 0.0, config.learning.max_strength)
        if increment == 0.0:
            raise InvalidRequest("increment must be positive")
        return increment
    if name == "limit":
        return _int(name, value, low=1)
    raise InvalidRequest(f"Unsupported field {name!r} for {kind!r}")


def parse_request(
    data: Mapping[str, Any],
    config: EvolutionConfig | None = None,
) -> Request:
    """Build a validated request from an untyped mapping.

    Parameters
    ----------
    data:
        Payload with a ``kind`` key naming the variant (see
        :data:`REQUEST_TYPES`) plus that variant's fields.
    config:
        Supplies the accepted ranges; defaults to
        :class:`~memevolve.config.EvolutionConfig` defaults.

    Raises
    ------
    InvalidRequest
        On an unknown kind, unknown or missing fields, or a value of the
        wrong type or out of range.
    """
    if not isinstance(data, Mapping):
        raise InvalidRequest(f"Request must be a mapping, got {type(data).__name__}")
    kind = data.get("kind")
    if not isinstance(kind, str) or kind not in REQUEST_TYPES:
        raise InvalidRequest(
            f"Unknown request kind {kind!r}. "
            f"Must be one of: {', '.join(sorted(REQUEST_TYPES))}"
        )
    cls = REQUEST_TYPES[kind]
    cfg = config or EvolutionConfig()

    allowed = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(allowed) - {"kind"}
    if unknown:
        raise InvalidRequest(
            f"Unknown fields for {kind!r}: {', '.join(sorted(unknown))}"
        )

    kwargs: dict[str, Any] = {}
    for name, f in allowed.items():
        if name not in data:
            if f.default is MISSING and f.default_factory is MISSING:
                raise InvalidRequest(f"Missing required field {name!r} for {kind!r}")
            continue
        kwargs[name] = _validate_field(kind, name, data[name], cfg)

    return cls(**kwargs)
