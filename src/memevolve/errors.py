"""Exception hierarchy for memevolve.

Every engine-level exception inherits from :class:`MemEvolveError`, which
carries a short machine-readable ``code`` for hosts that map errors onto
their own response frames.
"""

from __future__ import annotations


class MemEvolveError(Exception):
    """Base exception for all memevolve errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class NotFound(MemEvolveError):
    """A referenced memory id does not exist."""

    def __init__(self, message: str, *, memory_id: int | None = None) -> None:
        super().__init__(message, code="NOT_FOUND")
        self.memory_id = memory_id


class CollaboratorUnavailable(MemEvolveError):
    """The embedding, similarity or rollup service could not be reached."""

    def __init__(self, message: str, *, code: str = "COLLABORATOR_UNAVAILABLE") -> None:
        super().__init__(message, code=code)


class InvariantViolation(MemEvolveError):
    """An internal bug tried to break a data-model invariant.

    Raised per item; batch passes catch it, log loudly and move on.
    """

    def __init__(self, message: str, *, memory_id: int | None = None) -> None:
        super().__init__(message, code="INVARIANT_VIOLATION")
        self.memory_id = memory_id


class StoreFailure(MemEvolveError):
    """The persistence layer failed.  The original error is chained."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_FAILURE")


class InvalidRequest(MemEvolveError, ValueError):
    """A request failed boundary validation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_REQUEST")
