"""Error taxonomy for lifecycle operations.

Every error carries a stable ``code`` (used in API responses) and whether a
caller may retry after re-reading state. The engine never retries on its own.
"""
from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all lifecycle engine failures."""

    code = "lifecycle_error"
    retryable = False

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.message, "retryable": self.retryable, **self.context}


class ValidationError(LifecycleError):
    """Malformed input; not retryable as-is."""

    code = "validation_error"


class NotFoundError(LifecycleError):
    """Referenced entity is absent or soft-deleted."""

    code = "not_found"


class ConflictError(LifecycleError):
    """A concurrent write won the race; re-read and retry."""

    code = "conflict"
    retryable = True


class StateError(LifecycleError):
    """Operation is not valid for the entity's current lifecycle state."""

    code = "invalid_state"


class ImmutableAssignmentError(LifecycleError):
    """Courier attribution is backed by recorded physical work and cannot change."""

    code = "immutable_assignment"

    def __init__(self, assignment_id: str | None, courier_id: str | None, **context) -> None:
        super().__init__(
            "Courier cannot be changed: the assigned courier has already recorded "
            "physical pickup or delivery work for this request.",
            assignment_id=assignment_id,
            courier_id=courier_id,
            **context,
        )
