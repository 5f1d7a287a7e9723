"""
Error taxonomy shared by the grading pipeline, the exercise generator and the
review session.

``retryable`` tells a caller whether resending the identical request (or
regenerating, for generation failures) can succeed without refetching state.
"""
from __future__ import annotations


class ReviewError(Exception):
    retryable = False


class ValidationError(ReviewError, ValueError):
    """Malformed input: rejected before anything is persisted."""


class NotFoundError(ReviewError):
    """One or more flashcards do not exist or belong to someone else."""

    def __init__(self, missing_ids: list[str], message: str = "Flashcard not found") -> None:
        super().__init__(message)
        self.missing_ids = list(missing_ids)


class SessionConflictError(ReviewError):
    """A flashcard was graded by another session after this session started."""

    def __init__(self, conflicting_ids: list[str]) -> None:
        super().__init__("Some flashcards were updated by another session")
        self.conflicting_ids = list(conflicting_ids)


class GenerationFailure(ReviewError):
    """Every generator in the fallback chain declined the target."""

    retryable = True


class PersistenceFailure(ReviewError):
    """Storage or transaction error. Safe to resend thanks to idempotency keys."""

    retryable = True
