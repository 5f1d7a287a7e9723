"""
Grading pipeline.

grade_single() and grade_batch() are thin wrappers over _apply_gradings(), which
runs inside one BEGIN IMMEDIATE transaction:

  load cards (all must exist for the owner)
  -> fence against concurrent sessions (last_reviewed_at > session start)
  -> advance each card with the scheduler
  -> append the attempt row, update the card
  -> commit

Idempotency is store-backed: the attempt id is the attempt log's primary key,
and a batch id maps to a stored result set. Repeats return the original result
with replayed=True and change nothing. Per-item attempt ids of a batch are
derived from the batch id, so a repeat is still caught after the batch record
has been swept.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import aiosqlite

from vocabdrill.config import settings
from vocabdrill.db.sqlite import (
    as_utc,
    count_due,
    count_reviewed,
    delete_batches_before,
    flashcard_state,
    get_batch_results,
    get_flashcard,
    get_flashcards,
    get_review_attempt,
    get_review_attempts,
    insert_batch,
    insert_review_attempt,
    reset_flashcard_due,
    reset_recent_flashcards,
    to_iso,
    transaction,
    update_flashcard_schedule,
    utcnow,
)
from vocabdrill.errors import (
    NotFoundError,
    PersistenceFailure,
    SessionConflictError,
    ValidationError,
)
from vocabdrill.models.flashcard import Flashcard
from vocabdrill.models.review import (
    BatchGradeRequest,
    BatchGradeResult,
    CardState,
    GradeRequest,
    GradeResult,
)
from vocabdrill.services.scheduler import advance, is_valid_quality

logger = logging.getLogger(__name__)

BATCH_ATTEMPT_NAMESPACE = uuid.UUID("5b0c6c1e-3f43-4c52-9a59-7f2f2c6d8e11")


@dataclass(frozen=True)
class _Grading:
    attempt_id: str
    flashcard_id: str
    quality: int
    response_ms: int | None = None
    exercise_type: str | None = None


class _AlreadyApplied(Exception):
    """An identical attempt committed between our check and our insert."""


def batch_attempt_id(batch_id: str, flashcard_id: str) -> str:
    return str(uuid.uuid5(BATCH_ATTEMPT_NAMESPACE, f"{batch_id}:{flashcard_id}"))


def _check_quality(quality: object) -> None:
    if not is_valid_quality(quality):
        raise ValidationError(f"quality must be an integer between 0 and 5, got {quality!r}")


def _replayed(attempt: dict) -> GradeResult:
    return GradeResult(
        attempt_id=attempt["attempt_id"],
        flashcard_id=attempt["flashcard_id"],
        quality=attempt["quality"],
        state=CardState(
            ease_factor=attempt["new_ease_factor"],
            interval=attempt["new_interval"],
            repetitions=attempt["new_repetitions"],
            due_at=attempt["due_at"],
            last_reviewed_at=attempt["created_at"],
        ),
        replayed=True,
    )


async def _apply_gradings(
    db: aiosqlite.Connection,
    owner_id: str,
    gradings: list[_Grading],
    session_started_at: datetime | None,
    session_id: str | None,
    now: datetime,
) -> list[GradeResult]:
    """Shared grading primitive. The caller owns the transaction."""
    card_ids = [g.flashcard_id for g in gradings]
    cards = await get_flashcards(db, owner_id, card_ids)

    missing = [card_id for card_id in card_ids if card_id not in cards]
    if missing:
        raise NotFoundError(missing)

    if session_started_at is not None:
        fence = as_utc(session_started_at)
        conflicts = [
            card_id
            for card_id in card_ids
            if cards[card_id].last_reviewed_at is not None
            and as_utc(cards[card_id].last_reviewed_at) > fence
        ]
        if conflicts:
            raise SessionConflictError(conflicts)

    results: list[GradeResult] = []
    for grading in gradings:
        card = cards[grading.flashcard_id]
        before = flashcard_state(card)
        after = advance(before, grading.quality, now)

        inserted = await insert_review_attempt(
            db,
            {
                "attempt_id": grading.attempt_id,
                "owner_id": owner_id,
                "flashcard_id": card.id,
                "vocabulary_id": card.vocabulary_id,
                "session_id": session_id,
                "quality": grading.quality,
                "response_ms": grading.response_ms,
                "exercise_type": grading.exercise_type,
                "prev_ease_factor": before.ease_factor,
                "prev_interval": before.interval,
                "prev_repetitions": before.repetitions,
                "new_ease_factor": after.ease_factor,
                "new_interval": after.interval,
                "new_repetitions": after.repetitions,
                "due_at": to_iso(after.due_at),
                "created_at": to_iso(now),
            },
        )
        if not inserted:
            raise _AlreadyApplied(grading.attempt_id)
        await update_flashcard_schedule(db, card.id, after)

        results.append(
            GradeResult(
                attempt_id=grading.attempt_id,
                flashcard_id=card.id,
                quality=grading.quality,
                state=CardState(
                    ease_factor=after.ease_factor,
                    interval=after.interval,
                    repetitions=after.repetitions,
                    due_at=after.due_at,
                    last_reviewed_at=after.last_reviewed_at,
                ),
            )
        )
    return results


async def grade_single(
    db: aiosqlite.Connection,
    owner_id: str,
    request: GradeRequest,
    now: datetime | None = None,
) -> GradeResult:
    _check_quality(request.quality)
    if not request.attempt_id.strip():
        raise ValidationError("attempt_id is required")
    now = now or utcnow()
    grading = _Grading(
        attempt_id=request.attempt_id,
        flashcard_id=request.flashcard_id,
        quality=request.quality,
        response_ms=request.response_ms,
        exercise_type=request.exercise_type.value if request.exercise_type else None,
    )

    try:
        async with transaction(db):
            existing = await get_review_attempt(db, owner_id, request.attempt_id)
            if existing is not None:
                logger.info("Replaying attempt %s for %s", request.attempt_id, owner_id)
                return _replayed(existing)
            results = await _apply_gradings(
                db, owner_id, [grading], request.session_started_at, request.session_id, now
            )
    except _AlreadyApplied:
        existing = await get_review_attempt(db, owner_id, request.attempt_id)
        if existing is None:
            raise ValidationError(f"attempt_id {request.attempt_id} is already in use") from None
        return _replayed(existing)
    except aiosqlite.Error as e:
        logger.warning("Grading transaction failed for attempt %s: %s", request.attempt_id, e)
        raise PersistenceFailure("Failed to record grading") from e

    result = results[0]
    logger.info(
        "Graded card %s q=%d -> interval=%d reps=%d",
        result.flashcard_id,
        result.quality,
        result.state.interval,
        result.state.repetitions,
    )
    return result


async def _replay_batch(
    db: aiosqlite.Connection, owner_id: str, batch_id: str, results: list[GradeResult], now: datetime
) -> BatchGradeResult:
    logger.info("Replaying batch %s for %s", batch_id, owner_id)
    return BatchGradeResult(
        batch_id=batch_id,
        results=results,
        replayed=True,
        next_due_count=await count_due(db, owner_id, now),
    )


async def grade_batch(
    db: aiosqlite.Connection,
    owner_id: str,
    request: BatchGradeRequest,
    now: datetime | None = None,
) -> BatchGradeResult:
    """Grade several cards as one atomic unit (e.g. a matching-pairs exercise)."""
    if not request.batch_id.strip():
        raise ValidationError("batch_id is required")
    if not request.items:
        raise ValidationError("items must not be empty")
    for item in request.items:
        _check_quality(item.quality)
    card_ids = [item.flashcard_id for item in request.items]
    if len(set(card_ids)) != len(card_ids):
        raise ValidationError("a batch may grade each flashcard only once")

    now = now or utcnow()
    gradings = [
        _Grading(
            attempt_id=batch_attempt_id(request.batch_id, item.flashcard_id),
            flashcard_id=item.flashcard_id,
            quality=item.quality,
            response_ms=item.response_ms,
            exercise_type=item.exercise_type.value if item.exercise_type else None,
        )
        for item in request.items
    ]
    attempt_ids = [g.attempt_id for g in gradings]

    try:
        async with transaction(db):
            stored = await get_batch_results(db, owner_id, request.batch_id)
            if stored is not None:
                results = [GradeResult.model_validate(r) for r in stored]
                return await _replay_batch(db, owner_id, request.batch_id, results, now)

            logged = await get_review_attempts(db, owner_id, attempt_ids)
            if logged:
                # Batch record swept, attempt rows remain
                results = [_replayed(logged[a]) for a in attempt_ids if a in logged]
                return await _replay_batch(db, owner_id, request.batch_id, results, now)

            results = await _apply_gradings(
                db, owner_id, gradings, request.session_started_at, request.session_id, now
            )
            await insert_batch(
                db,
                owner_id,
                request.batch_id,
                [r.model_dump(mode="json") for r in results],
                now,
            )
            await delete_batches_before(
                db, now - timedelta(hours=settings.idempotency_retention_hours)
            )
    except _AlreadyApplied:
        logged = await get_review_attempts(db, owner_id, attempt_ids)
        results = [_replayed(logged[a]) for a in attempt_ids if a in logged]
        return await _replay_batch(db, owner_id, request.batch_id, results, now)
    except aiosqlite.Error as e:
        logger.warning("Batch grading transaction failed for %s: %s", request.batch_id, e)
        raise PersistenceFailure("Failed to record batch grading") from e

    logger.info("Graded batch %s (%d cards) for %s", request.batch_id, len(results), owner_id)
    return BatchGradeResult(
        batch_id=request.batch_id,
        results=results,
        next_due_count=await count_due(db, owner_id, now),
    )


# --- Administrative resets (bypass the scheduler, no attempt rows) ---


async def reset_flashcard(
    db: aiosqlite.Connection,
    owner_id: str,
    card_id: str,
    now: datetime | None = None,
) -> Flashcard:
    try:
        async with transaction(db):
            found = await reset_flashcard_due(db, owner_id, card_id, now)
            card = await get_flashcard(db, owner_id, card_id) if found else None
    except aiosqlite.Error as e:
        raise PersistenceFailure("Failed to reset flashcard") from e
    if card is None:
        raise NotFoundError([card_id])
    logger.info("Reset flashcard %s to due now", card_id)
    return card


async def reset_recent(
    db: aiosqlite.Connection,
    owner_id: str,
    limit: int | None = None,
    now: datetime | None = None,
) -> int:
    """Make the most recently reviewed cards due now. Default: min(50, reviewed)."""
    if limit is not None and limit < 1:
        raise ValidationError("limit must be positive")
    try:
        async with transaction(db):
            reviewed = await count_reviewed(db, owner_id)
            if limit is None:
                limit = min(settings.reset_recent_default, reviewed)
            if limit == 0:
                return 0
            count = await reset_recent_flashcards(db, owner_id, limit, now)
    except aiosqlite.Error as e:
        raise PersistenceFailure("Failed to reset flashcards") from e
    logger.info("Reset %d recently reviewed flashcards for %s", count, owner_id)
    return count


async def sweep_batches(db: aiosqlite.Connection, now: datetime | None = None) -> int:
    now = now or utcnow()
    return await delete_batches_before(
        db, now - timedelta(hours=settings.idempotency_retention_hours)
    )
