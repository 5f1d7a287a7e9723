"""
Review router.

Endpoints:
  GET  /review/due                     cards due now, plus the server's fetch time
  GET  /review/exercise/{flashcard_id} generate an exercise for one card
  POST /review/grade                   grade one card (idempotent on attempt_id)
  POST /review/grade/batch             grade several cards atomically (idempotent on batch_id)
  POST /review/{flashcard_id}/reset    make one card due now
  POST /review/reset-recent            make the most recently reviewed cards due now
  GET  /review/stats                   analytics over the attempt log
"""
from __future__ import annotations

import logging
import random

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException, Query

from vocabdrill.db.sqlite import (
    count_due,
    get_db,
    get_due_cards,
    get_flashcard,
    get_review_stats,
    get_vocabulary,
    list_vocabulary,
    utcnow,
)
from vocabdrill.errors import ReviewError
from vocabdrill.models.exercise import Exercise, ExerciseType
from vocabdrill.models.flashcard import DueFeed, Flashcard, ResetResult
from vocabdrill.models.review import (
    BatchGradeRequest,
    BatchGradeResult,
    GradeRequest,
    GradeResult,
    ResetRecentRequest,
    ReviewStats,
)
from vocabdrill.routers.deps import get_owner_id, http_error
from vocabdrill.services import grading
from vocabdrill.services.exercise_generator import generate_with_fallback

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/due", response_model=DueFeed)
async def get_due(
    limit: int | None = Query(default=None, ge=1, le=1000),
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
) -> DueFeed:
    """Due cards, oldest-overdue first, then least recently seen."""
    now = utcnow()
    items = await get_due_cards(db, owner_id, now, limit)
    total = await count_due(db, owner_id, now)
    return DueFeed(items=items, total=total, fetched_at=now)


@router.get("/exercise/{flashcard_id}", response_model=Exercise)
async def get_exercise(
    flashcard_id: str,
    exercise_type: ExerciseType | None = Query(default=None, alias="type"),
    seed: int | None = Query(default=None),
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
) -> Exercise:
    card = await get_flashcard(db, owner_id, flashcard_id)
    if not card:
        raise HTTPException(status_code=404, detail="Flashcard not found")
    target = await get_vocabulary(db, owner_id, card.vocabulary_id)
    if not target:
        raise HTTPException(status_code=404, detail="Vocabulary item not found")
    pool = await list_vocabulary(db, owner_id)

    try:
        return generate_with_fallback(
            target,
            pool,
            exercise_type=exercise_type,
            repetitions=card.repetitions,
            rng=random.Random(seed),
        )
    except ReviewError as e:
        raise http_error(e) from e


@router.post("/grade", response_model=GradeResult)
async def grade(
    body: GradeRequest,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
) -> GradeResult:
    try:
        return await grading.grade_single(db, owner_id, body)
    except ReviewError as e:
        raise http_error(e) from e


@router.post("/grade/batch", response_model=BatchGradeResult)
async def grade_batch(
    body: BatchGradeRequest,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
) -> BatchGradeResult:
    try:
        return await grading.grade_batch(db, owner_id, body)
    except ReviewError as e:
        raise http_error(e) from e


@router.post("/reset-recent", response_model=ResetResult)
async def reset_recent(
    body: ResetRecentRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
) -> ResetResult:
    limit = body.limit if body else None
    try:
        count = await grading.reset_recent(db, owner_id, limit)
    except ReviewError as e:
        raise http_error(e) from e
    return ResetResult(reset_count=count)


@router.post("/{flashcard_id}/reset", response_model=Flashcard)
async def reset_card(
    flashcard_id: str,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
) -> Flashcard:
    try:
        return await grading.reset_flashcard(db, owner_id, flashcard_id)
    except ReviewError as e:
        raise http_error(e) from e


@router.get("/stats", response_model=ReviewStats)
async def get_stats(
    days: int = Query(default=30, ge=1, le=365),
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
) -> ReviewStats:
    return await get_review_stats(db, owner_id, days)
