from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from vocabdrill.models.vocabulary import VocabularyItem


class Flashcard(BaseModel):
    id: str
    owner_id: str
    vocabulary_id: str
    ease_factor: float                  # SM-2 ease, never below 1.3
    interval: int                       # days until next review
    repetitions: int                    # consecutive successful recalls
    due_at: datetime
    last_reviewed_at: datetime | None   # None until first grading
    created_at: datetime


class DueCard(BaseModel):
    flashcard: Flashcard
    vocabulary: VocabularyItem


class DueFeed(BaseModel):
    items: list[DueCard]
    total: int
    fetched_at: datetime  # server clock; clients use it as their session start


class ResetResult(BaseModel):
    reset_count: int
