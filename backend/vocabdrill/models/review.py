from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from vocabdrill.models.exercise import ExerciseType


class GradeRequest(BaseModel):
    attempt_id: str = Field(min_length=1)
    flashcard_id: str
    quality: int = Field(ge=0, le=5)  # 0 = blackout, 5 = instant recall
    session_started_at: datetime | None = None
    session_id: str | None = None
    response_ms: int | None = Field(default=None, ge=0)
    exercise_type: ExerciseType | None = None


class BatchGradeItem(BaseModel):
    flashcard_id: str
    quality: int = Field(ge=0, le=5)
    response_ms: int | None = Field(default=None, ge=0)
    exercise_type: ExerciseType | None = None


class BatchGradeRequest(BaseModel):
    batch_id: str = Field(min_length=1)
    session_started_at: datetime
    session_id: str | None = None
    items: list[BatchGradeItem] = Field(min_length=1)


class CardState(BaseModel):
    ease_factor: float
    interval: int
    repetitions: int
    due_at: datetime
    last_reviewed_at: datetime | None


class GradeResult(BaseModel):
    attempt_id: str
    flashcard_id: str
    quality: int
    state: CardState
    replayed: bool = False


class BatchGradeResult(BaseModel):
    batch_id: str
    results: list[GradeResult]
    replayed: bool = False
    next_due_count: int = 0


class ResetRecentRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1)


class HardWord(BaseModel):
    vocabulary_id: str
    term: str
    translation: str
    avg_quality: float
    attempt_count: int


class DayActivity(BaseModel):
    date: str
    count: int


class ExerciseTypeStat(BaseModel):
    type: str
    count: int
    avg_quality: float


class ReviewStats(BaseModel):
    days: int
    since: datetime
    total_attempts: int
    success_count: int
    success_rate: float            # percent of attempts with quality >= 4
    current_streak: int            # consecutive days with reviews, ending today
    avg_response_ms: int | None
    hardest_words: list[HardWord]
    activity_by_day: list[DayActivity]
    exercise_types: list[ExerciseTypeStat]
