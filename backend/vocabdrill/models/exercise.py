from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ExerciseType(str, Enum):
    MEANING_IN_CONTEXT = "meaning-in-context"
    CLOZE_BLANK = "cloze-blank"
    REVERSE_MCQ = "reverse-mcq"
    MATCHING_PAIRS = "matching-pairs"
    FLASHCARD = "flashcard"


MCQ_TYPES = (
    ExerciseType.MEANING_IN_CONTEXT,
    ExerciseType.CLOZE_BLANK,
    ExerciseType.REVERSE_MCQ,
)


class DisplayEntry(BaseModel):
    id: str
    text: str


class MatchingPair(BaseModel):
    id: str
    term: str
    translation: str


class Exercise(BaseModel):
    type: ExerciseType
    prompt: str
    correct_answer: str = ""
    options: list[str] = Field(default_factory=list)
    context: str | None = None
    vocabulary_ids: list[str]
    pairs: list[MatchingPair] = Field(default_factory=list)
    shuffled_terms: list[DisplayEntry] = Field(default_factory=list)
    shuffled_translations: list[DisplayEntry] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
