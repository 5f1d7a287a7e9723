from vocabdrill.models.exercise import (
    DisplayEntry,
    Exercise,
    ExerciseType,
    MatchingPair,
)
from vocabdrill.models.flashcard import DueCard, DueFeed, Flashcard, ResetResult
from vocabdrill.models.review import (
    BatchGradeItem,
    BatchGradeRequest,
    BatchGradeResult,
    CardState,
    GradeRequest,
    GradeResult,
    ReviewStats,
)
from vocabdrill.models.vocabulary import (
    VocabularyCreate,
    VocabularyItem,
    VocabularyKind,
    VocabularyList,
    VocabularyUpdate,
)

__all__ = [
    "BatchGradeItem",
    "BatchGradeRequest",
    "BatchGradeResult",
    "CardState",
    "DisplayEntry",
    "DueCard",
    "DueFeed",
    "Exercise",
    "ExerciseType",
    "Flashcard",
    "GradeRequest",
    "GradeResult",
    "MatchingPair",
    "ResetResult",
    "ReviewStats",
    "VocabularyCreate",
    "VocabularyItem",
    "VocabularyKind",
    "VocabularyList",
    "VocabularyUpdate",
]
