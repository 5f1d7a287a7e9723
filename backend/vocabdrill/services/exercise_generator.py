"""
Exercise generation from a user's saved vocabulary.

Single-target generators (meaning-in-context, cloze-blank, reverse-mcq,
flashcard) return an Exercise or None when the material cannot produce an
unambiguous question. generate() walks the fallback chain for the requested
type; generate_with_fallback() raises GenerationFailure when the whole chain
declines. Matching pairs work on a batch and have their own entry point.

All randomness comes from the injected random.Random so output is
reproducible for a given seed.
"""
from __future__ import annotations

import logging
import random
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from vocabdrill.config import settings
from vocabdrill.errors import GenerationFailure, ValidationError
from vocabdrill.models.exercise import (
    MCQ_TYPES,
    DisplayEntry,
    Exercise,
    ExerciseType,
    MatchingPair,
)
from vocabdrill.models.vocabulary import VocabularyItem
from vocabdrill.services.normalization import (
    is_ambiguous,
    normalize_base,
    normalize_localized,
    unique_by,
)
from vocabdrill.services.scheduler import learning_stage

logger = logging.getLogger(__name__)

BLANK = "____"
MIN_DISTRACTORS = 1
PAGE_PROXIMITY = 10
LENGTH_TOLERANCE = 0.3

# Distractor score weights
SAME_BOOK_SCORE = 5
SAME_KIND_SCORE = 3
SIMILAR_LENGTH_SCORE = 2
NEARBY_PAGE_SCORE = 1


@dataclass(frozen=True)
class OptionField:
    """Which side of a vocabulary item the options are drawn from."""

    read: Callable[[VocabularyItem], str]
    normalize: Callable[[str], str]


TRANSLATIONS = OptionField(read=lambda item: item.translation, normalize=normalize_localized)
TERMS = OptionField(read=lambda item: item.term, normalize=normalize_base)


# --- Distractors ---


def _score(candidate: VocabularyItem, target: VocabularyItem, answer: str, text: str) -> int:
    score = 0
    same_book = candidate.book_id == target.book_id
    if same_book:
        score += SAME_BOOK_SCORE
    if candidate.kind == target.kind:
        score += SAME_KIND_SCORE
    if abs(len(text) - len(answer)) <= len(answer) * LENGTH_TOLERANCE:
        score += SIMILAR_LENGTH_SCORE
    if (
        same_book
        and target.page_number is not None
        and candidate.page_number is not None
        and abs(target.page_number - candidate.page_number) <= PAGE_PROXIMITY
    ):
        score += NEARBY_PAGE_SCORE
    return score


def select_distractors(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem],
    field: OptionField,
    count: int,
    rng: random.Random,
) -> list[str]:
    """
    Pick up to `count` wrong answers for `target`, best-scored first.

    Candidates equal to the answer, or containing / contained in it after
    normalization, are never offered: they would give the answer away.
    Positive-score candidates come first; the rest are random backfill.
    """
    answer = field.read(target)
    answer_key = field.normalize(answer)
    if not answer_key:
        return []

    eligible: list[VocabularyItem] = []
    for item in pool:
        if item.id == target.id:
            continue
        key = field.normalize(field.read(item))
        if not key or key == answer_key:
            continue
        if key in answer_key or answer_key in key:
            continue
        eligible.append(item)

    # Shuffle first so the stable sort breaks score ties at random
    rng.shuffle(eligible)
    scored = [(_score(item, target, answer, field.read(item)), item) for item in eligible]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    ranked = [item for score, item in scored if score > 0]
    backfill = [item for score, item in scored if score <= 0]

    used = {answer_key}
    distractors: list[str] = []
    for item in ranked + backfill:
        if len(distractors) >= count:
            break
        text = field.read(item)
        key = field.normalize(text)
        if key in used:
            continue
        used.add(key)
        distractors.append(text)
    return distractors


def _build_options(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem],
    field: OptionField,
    rng: random.Random,
    retry_budget: int | None = None,
) -> list[str] | None:
    """Shuffled answer + distractors, or None if no unambiguous set was found.

    select_distractors already drops duplicates of the answer. The ambiguity
    check is a backstop on the exact option list shown; a colliding set is
    redrawn until the retry budget runs out.
    """
    attempts = max(1, retry_budget if retry_budget is not None else settings.distractor_retry_budget)
    answer = field.read(target)
    for _ in range(attempts):
        distractors = select_distractors(target, pool, field, settings.distractor_count, rng)
        if len(distractors) < MIN_DISTRACTORS:
            # Pool too small; another draw cannot add material
            return None
        options = [answer, *distractors]
        if not is_ambiguous(options, field.normalize):
            rng.shuffle(options)
            return options
    logger.debug("Ambiguous option set for %s after %d attempts", target.id, attempts)
    return None


# --- Single-target generators ---


def highlight_term(context: str, term: str) -> str:
    needle = term.strip()
    if not needle:
        return context
    pattern = re.compile(rf"(?<!\w){re.escape(needle)}(?!\w)", re.IGNORECASE)
    return pattern.sub(lambda m: f"**{m.group(0)}**", context)


def make_cloze(context: str, term: str) -> str | None:
    """Blank out the first case-insensitive occurrence of term, or None if absent."""
    needle = term.strip()
    if not context or not needle:
        return None
    idx = context.lower().find(needle.lower())
    if idx == -1:
        return None
    return f"{context[:idx]}{BLANK}{context[idx + len(needle):]}"


def generate_meaning_in_context(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem],
    rng: random.Random,
    retry_budget: int | None = None,
) -> Exercise | None:
    options = _build_options(target, pool, TRANSLATIONS, rng, retry_budget)
    if options is None:
        return None
    return Exercise(
        type=ExerciseType.MEANING_IN_CONTEXT,
        prompt=f'What does "{target.term}" mean here?',
        correct_answer=target.translation,
        options=options,
        context=highlight_term(target.context, target.term),
        vocabulary_ids=[target.id],
        metadata={"term": target.term, "original_context": target.context},
    )


def generate_cloze_blank(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem],
    rng: random.Random,
    retry_budget: int | None = None,
) -> Exercise | None:
    cloze = make_cloze(target.context, target.term)
    if cloze is None:
        # Data-quality condition, not worth retrying
        logger.debug("Term %r not found in its context (%s)", target.term, target.id)
        return None
    options = _build_options(target, pool, TERMS, rng, retry_budget)
    if options is None:
        return None
    return Exercise(
        type=ExerciseType.CLOZE_BLANK,
        prompt="Fill in the blank:",
        correct_answer=target.term,
        options=options,
        context=cloze,
        vocabulary_ids=[target.id],
        metadata={"translation": target.translation, "original_context": target.context},
    )


def generate_reverse_mcq(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem],
    rng: random.Random,
    retry_budget: int | None = None,
) -> Exercise | None:
    options = _build_options(target, pool, TERMS, rng, retry_budget)
    if options is None:
        return None
    return Exercise(
        type=ExerciseType.REVERSE_MCQ,
        prompt=f'Which word means "{target.translation}"?',
        correct_answer=target.term,
        options=options,
        context=target.context,
        vocabulary_ids=[target.id],
        metadata={"translation": target.translation},
    )


def generate_flashcard(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem] = (),
    rng: random.Random | None = None,
    retry_budget: int | None = None,
) -> Exercise | None:
    """Self-graded recall card. Succeeds whenever the item has a translation."""
    if not target.translation.strip():
        return None
    return Exercise(
        type=ExerciseType.FLASHCARD,
        prompt=target.term,
        correct_answer=target.translation,
        context=highlight_term(target.context, target.term),
        vocabulary_ids=[target.id],
    )


GENERATORS = {
    ExerciseType.MEANING_IN_CONTEXT: generate_meaning_in_context,
    ExerciseType.CLOZE_BLANK: generate_cloze_blank,
    ExerciseType.REVERSE_MCQ: generate_reverse_mcq,
    ExerciseType.FLASHCARD: generate_flashcard,
}

FALLBACK_CHAINS: dict[ExerciseType, tuple[ExerciseType, ...]] = {
    ExerciseType.CLOZE_BLANK: (
        ExerciseType.CLOZE_BLANK,
        ExerciseType.MEANING_IN_CONTEXT,
        ExerciseType.FLASHCARD,
    ),
    ExerciseType.REVERSE_MCQ: (
        ExerciseType.REVERSE_MCQ,
        ExerciseType.MEANING_IN_CONTEXT,
        ExerciseType.FLASHCARD,
    ),
    ExerciseType.MEANING_IN_CONTEXT: (
        ExerciseType.MEANING_IN_CONTEXT,
        ExerciseType.FLASHCARD,
    ),
    ExerciseType.FLASHCARD: (ExerciseType.FLASHCARD,),
}


# --- Matching pairs ---


def generate_matching_pairs(
    items: Sequence[VocabularyItem],
    rng: random.Random | None = None,
    batch_size: int | None = None,
    min_items: int | None = None,
) -> Exercise | None:
    rng = rng or random.Random()
    batch_size = batch_size or settings.matching_batch_size
    min_items = min_items or settings.matching_min_items

    by_term = unique_by(items, lambda item: normalize_base(item.term))
    unique = unique_by(by_term, lambda item: normalize_localized(item.translation))
    if len(unique) < min_items:
        logger.debug("Matching pairs: only %d unique items (need %d)", len(unique), min_items)
        return None

    selected = unique[:batch_size]
    pairs = [MatchingPair(id=item.id, term=item.term, translation=item.translation) for item in selected]

    # Final pairwise check on the exact set being shown
    if is_ambiguous([p.term for p in pairs], normalize_base) or is_ambiguous(
        [p.translation for p in pairs], normalize_localized
    ):
        return None

    terms = [DisplayEntry(id=p.id, text=p.term) for p in pairs]
    translations = [DisplayEntry(id=p.id, text=p.translation) for p in pairs]
    rng.shuffle(terms)
    rng.shuffle(translations)

    return Exercise(
        type=ExerciseType.MATCHING_PAIRS,
        prompt="Match each word with its translation:",
        vocabulary_ids=[p.id for p in pairs],
        pairs=pairs,
        shuffled_terms=terms,
        shuffled_translations=translations,
    )


# --- Selection and dispatch ---


def select_exercise_type(repetitions: int, rng: random.Random | None = None) -> ExerciseType:
    """Pick a single-item exercise type from the card's learning stage."""
    rng = rng or random.Random()
    if repetitions <= 1:
        return ExerciseType.MEANING_IN_CONTEXT
    if repetitions <= 4:
        return rng.choice([ExerciseType.CLOZE_BLANK, ExerciseType.REVERSE_MCQ])
    return rng.choice(list(MCQ_TYPES))


def should_offer_matching(
    repetitions_queue: Sequence[int],
    position: int,
    batch_size: int | None = None,
) -> bool:
    """
    Every batch_size-th queue position becomes a matching-pairs batch when
    the next batch_size cards exist and share one learning stage.
    """
    batch_size = batch_size or settings.matching_batch_size
    if position % batch_size != 0:
        return False
    window = repetitions_queue[position : position + batch_size]
    if len(window) < batch_size:
        return False
    return len({learning_stage(reps) for reps in window}) == 1


def generate(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem],
    exercise_type: ExerciseType | None = None,
    repetitions: int = 0,
    rng: random.Random | None = None,
) -> Exercise | None:
    rng = rng or random.Random()
    if exercise_type == ExerciseType.MATCHING_PAIRS:
        raise ValidationError("matching-pairs needs a batch of items, use generate_matching_pairs")
    requested = exercise_type or select_exercise_type(repetitions, rng)

    for candidate in FALLBACK_CHAINS[requested]:
        exercise = GENERATORS[candidate](target, pool, rng)
        if exercise is not None:
            if candidate != requested:
                logger.info(
                    "Fell back from %s to %s for vocabulary %s",
                    requested.value,
                    candidate.value,
                    target.id,
                )
            return exercise
    return None


def generate_with_fallback(
    target: VocabularyItem,
    pool: Sequence[VocabularyItem],
    exercise_type: ExerciseType | None = None,
    repetitions: int = 0,
    rng: random.Random | None = None,
) -> Exercise:
    exercise = generate(target, pool, exercise_type, repetitions, rng)
    if exercise is None:
        logger.warning("Exercise generation exhausted for vocabulary %s", target.id)
        raise GenerationFailure(f"Could not generate an exercise for {target.id}")
    return exercise
