"""
Review session orchestrator.

Drives one pass over the due queue:

  Loading -> Ready(exercise) -> submit -> next Ready ... -> Complete
                 |                 |
                 v                 v
          Error(retryable)   conflict / not found -> refetch (Loading)

The server's fetched_at timestamp from the due feed is the session start sent
with every grading request, so conflict fencing compares two server clocks.

The due feed is capped at due_feed_limit. When the loaded page is used up and
the feed reported more due cards, the session refetches instead of completing.
A page on which nothing was graded (only skips) ends the session, otherwise
skipped cards would be served again forever.
"""
from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from vocabdrill.config import settings
from vocabdrill.errors import (
    GenerationFailure,
    NotFoundError,
    ReviewError,
    SessionConflictError,
    ValidationError,
)
from vocabdrill.models.exercise import Exercise, ExerciseType
from vocabdrill.models.flashcard import DueCard
from vocabdrill.models.review import BatchGradeItem, BatchGradeRequest, GradeRequest
from vocabdrill.models.vocabulary import VocabularyItem
from vocabdrill.services.exercise_generator import (
    generate_matching_pairs,
    generate_with_fallback,
    should_offer_matching,
)
from vocabdrill.services.review_client import ReviewClient
from vocabdrill.services.scheduler import is_valid_quality

logger = logging.getLogger(__name__)

FAST_ANSWER_MS = 3000


# --- States ---


@dataclass(frozen=True)
class Loading:
    pass


@dataclass(frozen=True)
class Ready:
    exercise: Exercise


@dataclass(frozen=True)
class Error:
    message: str
    retryable: bool = True


@dataclass(frozen=True)
class Complete:
    reviewed: int = 0


SessionState = Loading | Ready | Error | Complete


@dataclass(frozen=True)
class Response:
    """What the learner did with the current exercise."""

    answer: str | None = None  # chosen option, MCQ types
    matches: dict[str, str] = field(default_factory=dict)  # term id -> translation id
    quality: int | None = None  # self-grade, flashcard type
    response_ms: int | None = None


@dataclass
class _Presented:
    exercise: Exercise
    cards: list[DueCard]
    ready_at: datetime


def quality_from_answer(correct: bool, response_ms: int | None = None) -> int:
    if not correct:
        return 0
    if response_ms is not None and response_ms < FAST_ANSWER_MS:
        return 5
    return 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewSession:
    def __init__(
        self,
        client: ReviewClient,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.rng = rng or random.Random()
        self.clock = clock or _utcnow
        self.session_id = str(uuid.uuid4())
        self.state: SessionState = Loading()
        self.queue: list[DueCard] = []
        self.pool: list[VocabularyItem] = []
        self.position = 0
        self.reviewed = 0
        self.due_total = 0
        self.started_at: datetime | None = None
        self._current: _Presented | None = None
        self._pending: GradeRequest | BatchGradeRequest | None = None
        self._in_flight: tuple | None = None
        self._failed_step: str | None = None
        self._graded_since_load = 0

    @property
    def remaining(self) -> int:
        return max(len(self.queue) - self.position, 0)

    async def start(self) -> SessionState:
        self.state = Loading()
        self._current = None
        self._pending = None
        try:
            feed = await self.client.fetch_due()
            pool = await self.client.fetch_pool()
        except ReviewError as e:
            logger.warning("Failed to load due cards: %s", e)
            self._failed_step = "load"
            self.state = Error(str(e), retryable=e.retryable)
            return self.state

        self.queue = list(feed.items)
        self.due_total = feed.total
        self._graded_since_load = 0
        self.pool = pool or [card.vocabulary for card in self.queue]
        self.started_at = feed.fetched_at
        self.position = 0
        logger.info("Session %s loaded %d due cards", self.session_id, len(self.queue))
        self._present()
        return self.state

    refresh = start

    # --- Presentation ---

    def _present(self) -> None:
        self._current = None
        self._failed_step = None
        if self.position >= len(self.queue):
            self.state = Complete(reviewed=self.reviewed)
            return

        batch_size = settings.matching_batch_size
        repetitions = [card.flashcard.repetitions for card in self.queue]
        if should_offer_matching(repetitions, self.position, batch_size):
            window = self.queue[self.position : self.position + batch_size]
            exercise = generate_matching_pairs([card.vocabulary for card in window], self.rng)
            if exercise is not None:
                covered = [c for c in window if c.vocabulary.id in exercise.vocabulary_ids]
                left_out = [c for c in window if c.vocabulary.id not in exercise.vocabulary_ids]
                # Covered cards first so advancing by len(covered) lands on the rest
                self.queue[self.position : self.position + batch_size] = covered + left_out
                self._show(exercise, covered)
                return
            logger.info("Matching pairs unavailable at position %d", self.position)

        card = self.queue[self.position]
        try:
            exercise = generate_with_fallback(
                card.vocabulary,
                self.pool,
                repetitions=card.flashcard.repetitions,
                rng=self.rng,
            )
        except GenerationFailure as e:
            self._failed_step = "generate"
            self.state = Error(str(e), retryable=True)
            return
        self._show(exercise, [card])

    def _show(self, exercise: Exercise, cards: list[DueCard]) -> None:
        self._current = _Presented(exercise=exercise, cards=cards, ready_at=self.clock())
        self.state = Ready(exercise)

    # --- Grading ---

    def _build_request(self, response: Response) -> GradeRequest | BatchGradeRequest:
        assert self._current is not None
        exercise = self._current.exercise
        cards = self._current.cards

        if exercise.type == ExerciseType.MATCHING_PAIRS:
            items = [
                BatchGradeItem(
                    flashcard_id=card.flashcard.id,
                    quality=quality_from_answer(
                        response.matches.get(card.vocabulary.id) == card.vocabulary.id,
                        response.response_ms,
                    ),
                    response_ms=response.response_ms,
                    exercise_type=exercise.type,
                )
                for card in cards
            ]
            return BatchGradeRequest(
                batch_id=str(uuid.uuid4()),
                session_started_at=self.started_at,
                session_id=self.session_id,
                items=items,
            )

        if exercise.type == ExerciseType.FLASHCARD:
            if not is_valid_quality(response.quality):
                raise ValidationError("flashcard exercises need a self-graded quality between 0 and 5")
            quality = response.quality
        else:
            quality = quality_from_answer(
                response.answer is not None and response.answer == exercise.correct_answer,
                response.response_ms,
            )
        return GradeRequest(
            attempt_id=str(uuid.uuid4()),
            flashcard_id=cards[0].flashcard.id,
            quality=quality,
            session_started_at=self.started_at,
            session_id=self.session_id,
            response_ms=response.response_ms,
            exercise_type=exercise.type,
        )

    async def submit(self, response: Response) -> bool:
        """Grade the current exercise. Returns False when the submission was dropped."""
        if not isinstance(self.state, Ready) or self._current is None:
            logger.debug("Ignoring submission in state %s", type(self.state).__name__)
            return False
        if self._in_flight is not None:
            logger.debug("Dropping duplicate submission at position %d", self.position)
            return False
        self._pending = self._build_request(response)
        await self._dispatch()
        return True

    async def _dispatch(self) -> None:
        assert self._current is not None and self._pending is not None
        request = self._pending
        self._in_flight = (self._current.exercise.type, self.position, self._current.ready_at)
        try:
            if isinstance(request, BatchGradeRequest):
                await self.client.grade_batch(request)
                consumed = len(request.items)
            else:
                await self.client.grade(request)
                consumed = 1
        except (SessionConflictError, NotFoundError) as e:
            logger.info("Refetching due cards after %s", type(e).__name__)
            self._pending = None
            await self.refresh()
            return
        except ReviewError as e:
            logger.warning("Grading failed at position %d: %s", self.position, e)
            self._failed_step = "submit"
            self.state = Error(str(e), retryable=True)
            return
        finally:
            self._in_flight = None

        self._pending = None
        self.reviewed += consumed
        self.position += consumed
        self._graded_since_load += consumed
        await self._next()

    async def _next(self) -> None:
        """Present the next item, fetching the next page when the loaded one is used up."""
        truncated = self.due_total > len(self.queue)
        if self.position >= len(self.queue) and truncated and self._graded_since_load:
            logger.info(
                "Loaded page exhausted, %d of %d due cards seen; refetching",
                len(self.queue),
                self.due_total,
            )
            await self.refresh()
            return
        self._present()

    # --- Recovery ---

    async def retry(self) -> SessionState:
        """Resend the pending grading verbatim, or regenerate after a generation failure."""
        if not isinstance(self.state, Error):
            return self.state
        if self._failed_step == "load":
            return await self.start()
        if self._failed_step == "submit" and self._pending is not None:
            await self._dispatch()
        else:
            self._present()
        return self.state

    async def skip(self) -> SessionState:
        """Move past the current item without grading it."""
        if not isinstance(self.state, (Ready, Error)) or self._failed_step == "load":
            return self.state
        step = len(self._current.cards) if self._current is not None else 1
        logger.info("Skipping %d card(s) at position %d", step, self.position)
        self._pending = None
        self.position += step
        await self._next()
        return self.state
