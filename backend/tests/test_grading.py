import asyncio
import sqlite3
from datetime import timedelta

import pytest

from conftest import NOW, OWNER
from vocabdrill.db.sqlite import (
    connect,
    create_vocabulary,
    get_flashcard,
    get_flashcard_by_vocabulary,
)
from vocabdrill.errors import (
    NotFoundError,
    PersistenceFailure,
    SessionConflictError,
    ValidationError,
)
from vocabdrill.models.review import BatchGradeItem, BatchGradeRequest, GradeRequest
from vocabdrill.models.vocabulary import VocabularyCreate
from vocabdrill.services import grading

pytestmark = pytest.mark.anyio


async def add_card(db, term, translation="x", owner_id=OWNER):
    item = await create_vocabulary(
        db, owner_id, VocabularyCreate(book_id="book-1", term=term, translation=translation), NOW
    )
    return await get_flashcard_by_vocabulary(db, owner_id, item.id)


async def count_attempts(db):
    cursor = await db.execute("SELECT COUNT(*) FROM review_attempts")
    return (await cursor.fetchone())[0]


def grade_request(card, attempt_id="a-1", quality=4, session_started_at=None):
    return GradeRequest(
        attempt_id=attempt_id,
        flashcard_id=card.id,
        quality=quality,
        session_started_at=session_started_at,
    )


def batch_request(cards, batch_id="b-1", quality=4, session_started_at=NOW):
    return BatchGradeRequest(
        batch_id=batch_id,
        session_started_at=session_started_at,
        items=[BatchGradeItem(flashcard_id=c.id, quality=quality) for c in cards],
    )


class TestGradeSingle:
    async def test_applies_scheduler_and_logs_attempt(self, db):
        card = await add_card(db, "casa", "house")
        now = NOW + timedelta(minutes=1)

        result = await grading.grade_single(db, OWNER, grade_request(card), now)

        assert result.replayed is False
        assert result.state.repetitions == 1
        assert result.state.interval == 1
        assert result.state.due_at == now + timedelta(days=1)
        stored = await get_flashcard(db, OWNER, card.id)
        assert stored.repetitions == 1
        assert stored.last_reviewed_at == now
        assert await count_attempts(db) == 1

    async def test_same_attempt_id_is_applied_once(self, db):
        card = await add_card(db, "casa")
        first = await grading.grade_single(db, OWNER, grade_request(card), NOW)
        second = await grading.grade_single(
            db, OWNER, grade_request(card), NOW + timedelta(hours=1)
        )

        assert second.replayed is True
        assert second.state == first.state
        stored = await get_flashcard(db, OWNER, card.id)
        assert stored.repetitions == 1
        assert await count_attempts(db) == 1

    async def test_concurrent_duplicates_apply_once(self, db):
        card = await add_card(db, "casa")
        request = grade_request(card, attempt_id="dup")

        async with connect() as other:
            results = await asyncio.gather(
                grading.grade_single(db, OWNER, request, NOW),
                grading.grade_single(other, OWNER, request, NOW),
            )

        assert sorted(r.replayed for r in results) == [False, True]
        assert results[0].state == results[1].state
        stored = await get_flashcard(db, OWNER, card.id)
        assert stored.repetitions == 1
        assert await count_attempts(db) == 1

    async def test_unknown_card(self, db):
        card = await add_card(db, "casa")
        request = GradeRequest(attempt_id="a-1", flashcard_id="nope", quality=3)
        with pytest.raises(NotFoundError) as exc_info:
            await grading.grade_single(db, OWNER, request, NOW)
        assert exc_info.value.missing_ids == ["nope"]
        assert (await get_flashcard(db, OWNER, card.id)).repetitions == 0

    async def test_other_owners_card_is_not_found(self, db):
        card = await add_card(db, "casa", owner_id="someone-else")
        with pytest.raises(NotFoundError):
            await grading.grade_single(db, OWNER, grade_request(card), NOW)

    async def test_card_graded_after_session_start_conflicts(self, db):
        card = await add_card(db, "casa")
        await grading.grade_single(
            db, OWNER, grade_request(card, "a-1", session_started_at=NOW), NOW + timedelta(minutes=1)
        )

        with pytest.raises(SessionConflictError) as exc_info:
            await grading.grade_single(
                db,
                OWNER,
                grade_request(card, "a-2", session_started_at=NOW),
                NOW + timedelta(minutes=2),
            )
        assert exc_info.value.conflicting_ids == [card.id]
        assert (await get_flashcard(db, OWNER, card.id)).repetitions == 1

    async def test_later_session_does_not_conflict(self, db):
        card = await add_card(db, "casa")
        await grading.grade_single(db, OWNER, grade_request(card, "a-1"), NOW)
        later = NOW + timedelta(minutes=5)
        result = await grading.grade_single(
            db, OWNER, grade_request(card, "a-2", session_started_at=later), later
        )
        assert result.state.repetitions == 2

    async def test_lapse(self, db):
        card = await add_card(db, "casa")
        await grading.grade_single(db, OWNER, grade_request(card, "a-1", 5), NOW)
        result = await grading.grade_single(db, OWNER, grade_request(card, "a-2", 1), NOW)
        assert result.state.repetitions == 0
        assert result.state.interval == 1

    async def test_out_of_range_quality_is_rejected_before_persisting(self, db):
        card = await add_card(db, "casa")
        request = GradeRequest.model_construct(attempt_id="a-1", flashcard_id=card.id, quality=6)
        with pytest.raises(ValidationError):
            await grading.grade_single(db, OWNER, request, NOW)
        assert await count_attempts(db) == 0

    async def test_storage_error_rolls_back_and_can_be_resent(self, db, monkeypatch):
        card = await add_card(db, "casa")

        async def broken(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(grading, "update_flashcard_schedule", broken)
        with pytest.raises(PersistenceFailure) as exc_info:
            await grading.grade_single(db, OWNER, grade_request(card), NOW)
        assert exc_info.value.retryable is True
        assert await count_attempts(db) == 0

        monkeypatch.undo()
        result = await grading.grade_single(db, OWNER, grade_request(card), NOW)
        assert result.replayed is False
        assert result.state.repetitions == 1


class TestGradeBatch:
    async def test_grades_all_cards(self, db):
        cards = [await add_card(db, t) for t in ("uno", "dos", "tres")]
        result = await grading.grade_batch(db, OWNER, batch_request(cards), NOW)

        assert result.replayed is False
        assert [r.flashcard_id for r in result.results] == [c.id for c in cards]
        for card in cards:
            assert (await get_flashcard(db, OWNER, card.id)).repetitions == 1
        assert await count_attempts(db) == 3
        # Graded cards are due tomorrow
        assert result.next_due_count == 0

    async def test_repeated_batch_id_replays(self, db):
        cards = [await add_card(db, t) for t in ("uno", "dos")]
        first = await grading.grade_batch(db, OWNER, batch_request(cards), NOW)
        second = await grading.grade_batch(db, OWNER, batch_request(cards), NOW)

        assert second.replayed is True
        assert [r.state for r in second.results] == [r.state for r in first.results]
        for card in cards:
            assert (await get_flashcard(db, OWNER, card.id)).repetitions == 1
        assert await count_attempts(db) == 2

    async def test_replay_survives_batch_record_sweep(self, db):
        cards = [await add_card(db, t) for t in ("uno", "dos")]
        first = await grading.grade_batch(db, OWNER, batch_request(cards), NOW)
        swept = await grading.sweep_batches(db, NOW + timedelta(hours=25))
        assert swept == 1

        second = await grading.grade_batch(db, OWNER, batch_request(cards), NOW + timedelta(hours=25))
        assert second.replayed is True
        assert [r.state.repetitions for r in second.results] == [1, 1]
        assert [r.state.due_at for r in second.results] == [r.state.due_at for r in first.results]
        assert await count_attempts(db) == 2

    async def test_one_conflict_rejects_the_whole_batch(self, db):
        a, b, c = [await add_card(db, t) for t in ("uno", "dos", "tres")]
        # Another session grades b after our session started
        await grading.grade_single(db, OWNER, grade_request(b, "other"), NOW + timedelta(minutes=1))

        with pytest.raises(SessionConflictError) as exc_info:
            await grading.grade_batch(
                db, OWNER, batch_request([a, b, c], session_started_at=NOW), NOW + timedelta(minutes=2)
            )

        assert exc_info.value.conflicting_ids == [b.id]
        for card in (a, c):
            stored = await get_flashcard(db, OWNER, card.id)
            assert stored.repetitions == 0
            assert stored.last_reviewed_at is None
        assert (await get_flashcard(db, OWNER, b.id)).repetitions == 1
        assert await count_attempts(db) == 1

    async def test_missing_card_rejects_the_whole_batch(self, db):
        a = await add_card(db, "uno")
        request = BatchGradeRequest(
            batch_id="b-1",
            session_started_at=NOW,
            items=[
                BatchGradeItem(flashcard_id=a.id, quality=4),
                BatchGradeItem(flashcard_id="ghost", quality=4),
            ],
        )
        with pytest.raises(NotFoundError) as exc_info:
            await grading.grade_batch(db, OWNER, request, NOW)
        assert exc_info.value.missing_ids == ["ghost"]
        assert (await get_flashcard(db, OWNER, a.id)).repetitions == 0
        assert await count_attempts(db) == 0

    async def test_repeated_card_in_batch_is_invalid(self, db):
        a = await add_card(db, "uno")
        with pytest.raises(ValidationError):
            await grading.grade_batch(db, OWNER, batch_request([a, a]), NOW)

    async def test_failure_partway_aborts_everything(self, db, monkeypatch):
        cards = [await add_card(db, t) for t in ("uno", "dos", "tres")]
        original = grading.update_flashcard_schedule
        calls = []

        async def fail_on_second(db, card_id, state):
            calls.append(card_id)
            if len(calls) == 2:
                raise sqlite3.OperationalError("database is locked")
            await original(db, card_id, state)

        monkeypatch.setattr(grading, "update_flashcard_schedule", fail_on_second)
        with pytest.raises(PersistenceFailure):
            await grading.grade_batch(db, OWNER, batch_request(cards), NOW)

        for card in cards:
            assert (await get_flashcard(db, OWNER, card.id)).repetitions == 0
        assert await count_attempts(db) == 0


class TestResets:
    async def test_reset_single_card(self, db):
        card = await add_card(db, "casa")
        await grading.grade_single(db, OWNER, grade_request(card), NOW)
        later = NOW + timedelta(hours=2)

        reset = await grading.reset_flashcard(db, OWNER, card.id, later)

        assert reset.due_at == later
        assert reset.repetitions == 1
        assert await count_attempts(db) == 1

    async def test_reset_unknown_card(self, db):
        with pytest.raises(NotFoundError):
            await grading.reset_flashcard(db, OWNER, "nope", NOW)

    async def test_reset_storage_error_is_persistence_failure(self, db, monkeypatch):
        card = await add_card(db, "casa")

        async def broken(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(grading, "get_flashcard", broken)
        with pytest.raises(PersistenceFailure) as exc_info:
            await grading.reset_flashcard(db, OWNER, card.id, NOW + timedelta(hours=2))
        assert exc_info.value.retryable is True
        # The due_at update was rolled back with the failed read
        assert (await get_flashcard(db, OWNER, card.id)).due_at == NOW

    async def test_reset_recent_defaults_to_all_reviewed(self, db):
        cards = [await add_card(db, t) for t in ("uno", "dos", "tres")]
        for i, card in enumerate(cards[:2]):
            await grading.grade_single(db, OWNER, grade_request(card, f"a-{i}"), NOW)

        count = await grading.reset_recent(db, OWNER, now=NOW + timedelta(hours=1))

        assert count == 2
        for card in cards[:2]:
            assert (await get_flashcard(db, OWNER, card.id)).due_at == NOW + timedelta(hours=1)

    async def test_reset_recent_takes_most_recent_first(self, db):
        old, new = [await add_card(db, t) for t in ("uno", "dos")]
        await grading.grade_single(db, OWNER, grade_request(old, "a-1"), NOW)
        await grading.grade_single(db, OWNER, grade_request(new, "a-2"), NOW + timedelta(minutes=1))
        reset_at = NOW + timedelta(hours=1)

        assert await grading.reset_recent(db, OWNER, limit=1, now=reset_at) == 1

        assert (await get_flashcard(db, OWNER, new.id)).due_at == reset_at
        assert (await get_flashcard(db, OWNER, old.id)).due_at == NOW + timedelta(days=1)

    async def test_reset_recent_with_nothing_reviewed(self, db):
        await add_card(db, "uno")
        assert await grading.reset_recent(db, OWNER, now=NOW) == 0

    async def test_reset_recent_rejects_non_positive_limit(self, db):
        with pytest.raises(ValidationError):
            await grading.reset_recent(db, OWNER, limit=0, now=NOW)
