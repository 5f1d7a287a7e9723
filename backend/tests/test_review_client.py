import httpx
import pytest

from conftest import OWNER
from vocabdrill import app
from vocabdrill.db.sqlite import create_vocabulary
from vocabdrill.errors import (
    GenerationFailure,
    NotFoundError,
    PersistenceFailure,
    SessionConflictError,
    ValidationError,
)
from vocabdrill.models.review import GradeRequest
from vocabdrill.models.vocabulary import VocabularyCreate
from vocabdrill.services.review_client import HttpReviewClient, error_from_response

pytestmark = pytest.mark.anyio


def response(status_code, json=None, text=None):
    return httpx.Response(status_code, json=json, text=text)


def test_not_found_carries_missing_ids():
    error = error_from_response(response(404, {"detail": {"message": "gone", "missing": ["f1"]}}))
    assert isinstance(error, NotFoundError)
    assert error.missing_ids == ["f1"]


def test_conflict_carries_conflicting_ids():
    error = error_from_response(response(409, {"detail": {"message": "stale", "conflicts": ["f2"]}}))
    assert isinstance(error, SessionConflictError)
    assert error.conflicting_ids == ["f2"]


def test_request_validation_errors():
    body = {"detail": [{"loc": ["body", "quality"], "msg": "too big"}]}
    assert isinstance(error_from_response(response(422, body)), ValidationError)


def test_server_errors():
    generation = error_from_response(
        response(503, {"detail": {"message": "no exercise", "code": "generation_failure"}})
    )
    assert isinstance(generation, GenerationFailure)
    assert isinstance(error_from_response(response(500, text="boom")), PersistenceFailure)
    assert error_from_response(response(502, text="bad gateway")).retryable is True


async def test_transport_errors_are_persistence_failures():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with HttpReviewClient("http://test", OWNER, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(PersistenceFailure):
            await client.fetch_due()


async def test_sends_owner_header():
    seen = {}

    def handler(request):
        seen["owner"] = request.headers["X-User-Id"]
        return httpx.Response(409, json={"detail": {"message": "stale", "conflicts": ["f1"]}})

    async with HttpReviewClient("http://test", OWNER, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SessionConflictError):
            await client.grade(GradeRequest(attempt_id="a-1", flashcard_id="f1", quality=3))
    assert seen["owner"] == OWNER


async def test_round_trip_against_the_app(db):
    await create_vocabulary(db, OWNER, VocabularyCreate(book_id="b", term="casa", translation="house"))
    transport = httpx.ASGITransport(app=app)

    async with HttpReviewClient("http://test", OWNER, transport=transport) as client:
        feed = await client.fetch_due()
        assert feed.total == 1
        assert [i.term for i in await client.fetch_pool()] == ["casa"]

        request = GradeRequest(
            attempt_id="a-1",
            flashcard_id=feed.items[0].flashcard.id,
            quality=5,
            session_started_at=feed.fetched_at,
        )
        first = await client.grade(request)
        second = await client.grade(request)
        assert first.replayed is False
        assert second.replayed is True
        assert second.state.repetitions == 1

        with pytest.raises(NotFoundError) as exc_info:
            await client.grade(GradeRequest(attempt_id="a-2", flashcard_id="nope", quality=3))
        assert exc_info.value.missing_ids == ["nope"]
