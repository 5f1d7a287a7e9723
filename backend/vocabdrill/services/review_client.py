"""
Grading API boundary used by the review session.

LocalReviewClient talks to the store in-process; HttpReviewClient talks to a
running backend and maps HTTP status codes back onto vocabdrill.errors.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from vocabdrill.db.sqlite import connect, count_due, get_due_cards, list_vocabulary, utcnow
from vocabdrill.errors import (
    GenerationFailure,
    NotFoundError,
    PersistenceFailure,
    ReviewError,
    SessionConflictError,
    ValidationError,
)
from vocabdrill.models.flashcard import DueFeed
from vocabdrill.models.review import (
    BatchGradeRequest,
    BatchGradeResult,
    GradeRequest,
    GradeResult,
)
from vocabdrill.models.vocabulary import VocabularyItem, VocabularyList
from vocabdrill.services import grading

logger = logging.getLogger(__name__)


class ReviewClient(Protocol):
    async def fetch_due(self) -> DueFeed: ...

    async def fetch_pool(self) -> list[VocabularyItem]: ...

    async def grade(self, request: GradeRequest) -> GradeResult: ...

    async def grade_batch(self, request: BatchGradeRequest) -> BatchGradeResult: ...


class LocalReviewClient:
    """In-process client; one connection per call, like one HTTP request."""

    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id

    async def fetch_due(self) -> DueFeed:
        now = utcnow()
        async with connect() as db:
            items = await get_due_cards(db, self.owner_id, now)
            total = await count_due(db, self.owner_id, now)
        return DueFeed(items=items, total=total, fetched_at=now)

    async def fetch_pool(self) -> list[VocabularyItem]:
        async with connect() as db:
            return await list_vocabulary(db, self.owner_id)

    async def grade(self, request: GradeRequest) -> GradeResult:
        async with connect() as db:
            return await grading.grade_single(db, self.owner_id, request)

    async def grade_batch(self, request: BatchGradeRequest) -> BatchGradeResult:
        async with connect() as db:
            return await grading.grade_batch(db, self.owner_id, request)


def _message(detail: Any, default: str) -> str:
    if isinstance(detail, dict):
        return str(detail.get("message", default))
    if isinstance(detail, str):
        return detail
    return default


def error_from_response(res: httpx.Response) -> ReviewError:
    try:
        body = res.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else res.text
    ids_from = detail if isinstance(detail, dict) else {}

    if res.status_code == 404:
        return NotFoundError(ids_from.get("missing", []), _message(detail, "Flashcard not found"))
    if res.status_code == 409:
        return SessionConflictError(ids_from.get("conflicts", []))
    if res.status_code in (400, 422):
        return ValidationError(_message(detail, "Invalid request"))
    if res.status_code == 503 and ids_from.get("code") == "generation_failure":
        return GenerationFailure(_message(detail, "Exercise generation failed"))
    if res.status_code >= 500:
        return PersistenceFailure(_message(detail, f"Server error {res.status_code}"))
    return ValidationError(_message(detail, f"Unexpected status {res.status_code}"))


class HttpReviewClient:
    def __init__(
        self,
        base_url: str,
        owner_id: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"X-User-Id": owner_id},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> HttpReviewClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            res = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            # Timeouts and connection errors: the request may or may not have
            # landed, resending with the same key is safe
            logger.warning("%s %s failed: %s", method, url, e)
            raise PersistenceFailure(f"Review service unreachable: {e}") from e
        if res.status_code >= 400:
            raise error_from_response(res)
        return res.json()

    async def fetch_due(self) -> DueFeed:
        return DueFeed.model_validate(await self._request("GET", "/review/due"))

    async def fetch_pool(self) -> list[VocabularyItem]:
        data = await self._request("GET", "/vocabulary/")
        return VocabularyList.model_validate(data).items

    async def grade(self, request: GradeRequest) -> GradeResult:
        data = await self._request("POST", "/review/grade", json=request.model_dump(mode="json"))
        return GradeResult.model_validate(data)

    async def grade_batch(self, request: BatchGradeRequest) -> BatchGradeResult:
        data = await self._request(
            "POST", "/review/grade/batch", json=request.model_dump(mode="json")
        )
        return BatchGradeResult.model_validate(data)
