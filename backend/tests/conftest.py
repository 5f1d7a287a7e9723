"""Pytest fixtures: a fresh SQLite file per test, no shared state."""
import logging
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from vocabdrill import app
from vocabdrill.config import settings
from vocabdrill.db import init_all_databases
from vocabdrill.db.sqlite import connect
from vocabdrill.models.flashcard import DueCard, Flashcard
from vocabdrill.models.vocabulary import VocabularyItem, VocabularyKind
from vocabdrill.services.normalization import normalize_term

logging.getLogger("vocabdrill").setLevel(logging.DEBUG)

OWNER = "user-1"
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "data_dir", tmp_path)
    return tmp_path


@pytest.fixture
async def db(data_dir, anyio_backend):
    await init_all_databases(data_dir)
    async with connect() as conn:
        yield conn


@pytest.fixture
def client(data_dir):
    with TestClient(app, headers={"X-User-Id": OWNER}) as c:
        yield c


def make_item(
    term: str,
    translation: str,
    book_id: str = "book-1",
    kind: VocabularyKind = VocabularyKind.WORD,
    context: str | None = None,
    page_number: int | None = None,
    item_id: str | None = None,
) -> VocabularyItem:
    return VocabularyItem(
        id=item_id or f"v-{term}",
        owner_id=OWNER,
        book_id=book_id,
        term=term,
        term_normalized=normalize_term(term),
        translation=translation,
        context=context if context is not None else f"Ayer vi {term} en la calle.",
        kind=kind,
        page_number=page_number,
        created_at=NOW,
    )


def make_due_card(item: VocabularyItem, repetitions: int = 0) -> DueCard:
    return DueCard(
        flashcard=Flashcard(
            id=f"f-{item.id}",
            owner_id=item.owner_id,
            vocabulary_id=item.id,
            ease_factor=2.5,
            interval=1,
            repetitions=repetitions,
            due_at=NOW,
            last_reviewed_at=None,
            created_at=NOW,
        ),
        vocabulary=item,
    )
