from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class VocabularyKind(str, Enum):
    WORD = "word"
    PHRASE = "phrase"


class VocabularyCreate(BaseModel):
    book_id: str
    term: str = Field(min_length=1)
    translation: str = Field(min_length=1)
    context: str = ""
    kind: VocabularyKind | None = None  # inferred from word count when omitted
    page_number: int | None = None
    position: int | None = None
    epub_location: str | None = None


class VocabularyUpdate(BaseModel):
    is_known: bool


class VocabularyItem(BaseModel):
    id: str
    owner_id: str
    book_id: str
    term: str
    term_normalized: str
    translation: str
    context: str
    kind: VocabularyKind = VocabularyKind.WORD
    is_known: bool = False
    page_number: int | None = None
    position: int | None = None
    epub_location: str | None = None
    created_at: datetime


class VocabularyList(BaseModel):
    items: list[VocabularyItem]
    total: int
