import logging

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException

from vocabdrill.db.sqlite import (
    create_vocabulary,
    get_db,
    get_vocabulary,
    list_vocabulary,
    set_vocabulary_known,
)
from vocabdrill.models.vocabulary import (
    VocabularyCreate,
    VocabularyItem,
    VocabularyList,
    VocabularyUpdate,
)
from vocabdrill.routers.deps import get_owner_id

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=VocabularyItem, status_code=201)
async def create_item(
    body: VocabularyCreate,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
):
    if not body.term.strip() or not body.translation.strip():
        raise HTTPException(status_code=422, detail="term and translation must not be blank")
    try:
        item = await create_vocabulary(db, owner_id, body)
    except aiosqlite.Error as e:
        logger.warning("Failed to save vocabulary %r: %s", body.term, e)
        raise HTTPException(status_code=503, detail="Failed to save vocabulary") from e
    logger.info("Saved vocabulary %s (%s) for %s", item.id, item.kind.value, owner_id)
    return item


@router.get("/", response_model=VocabularyList)
async def list_items(
    book_id: str | None = None,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
):
    items = await list_vocabulary(db, owner_id, book_id)
    return VocabularyList(items=items, total=len(items))


@router.get("/{vocab_id}", response_model=VocabularyItem)
async def get_item(
    vocab_id: str,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
):
    item = await get_vocabulary(db, owner_id, vocab_id)
    if not item:
        raise HTTPException(status_code=404, detail="Vocabulary item not found")
    return item


@router.patch("/{vocab_id}", response_model=VocabularyItem)
async def update_item(
    vocab_id: str,
    body: VocabularyUpdate,
    owner_id: str = Depends(get_owner_id),
    db: aiosqlite.Connection = Depends(get_db),
):
    item = await set_vocabulary_known(db, owner_id, vocab_id, body.is_known)
    if not item:
        raise HTTPException(status_code=404, detail="Vocabulary item not found")
    return item
