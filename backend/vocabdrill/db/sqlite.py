import json
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from vocabdrill.config import settings
from vocabdrill.models.flashcard import DueCard, Flashcard
from vocabdrill.models.review import (
    DayActivity,
    ExerciseTypeStat,
    HardWord,
    ReviewStats,
)
from vocabdrill.models.vocabulary import VocabularyCreate, VocabularyItem, VocabularyKind
from vocabdrill.services.normalization import normalize_term
from vocabdrill.services.scheduler import SchedulingState, new_state

_db_path: Path | None = None

SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS vocabulary (
    id              TEXT PRIMARY KEY,
    owner_id        TEXT NOT NULL,
    book_id         TEXT NOT NULL,
    term            TEXT NOT NULL,
    term_normalized TEXT NOT NULL,
    translation     TEXT NOT NULL,
    context         TEXT NOT NULL,
    kind            TEXT NOT NULL DEFAULT 'word',
    is_known        INTEGER NOT NULL DEFAULT 0,
    page_number     INTEGER,
    position        INTEGER,
    epub_location   TEXT,
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_vocabulary_owner ON vocabulary(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_vocabulary_book ON vocabulary(owner_id, book_id);

CREATE TABLE IF NOT EXISTS flashcards (
    id               TEXT PRIMARY KEY,
    owner_id         TEXT NOT NULL,
    vocabulary_id    TEXT NOT NULL UNIQUE REFERENCES vocabulary(id),
    ease_factor      REAL NOT NULL DEFAULT 2.5,
    interval         INTEGER NOT NULL DEFAULT 1,
    repetitions      INTEGER NOT NULL DEFAULT 0,
    due_at           TEXT NOT NULL,
    last_reviewed_at TEXT,
    created_at       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_flashcards_due ON flashcards(owner_id, due_at, last_reviewed_at);

CREATE TABLE IF NOT EXISTS review_attempts (
    attempt_id       TEXT PRIMARY KEY,
    owner_id         TEXT NOT NULL,
    flashcard_id     TEXT NOT NULL REFERENCES flashcards(id),
    vocabulary_id    TEXT NOT NULL REFERENCES vocabulary(id),
    session_id       TEXT,
    quality          INTEGER NOT NULL,
    response_ms      INTEGER,
    exercise_type    TEXT,
    prev_ease_factor REAL NOT NULL,
    prev_interval    INTEGER NOT NULL,
    prev_repetitions INTEGER NOT NULL,
    new_ease_factor  REAL NOT NULL,
    new_interval     INTEGER NOT NULL,
    new_repetitions  INTEGER NOT NULL,
    due_at           TEXT NOT NULL,
    created_at       TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_attempts_owner_time ON review_attempts(owner_id, created_at);
CREATE INDEX IF NOT EXISTS idx_attempts_vocabulary ON review_attempts(vocabulary_id);

CREATE TABLE IF NOT EXISTS review_batches (
    batch_id     TEXT PRIMARY KEY,
    owner_id     TEXT NOT NULL,
    results_json TEXT NOT NULL,
    created_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_batches_time ON review_batches(created_at);

CREATE TABLE IF NOT EXISTS schema_version (
    version    INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);
INSERT OR IGNORE INTO schema_version(version) VALUES (1);
"""

FLASHCARD_COLUMNS = (
    "id",
    "owner_id",
    "vocabulary_id",
    "ease_factor",
    "interval",
    "repetitions",
    "due_at",
    "last_reviewed_at",
    "created_at",
)

VOCABULARY_COLUMNS = (
    "id",
    "owner_id",
    "book_id",
    "term",
    "term_normalized",
    "translation",
    "context",
    "kind",
    "is_known",
    "page_number",
    "position",
    "epub_location",
    "created_at",
)


async def init_sqlite(data_dir: Path) -> None:
    global _db_path
    _db_path = data_dir / settings.sqlite_filename
    async with aiosqlite.connect(_db_path) as db:
        await db.executescript(SCHEMA_SQL)
        await db.commit()


def _connect(path: Path) -> aiosqlite.Connection:
    # Autocommit mode: multi-statement writes go through transaction()
    return aiosqlite.connect(
        path,
        isolation_level=None,
        timeout=settings.transaction_timeout_seconds,
    )


@asynccontextmanager
async def connect() -> AsyncIterator[aiosqlite.Connection]:
    assert _db_path is not None, "SQLite not initialized"
    async with _connect(_db_path) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys=ON")
        yield db


async def get_db() -> AsyncIterator[aiosqlite.Connection]:
    async with connect() as db:
        yield db


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """BEGIN IMMEDIATE ... COMMIT; takes the write lock up front so reads inside are stable."""
    await db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        await db.rollback()
        raise
    else:
        await db.commit()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="microseconds")


def _select(alias: str, columns: tuple[str, ...]) -> str:
    return ", ".join(f"{alias}.{c} AS {alias}_{c}" for c in columns)


def _unprefix(row: aiosqlite.Row, alias: str, columns: tuple[str, ...]) -> dict:
    return {c: row[f"{alias}_{c}"] for c in columns}


def _row_to_vocabulary(row: aiosqlite.Row | dict) -> VocabularyItem:
    return VocabularyItem(**dict(row))


def _row_to_flashcard(row: aiosqlite.Row | dict) -> Flashcard:
    return Flashcard(**dict(row))


def flashcard_state(card: Flashcard) -> SchedulingState:
    return SchedulingState(
        ease_factor=card.ease_factor,
        interval=card.interval,
        repetitions=card.repetitions,
        due_at=card.due_at,
        last_reviewed_at=card.last_reviewed_at,
    )


# --- Vocabulary ---


def infer_kind(term: str) -> VocabularyKind:
    word_count = len(normalize_term(term).split())
    return VocabularyKind.PHRASE if 2 <= word_count <= 6 else VocabularyKind.WORD


async def create_vocabulary(
    db: aiosqlite.Connection,
    owner_id: str,
    body: VocabularyCreate,
    now: datetime | None = None,
) -> VocabularyItem:
    """Insert a vocabulary item and its flashcard atomically. The card is due now."""
    now = now or utcnow()
    term = body.term.strip()
    context = body.context.strip() or term
    kind = body.kind or infer_kind(term)
    vocab_id = str(uuid.uuid4())
    state = new_state(now)

    async with transaction(db):
        await db.execute(
            """INSERT INTO vocabulary
               (id, owner_id, book_id, term, term_normalized, translation, context,
                kind, is_known, page_number, position, epub_location, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
            (
                vocab_id,
                owner_id,
                body.book_id,
                term,
                normalize_term(term),
                body.translation.strip(),
                context,
                kind.value,
                body.page_number,
                body.position,
                body.epub_location,
                to_iso(now),
            ),
        )
        await db.execute(
            """INSERT INTO flashcards
               (id, owner_id, vocabulary_id, ease_factor, interval, repetitions,
                due_at, last_reviewed_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)""",
            (
                str(uuid.uuid4()),
                owner_id,
                vocab_id,
                state.ease_factor,
                state.interval,
                state.repetitions,
                to_iso(now),
                to_iso(now),
            ),
        )
    return await get_vocabulary(db, owner_id, vocab_id)  # type: ignore[return-value]


async def get_vocabulary(
    db: aiosqlite.Connection, owner_id: str, vocab_id: str
) -> VocabularyItem | None:
    cursor = await db.execute(
        "SELECT * FROM vocabulary WHERE id = ? AND owner_id = ?", (vocab_id, owner_id)
    )
    row = await cursor.fetchone()
    return _row_to_vocabulary(row) if row else None


async def list_vocabulary(
    db: aiosqlite.Connection, owner_id: str, book_id: str | None = None
) -> list[VocabularyItem]:
    """The user's full vocabulary pool, newest first."""
    if book_id:
        cursor = await db.execute(
            "SELECT * FROM vocabulary WHERE owner_id = ? AND book_id = ? ORDER BY created_at DESC",
            (owner_id, book_id),
        )
    else:
        cursor = await db.execute(
            "SELECT * FROM vocabulary WHERE owner_id = ? ORDER BY created_at DESC",
            (owner_id,),
        )
    rows = await cursor.fetchall()
    return [_row_to_vocabulary(r) for r in rows]


async def set_vocabulary_known(
    db: aiosqlite.Connection, owner_id: str, vocab_id: str, is_known: bool
) -> VocabularyItem | None:
    cursor = await db.execute(
        "UPDATE vocabulary SET is_known = ? WHERE id = ? AND owner_id = ?",
        (int(is_known), vocab_id, owner_id),
    )
    if (cursor.rowcount or 0) == 0:
        return None
    return await get_vocabulary(db, owner_id, vocab_id)


# --- Flashcards ---


async def get_flashcard(
    db: aiosqlite.Connection, owner_id: str, card_id: str
) -> Flashcard | None:
    cursor = await db.execute(
        "SELECT * FROM flashcards WHERE id = ? AND owner_id = ?", (card_id, owner_id)
    )
    row = await cursor.fetchone()
    return _row_to_flashcard(row) if row else None


async def get_flashcards(
    db: aiosqlite.Connection, owner_id: str, card_ids: list[str]
) -> dict[str, Flashcard]:
    if not card_ids:
        return {}
    placeholders = ", ".join("?" for _ in card_ids)
    cursor = await db.execute(
        f"SELECT * FROM flashcards WHERE owner_id = ? AND id IN ({placeholders})",  # noqa: S608
        [owner_id, *card_ids],
    )
    rows = await cursor.fetchall()
    cards = [_row_to_flashcard(r) for r in rows]
    return {card.id: card for card in cards}


async def get_flashcard_by_vocabulary(
    db: aiosqlite.Connection, owner_id: str, vocab_id: str
) -> Flashcard | None:
    cursor = await db.execute(
        "SELECT * FROM flashcards WHERE vocabulary_id = ? AND owner_id = ?",
        (vocab_id, owner_id),
    )
    row = await cursor.fetchone()
    return _row_to_flashcard(row) if row else None


async def get_due_cards(
    db: aiosqlite.Connection,
    owner_id: str,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[DueCard]:
    """Cards due at or before now: oldest-overdue first, then least recently seen."""
    now = now or utcnow()
    limit = limit or settings.due_feed_limit
    cursor = await db.execute(
        f"""SELECT {_select("f", FLASHCARD_COLUMNS)}, {_select("v", VOCABULARY_COLUMNS)}
            FROM flashcards f
            JOIN vocabulary v ON v.id = f.vocabulary_id
            WHERE f.owner_id = ? AND f.due_at <= ?
            ORDER BY f.due_at ASC, f.last_reviewed_at ASC
            LIMIT ?""",  # noqa: S608
        (owner_id, to_iso(now), limit),
    )
    rows = await cursor.fetchall()
    return [
        DueCard(
            flashcard=_row_to_flashcard(_unprefix(r, "f", FLASHCARD_COLUMNS)),
            vocabulary=_row_to_vocabulary(_unprefix(r, "v", VOCABULARY_COLUMNS)),
        )
        for r in rows
    ]


async def count_due(db: aiosqlite.Connection, owner_id: str, now: datetime | None = None) -> int:
    now = now or utcnow()
    cursor = await db.execute(
        "SELECT COUNT(*) FROM flashcards WHERE owner_id = ? AND due_at <= ?",
        (owner_id, to_iso(now)),
    )
    row = await cursor.fetchone()
    return row[0] if row else 0


async def update_flashcard_schedule(
    db: aiosqlite.Connection, card_id: str, state: SchedulingState
) -> None:
    assert state.due_at is not None and state.last_reviewed_at is not None
    await db.execute(
        """UPDATE flashcards
           SET ease_factor = ?, interval = ?, repetitions = ?, due_at = ?, last_reviewed_at = ?
           WHERE id = ?""",
        (
            state.ease_factor,
            state.interval,
            state.repetitions,
            to_iso(state.due_at),
            to_iso(state.last_reviewed_at),
            card_id,
        ),
    )


async def reset_flashcard_due(
    db: aiosqlite.Connection, owner_id: str, card_id: str, now: datetime | None = None
) -> bool:
    now = now or utcnow()
    cursor = await db.execute(
        "UPDATE flashcards SET due_at = ? WHERE id = ? AND owner_id = ?",
        (to_iso(now), card_id, owner_id),
    )
    return (cursor.rowcount or 0) > 0


async def count_reviewed(db: aiosqlite.Connection, owner_id: str) -> int:
    cursor = await db.execute(
        "SELECT COUNT(*) FROM flashcards WHERE owner_id = ? AND last_reviewed_at IS NOT NULL",
        (owner_id,),
    )
    row = await cursor.fetchone()
    return row[0] if row else 0


async def reset_recent_flashcards(
    db: aiosqlite.Connection, owner_id: str, limit: int, now: datetime | None = None
) -> int:
    """Make the `limit` most recently reviewed cards due now."""
    now = now or utcnow()
    cursor = await db.execute(
        """UPDATE flashcards SET due_at = ?
           WHERE id IN (
               SELECT id FROM flashcards
               WHERE owner_id = ? AND last_reviewed_at IS NOT NULL
               ORDER BY last_reviewed_at DESC
               LIMIT ?
           )""",
        (to_iso(now), owner_id, limit),
    )
    return cursor.rowcount or 0


# --- Attempt log ---


async def insert_review_attempt(db: aiosqlite.Connection, attempt: dict) -> bool:
    """Append to the attempt log. Returns False when the attempt id already exists."""
    columns = list(attempt)
    placeholders = ", ".join("?" for _ in columns)
    cursor = await db.execute(
        f"INSERT OR IGNORE INTO review_attempts ({', '.join(columns)}) VALUES ({placeholders})",  # noqa: S608
        list(attempt.values()),
    )
    return (cursor.rowcount or 0) > 0


async def get_review_attempts(
    db: aiosqlite.Connection, owner_id: str, attempt_ids: list[str]
) -> dict[str, dict]:
    if not attempt_ids:
        return {}
    placeholders = ", ".join("?" for _ in attempt_ids)
    cursor = await db.execute(
        f"SELECT * FROM review_attempts WHERE owner_id = ? AND attempt_id IN ({placeholders})",  # noqa: S608
        [owner_id, *attempt_ids],
    )
    rows = await cursor.fetchall()
    return {row["attempt_id"]: dict(row) for row in rows}


async def get_review_attempt(
    db: aiosqlite.Connection, owner_id: str, attempt_id: str
) -> dict | None:
    return (await get_review_attempts(db, owner_id, [attempt_id])).get(attempt_id)


# --- Batch idempotency records ---


async def get_batch_results(
    db: aiosqlite.Connection, owner_id: str, batch_id: str
) -> list[dict] | None:
    cursor = await db.execute(
        "SELECT results_json FROM review_batches WHERE batch_id = ? AND owner_id = ?",
        (batch_id, owner_id),
    )
    row = await cursor.fetchone()
    return json.loads(row[0]) if row else None


async def insert_batch(
    db: aiosqlite.Connection,
    owner_id: str,
    batch_id: str,
    results: list[dict],
    now: datetime | None = None,
) -> None:
    now = now or utcnow()
    await db.execute(
        "INSERT OR IGNORE INTO review_batches (batch_id, owner_id, results_json, created_at) "
        "VALUES (?, ?, ?, ?)",
        (batch_id, owner_id, json.dumps(results), to_iso(now)),
    )


async def delete_batches_before(db: aiosqlite.Connection, cutoff: datetime) -> int:
    cursor = await db.execute(
        "DELETE FROM review_batches WHERE created_at < ?", (to_iso(cutoff),)
    )
    return cursor.rowcount or 0


# --- Stats ---


def _current_streak(active_days: list[str], today: date) -> int:
    """Consecutive days with at least one review, counting back from today."""
    streak = 0
    expected = today
    for day in active_days:  # newest first
        if date.fromisoformat(day) != expected:
            break
        streak += 1
        expected -= timedelta(days=1)
    return streak


async def get_review_stats(
    db: aiosqlite.Connection,
    owner_id: str,
    days: int = 30,
    now: datetime | None = None,
) -> ReviewStats:
    now = now or utcnow()
    since = now - timedelta(days=days)
    params = (owner_id, to_iso(since))

    cursor = await db.execute(
        """SELECT COUNT(*),
                  SUM(CASE WHEN quality >= 4 THEN 1 ELSE 0 END),
                  AVG(response_ms)
           FROM review_attempts WHERE owner_id = ? AND created_at >= ?""",
        params,
    )
    total, successes, avg_ms = await cursor.fetchone()
    total = total or 0
    successes = successes or 0

    cursor = await db.execute(
        """SELECT a.vocabulary_id, v.term, v.translation,
                  AVG(a.quality) AS avg_quality, COUNT(*) AS attempt_count
           FROM review_attempts a
           JOIN vocabulary v ON v.id = a.vocabulary_id
           WHERE a.owner_id = ? AND a.created_at >= ?
           GROUP BY a.vocabulary_id
           HAVING COUNT(*) >= 3
           ORDER BY avg_quality ASC
           LIMIT 10""",
        params,
    )
    hardest = [
        HardWord(
            vocabulary_id=r["vocabulary_id"],
            term=r["term"],
            translation=r["translation"],
            avg_quality=round(r["avg_quality"], 1),
            attempt_count=r["attempt_count"],
        )
        for r in await cursor.fetchall()
    ]

    cursor = await db.execute(
        """SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS n
           FROM review_attempts WHERE owner_id = ? AND created_at >= ?
           GROUP BY day ORDER BY day""",
        params,
    )
    activity = [DayActivity(date=r["day"], count=r["n"]) for r in await cursor.fetchall()]

    cursor = await db.execute(
        """SELECT exercise_type, COUNT(*) AS n, AVG(quality) AS avg_quality
           FROM review_attempts
           WHERE owner_id = ? AND created_at >= ? AND exercise_type IS NOT NULL
           GROUP BY exercise_type""",
        params,
    )
    exercise_types = [
        ExerciseTypeStat(type=r["exercise_type"], count=r["n"], avg_quality=round(r["avg_quality"], 1))
        for r in await cursor.fetchall()
    ]

    cursor = await db.execute(
        """SELECT DISTINCT substr(created_at, 1, 10) AS day
           FROM review_attempts WHERE owner_id = ? ORDER BY day DESC""",
        (owner_id,),
    )
    active_days = [r["day"] for r in await cursor.fetchall()]

    return ReviewStats(
        days=days,
        since=since,
        total_attempts=total,
        success_count=successes,
        success_rate=round(successes / total * 100, 1) if total else 0.0,
        current_streak=_current_streak(active_days, as_utc(now).date()),
        avg_response_ms=round(avg_ms) if avg_ms is not None else None,
        hardest_words=hardest,
        activity_by_day=activity,
        exercise_types=exercise_types,
    )
