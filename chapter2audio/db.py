"""SQLite persistence for books, chapters and audio jobs.

Each operation opens its own connection and closes it straight away, so the
helpers can be called from request handlers and worker threads alike.

Two rules of the job lifecycle are enforced by the schema itself:

* a partial unique index allows at most one ``pending``/``processing``
  job per chapter, even across processes;
* state updates are conditional on the current state
  (``UPDATE ... WHERE id = ? AND status = ?``), so a stale writer
  cannot move a job backwards.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from chapter2audio.models import (
    Book,
    Chapter,
    FailureReason,
    JobState,
    SynthesisJob,
    VoiceProfile,
    utcnow,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT,
    voice_preference TEXT NOT NULL DEFAULT 'female',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL REFERENCES books(id),
    title TEXT,
    chapter_order INTEGER NOT NULL DEFAULT 0,
    content TEXT NOT NULL DEFAULT '',
    audio_url TEXT,
    duration_seconds INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chapters_book_id ON chapters(book_id);

CREATE TABLE IF NOT EXISTS audio_jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    chapter_id TEXT NOT NULL REFERENCES chapters(id),
    user_id TEXT NOT NULL,
    voice TEXT NOT NULL,
    status TEXT NOT NULL
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    audio_url TEXT,
    duration_seconds INTEGER,
    failure_reason TEXT,
    error_message TEXT,
    request_key TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audio_jobs_chapter_id ON audio_jobs(chapter_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_audio_jobs_live
    ON audio_jobs(chapter_id) WHERE status IN ('pending', 'processing');
CREATE UNIQUE INDEX IF NOT EXISTS idx_audio_jobs_request_key
    ON audio_jobs(chapter_id, request_key) WHERE request_key IS NOT NULL;
"""

_STATE_RANK = {
    JobState.PENDING: 0,
    JobState.PROCESSING: 1,
    JobState.COMPLETED: 2,
    JobState.FAILED: 2,
}


class StaleTransitionError(Exception):
    """A conditional job update matched no row."""


class Database:
    """Thin wrapper around an SQLite file."""

    def __init__(self, path):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on any exception."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init(self) -> None:
        """Create tables and indices; safe to call repeatedly."""
        conn = self.connect()
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()
        logger.debug("Database pronto: %s", self.path)

    # --- books & chapters ---

    def insert_book(self, book: Book) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO books(id, owner_id, title, voice_preference, created_at)"
                " VALUES (?, ?, ?, ?, ?)",
                (book.id, book.owner_id, book.title, book.voice_preference.value, utcnow()),
            )

    def get_book(self, book_id: str) -> Optional[Book]:
        row = self._fetchone("SELECT * FROM books WHERE id = ?", (book_id,))
        if not row:
            return None
        return Book(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"] or "",
            voice_preference=VoiceProfile.parse(row["voice_preference"]),
        )

    def update_book_voice(self, book_id: str, voice: VoiceProfile) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE books SET voice_preference = ? WHERE id = ?",
                (voice.value, book_id),
            )
            return cur.rowcount > 0

    def insert_chapter(self, chapter: Chapter) -> None:
        now = utcnow()
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO chapters(id, book_id, title, chapter_order, content,"
                " audio_url, duration_seconds, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    chapter.id, chapter.book_id, chapter.title, chapter.order,
                    chapter.content, chapter.audio_url, chapter.duration_seconds,
                    now, now,
                ),
            )

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        row = self._fetchone("SELECT * FROM chapters WHERE id = ?", (chapter_id,))
        return _row_to_chapter(row) if row else None

    def list_chapters(self, book_id: str) -> list[Chapter]:
        rows = self._fetchall(
            "SELECT * FROM chapters WHERE book_id = ? ORDER BY chapter_order ASC",
            (book_id,),
        )
        return [_row_to_chapter(r) for r in rows]

    # --- audio jobs ---

    def insert_job(self, job: SynthesisJob) -> SynthesisJob:
        """Insert a new job and return it with its sequence filled in.

        Raises:
            sqlite3.IntegrityError: If a live job already exists for the chapter.
        """
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO audio_jobs(id, chapter_id, user_id, voice, status,"
                " request_key, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.id, job.chapter_id, job.user_id, job.voice.value,
                    job.state.value, job.request_key, job.created_at, job.created_at,
                ),
            )
        return self.get_job(job.id)

    def get_job(self, job_id: str) -> Optional[SynthesisJob]:
        row = self._fetchone("SELECT * FROM audio_jobs WHERE id = ?", (job_id,))
        return _row_to_job(row) if row else None

    def latest_job(self, chapter_id: str) -> Optional[SynthesisJob]:
        row = self._fetchone(
            "SELECT * FROM audio_jobs WHERE chapter_id = ? ORDER BY seq DESC LIMIT 1",
            (chapter_id,),
        )
        return _row_to_job(row) if row else None

    def live_job(self, chapter_id: str) -> Optional[SynthesisJob]:
        row = self._fetchone(
            "SELECT * FROM audio_jobs WHERE chapter_id = ?"
            " AND status IN ('pending', 'processing') LIMIT 1",
            (chapter_id,),
        )
        return _row_to_job(row) if row else None

    def jobs_for_chapter(self, chapter_id: str) -> list[SynthesisJob]:
        rows = self._fetchall(
            "SELECT * FROM audio_jobs WHERE chapter_id = ? ORDER BY seq DESC",
            (chapter_id,),
        )
        return [_row_to_job(r) for r in rows]

    def find_job_by_request_key(self, chapter_id: str, request_key: str) -> Optional[SynthesisJob]:
        row = self._fetchone(
            "SELECT * FROM audio_jobs WHERE chapter_id = ? AND request_key = ?",
            (chapter_id, request_key),
        )
        return _row_to_job(row) if row else None

    def mark_processing(self, job_id: str) -> None:
        now = utcnow()
        with self.transaction() as conn:
            self._guarded_update(
                conn, job_id, JobState.PENDING,
                "status = 'processing', started_at = ?, updated_at = ?", (now, now),
            )

    def mark_completed(self, job_id: str, audio_url: str, duration_seconds: int) -> None:
        """Complete the job and update its chapter in a single transaction."""
        now = utcnow()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT chapter_id FROM audio_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise StaleTransitionError(job_id)
            self._guarded_update(
                conn, job_id, JobState.PROCESSING,
                "status = 'completed', audio_url = ?, duration_seconds = ?,"
                " completed_at = ?, updated_at = ?",
                (audio_url, duration_seconds, now, now),
            )
            conn.execute(
                "UPDATE chapters SET audio_url = ?, duration_seconds = ?, updated_at = ?"
                " WHERE id = ?",
                (audio_url, duration_seconds, now, row["chapter_id"]),
            )

    def mark_failed(self, job_id: str, from_state: JobState, reason: FailureReason,
                    message: str) -> None:
        now = utcnow()
        with self.transaction() as conn:
            self._guarded_update(
                conn, job_id, from_state,
                "status = 'failed', failure_reason = ?, error_message = ?,"
                " completed_at = ?, updated_at = ?",
                (reason.value, message, now, now),
            )

    # --- helpers ---

    @staticmethod
    def _guarded_update(conn, job_id: str, expected: JobState, set_clause: str,
                        params: tuple) -> None:
        cur = conn.execute(
            f"UPDATE audio_jobs SET {set_clause} WHERE id = ? AND status = ?",
            params + (job_id, expected.value),
        )
        if cur.rowcount != 1:
            raise StaleTransitionError(job_id)

    def _fetchone(self, sql: str, params: tuple) -> Optional[sqlite3.Row]:
        conn = self.connect()
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    def _fetchall(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        conn = self.connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()


def _row_to_chapter(row: sqlite3.Row) -> Chapter:
    return Chapter(
        id=row["id"],
        book_id=row["book_id"],
        title=row["title"] or "",
        order=row["chapter_order"],
        content=row["content"],
        audio_url=row["audio_url"],
        duration_seconds=row["duration_seconds"],
    )


def _row_to_job(row: sqlite3.Row) -> SynthesisJob:
    state = JobState(row["status"])
    return SynthesisJob(
        id=row["id"],
        chapter_id=row["chapter_id"],
        user_id=row["user_id"],
        voice=VoiceProfile.parse(row["voice"]),
        state=state,
        audio_reference=row["audio_url"],
        duration_seconds=row["duration_seconds"],
        failure_reason=FailureReason(row["failure_reason"]) if row["failure_reason"] else None,
        error_message=row["error_message"],
        request_key=row["request_key"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        sequence=row["seq"] * 3 + _STATE_RANK[state],
    )
