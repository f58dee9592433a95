"""
Journal entry store using SQLite.

The entry store is the system of record for:
- Entry identity and ownership
- Title and body text
- The AI-computed mood score
- The optimistic-concurrency version

Body and title writes are version-checked compare-and-set updates.
Mood score writes come from the enrichment pipeline and are not: they
never check or bump the version, so a user's concurrent edit can't block
them.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from .errors import ConflictError, NotFoundError
from .types import BodyUpdate, JournalEntry, format_timestamp, utc_now

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = """
    id, user_id, title, body, entry_date, version,
    created_at, updated_at, mood_score, mood_scored_at, body_updated_at
"""


class EntryStore:
    """
    SQLite-backed store for journal entries.

    Thread-safe within a process (one connection guarded by a lock) and
    safe across processes (WAL mode, single-statement conditional writes).
    """

    def __init__(self, store_path: Path, *, clock: Callable = utc_now):
        """
        Args:
            store_path: Path to SQLite database file
            clock: Returns the current UTC datetime (injectable for tests)
        """
        self._db_path = store_path
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS journal_entries (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                body TEXT NOT NULL DEFAULT '',
                entry_date TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                mood_score INTEGER CHECK (mood_score BETWEEN 1 AND 10),
                mood_scored_at TEXT,
                body_updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_user_date
            ON journal_entries(user_id, entry_date)
        """)

    def _now(self) -> str:
        return format_timestamp(self._clock())

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> JournalEntry:
        return JournalEntry(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            body=row["body"],
            entry_date=row["entry_date"],
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            mood_score=row["mood_score"],
            mood_scored_at=row["mood_scored_at"],
            body_updated_at=row["body_updated_at"],
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        *,
        title: Optional[str] = None,
        body: str = "",
        entry_date: Optional[str] = None,
        id: Optional[str] = None,
    ) -> JournalEntry:
        """
        Insert a new entry at version 0.

        A blank title defaults to the entry date (YYYY-MM-DD).
        """
        now = self._now()
        entry_date = entry_date or self._clock().date().isoformat()
        date.fromisoformat(entry_date)  # reject malformed dates
        title = (title or "").strip() or entry_date
        entry = JournalEntry(
            id=id or str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            body=(body or "").strip(),
            entry_date=entry_date,
            version=0,
            created_at=now,
            updated_at=now,
            body_updated_at=now,
        )
        with self._lock:
            self._conn.execute(f"""
                INSERT INTO journal_entries ({_ENTRY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, NULL, NULL, ?)
            """, (entry.id, entry.user_id, entry.title, entry.body,
                  entry.entry_date, now, now, now))
        return entry

    def _conflict_or_missing(self, id: str, expected_version: int) -> Exception:
        """Explain why a version-checked update touched no rows."""
        row = self._conn.execute(
            "SELECT version FROM journal_entries WHERE id = ?", (id,)
        ).fetchone()
        if row is None:
            return NotFoundError(f"Journal entry not found: {id}")
        return ConflictError(id, expected_version, row["version"])

    def update_body(
        self,
        id: str,
        body: str,
        expected_version: Optional[int] = None,
    ) -> BodyUpdate:
        """
        Replace the body and bump the version by one.

        The mood score is left in place; it reads as stale until the
        pipeline overwrites it.

        Args:
            id: Entry identifier
            body: New body text
            expected_version: If given, the write succeeds only if the stored
                version still equals it

        Returns:
            BodyUpdate with the new version, updated_at, and whether the
            text actually changed

        Raises:
            NotFoundError: No such entry
            ConflictError: expected_version is not the current version
        """
        now = self._now()
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT body, version FROM journal_entries WHERE id = ?", (id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"Journal entry not found: {id}")
                if expected_version is not None and row["version"] != expected_version:
                    raise ConflictError(id, expected_version, row["version"])
                changed = row["body"] != body
                self._conn.execute("""
                    UPDATE journal_entries
                    SET body = ?, version = version + 1, updated_at = ?,
                        body_updated_at = CASE WHEN ? THEN ? ELSE body_updated_at END
                    WHERE id = ?
                """, (body, now, changed, now, id))
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return BodyUpdate(
            version=row["version"] + 1,
            updated_at=now,
            changed=changed,
        )

    def update_metadata(
        self,
        id: str,
        *,
        title: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> JournalEntry:
        """
        Update the title, with the same conflict rule as update_body().

        Never touches the mood score. A blank title falls back to the
        entry date, as in create(). A call with no title only performs
        the version check.

        Raises:
            NotFoundError: No such entry
            ConflictError: expected_version is not the current version
        """
        now = self._now()
        with self._lock:
            if title is None:
                entry = self._get_unlocked(id)
                if entry is None:
                    raise NotFoundError(f"Journal entry not found: {id}")
                if expected_version is not None and entry.version != expected_version:
                    raise ConflictError(id, expected_version, entry.version)
                return entry

            if expected_version is None:
                cursor = self._conn.execute("""
                    UPDATE journal_entries
                    SET title = COALESCE(NULLIF(?, ''), entry_date),
                        version = version + 1, updated_at = ?
                    WHERE id = ?
                """, (title.strip(), now, id))
            else:
                cursor = self._conn.execute("""
                    UPDATE journal_entries
                    SET title = COALESCE(NULLIF(?, ''), entry_date),
                        version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (title.strip(), now, id, expected_version))
            if cursor.rowcount == 0:
                raise self._conflict_or_missing(id, expected_version or 0)
            return self._get_unlocked(id)

    def set_mood_score(self, id: str, score: int, scored_at: Optional[str] = None) -> bool:
        """
        Record a mood score computed by the pipeline.

        Unconditional: no version check, no version bump, updated_at left
        alone.

        Args:
            id: Entry identifier
            score: Integer in [1, 10]
            scored_at: When the analyzed body was read (defaults to now).
                An edit after this time leaves the score marked stale.

        Returns:
            True if the entry exists and was updated
        """
        if not 1 <= score <= 10:
            raise ValueError(f"Mood score out of range: {score}")
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE journal_entries
                SET mood_score = ?, mood_scored_at = ?
                WHERE id = ?
            """, (score, scored_at or self._now(), id))
        return cursor.rowcount > 0

    def delete(self, id: str) -> bool:
        """
        Delete an entry.

        Returns:
            True if the entry existed
        """
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM journal_entries WHERE id = ?", (id,)
            )
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def _get_unlocked(self, id: str) -> Optional[JournalEntry]:
        row = self._conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM journal_entries WHERE id = ?", (id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def get(self, id: str) -> Optional[JournalEntry]:
        """Get an entry by id, or None."""
        with self._lock:
            return self._get_unlocked(id)

    def recent_for_user(self, user_id: str, limit: int = 20) -> list[JournalEntry]:
        """A user's most recent entries, newest entry date first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_ENTRY_COLUMNS} FROM journal_entries
                WHERE user_id = ?
                ORDER BY entry_date DESC, created_at DESC
                LIMIT ?
            """, (user_id, limit)).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def list_user_ids(self) -> list[str]:
        """All users that own at least one entry."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT user_id FROM journal_entries ORDER BY user_id"
            ).fetchall()
        return [r["user_id"] for r in rows]

    def ids_awaiting_analysis(self, min_body_length: int = 1) -> list[str]:
        """
        Entries whose body has no current mood score.

        Either never scored, or edited after the last score. Used to
        rebuild the analysis queue from the system of record. Body length
        is measured the way the scheduler measures it, after str.strip();
        SQLite's trim() only removes spaces.
        """
        with self._lock:
            rows = self._conn.execute("""
                SELECT id, body FROM journal_entries
                WHERE mood_score IS NULL OR mood_scored_at IS NULL
                   OR mood_scored_at < body_updated_at
                ORDER BY body_updated_at ASC
            """).fetchall()
        return [r["id"] for r in rows if len(r["body"].strip()) >= min_body_length]

    def count(self, user_id: Optional[str] = None) -> int:
        """Count entries, optionally for one user."""
        with self._lock:
            if user_id is None:
                row = self._conn.execute("SELECT COUNT(*) FROM journal_entries").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM journal_entries WHERE user_id = ?", (user_id,)
                ).fetchone()
        return row[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
