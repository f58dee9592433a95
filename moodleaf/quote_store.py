"""
Inspirational quote store and regeneration tracker using SQLite.

One row per user. The row carries the quote itself plus the scheduling
metadata that decides when it must be recomputed:

- needs_regeneration: set whenever the user creates a new entry
- last_generated_at: a quote older than the staleness threshold is due
  even if the flag is clear (re-derived at every scan, never stored)
- claimed_by / claimed_at: the in-flight regeneration claim, with a lease

A tracker row whose quote is still NULL belongs to a user who has never
had a quote generated; get() reports no quote for it, and the scan treats
it as due.
"""

import json
import logging
import os
import sqlite3
import threading
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from .types import (
    QUOTE_TAG_COUNT,
    InspirationalQuote,
    QuoteCandidate,
    QuoteState,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_HOURS = 24.0
DEFAULT_LEASE_SECONDS = 300.0


class QuoteStore:
    """
    SQLite-backed store of per-user quotes with atomic regeneration claims.
    """

    def __init__(
        self,
        store_path: Path,
        *,
        staleness_hours: float = DEFAULT_STALENESS_HOURS,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        clock: Callable = utc_now,
    ):
        self._db_path = store_path
        self._staleness = timedelta(hours=staleness_hours)
        self._lease = timedelta(seconds=lease_seconds)
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
            CREATE TABLE IF NOT EXISTS inspirational_quotes (
                user_id TEXT PRIMARY KEY,
                quote TEXT,
                tags_json TEXT NOT NULL DEFAULT '[]',
                needs_regeneration INTEGER NOT NULL DEFAULT 0,
                regeneration_requested_at TEXT,
                last_generated_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                claimed_by TEXT,
                claimed_at TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_quotes_last_generated
            ON inspirational_quotes(last_generated_at)
        """)

    # -------------------------------------------------------------------------
    # Tracker
    # -------------------------------------------------------------------------

    def mark_for_regeneration(self, user_id: str) -> None:
        """Flag a user's quote as stale. Creates the tracker row if needed."""
        now = format_timestamp(self._clock())
        with self._lock:
            self._conn.execute("""
                INSERT INTO inspirational_quotes
                    (user_id, needs_regeneration, regeneration_requested_at,
                     created_at, updated_at)
                VALUES (?, 1, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    needs_regeneration = 1,
                    regeneration_requested_at = excluded.regeneration_requested_at,
                    updated_at = excluded.updated_at
            """, (user_id, now, now, now))
        logger.debug("Marked quote for user %s for regeneration", user_id)

    def track(self, user_ids: list[str]) -> int:
        """Create flagged tracker rows for users that have none.

        Returns the number of rows created.
        """
        now = format_timestamp(self._clock())
        created = 0
        with self._lock:
            for user_id in user_ids:
                cursor = self._conn.execute("""
                    INSERT OR IGNORE INTO inspirational_quotes
                        (user_id, needs_regeneration, regeneration_requested_at,
                         created_at, updated_at)
                    VALUES (?, 1, ?, ?, ?)
                """, (user_id, now, now, now))
                created += cursor.rowcount
        return created

    def claim_due(self, now=None, limit: int = 1) -> list[QuoteCandidate]:
        """
        Atomically claim users whose quote must be (re)generated.

        Due means: flagged, never generated, or generated longer ago than
        the staleness threshold. Users who never had a quote go first, then
        the oldest quotes. Claims already held and still within their lease
        are skipped.
        """
        if limit <= 0:
            return []
        now = now or self._clock()
        now_ts = format_timestamp(now)
        stale_cutoff = format_timestamp(now - self._staleness)
        lease_cutoff = format_timestamp(now - self._lease)
        token = f"{os.getpid()}:{uuid.uuid4().hex[:12]}"

        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                rows = self._conn.execute("""
                    SELECT user_id FROM inspirational_quotes
                    WHERE (needs_regeneration = 1
                           OR last_generated_at IS NULL
                           OR last_generated_at < ?)
                      AND (claimed_by IS NULL OR claimed_at < ?)
                    ORDER BY last_generated_at IS NOT NULL, last_generated_at ASC
                    LIMIT ?
                """, (stale_cutoff, lease_cutoff, limit)).fetchall()
                ids = [r["user_id"] for r in rows]
                self._conn.executemany("""
                    UPDATE inspirational_quotes
                    SET claimed_by = ?, claimed_at = ?
                    WHERE user_id = ?
                """, [(token, now_ts, user_id) for user_id in ids])
                candidates = []
                for user_id in ids:
                    row = self._conn.execute(
                        "SELECT * FROM inspirational_quotes WHERE user_id = ?",
                        (user_id,),
                    ).fetchone()
                    candidates.append(QuoteCandidate(
                        user_id=user_id,
                        claimed_by=token,
                        claimed_at=now_ts,
                        has_quote=row["quote"] is not None,
                        needs_regeneration=bool(row["needs_regeneration"]),
                        last_generated_at=row["last_generated_at"],
                    ))
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

        if candidates:
            logger.debug("Claimed %d quote regenerations (%s)", len(candidates), token)
        return candidates

    def save_generated(self, candidate: QuoteCandidate, quote: str, tags: list[str]) -> bool:
        """
        Store a freshly generated quote and release the claim.

        The flag is cleared unless the user created another entry after the
        claim was taken, in which case the quote stays stale.

        Returns:
            False if the claim was no longer held (nothing written)
        """
        if len(tags) != QUOTE_TAG_COUNT:
            raise ValueError(f"A quote needs exactly {QUOTE_TAG_COUNT} tags, got {len(tags)}")
        if not quote.strip():
            raise ValueError("Quote text is empty")
        now = format_timestamp(self._clock())
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE inspirational_quotes
                SET quote = ?, tags_json = ?, last_generated_at = ?,
                    updated_at = ?,
                    needs_regeneration = CASE
                        WHEN regeneration_requested_at > claimed_at THEN 1
                        ELSE 0 END,
                    claimed_by = NULL, claimed_at = NULL
                WHERE user_id = ? AND claimed_by = ?
            """, (quote, json.dumps(tags, ensure_ascii=False), now, now,
                  candidate.user_id, candidate.claimed_by))
        if cursor.rowcount == 0:
            logger.info("Quote claim for user %s no longer held; result discarded",
                        candidate.user_id)
            return False
        return True

    def release(self, candidate: QuoteCandidate) -> bool:
        """Give up a claim without writing; the quote stays stale."""
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE inspirational_quotes
                SET claimed_by = NULL, claimed_at = NULL
                WHERE user_id = ? AND claimed_by = ?
            """, (candidate.user_id, candidate.claimed_by))
        return cursor.rowcount > 0

    def state(self, user_id: str, now=None) -> Optional[QuoteState]:
        """Regeneration state of a user's quote, or None if untracked."""
        now = now or self._clock()
        with self._lock:
            row = self._conn.execute("""
                SELECT needs_regeneration, last_generated_at, claimed_by, claimed_at
                FROM inspirational_quotes WHERE user_id = ?
            """, (user_id,)).fetchone()
        if row is None:
            return None
        if row["claimed_by"] and row["claimed_at"] >= format_timestamp(now - self._lease):
            return QuoteState.REGENERATING
        if (row["needs_regeneration"]
                or row["last_generated_at"] is None
                or row["last_generated_at"] < format_timestamp(now - self._staleness)):
            return QuoteState.STALE
        return QuoteState.FRESH

    # -------------------------------------------------------------------------
    # Quotes
    # -------------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[InspirationalQuote]:
        """A user's quote, or None if none was ever generated."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM inspirational_quotes WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None or row["quote"] is None:
            return None
        return InspirationalQuote(
            user_id=row["user_id"],
            quote=row["quote"],
            tags=json.loads(row["tags_json"]),
            needs_regeneration=bool(row["needs_regeneration"]),
            last_generated_at=row["last_generated_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def delete(self, user_id: str) -> bool:
        """Delete a user's quote and tracker row."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM inspirational_quotes WHERE user_id = ?", (user_id,)
            )
        return cursor.rowcount > 0

    def count(self) -> int:
        """Count of generated quotes."""
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM inspirational_quotes WHERE quote IS NOT NULL"
            ).fetchone()[0]

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
