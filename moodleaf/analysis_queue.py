"""
Debounced mood analysis queue using SQLite.

Holds at most one row per journal entry. Every body edit upserts the row
and pushes scheduled_for out to now + debounce window, so a burst of
edits produces a single analysis fired one window after the last edit.
Rows carry only the entry id; the body is read at dispatch time so the
analysis always sees the latest text.

Claims are atomic: rows move from 'pending' to 'processing' with a claim
token inside a single IMMEDIATE transaction, so concurrent schedulers
(threads or processes) never process the same entry at once. Claims hold
a lease; a claim older than the lease is assumed to belong to a crashed
scheduler and is made claimable again.

An edit that arrives while its entry is being processed re-arms the row
instead of starting a second task. When the in-flight task finishes, the
row goes back to 'pending' rather than being deleted, and the next task
picks up the newer body.

Failures are rescheduled with the delay computed by the caller. Rows
that exhaust the retry budget, or fail permanently, are dropped from the
active queue into 'failed' status (dead letter) and are never claimed
again unless the entry is edited or the row is explicitly retried.
"""

import logging
import os
import sqlite3
import threading
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from .types import QueueItem, format_timestamp, utc_now

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_FAILED = "failed"

DEFAULT_DEBOUNCE_SECONDS = 5.0
DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_MAX_RETRIES = 5


class AnalysisQueue:
    """
    SQLite-backed debounced queue of entries awaiting mood analysis.
    """

    def __init__(
        self,
        queue_path: Path,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable = utc_now,
    ):
        """
        Args:
            queue_path: Path to SQLite database file
            debounce_seconds: Quiet period after the last edit
            lease_seconds: Age after which an unacknowledged claim is reclaimable
            max_retries: Failed attempts after which a row is dropped
            clock: Returns the current UTC datetime (injectable for tests)
        """
        self._queue_path = queue_path
        self._debounce = timedelta(seconds=debounce_seconds)
        self._lease = timedelta(seconds=lease_seconds)
        self._max_retries = max_retries
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._queue_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so we can use BEGIN IMMEDIATE for atomic claims
        self._conn = sqlite3.connect(
            str(self._queue_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS analysis_queue (
                entry_id TEXT PRIMARY KEY,
                scheduled_for TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                claimed_by TEXT,
                claimed_at TEXT,
                rearmed INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                queued_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_queue_ready
            ON analysis_queue(status, scheduled_for)
        """)

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @staticmethod
    def _row_to_item(row) -> QueueItem:
        return QueueItem(
            entry_id=row[0],
            scheduled_for=row[1],
            attempt_count=row[2],
            status=row[3],
            claimed_by=row[4],
            claimed_at=row[5],
            last_error=row[6],
        )

    def schedule(self, entry_id: str) -> QueueItem:
        """
        Upsert the row for an entry, due one debounce window from now.

        A new row starts at attempt_count 0. An existing pending row keeps
        its attempt_count and only moves scheduled_for. A row being
        processed is re-armed (the in-flight task keeps its claim). A
        dropped row comes back as a fresh pending row.
        """
        now = self._clock()
        scheduled_for = format_timestamp(now + self._debounce)
        now_ts = format_timestamp(now)
        with self._lock:
            # SET expressions see the row's values from before the update
            self._conn.execute("""
                INSERT INTO analysis_queue
                    (entry_id, scheduled_for, attempt_count, status,
                     queued_at, updated_at)
                VALUES (?, ?, 0, 'pending', ?, ?)
                ON CONFLICT(entry_id) DO UPDATE SET
                    scheduled_for = excluded.scheduled_for,
                    updated_at = excluded.updated_at,
                    rearmed = CASE WHEN status = 'processing' THEN 1 ELSE 0 END,
                    attempt_count = CASE WHEN status = 'failed' THEN 0
                                         ELSE attempt_count END,
                    last_error = CASE WHEN status = 'failed' THEN NULL
                                      ELSE last_error END,
                    status = CASE WHEN status = 'failed' THEN 'pending'
                                  ELSE status END
            """, (entry_id, scheduled_for, now_ts, now_ts))
            row = self._select(entry_id)
        logger.debug("Scheduled analysis for %s at %s", entry_id, scheduled_for)
        return self._row_to_item(row)

    def _recover_stale_claims(self, now) -> int:
        """Return claims older than the lease to 'pending'.

        Called at the start of every claim. Returns count of recovered rows.
        """
        cutoff = format_timestamp(now - self._lease)
        cursor = self._conn.execute("""
            UPDATE analysis_queue
            SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                rearmed = 0
            WHERE status = 'processing'
              AND claimed_at IS NOT NULL
              AND claimed_at < ?
        """, (cutoff,))
        recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d expired analysis claims", recovered)
        return recovered

    def claim_ready(self, now=None, limit: int = 10) -> list[QueueItem]:
        """
        Atomically claim up to `limit` rows whose scheduled_for has passed.

        Uses BEGIN IMMEDIATE to take the write lock before selecting, so
        concurrent claimers block briefly and then see only unclaimed rows.
        Claimed rows move to 'processing'. Acknowledge each with
        complete(), fail() or drop().
        """
        if limit <= 0:
            return []
        now = now or self._clock()
        now_ts = format_timestamp(now)
        token = f"{os.getpid()}:{uuid.uuid4().hex[:12]}"

        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._recover_stale_claims(now)
                rows = self._conn.execute("""
                    SELECT entry_id FROM analysis_queue
                    WHERE status = 'pending' AND scheduled_for <= ?
                    ORDER BY scheduled_for ASC
                    LIMIT ?
                """, (now_ts, limit)).fetchall()
                ids = [r[0] for r in rows]
                if ids:
                    self._conn.executemany("""
                        UPDATE analysis_queue
                        SET status = 'processing', claimed_by = ?,
                            claimed_at = ?, rearmed = 0
                        WHERE entry_id = ?
                    """, [(token, now_ts, entry_id) for entry_id in ids])
                items = [self._row_to_item(self._select(entry_id)) for entry_id in ids]
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

        if items:
            logger.debug("Claimed %d analysis rows (%s)", len(items), token)
        return items

    def _select(self, entry_id: str):
        return self._conn.execute("""
            SELECT entry_id, scheduled_for, attempt_count, status,
                   claimed_by, claimed_at, last_error
            FROM analysis_queue WHERE entry_id = ?
        """, (entry_id,)).fetchone()

    def _owned(self, item: QueueItem):
        """Return (attempt_count, rearmed) if `item` still holds its claim."""
        return self._conn.execute("""
            SELECT attempt_count, rearmed FROM analysis_queue
            WHERE entry_id = ? AND status = 'processing' AND claimed_by = ?
        """, (item.entry_id, item.claimed_by)).fetchone()

    def holds(self, item: QueueItem) -> bool:
        """True if `item`'s claim is still held (not expired, not cancelled)."""
        with self._lock:
            return self._owned(item) is not None

    def _rearm(self, entry_id: str) -> None:
        """Hand a re-armed row back to the queue as fresh work."""
        self._conn.execute("""
            UPDATE analysis_queue
            SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                rearmed = 0, attempt_count = 0, last_error = NULL,
                updated_at = ?
            WHERE entry_id = ?
        """, (format_timestamp(self._clock()), entry_id))

    def _acknowledge(self, item: QueueItem, settle: Callable) -> Optional[str]:
        """Run `settle(attempt_count)` if the claim is still held.

        Returns the resulting status, 'rearmed', or None if the claim was
        lost (lease expired, or the row was cancelled).
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                owned = self._owned(item)
                if owned is None:
                    result = None
                elif owned[1]:
                    self._rearm(item.entry_id)
                    result = "rearmed"
                else:
                    result = settle(owned[0])
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        if result is None:
            logger.info("Claim on %s no longer held; ignoring acknowledgement", item.entry_id)
        return result

    def complete(self, item: QueueItem) -> Optional[str]:
        """Acknowledge a successful analysis.

        Deletes the row, unless the entry was edited while in flight, in
        which case the row stays queued for the newer body.
        """
        def settle(_attempts):
            self._conn.execute(
                "DELETE FROM analysis_queue WHERE entry_id = ?", (item.entry_id,)
            )
            return "completed"

        return self._acknowledge(item, settle)

    def fail(
        self,
        item: QueueItem,
        delay_seconds: float,
        error: Optional[str] = None,
    ) -> Optional[str]:
        """Acknowledge a transient failure.

        Increments attempt_count and reschedules the row `delay_seconds`
        from now. Once attempt_count reaches max_retries the row is dropped
        instead.

        Returns 'rescheduled', 'dropped', 'rearmed' or None (claim lost).
        """
        def settle(attempts):
            attempts += 1
            now = self._clock()
            if attempts >= self._max_retries:
                self._set_failed(item.entry_id, attempts, error)
                logger.warning(
                    "Dropped analysis for %s after %d attempts: %s",
                    item.entry_id, attempts, error or "unknown",
                )
                return "dropped"
            retry_at = format_timestamp(now + timedelta(seconds=delay_seconds))
            self._conn.execute("""
                UPDATE analysis_queue
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    attempt_count = ?, scheduled_for = ?, last_error = ?,
                    updated_at = ?
                WHERE entry_id = ?
            """, (attempts, retry_at, error, format_timestamp(now), item.entry_id))
            logger.info(
                "Analysis for %s failed (attempt %d), retry in %.1fs: %s",
                item.entry_id, attempts, delay_seconds, error or "unknown",
            )
            return "rescheduled"

        return self._acknowledge(item, settle)

    def drop(self, item: QueueItem, error: Optional[str] = None) -> Optional[str]:
        """Acknowledge a permanent failure: drop the row without retrying."""
        def settle(attempts):
            self._set_failed(item.entry_id, attempts + 1, error)
            logger.warning(
                "Dropped analysis for %s (permanent): %s",
                item.entry_id, error or "unknown",
            )
            return "dropped"

        return self._acknowledge(item, settle)

    def _set_failed(self, entry_id: str, attempts: int, error: Optional[str]) -> None:
        self._conn.execute("""
            UPDATE analysis_queue
            SET status = 'failed', claimed_by = NULL, claimed_at = NULL,
                attempt_count = ?, last_error = ?, updated_at = ?
            WHERE entry_id = ?
        """, (attempts, error, format_timestamp(self._clock()), entry_id))

    def cancel(self, entry_id: str) -> bool:
        """Remove any row for an entry, whatever its status."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM analysis_queue WHERE entry_id = ?", (entry_id,)
            )
        if cursor.rowcount:
            logger.debug("Cancelled pending analysis for %s", entry_id)
        return cursor.rowcount > 0

    def get(self, entry_id: str) -> Optional[QueueItem]:
        """Get the row for an entry, or None."""
        with self._lock:
            row = self._select(entry_id)
        return self._row_to_item(row) if row else None

    def count(self) -> int:
        """Count of pending rows (excludes processing and failed)."""
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM analysis_queue WHERE status = 'pending'"
            ).fetchone()[0]

    def stats(self) -> dict:
        """Queue statistics including status breakdown."""
        with self._lock:
            by_status = {
                row[0]: row[1] for row in self._conn.execute("""
                    SELECT status, COUNT(*) FROM analysis_queue GROUP BY status
                """).fetchall()
            }
            row = self._conn.execute("""
                SELECT COUNT(*), MAX(attempt_count), MIN(scheduled_for)
                FROM analysis_queue WHERE status != 'failed'
            """).fetchone()
        return {
            "pending": by_status.get(STATUS_PENDING, 0),
            "processing": by_status.get(STATUS_PROCESSING, 0),
            "failed": by_status.get(STATUS_FAILED, 0),
            "active": row[0],
            "max_attempts": row[1] or 0,
            "next_due": row[2],
            "queue_path": str(self._queue_path),
        }

    def list_failed(self) -> list[QueueItem]:
        """Rows in the dead letter, oldest first."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT entry_id, scheduled_for, attempt_count, status,
                       claimed_by, claimed_at, last_error
                FROM analysis_queue
                WHERE status = 'failed'
                ORDER BY updated_at ASC
            """).fetchall()
        return [self._row_to_item(r) for r in rows]

    def retry_failed(self) -> int:
        """Move dropped rows back to pending, due now, with a fresh budget."""
        now_ts = format_timestamp(self._clock())
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE analysis_queue
                SET status = 'pending', attempt_count = 0, last_error = NULL,
                    scheduled_for = ?, updated_at = ?
                WHERE status = 'failed'
            """, (now_ts, now_ts))
        if cursor.rowcount:
            logger.info("Reset %d failed analyses back to pending", cursor.rowcount)
        return cursor.rowcount

    def clear(self) -> int:
        """Clear all rows. Returns count of rows cleared."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM analysis_queue")
        return cursor.rowcount

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
