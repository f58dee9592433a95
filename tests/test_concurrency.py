"""
Concurrency tests for the shared SQLite store.

Verifies that several scheduler processes and API processes can work on
the same database at once: claims never overlap, and concurrent edits to
one entry are serialized by the version check.

Uses multiprocessing (not threading) to simulate separate processes.
"""

import multiprocessing
import threading
from pathlib import Path

from moodleaf.analysis_queue import AnalysisQueue
from moodleaf.entry_store import EntryStore
from moodleaf.quote_store import QuoteStore


# Worker functions must be top-level for multiprocessing spawn compatibility


def _worker_claim_all(db_path: str, batch: int) -> list[str]:
    """Claim analysis rows until none are left; return the claimed ids."""
    from moodleaf.analysis_queue import AnalysisQueue
    queue = AnalysisQueue(Path(db_path), debounce_seconds=0)
    claimed = []
    while True:
        items = queue.claim_ready(limit=batch)
        if not items:
            break
        claimed.extend(item.entry_id for item in items)
    queue.close()
    return claimed


def _worker_claim_quotes(db_path: str) -> list[str]:
    from moodleaf.quote_store import QuoteStore
    quotes = QuoteStore(Path(db_path))
    claimed = []
    while True:
        candidates = quotes.claim_due(limit=2)
        if not candidates:
            break
        claimed.extend(c.user_id for c in candidates)
    quotes.close()
    return claimed


def _worker_edit(db_path: str, entry_id: str, worker_id: int) -> bool:
    """Try one version-checked edit; True if it won."""
    from moodleaf.entry_store import EntryStore
    from moodleaf.errors import ConflictError
    store = EntryStore(Path(db_path))
    try:
        store.update_body(entry_id, f"edit from worker {worker_id}", expected_version=0)
        return True
    except ConflictError:
        return False
    finally:
        store.close()


class TestConcurrentClaims:
    """Claims are exclusive across processes."""

    def test_parallel_claimers_never_overlap(self, tmp_path):
        """4 processes drain 60 due rows; every row is claimed exactly once."""
        db_path = str(tmp_path / "moodleaf.db")
        queue = AnalysisQueue(Path(db_path), debounce_seconds=0)
        expected = {f"entry-{i}" for i in range(60)}
        for entry_id in sorted(expected):
            queue.schedule(entry_id)
        queue.close()

        ctx = multiprocessing.get_context("spawn")
        with ctx.Pool(4) as pool:
            results = [pool.apply_async(_worker_claim_all, (db_path, 3)) for _ in range(4)]
            claimed = [entry_id for r in results for entry_id in r.get(timeout=60)]

        assert len(claimed) == len(set(claimed)), "an entry was claimed twice"
        assert set(claimed) == expected

    def test_parallel_quote_claimers_never_overlap(self, tmp_path):
        db_path = str(tmp_path / "moodleaf.db")
        quotes = QuoteStore(Path(db_path))
        users = [f"user-{i}" for i in range(20)]
        for user in users:
            quotes.mark_for_regeneration(user)
        quotes.close()

        ctx = multiprocessing.get_context("spawn")
        with ctx.Pool(3) as pool:
            results = [pool.apply_async(_worker_claim_quotes, (db_path,)) for _ in range(3)]
            claimed = [user for r in results for user in r.get(timeout=60)]

        assert sorted(claimed) == sorted(users)

    def test_threads_sharing_one_queue(self, tmp_path):
        """Threads of one scheduler share a connection safely."""
        queue = AnalysisQueue(tmp_path / "moodleaf.db", debounce_seconds=0)
        for i in range(40):
            queue.schedule(f"entry-{i}")

        claimed = []
        lock = threading.Lock()

        def drain():
            while True:
                items = queue.claim_ready(limit=2)
                if not items:
                    return
                with lock:
                    claimed.extend(item.entry_id for item in items)

        threads = [threading.Thread(target=drain) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        queue.close()

        assert len(claimed) == 40
        assert len(set(claimed)) == 40


class TestConcurrentEdits:
    """Optimistic concurrency across processes."""

    def test_one_winner_per_version(self, tmp_path):
        """6 processes edit at version 0; exactly one succeeds."""
        db_path = str(tmp_path / "moodleaf.db")
        store = EntryStore(Path(db_path))
        entry = store.create("alice", body="original")
        store.close()

        ctx = multiprocessing.get_context("spawn")
        with ctx.Pool(6) as pool:
            results = [
                pool.apply_async(_worker_edit, (db_path, entry.id, w)) for w in range(6)
            ]
            outcomes = [r.get(timeout=60) for r in results]

        assert outcomes.count(True) == 1

        store = EntryStore(Path(db_path))
        final = store.get(entry.id)
        store.close()
        assert final.version == 1
        assert final.body.startswith("edit from worker")
