"""
Journal API: entry operations wired to the enrichment pipeline.

The Journal facade is what a web or mobile backend calls. Entry writes go
to the entry store; the pipeline hooks then fan out to the scheduling
metadata:

- on_entry_created(user_id): flag the user's quote for regeneration
- on_body_updated(entry_id): (re)schedule mood analysis, debounced
- on_entry_deleted(entry_id): cancel any pending analysis

All stores share one SQLite file in the store directory, so any number
of Journal instances and scheduler processes can work on the same store.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from .analysis_queue import AnalysisQueue
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .entry_store import EntryStore
from .errors import NotFoundError
from .quote_store import QuoteStore
from .types import (
    AnalysisState,
    BodyUpdate,
    InspirationalQuote,
    JournalEntry,
    QueueItem,
    QuoteState,
    utc_now,
)

logger = logging.getLogger(__name__)

_QUEUE_STATES = {
    "pending": AnalysisState.PENDING,
    "processing": AnalysisState.PROCESSING,
    "failed": AnalysisState.FAILED,
}


class Journal:
    """
    Journal entries with asynchronous mood scores and inspirational quotes.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        clock: Callable = utc_now,
    ) -> None:
        """
        Open or create a journal store.

        Args:
            store_path: Path to store directory. Uses MOODLEAF_STORE_PATH
                or ~/.moodleaf if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            clock: Returns the current UTC datetime (injectable for tests)
        """
        if config is not None:
            self._config = config
            self._store_path = config.path
        else:
            self._store_path = (
                Path(store_path).expanduser().resolve()
                if store_path is not None else get_default_store_path()
            )
            self._config = load_or_create_config(self._store_path)
        self._clock = clock

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        pipeline = self._config.pipeline
        db_path = self._config.database_path
        self._entries = EntryStore(db_path, clock=clock)
        self._queue = AnalysisQueue(
            db_path,
            debounce_seconds=pipeline.debounce_seconds,
            lease_seconds=pipeline.lease_seconds,
            max_retries=pipeline.max_retries,
            clock=clock,
        )
        self._quotes = QuoteStore(
            db_path,
            staleness_hours=pipeline.staleness_hours,
            lease_seconds=pipeline.lease_seconds,
            clock=clock,
        )

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def entries(self) -> EntryStore:
        return self._entries

    @property
    def queue(self) -> AnalysisQueue:
        return self._queue

    @property
    def quotes(self) -> QuoteStore:
        return self._quotes

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def create_entry(
        self,
        user_id: str,
        *,
        title: Optional[str] = None,
        body: str = "",
        entry_date: Optional[str] = None,
    ) -> JournalEntry:
        """
        Create an entry (version 0) and notify the pipeline.

        A non-empty body is scheduled for analysis like any later edit.
        """
        entry = self._entries.create(user_id, title=title, body=body, entry_date=entry_date)
        self.on_entry_created(user_id)
        if entry.body:
            self.on_body_updated(entry.id)
        logger.info("Created entry %s for user %s", entry.id, user_id)
        return entry

    def get_entry(self, entry_id: str) -> Optional[JournalEntry]:
        return self._entries.get(entry_id)

    def update_body(
        self,
        entry_id: str,
        body: str,
        expected_version: Optional[int] = None,
    ) -> BodyUpdate:
        """
        Replace an entry's body.

        Raises:
            NotFoundError: No such entry
            ConflictError: expected_version is stale (store unchanged)
        """
        result = self._entries.update_body(entry_id, body, expected_version)
        if result.changed:
            self.on_body_updated(entry_id)
        return result

    def update_metadata(
        self,
        entry_id: str,
        *,
        title: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> JournalEntry:
        """Update an entry's title. Never schedules analysis."""
        return self._entries.update_metadata(
            entry_id, title=title, expected_version=expected_version,
        )

    def delete_entry(self, entry_id: str) -> bool:
        """Delete an entry and its pending analysis. Returns True if it existed."""
        existed = self._entries.delete(entry_id)
        self.on_entry_deleted(entry_id)
        return existed

    def recent_entries(self, user_id: str, limit: int = 20) -> list[JournalEntry]:
        return self._entries.recent_for_user(user_id, limit=limit)

    # -------------------------------------------------------------------------
    # Pipeline hooks
    # -------------------------------------------------------------------------

    def on_body_updated(self, entry_id: str) -> Optional[QueueItem]:
        """
        Schedule mood analysis one debounce window from now.

        Bodies shorter than min_body_length are not analyzed; any pending
        analysis for them is cancelled.
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        if len(entry.body.strip()) < self._config.pipeline.min_body_length:
            self._queue.cancel(entry_id)
            return None
        return self._queue.schedule(entry_id)

    def on_entry_created(self, user_id: str) -> None:
        """A new entry makes the user's quote stale."""
        self._quotes.mark_for_regeneration(user_id)

    def on_entry_deleted(self, entry_id: str) -> None:
        self._queue.cancel(entry_id)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def get_pending_analysis_state(self, entry_id: str) -> AnalysisState:
        """
        Mood analysis state of an entry.

        A queue row decides it when present (pending, processing, or failed
        after the retry budget ran out). Without one, the score is
        COMPLETED if current or if the body is too short to analyze, and
        FAILED otherwise (scheduling was lost; rebuild_schedules() repairs).

        Raises:
            NotFoundError: No such entry
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            raise NotFoundError(f"Journal entry not found: {entry_id}")
        item = self._queue.get(entry_id)
        if item is not None:
            return _QUEUE_STATES[item.status]
        if len(entry.body.strip()) < self._config.pipeline.min_body_length:
            return AnalysisState.COMPLETED
        if entry.mood_score is not None and not entry.mood_is_stale:
            return AnalysisState.COMPLETED
        return AnalysisState.FAILED

    def get_quote(self, user_id: str) -> Optional[InspirationalQuote]:
        """The user's quote, or None if none has been generated yet."""
        return self._quotes.get(user_id)

    def quote_state(self, user_id: str) -> Optional[QuoteState]:
        return self._quotes.state(user_id)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def rebuild_schedules(self) -> dict:
        """
        Reconstruct scheduling metadata from the entry store.

        Schedules every analyzable entry whose score is missing or stale
        and has no queue row, and creates flagged quote tracker rows for
        users without one. At worst this causes one redundant analysis.
        """
        scheduled = 0
        for entry_id in self._entries.ids_awaiting_analysis(
            self._config.pipeline.min_body_length
        ):
            if self._queue.get(entry_id) is None:
                self._queue.schedule(entry_id)
                scheduled += 1
        tracked = self._quotes.track(self._entries.list_user_ids())
        logger.info("Rebuilt schedules: %d entries queued, %d users tracked", scheduled, tracked)
        return {"entries": scheduled, "users": tracked}

    def queue_stats(self) -> dict:
        return self._queue.stats()

    def list_failed(self) -> list[QueueItem]:
        return self._queue.list_failed()

    def retry_failed(self) -> int:
        return self._queue.retry_failed()

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------

    def create_scheduler(self, *, primary=None, fallback=None):
        """
        Build a Scheduler for this store.

        Providers come from the store config unless given. If the primary
        provider can't be created (e.g. no API key), the scheduler is
        still returned but pauses enrichment with a warning.
        """
        from .providers.base import select_providers
        from .resilience import ResilientCaller
        from .scheduler import Scheduler

        pipeline = self._config.pipeline
        if primary is None:
            try:
                primary, fallback = select_providers(
                    self._config.primary, self._config.fallback,
                    timeout=pipeline.call_timeout_seconds,
                )
            except (ValueError, RuntimeError) as e:
                logger.warning("Primary provider '%s' unavailable: %s",
                               self._config.primary.name, e)
                primary, fallback = None, None

        caller = ResilientCaller(
            timeout_seconds=pipeline.call_timeout_seconds,
            backoff_base=pipeline.backoff_base_seconds,
            backoff_max=pipeline.backoff_max_seconds,
            jitter=pipeline.backoff_jitter_seconds,
            max_workers=pipeline.worker_pool_size * 2,
        )
        return Scheduler(
            entries=self._entries,
            queue=self._queue,
            quotes=self._quotes,
            caller=caller,
            primary=primary,
            fallback=fallback,
            config=pipeline,
            clock=self._clock,
        )

    def close(self) -> None:
        """Close the stores and detach the ops log."""
        self._entries.close()
        self._queue.close()
        self._quotes.close()
        from .logging_config import remove_ops_log
        remove_ops_log(self._ops_log_handler)
        self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
