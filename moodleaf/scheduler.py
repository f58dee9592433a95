"""
Scheduler/poller for the enrichment pipeline.

Two cadences drive the work: mood analysis (default every 3s) and quote
regeneration (default every 30s). A tick only claims work and hands it to
a bounded worker pool, so a slow provider call never delays the next
tick. A tick claims no more items than the pool has free workers; the
rest stay queued for a later tick (or another scheduler process).

Every task acknowledges its claim exactly once, whatever happens; no
exception escapes a task.
"""

import concurrent.futures
import logging
import threading
import time
from functools import partial
from typing import Callable, Optional

from .analysis_queue import AnalysisQueue
from .config import PipelineConfig
from .entry_store import EntryStore
from .processors import process_mood, process_quote
from .quote_store import QuoteStore
from .resilience import Outcome, ResilientCaller
from .types import QueueItem, QuoteCandidate, format_timestamp, utc_now

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Claims ready work and drives it through the resilient caller.

    Args:
        entries: Entry store (system of record for bodies and mood scores)
        queue: Debounced analysis queue
        quotes: Quote store and regeneration tracker
        caller: ResilientCaller wrapping provider calls
        primary: Primary ChatProvider, or None if none could be created
        fallback: Fallback ChatProvider, or None
        config: Pipeline settings
        clock: Returns the current UTC datetime
    """

    def __init__(
        self,
        *,
        entries: EntryStore,
        queue: AnalysisQueue,
        quotes: QuoteStore,
        caller: ResilientCaller,
        primary,
        fallback=None,
        config: Optional[PipelineConfig] = None,
        clock: Callable = utc_now,
    ):
        self.entries = entries
        self.queue = queue
        self.quotes = quotes
        self.caller = caller
        self.primary = primary
        self.fallback = fallback
        self.config = config or PipelineConfig()
        self._clock = clock

        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.worker_pool_size,
            thread_name_prefix="moodleaf-worker",
        )
        self._futures: set = set()
        self._futures_lock = threading.Lock()
        self._warned_no_provider = False
        self._stats_lock = threading.Lock()
        self.stats = {
            "analyzed": 0,
            "rescheduled": 0,
            "dropped": 0,
            "skipped": 0,
            "quotes_generated": 0,
            "quotes_failed": 0,
            "failovers": 0,
        }

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def _free_workers(self) -> int:
        with self._futures_lock:
            busy = sum(1 for f in self._futures if not f.done())
        return self.config.worker_pool_size - busy

    def _submit(self, fn, arg) -> None:
        future = self._pool.submit(fn, arg)
        with self._futures_lock:
            self._futures.add(future)

        def done(f):
            with self._futures_lock:
                self._futures.discard(f)

        future.add_done_callback(done)

    def _can_run(self) -> bool:
        if self.primary is not None:
            return True
        if not self._warned_no_provider:
            logger.warning("No AI provider available; enrichment is paused")
            self._warned_no_provider = True
        return False

    def tick_mood(self, now=None) -> int:
        """Claim ready analysis rows and dispatch them. Returns the number claimed."""
        if not self._can_run():
            return 0
        limit = min(self.config.claim_batch_size, self._free_workers())
        if limit <= 0:
            logger.debug("Worker pool busy; mood tick claims nothing")
            return 0
        items = self.queue.claim_ready(now=now, limit=limit)
        for item in items:
            self._submit(self._process_mood, item)
        return len(items)

    def tick_quotes(self, now=None) -> int:
        """Claim due quote regenerations and dispatch them."""
        if not self._can_run():
            return 0
        limit = min(self.config.quote_batch_size, self._free_workers())
        if limit <= 0:
            logger.debug("Worker pool busy; quote tick claims nothing")
            return 0
        candidates = self.quotes.claim_due(now=now, limit=limit)
        for candidate in candidates:
            self._submit(self._process_quote, candidate)
        return len(candidates)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def _process_mood(self, item: QueueItem) -> None:
        try:
            self._analyze(item)
        except Exception as e:
            logger.exception("Mood analysis task for %s crashed", item.entry_id)
            try:
                self.queue.fail(item, self.caller.backoff(item.attempt_count),
                                f"{type(e).__name__}: {e}")
            except Exception:
                logger.exception("Could not release claim on %s", item.entry_id)

    def _analyze(self, item: QueueItem) -> None:
        # Always the latest body: the queue row holds only the id
        read_at = format_timestamp(self._clock())
        entry = self.entries.get(item.entry_id)
        if entry is None:
            self.queue.complete(item)
            return
        if len(entry.body.strip()) < self.config.min_body_length:
            logger.debug("Entry %s too short to analyze", entry.id)
            self._bump("skipped")
            self.queue.complete(item)
            return

        outcome = self.caller.call(
            self.primary, self.fallback,
            partial(process_mood, entry.body),
            attempt=item.attempt_count,
        )
        if outcome.used_fallback and outcome.succeeded:
            self._bump("failovers")

        if outcome.outcome is Outcome.SUCCESS:
            if not self.queue.holds(item):
                logger.info("Claim on %s lost before write-back; discarding score", item.entry_id)
                return
            self.entries.set_mood_score(entry.id, outcome.result.score, scored_at=read_at)
            self.queue.complete(item)
            self._bump("analyzed")
            logger.info("Entry %s mood %d (%s)", entry.id, outcome.result.score, outcome.provider)
        elif outcome.outcome is Outcome.RETRY:
            status = self.queue.fail(item, outcome.delay_seconds, outcome.error_message)
            self._bump("dropped" if status == "dropped" else "rescheduled")
        else:
            self.queue.drop(item, outcome.error_message)
            self._bump("dropped")

    def _process_quote(self, candidate: QuoteCandidate) -> None:
        try:
            self._regenerate(candidate)
        except Exception:
            logger.exception("Quote task for user %s crashed", candidate.user_id)
            self._bump("quotes_failed")
            try:
                self.quotes.release(candidate)
            except Exception:
                logger.exception("Could not release quote claim for %s", candidate.user_id)

    def _regenerate(self, candidate: QuoteCandidate) -> None:
        recent = self.entries.recent_for_user(candidate.user_id, limit=self.config.quote_fan_in)
        outcome = self.caller.call(
            self.primary, self.fallback, partial(process_quote, recent),
        )
        if outcome.succeeded:
            if self.quotes.save_generated(candidate, outcome.result.quote, outcome.result.tags):
                self._bump("quotes_generated")
                if outcome.used_fallback:
                    self._bump("failovers")
                logger.info("Quote regenerated for user %s (%s)", candidate.user_id, outcome.provider)
            return
        # Stays stale; the next scan is the retry
        self.quotes.release(candidate)
        self._bump("quotes_failed")
        logger.warning(
            "Quote generation for user %s failed (%s): %s",
            candidate.user_id, outcome.outcome.value, outcome.error_message,
        )

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def _safe_tick(self, tick: Callable) -> None:
        try:
            tick()
        except Exception:
            logger.exception("%s failed", tick.__name__)

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Tick both cadences until stop_event is set.

        In-flight tasks are allowed to finish before returning.
        """
        stop = stop_event or threading.Event()
        mood_interval = self.config.mood_interval
        quote_interval = self.config.quote_interval
        logger.info("Scheduler started (mood every %gs, quotes every %gs)",
                    mood_interval, quote_interval)

        next_mood = next_quote = time.monotonic()
        while not stop.is_set():
            now = time.monotonic()
            if now >= next_mood:
                self._safe_tick(self.tick_mood)
                next_mood = now + mood_interval
            if now >= next_quote:
                self._safe_tick(self.tick_quotes)
                next_quote = now + quote_interval
            stop.wait(max(0.0, min(next_mood, next_quote) - time.monotonic()))

        logger.info("Scheduler stopping; waiting for in-flight tasks")
        self.wait_idle()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for dispatched tasks to finish. Returns True if none remain."""
        with self._futures_lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool and the caller's call pool."""
        self._pool.shutdown(wait=wait)
        self.caller.shutdown(wait=False)
