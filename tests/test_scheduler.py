"""End-to-end tests of the enrichment pipeline driven by the scheduler.

Time is a FakeClock: ticks are called directly and wait_idle() lets the
worker pool finish, so nothing waits on the real poll cadence.
"""

import threading
import time

import pytest

from moodleaf.errors import PermanentError, RateLimited, TransientNetworkError
from moodleaf.types import AnalysisState, QuoteState
from tests.conftest import ScriptedProvider, moods_and_quotes, quote_json


@pytest.fixture
def make_scheduler(journal):
    created = []

    def make(primary, fallback=None):
        scheduler = journal.create_scheduler(primary=primary, fallback=fallback)
        created.append(scheduler)
        return scheduler

    yield make
    for scheduler in created:
        scheduler.shutdown()


def run_mood_tick(scheduler, clock, advance=0.0) -> int:
    """Advance the clock, tick once and wait for dispatched tasks."""
    clock.advance(advance)
    claimed = scheduler.tick_mood()
    assert scheduler.wait_idle(10)
    return claimed


class TestMoodAnalysis:
    """Debounced mood scoring."""

    def test_entry_scored_after_quiet_period(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary", ["8"])
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="had a great day")

        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.PENDING
        assert run_mood_tick(scheduler, clock, 4.9) == 0
        assert run_mood_tick(scheduler, clock, 0.1) == 1

        scored = journal.get_entry(entry.id)
        assert scored.mood_score == 8
        assert scored.version == entry.version
        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.COMPLETED
        assert "had a great day" in provider.calls[0]["user"]
        assert provider.calls[0]["max_tokens"] == 5

    def test_edits_within_window_make_one_call(self, journal, clock, make_scheduler):
        """Two edits one second apart: one call, on the final body."""
        provider = ScriptedProvider("primary", ["4"])
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="first draft of the day")
        clock.advance(1)
        journal.update_body(entry.id, "rewrote everything, rough day", expected_version=0)

        assert run_mood_tick(scheduler, clock, 4.5) == 0
        assert run_mood_tick(scheduler, clock, 0.5) == 1
        assert run_mood_tick(scheduler, clock, 60) == 0

        assert provider.call_count == 1
        assert "rewrote everything" in provider.calls[0]["user"]
        assert journal.get_entry(entry.id).mood_score == 4

    def test_short_body_is_never_analyzed(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary")
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="meh")

        assert run_mood_tick(scheduler, clock, 10) == 0
        assert provider.call_count == 0
        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.COMPLETED

    def test_deleted_entry_is_cancelled(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary")
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="this will be deleted soon")
        journal.delete_entry(entry.id)

        assert run_mood_tick(scheduler, clock, 10) == 0
        assert provider.call_count == 0


class TestFailures:
    """Retry, fail-over and drop."""

    def test_transient_failures_retry_then_drop(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary", default=TransientNetworkError("503"))
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="the network is having a day")

        assert run_mood_tick(scheduler, clock, 5) == 1
        assert journal.queue.get(entry.id).attempt_count == 1
        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.PENDING

        # Backoff doubles: 10s, then 20s
        assert run_mood_tick(scheduler, clock, 9) == 0
        assert run_mood_tick(scheduler, clock, 1) == 1
        assert run_mood_tick(scheduler, clock, 19) == 0
        assert run_mood_tick(scheduler, clock, 1) == 1

        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.FAILED
        assert scheduler.stats["rescheduled"] == 2
        assert scheduler.stats["dropped"] == 1

        # Dropped for good
        assert run_mood_tick(scheduler, clock, 3600) == 0
        assert provider.call_count == 3
        assert journal.get_entry(entry.id).mood_score is None

    def test_rate_limit_fails_over_without_backoff(self, journal, clock, make_scheduler):
        primary = ScriptedProvider("primary", [RateLimited(retry_after=30)])
        fallback = ScriptedProvider("fallback", ["6"])
        scheduler = make_scheduler(primary, fallback)
        entry = journal.create_entry("alice", body="a steady, ordinary day")

        run_mood_tick(scheduler, clock, 5)

        assert journal.get_entry(entry.id).mood_score == 6
        assert scheduler.stats["failovers"] == 1
        assert journal.queue.get(entry.id) is None

    def test_permanent_error_drops_immediately(self, journal, clock, make_scheduler):
        primary = ScriptedProvider("primary", [PermanentError("HTTP 400")])
        fallback = ScriptedProvider("fallback")
        scheduler = make_scheduler(primary, fallback)
        entry = journal.create_entry("alice", body="something the model rejects")

        run_mood_tick(scheduler, clock, 5)

        assert fallback.call_count == 0
        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.FAILED
        assert "PermanentError" in journal.list_failed()[0].last_error

    def test_edit_revives_failed_entry(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary", [PermanentError("HTTP 400"), "7"])
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="something the model rejects")
        run_mood_tick(scheduler, clock, 5)
        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.FAILED

        journal.update_body(entry.id, "something the model accepts")
        run_mood_tick(scheduler, clock, 5)
        assert journal.get_entry(entry.id).mood_score == 7

    def test_invalid_answer_is_retried(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary", ["I'd say 7 out of 10", "7"])
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="a perfectly fine afternoon")

        run_mood_tick(scheduler, clock, 5)
        assert journal.get_entry(entry.id).mood_score is None
        run_mood_tick(scheduler, clock, 10)
        assert journal.get_entry(entry.id).mood_score == 7


class TestInFlight:
    """Work that overlaps an edit or fills the pool."""

    def test_edit_during_analysis_rearms(self, journal, clock, make_scheduler):
        started = threading.Event()
        release = threading.Event()

        def slow_answer(prompt):
            started.set()
            release.wait(5)
            return "3"

        provider = ScriptedProvider("primary", [slow_answer, "9"])
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="started the day feeling low")

        clock.advance(5)
        assert scheduler.tick_mood() == 1
        assert started.wait(5)
        clock.advance(1)
        journal.update_body(entry.id, "ended the day feeling wonderful")
        release.set()
        assert scheduler.wait_idle(10)

        # Score for the old body is written but marked stale; the row is back
        stale = journal.get_entry(entry.id)
        assert stale.mood_score == 3
        assert stale.mood_is_stale
        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.PENDING

        run_mood_tick(scheduler, clock, 5)
        fresh = journal.get_entry(entry.id)
        assert fresh.mood_score == 9
        assert not fresh.mood_is_stale
        assert "feeling wonderful" in provider.calls[1]["user"]

    def test_tick_claims_no_more_than_free_workers(self, journal, clock, make_scheduler):
        release = threading.Event()
        provider = ScriptedProvider("primary", default=lambda prompt: release.wait(5) and "5")
        scheduler = make_scheduler(provider)
        for i in range(5):
            journal.create_entry("alice", body=f"entry number {i} of the week")

        clock.advance(5)
        assert scheduler.tick_mood() == 2
        assert scheduler.tick_mood() == 0
        release.set()
        assert scheduler.wait_idle(10)
        assert scheduler.tick_mood() == 2

    def test_no_provider_pauses_enrichment(self, journal, clock, make_scheduler, monkeypatch, caplog):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        scheduler = make_scheduler(None)
        entry = journal.create_entry("alice", body="nobody is listening today")

        with caplog.at_level("WARNING"):
            assert run_mood_tick(scheduler, clock, 5) == 0
            assert scheduler.tick_quotes() == 0
        assert "enrichment is paused" in caplog.text
        assert journal.get_pending_analysis_state(entry.id) == AnalysisState.PENDING


class TestQuotes:
    """Quote regeneration."""

    def test_new_entry_regenerates_quote(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary", default=moods_and_quotes())
        scheduler = make_scheduler(provider)
        journal.create_entry("alice", body="ran my first 5k", entry_date="2026-02-27")
        journal.create_entry("alice", body="legs are sore but proud", entry_date="2026-02-28")
        assert journal.quote_state("alice") == QuoteState.STALE

        assert scheduler.tick_quotes() == 1
        assert scheduler.wait_idle(10)

        quote = journal.get_quote("alice")
        assert quote.quote == "Every small step still moves you forward."
        assert len(quote.tags) == 4
        assert journal.quote_state("alice") == QuoteState.FRESH
        prompt = provider.calls[0]["user"]
        assert prompt.index("legs are sore") < prompt.index("ran my first 5k")
        assert scheduler.stats["quotes_generated"] == 1

        clock.advance(60)
        journal.create_entry("alice", body="rest day, lots of stretching")
        assert journal.quote_state("alice") == QuoteState.STALE

    def test_bad_quote_answer_stays_stale(self, journal, clock, make_scheduler):
        provider = ScriptedProvider(
            "primary", ['{"quote": "Hi", "tags": ["one"]}'], default=quote_json(),
        )
        scheduler = make_scheduler(provider)
        journal.create_entry("alice", body="a day like any other")

        assert scheduler.tick_quotes() == 1
        assert scheduler.wait_idle(10)

        assert journal.get_quote("alice") is None
        assert journal.quote_state("alice") == QuoteState.STALE
        assert scheduler.stats["quotes_failed"] == 1
        # Released: the next scan picks it up again
        assert scheduler.tick_quotes() == 1
        assert scheduler.wait_idle(10)
        assert journal.get_quote("alice") is not None


def wait_for(condition, timeout=5.0) -> bool:
    """Poll condition until it holds or timeout seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class TestRunLoop:
    """run() ticks both cadences on real time until stopped."""

    def start(self, scheduler, mood_poll="0.05", quote_poll="0.1"):
        scheduler.config.mood_poll = mood_poll
        scheduler.config.quote_poll = quote_poll
        stop = threading.Event()
        thread = threading.Thread(target=scheduler.run, args=(stop,), daemon=True)
        thread.start()
        return stop, thread

    def test_both_cadences_fire(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary", default=moods_and_quotes("7"))
        scheduler = make_scheduler(provider)
        entry = journal.create_entry("alice", body="had a great day")
        clock.advance(10)

        stop, thread = self.start(scheduler)
        try:
            assert wait_for(lambda: journal.get_entry(entry.id).mood_score == 7)
            assert wait_for(lambda: journal.quote_state("alice") == QuoteState.FRESH)
        finally:
            stop.set()
            thread.join(10)

        assert not thread.is_alive()
        assert scheduler.stats["analyzed"] == 1
        assert scheduler.stats["quotes_generated"] == 1

    def test_entry_edited_while_running_is_picked_up(self, journal, clock, make_scheduler):
        provider = ScriptedProvider("primary", default=moods_and_quotes("3"))
        scheduler = make_scheduler(provider)
        stop, thread = self.start(scheduler)
        try:
            entry = journal.create_entry("alice", body="long and tiring shift")
            time.sleep(0.2)
            assert journal.get_entry(entry.id).mood_score is None
            clock.advance(5)
            assert wait_for(lambda: journal.get_entry(entry.id).mood_score == 3)
        finally:
            stop.set()
            thread.join(10)
        assert not thread.is_alive()

    def test_stop_waits_for_in_flight_task(self, journal, clock, make_scheduler):
        started, release = threading.Event(), threading.Event()

        def respond(prompt):
            if "Mood score" not in prompt:
                return quote_json()
            started.set()
            release.wait(5)
            return "6"

        scheduler = make_scheduler(ScriptedProvider("primary", default=respond))
        entry = journal.create_entry("alice", body="waiting on test results")
        clock.advance(10)

        stop, thread = self.start(scheduler, quote_poll="60")
        try:
            assert started.wait(5)
            stop.set()
            thread.join(0.3)
            # Stopped, but the analysis in flight is still draining
            assert thread.is_alive()
        finally:
            release.set()
            thread.join(10)

        assert not thread.is_alive()
        assert journal.get_entry(entry.id).mood_score == 6
        assert scheduler.wait_idle(0)
