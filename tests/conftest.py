"""
Shared pytest fixtures for moodleaf tests.

Provides a controllable clock and scripted chat providers so no test
touches the network or waits on real time.
"""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from moodleaf.api import Journal
from moodleaf.config import PipelineConfig, StoreConfig


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        with self._lock:
            self.now += timedelta(seconds=seconds, **kwargs)
            return self.now


class ScriptedProvider:
    """
    Chat provider that replays a script of responses.

    Each script element is returned as text, raised if it is an exception,
    or called with the prompt if callable. When the script runs out, the
    default response is used.
    """

    def __init__(self, name: str = "scripted", responses=None, default="7"):
        self.name = name
        self.default = default
        self.calls: list[dict] = []
        self._responses = list(responses or [])
        self._lock = threading.Lock()

    def generate(self, system, user, *, max_tokens=256, temperature=0.7):
        with self._lock:
            self.calls.append({
                "system": system, "user": user,
                "max_tokens": max_tokens, "temperature": temperature,
            })
            response = self._responses.pop(0) if self._responses else self.default
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(user)
        return response

    @property
    def call_count(self) -> int:
        return len(self.calls)


def quote_json(quote="Every small step still moves you forward.",
               tags=("growth", "hope", "courage", "calm")) -> str:
    """A well-formed quote response."""
    return json.dumps({"quote": quote, "tags": list(tags)})


def moods_and_quotes(mood="7", quote=None):
    """Callable response that answers mood and quote prompts appropriately."""
    def respond(prompt: str) -> str:
        if "Mood score" in prompt:
            return mood
        return quote or quote_json()
    return respond


@pytest.fixture
def clock():
    """A FakeClock starting at 2026-03-01 09:00 UTC."""
    return FakeClock()


@pytest.fixture
def pipeline_config():
    """Pipeline settings tuned for tests (no jitter, small pool)."""
    return PipelineConfig(
        debounce_seconds=5,
        max_retries=3,
        backoff_base_seconds=10,
        backoff_max_seconds=600,
        backoff_jitter_seconds=0,
        call_timeout_seconds=5,
        worker_pool_size=2,
    )


@pytest.fixture
def journal(tmp_path, clock, pipeline_config):
    """A Journal on a temporary store driven by the fake clock."""
    config = StoreConfig(path=tmp_path, pipeline=pipeline_config)
    j = Journal(config=config, clock=clock)
    yield j
    j.close()
