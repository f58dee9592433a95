"""
Data types for the journal enrichment pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


# Fixed-width so stored timestamps compare correctly as plain strings in SQL
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

# A quote always carries exactly this many thematic tags
QUOTE_TAG_COUNT = 4


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Canonical storage format for timestamps: UTC, microseconds, no suffix.

    All timestamps in moodleaf are stored this way so that SQLite can
    order and compare them lexically.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class AnalysisState(str, Enum):
    """Mood analysis state of an entry, as exposed to the API layer."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class QuoteState(str, Enum):
    """Regeneration state of a user's quote.

    REGENERATING is never stored; it is the in-flight claim itself.
    """
    FRESH = "fresh"
    STALE = "stale"
    REGENERATING = "regenerating"


@dataclass
class JournalEntry:
    """
    A journal entry as held by the entry store.

    mood_score is written only by the enrichment pipeline. A score whose
    mood_scored_at is older than body_updated_at belongs to an earlier
    body. Title edits move updated_at but not body_updated_at.
    """
    id: str
    user_id: str
    title: str
    body: str
    entry_date: str
    version: int
    created_at: str
    updated_at: str
    mood_score: Optional[int] = None
    mood_scored_at: Optional[str] = None
    body_updated_at: Optional[str] = None

    @property
    def mood_is_stale(self) -> bool:
        """True if the body changed after the mood score was computed."""
        if self.mood_score is None or self.mood_scored_at is None:
            return False
        return self.mood_scored_at < (self.body_updated_at or self.updated_at)


@dataclass
class BodyUpdate:
    """Result of a successful body write."""
    version: int
    updated_at: str
    changed: bool = True


@dataclass
class InspirationalQuote:
    """A user's personalized quote. One per user, updated in place.

    Whether it is due for regeneration is decided by QuoteStore.state().
    """
    user_id: str
    quote: str
    tags: list[str]
    needs_regeneration: bool
    last_generated_at: str
    created_at: str
    updated_at: str


@dataclass
class QueueItem:
    """A row of the debounced analysis queue."""
    entry_id: str
    scheduled_for: str
    attempt_count: int = 0
    status: str = "pending"
    claimed_by: Optional[str] = None
    claimed_at: Optional[str] = None
    last_error: Optional[str] = None


@dataclass
class QuoteCandidate:
    """A user whose quote has been claimed for (re)generation."""
    user_id: str
    claimed_by: str
    claimed_at: str
    has_quote: bool
    needs_regeneration: bool
    last_generated_at: Optional[str] = None


@dataclass
class MoodResult:
    """Validated mood analysis."""
    score: int
    provider: str = ""


@dataclass
class QuoteResult:
    """Validated quote generation."""
    quote: str
    tags: list[str] = field(default_factory=list)
    provider: str = ""


EnrichmentResult = Union[MoodResult, QuoteResult]
