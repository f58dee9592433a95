"""
moodleaf: journal entries enriched asynchronously with AI mood scores and
personal inspirational quotes.

Quick start:
    from moodleaf import Journal

    journal = Journal()
    entry = journal.create_entry("alice", body="Had a great day at the lake")
    scheduler = journal.create_scheduler()
    scheduler.run()   # or tick_mood() / tick_quotes() from your own loop
"""

from .api import Journal
from .errors import (
    ConflictError,
    MoodleafError,
    NotFoundError,
    PermanentError,
    ProviderError,
    RateLimited,
    TransientNetworkError,
)
from .types import AnalysisState, InspirationalQuote, JournalEntry, QuoteState

__version__ = "0.1.0"

__all__ = [
    "Journal",
    "JournalEntry",
    "InspirationalQuote",
    "AnalysisState",
    "QuoteState",
    "MoodleafError",
    "ConflictError",
    "NotFoundError",
    "ProviderError",
    "RateLimited",
    "TransientNetworkError",
    "PermanentError",
]
