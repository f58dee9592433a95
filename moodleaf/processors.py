"""
Pure processing functions for the enrichment pipeline.

Each function builds a prompt, makes exactly one provider call and
validates the answer. No store reads or writes: the scheduler fetches the
inputs and applies the result. Validation failures raise
InvalidResponseError, which the pipeline retries like a network error.
"""

from .providers.base import (
    MOOD_MAX_TOKENS,
    MOOD_TEMPERATURE,
    QUOTE_MAX_TOKENS,
    QUOTE_TEMPERATURE,
    build_mood_prompt,
    build_quote_prompt,
    parse_mood_score,
    parse_quote_response,
)
from .types import JournalEntry, MoodResult, QuoteResult


def process_mood(body: str, provider) -> MoodResult:
    """Score the mood of one entry body."""
    text = provider.generate(
        None, build_mood_prompt(body),
        max_tokens=MOOD_MAX_TOKENS, temperature=MOOD_TEMPERATURE,
    )
    return MoodResult(score=parse_mood_score(text), provider=provider.name)


def process_quote(entries: list[JournalEntry], provider) -> QuoteResult:
    """Generate a quote and four tags from a user's recent entries."""
    text = provider.generate(
        None, build_quote_prompt(entries),
        max_tokens=QUOTE_MAX_TOKENS, temperature=QUOTE_TEMPERATURE,
    )
    quote, tags = parse_quote_response(text)
    return QuoteResult(quote=quote, tags=tags, provider=provider.name)
