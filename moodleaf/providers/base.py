"""
Base provider protocol, prompts and response validation.

A provider wraps one upstream chat model. Providers are interchangeable:
the pipeline only ever calls generate(), and picks a primary and an
optional fallback through select_providers().
"""

import json
import logging
import re
from typing import Protocol, runtime_checkable

from ..errors import InvalidResponseError
from ..types import QUOTE_TAG_COUNT, JournalEntry

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Chat Provider
# -----------------------------------------------------------------------------

@runtime_checkable
class ChatProvider(Protocol):
    """
    Sends a prompt to a chat model and returns the generated text.

    Implementations translate their transport failures into the
    moodleaf.errors provider taxonomy:

    - RateLimited: HTTP 429 (with retry_after when the server sends one)
    - TransientNetworkError: timeouts, connection failures, 5xx
    - PermanentError: any other 4xx, missing credentials

    Example implementation:
        class EchoProvider:
            name = "echo"

            def generate(self, system, user, *, max_tokens=256, temperature=0.7):
                return "7"
    """

    name: str

    def generate(
        self,
        system: str | None,
        user: str,
        *,
        max_tokens: int = 256,
        temperature: float = 0.7,
    ) -> str:
        """
        Send a system+user prompt and return the model's text.

        Args:
            system: Optional system prompt
            user: User prompt
            max_tokens: Upper bound on generated tokens
            temperature: Sampling temperature

        Returns:
            The generated text (possibly empty)
        """
        ...


# -----------------------------------------------------------------------------
# Mood Analysis
# -----------------------------------------------------------------------------

MOOD_MAX_TOKENS = 5
MOOD_TEMPERATURE = 0.1

MOOD_ANALYSIS_PROMPT = """You rate the emotional mood of journal entries. Read the entry below and rate its overall mood on a scale from 1 to 10.

1-2: very negative (hopeless, deeply sad)
3-4: negative (sad, anxious, frustrated, stressed)
5-6: mixed or neutral
7-8: positive (content, grateful, hopeful)
9-10: very positive (joyful, elated)

Answer with a single integer from 1 to 10 and nothing else.

Journal entry:
---
{body}
---

Mood score (1-10):"""

_MOOD_SCORE_RE = re.compile(r"^\s*(\d{1,2})\s*\.?\s*$")


def build_mood_prompt(body: str) -> str:
    return MOOD_ANALYSIS_PROMPT.format(body=body)


def parse_mood_score(text: str | None) -> int:
    """
    Validate a mood analysis response.

    Raises:
        InvalidResponseError: Unless the text is a bare integer in [1, 10]
    """
    match = _MOOD_SCORE_RE.match(text or "")
    if not match:
        raise InvalidResponseError(f"Mood score is not an integer: {text!r}")
    score = int(match.group(1))
    if not 1 <= score <= 10:
        raise InvalidResponseError(f"Mood score out of range: {score}")
    return score


# -----------------------------------------------------------------------------
# Inspirational Quotes
# -----------------------------------------------------------------------------

QUOTE_MAX_TOKENS = 500
QUOTE_TEMPERATURE = 0.7

_QUOTE_FORMAT = (
    'Respond with ONLY a JSON object in this exact format (no markdown, no explanation):\n'
    '{"quote": "Your inspirational quote here", "tags": ["tag1", "tag2", "tag3", "tag4"]}'
)

QUOTE_GENERATION_PROMPT = """You are a thoughtful, empathetic life coach. Based on the journal entries below, write one original inspirational quote that speaks to this person's experiences, emotions and journey.

The quote should:
- Be original, not a famous quote
- Reflect themes and emotions from the entries
- Be encouraging and uplifting
- Be 1-3 sentences long

Also name 4 thematic tags for the recurring themes of the entries. Each tag is a single word or a short phrase of at most 2 words.

Journal entries:
---
{entries}
---"""

DEFAULT_QUOTE_PROMPT = """Write a universal, uplifting inspirational quote for someone starting their journaling journey. It should encourage self-reflection and personal growth.

Also give 4 general positive tags about personal growth and journaling.

""" + _QUOTE_FORMAT

# A JSON object holding a "quote" string followed by a "tags" array
_QUOTE_JSON_RE = re.compile(
    r'\{[^{}]*"quote"\s*:\s*"(?:[^"\\]|\\.)*"[^{}]*"tags"\s*:\s*\[[^\]]*\][^{}]*\}',
    re.DOTALL,
)


def format_journal_entries(entries: list[JournalEntry]) -> str:
    """
    Render entries for the quote prompt, newest first.

    Entries with a blank body are skipped.
    """
    blocks = []
    for entry in entries:
        if not entry.body.strip():
            continue
        blocks.append(
            f"Entry {len(blocks) + 1} ({entry.entry_date}):\n{entry.title}\n{entry.body.strip()}"
        )
    return "\n\n---\n\n".join(blocks)


def build_quote_prompt(entries: list[JournalEntry]) -> str:
    """Quote prompt for a user's recent entries, or the starter prompt."""
    content = format_journal_entries(entries)
    if not content:
        return DEFAULT_QUOTE_PROMPT
    return QUOTE_GENERATION_PROMPT.format(entries=content) + "\n\n" + _QUOTE_FORMAT


def extract_json_object(text: str) -> str:
    """
    Pull the quote JSON out of a model response.

    Handles raw JSON, markdown-fenced JSON and JSON after a preamble.
    """
    match = _QUOTE_JSON_RE.search(text)
    if match:
        return match.group(0)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return ""
    return text[start:end + 1].strip()


def parse_quote_response(text: str | None) -> tuple[str, list[str]]:
    """
    Validate a quote generation response.

    Returns:
        (quote, tags) with exactly four non-blank tags

    Raises:
        InvalidResponseError: Missing JSON, empty quote or wrong tag count
    """
    raw = extract_json_object(text or "")
    if not raw:
        raise InvalidResponseError(f"No JSON object in quote response: {(text or '')[:200]!r}")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidResponseError(f"Quote response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidResponseError("Quote response is not a JSON object")

    quote = data.get("quote")
    if not isinstance(quote, str) or not quote.strip():
        raise InvalidResponseError("Quote response has an empty quote")

    tags = data.get("tags")
    if not isinstance(tags, list):
        raise InvalidResponseError("Quote response has no tag list")
    tags = [str(t).strip() for t in tags if str(t).strip()]
    if len(tags) != QUOTE_TAG_COUNT:
        raise InvalidResponseError(
            f"Quote response needs exactly {QUOTE_TAG_COUNT} tags, got {len(tags)}"
        )
    return quote.strip(), tags


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name so the store configuration (TOML) can
    name them rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register("openrouter", OpenRouterProvider)

        # Later, from config:
        provider = registry.create("openrouter", {"model": "google/gemma-3-27b-it:free"})
    """

    def __init__(self):
        self._providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load the provider modules."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Importing registers the concrete classes
        from . import llm  # noqa: F401

    def register(self, name: str, provider_class: type) -> None:
        """Register a chat provider class."""
        self._providers[name] = provider_class

    def create(self, name: str, params: dict | None = None) -> ChatProvider:
        """
        Create a chat provider instance.

        Raises:
            ValueError: Unknown provider name
            RuntimeError: The provider could not be constructed (missing
                credentials, bad parameters)
        """
        self._ensure_providers_loaded()
        if name not in self._providers:
            available = ", ".join(self._providers.keys()) or "none"
            raise ValueError(
                f"Unknown chat provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._providers[name](**(params or {}))
        except Exception as e:
            raise RuntimeError(f"Failed to create chat provider '{name}': {e}") from e

    def list_providers(self) -> list[str]:
        """List registered provider names."""
        self._ensure_providers_loaded()
        return list(self._providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry


def select_providers(
    primary_config,
    fallback_config=None,
    *,
    timeout: float | None = None,
    registry: ProviderRegistry | None = None,
) -> tuple[ChatProvider, ChatProvider | None]:
    """
    Build the primary provider and, if enabled, the fallback provider.

    A fallback that cannot be constructed is logged and skipped: the
    pipeline still runs on the primary alone.

    Args:
        primary_config: ProviderConfig for the primary provider
        fallback_config: ProviderConfig for the fallback, or None
        timeout: Per-request timeout passed to providers that accept one
        registry: Registry to use (defaults to the global one)

    Raises:
        ValueError, RuntimeError: The primary provider can't be created
    """
    registry = registry or get_registry()

    def build(config) -> ChatProvider:
        params = dict(config.params)
        if timeout is not None:
            params.setdefault("timeout", timeout)
        return registry.create(config.name, params)

    primary = build(primary_config)
    fallback = None
    if fallback_config is not None and fallback_config.enabled:
        try:
            fallback = build(fallback_config)
        except (ValueError, RuntimeError) as e:
            logger.warning("Fallback provider '%s' unavailable: %s", fallback_config.name, e)
    return primary, fallback
