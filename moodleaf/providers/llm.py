"""
Chat providers backed by hosted and local LLMs.

Every provider disables its SDK's own retry loop: retries, backoff and
fail-over are decided by moodleaf.resilience and expressed as queue
rescheduling, so a provider call is always a single attempt.
"""

import logging
import os

import anthropic
import httpx
import openai
import requests

from ..errors import (
    PermanentError,
    ProviderError,
    RateLimited,
    TransientNetworkError,
)
from .base import get_registry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def _parse_retry_after(value: str | None) -> float | None:
    """Retry-After header in seconds, or None (HTTP dates are ignored)."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def classify_http_status(
    status: int,
    message: str,
    *,
    provider: str,
    retry_after: float | None = None,
) -> ProviderError:
    """Map an HTTP error status to a provider error."""
    if status == 429:
        return RateLimited(message, provider=provider, retry_after=retry_after)
    if status == 408 or status >= 500:
        return TransientNetworkError(message, provider=provider)
    return PermanentError(message, provider=provider)


def translate_sdk_error(exc: Exception, provider: str) -> Exception:
    """
    Translate an openai/anthropic SDK exception into a provider error.

    Both SDKs share the same exception hierarchy names; anything that is
    not an SDK API error is returned unchanged.
    """
    for sdk in (openai, anthropic):
        if isinstance(exc, sdk.APITimeoutError):
            return TransientNetworkError(f"Request timed out: {exc}", provider=provider)
        if isinstance(exc, sdk.APIConnectionError):
            return TransientNetworkError(f"Connection failed: {exc}", provider=provider)
        if isinstance(exc, sdk.APIStatusError):
            retry_after = _parse_retry_after(exc.response.headers.get("retry-after"))
            return classify_http_status(
                exc.status_code, f"HTTP {exc.status_code}: {exc.message}",
                provider=provider, retry_after=retry_after,
            )
    return exc


# -----------------------------------------------------------------------------
# OpenAI-compatible Providers
# -----------------------------------------------------------------------------

class OpenAICompatibleProvider:
    """
    Chat provider for any OpenAI-compatible /chat/completions endpoint.

    Requires an API key, from the api_key parameter or the environment
    variable named by api_key_env.
    """

    name = "openai"
    default_model = "gpt-4o-mini"
    default_base_url: str | None = None
    api_key_envs: tuple[str, ...] = ("MOODLEAF_OPENAI_API_KEY", "OPENAI_API_KEY")

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
    ):
        self.model = model or self.default_model
        key = api_key or next(
            (os.environ[v] for v in self.api_key_envs if os.environ.get(v)), None
        )
        if not key:
            raise ValueError(
                f"{self.name} API key required. Set {' or '.join(self.api_key_envs)}"
            )

        self._client = openai.OpenAI(
            api_key=key,
            base_url=base_url or self.default_base_url,
            timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            max_retries=0,
            default_headers=self._default_headers(headers),
        )

        # GPT-5+ and reasoning models take max_completion_tokens and
        # reject a non-default temperature
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _default_headers(self, headers: dict[str, str] | None) -> dict[str, str] | None:
        return headers

    def _completion_kwargs(self, max_tokens: int, temperature: float) -> dict:
        """Return model-appropriate kwargs for token limit and temperature."""
        if self._new_api:
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens, "temperature": temperature}

    def generate(
        self,
        system: str | None,
        user: str,
        *,
        max_tokens: int = 256,
        temperature: float = 0.7,
    ) -> str:
        """Send a prompt to the chat completions endpoint."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                **self._completion_kwargs(max_tokens, temperature),
            )
        except openai.OpenAIError as e:
            raise translate_sdk_error(e, self.name) from e
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()


class OpenRouterProvider(OpenAICompatibleProvider):
    """
    OpenRouter, the default primary provider.

    Requires: OPENROUTER_API_KEY. OpenRouter attributes requests to an
    application through the HTTP-Referer and X-Title headers.
    """

    name = "openrouter"
    default_model = "google/gemma-3-27b-it:free"
    default_base_url = "https://openrouter.ai/api/v1"
    api_key_envs = ("OPENROUTER_API_KEY",)

    def __init__(self, *args, app_url: str | None = None, app_title: str = "moodleaf", **kwargs):
        self.app_url = app_url
        self.app_title = app_title
        super().__init__(*args, **kwargs)

    def _default_headers(self, headers):
        merged = {"X-Title": self.app_title}
        if self.app_url:
            merged["HTTP-Referer"] = self.app_url
        merged.update(headers or {})
        return merged


class ChatAnywhereProvider(OpenAICompatibleProvider):
    """
    ChatAnywhere OpenAI-compatible gateway, the default fallback.

    Requires: MOODLEAF_FALLBACK_API_KEY.
    """

    name = "chatanywhere"
    default_model = "gpt-4o-mini"
    default_base_url = "https://api.chatanywhere.org/v1"
    api_key_envs = ("MOODLEAF_FALLBACK_API_KEY",)


# -----------------------------------------------------------------------------
# Anthropic
# -----------------------------------------------------------------------------

class AnthropicProvider:
    """
    Chat provider using Anthropic's Messages API.

    Authentication (checked in priority order):
    1. api_key parameter (if provided)
    2. ANTHROPIC_API_KEY
    """

    name = "anthropic"

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model = model
        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError("Anthropic API key required. Set ANTHROPIC_API_KEY")
        self._client = anthropic.Anthropic(
            api_key=key,
            timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            max_retries=0,
        )

    def generate(
        self,
        system: str | None,
        user: str,
        *,
        max_tokens: int = 256,
        temperature: float = 0.7,
    ) -> str:
        """Send a prompt to Anthropic and return the text blocks."""
        kwargs = {}
        if system:
            kwargs["system"] = system
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": user}],
                **kwargs,
            )
        except anthropic.AnthropicError as e:
            raise translate_sdk_error(e, self.name) from e
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return text.strip()


# -----------------------------------------------------------------------------
# Ollama
# -----------------------------------------------------------------------------

class OllamaProvider:
    """
    Chat provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    name = "ollama"

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model = model
        host = base_url or os.environ.get("OLLAMA_HOST") or "http://localhost:11434"
        if not host.startswith(("http://", "https://")):
            host = f"http://{host}"
        self.base_url = host.rstrip("/")
        self.timeout = timeout

    def generate(
        self,
        system: str | None,
        user: str,
        *,
        max_tokens: int = 256,
        temperature: float = 0.7,
    ) -> str:
        """Send a prompt to Ollama's /api/chat endpoint."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})
        try:
            response = requests.post(
                f"{self.base_url}/api/chat",
                json={
                    "model": self.model,
                    "messages": messages,
                    "stream": False,
                    "options": {"temperature": temperature, "num_predict": max_tokens},
                },
                timeout=(min(10.0, self.timeout), self.timeout),  # (connect, read)
            )
        except requests.Timeout as e:
            raise TransientNetworkError(f"Ollama request timed out: {e}", provider=self.name) from e
        except requests.ConnectionError as e:
            raise TransientNetworkError(
                f"Cannot reach Ollama at {self.base_url}: {e}", provider=self.name
            ) from e

        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise classify_http_status(
                response.status_code,
                f"Ollama HTTP {response.status_code} (model={self.model}). {detail}",
                provider=self.name,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        try:
            return response.json()["message"]["content"].strip()
        except (ValueError, KeyError, TypeError) as e:
            raise TransientNetworkError(
                f"Unexpected Ollama response: {response.text[:200]}", provider=self.name
            ) from e


# Register providers
_registry = get_registry()
_registry.register("openai", OpenAICompatibleProvider)
_registry.register("openrouter", OpenRouterProvider)
_registry.register("chatanywhere", ChatAnywhereProvider)
_registry.register("anthropic", AnthropicProvider)
_registry.register("ollama", OllamaProvider)
