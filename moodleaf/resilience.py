"""
Resilient calls to AI providers: hard timeout, fail-over and backoff.

One call() is one link of a retry chain. It never sleeps and never loops:

1. The primary provider is called under a hard timeout.
2. On RateLimited or a transient failure, the fallback provider (if any)
   is tried once, immediately, before any backoff is counted.
3. If that fails too, the outcome is RETRY with a delay of
   min(cap, base * 2^attempt) + jitter, raised to the server's
   Retry-After when one was given. The caller reschedules the work.
4. PermanentError from the primary short-circuits everything: PERMANENT.

Exceptions that are not provider errors are treated as transient and
logged with their traceback.
"""

import logging
import random
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import PermanentError, ProviderError, RateLimited, TransientNetworkError
from .types import EnrichmentResult

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE = 10.0
DEFAULT_BACKOFF_MAX = 600.0
DEFAULT_JITTER = 1.0
DEFAULT_CALL_TIMEOUT = 30.0


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    PERMANENT = "permanent"


@dataclass
class CallOutcome:
    """Result of one resilient call."""
    outcome: Outcome
    result: Optional[EnrichmentResult] = None
    error: Optional[Exception] = None
    delay_seconds: float = 0.0
    provider: str = ""
    used_fallback: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def error_message(self) -> str:
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    cap: float = DEFAULT_BACKOFF_MAX,
    jitter: float = DEFAULT_JITTER,
    rng=random,
) -> float:
    """Delay before retry number attempt+1: min(cap, base * 2^attempt) + U(0, jitter)."""
    # Bound the exponent so huge attempt counts can't overflow the float
    delay = min(cap, base * (2 ** min(attempt, 32)))
    if jitter > 0:
        delay += rng.uniform(0, jitter)
    return delay


class ResilientCaller:
    """
    Wraps provider calls with a hard timeout, fail-over and backoff.

    A request is any callable taking a provider and returning an
    EnrichmentResult, e.g. functools.partial(process_mood, body).

    The hard timeout runs each provider call on a private thread pool and
    stops waiting after timeout_seconds. A timed-out call can't be
    interrupted; its thread finishes in the background (the SDK clients
    carry their own socket timeout as well).
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        jitter: float = DEFAULT_JITTER,
        max_workers: int = 4,
        rng=None,
    ):
        self.timeout_seconds = timeout_seconds
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="moodleaf-call",
        )

    def backoff(self, attempt: int) -> float:
        return compute_backoff(
            attempt, self.backoff_base, self.backoff_max, self.jitter, self._rng,
        )

    def _invoke(self, provider, request: Callable) -> EnrichmentResult:
        """Run one provider call under the hard timeout."""
        future = self._executor.submit(request, provider)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeout:
            future.cancel()
            raise TransientNetworkError(
                f"No response within {self.timeout_seconds:g}s",
                provider=getattr(provider, "name", ""),
            ) from None

    def _attempt(self, provider, request: Callable) -> tuple[Optional[EnrichmentResult], Optional[Exception]]:
        """Call a provider, returning (result, None) or (None, error)."""
        name = getattr(provider, "name", type(provider).__name__)
        try:
            return self._invoke(provider, request), None
        except ProviderError as e:
            if not e.provider:
                e.provider = name
            return None, e
        except Exception as e:
            logger.warning("Unexpected error from provider %s", name, exc_info=True)
            return None, TransientNetworkError(f"{type(e).__name__}: {e}", provider=name)

    def call(self, primary, fallback, request: Callable, *, attempt: int = 0) -> CallOutcome:
        """
        Run request against the primary provider, failing over once.

        Args:
            primary: Primary ChatProvider
            fallback: Fallback ChatProvider, or None
            request: Callable(provider) -> EnrichmentResult
            attempt: Failures already recorded for this task (drives backoff)

        Returns:
            CallOutcome: SUCCESS with the result, RETRY with a delay, or
            PERMANENT
        """
        primary_name = getattr(primary, "name", "")
        result, error = self._attempt(primary, request)
        if error is None:
            return CallOutcome(Outcome.SUCCESS, result=result, provider=primary_name)

        if isinstance(error, PermanentError):
            logger.warning("Permanent error from %s: %s", primary_name, error)
            return CallOutcome(Outcome.PERMANENT, error=error, provider=primary_name)

        errors = [error]
        if fallback is not None:
            fallback_name = getattr(fallback, "name", "")
            logger.info(
                "Provider %s failed (%s); failing over to %s",
                primary_name, type(error).__name__, fallback_name,
            )
            result, fallback_error = self._attempt(fallback, request)
            if fallback_error is None:
                return CallOutcome(
                    Outcome.SUCCESS, result=result,
                    provider=fallback_name, used_fallback=True,
                )
            # The primary's failure was transient, so a broken fallback
            # doesn't make the task hopeless
            logger.warning("Fallback %s failed too: %s", fallback_name, fallback_error)
            errors.append(fallback_error)

        delay = self.backoff(attempt)
        retry_after = max(
            (e.retry_after for e in errors if isinstance(e, RateLimited) and e.retry_after),
            default=0.0,
        )
        delay = max(delay, retry_after)
        last = errors[-1]
        logger.info(
            "Call failed (%s); retry in %.1fs (attempt %d)",
            type(last).__name__, delay, attempt + 1,
        )
        return CallOutcome(
            Outcome.RETRY, error=last, delay_seconds=delay,
            provider=getattr(last, "provider", ""), used_fallback=fallback is not None,
        )

    def shutdown(self, wait: bool = False) -> None:
        """Stop the call pool. In-flight provider calls are not interrupted."""
        self._executor.shutdown(wait=wait, cancel_futures=True)
