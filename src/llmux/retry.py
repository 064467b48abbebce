"""Bounded async retry with exponential backoff and jitter.

Design goals:
- Explicit state (policy + attempt counters)
- Structured error metadata first; message patterns only as a fallback
- Streams retry establishment, never mid-stream
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import random
from typing import TYPE_CHECKING, TypeVar

import httpx

from llmux._http import RETRYABLE_STATUS_CODES, is_transient_message
from llmux.errors import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    InvalidInputError,
    NetworkError,
    RateLimitError,
    UnsupportedOperationError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from llmux.types import GenerationSettings

    RetryObserver = Callable[[int, float, BaseException], None]

T = TypeVar("T")

logger = logging.getLogger(__name__)

_PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    AuthenticationError,
    InvalidInputError,
    UnsupportedOperationError,
    ConfigurationError,
)


def _is_transient_network_error(exc: BaseException) -> bool:
    # SDKs wrap transport failures, so look through the whole chain.
    for e in _walk_exception_chain(exc):
        if isinstance(e, (TimeoutError, asyncio.TimeoutError, NetworkError)):
            return True
        if isinstance(e, (httpx.TimeoutException, httpx.TransportError)):
            return True
        if isinstance(e, ConnectionError):
            return True
    return False


def default_should_retry(exc: BaseException) -> bool:
    """Return True when *exc* looks transient.

    Contract:
    - Cancellation is never retried.
    - Authentication, invalid-input, unsupported-operation and configuration
      errors are permanent.
    - Rate limits and network failures are retried.
    - Other APIErrors use, in order: the provider's ``retryable`` flag, a
      retryable HTTP status code, a transient-sounding message.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, _PERMANENT_ERRORS):
        return False
    if isinstance(exc, (RateLimitError, NetworkError)):
        return True
    if isinstance(exc, APIError):
        if exc.retryable is not None:
            return exc.retryable
        if isinstance(exc.status_code, int) and exc.status_code in RETRYABLE_STATUS_CODES:
            return True
        return is_transient_message(str(exc))
    return _is_transient_network_error(exc)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and multiplicative jitter."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_range: tuple[float, float] = (0.9, 1.1)
    should_retry: Callable[[BaseException], bool] = field(
        default=default_should_retry, compare=False, repr=False
    )

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.base_delay <= 0:
            raise ValueError("RetryPolicy.base_delay must be > 0")
        if self.max_delay <= 0:
            raise ValueError("RetryPolicy.max_delay must be > 0")
        if self.exponential_base <= 0:
            raise ValueError("RetryPolicy.exponential_base must be > 0")
        lo, hi = self.jitter_range
        if not 0 < lo <= 1.0 <= hi:
            raise ValueError(
                "RetryPolicy.jitter_range must be a closed interval around 1.0 "
                f"with a positive lower bound, got {self.jitter_range}"
            )

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def aggressive(cls) -> RetryPolicy:
        """More, faster retries for cheap low-latency calls."""
        return cls(max_attempts=5, base_delay=0.5, max_delay=60.0, exponential_base=1.5)

    @classmethod
    def conservative(cls) -> RetryPolicy:
        """Few, slow retries for expensive calls."""
        return cls(max_attempts=2, base_delay=2.0, max_delay=10.0, exponential_base=2.0)


def policy_for_settings(settings: GenerationSettings | None) -> RetryPolicy:
    """Pick a preset from the request's reasoning-effort hint."""
    effort = settings.reasoning_effort if settings is not None else None
    if effort == "high":
        return RetryPolicy.conservative()
    if effort in ("minimal", "low"):
        return RetryPolicy.aggressive()
    return RetryPolicy.default()


def compute_delay(
    policy: RetryPolicy,
    attempt_index: int,
    *,
    rng: random.Random | None = None,
) -> float:
    """Backoff before retry number ``attempt_index + 1`` (attempt_index starts at 0)."""
    try:
        raw = policy.base_delay * (policy.exponential_base ** max(0, attempt_index))
    except OverflowError:
        raw = policy.max_delay
    base = min(policy.max_delay, raw)
    lo, hi = policy.jitter_range
    factor = (rng or random).uniform(lo, hi) if lo != hi else lo
    return base * factor


def _retry_after_from_error(exc: BaseException) -> float | None:
    for e in _walk_exception_chain(exc):
        if isinstance(e, APIError):
            v = e.retry_after_s
            if isinstance(v, (int, float)) and v >= 0:
                return float(v)
    return None


class RetryHandler:
    """Run async operations under a RetryPolicy.

    ``on_retry(attempt_number, delay_s, error)`` is called before each backoff
    sleep; ``attempt_number`` is the 1-based attempt that just failed.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        on_retry: RetryObserver | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._on_retry = on_retry
        self._sleep = sleep
        self._rng = rng

    def delay_for(self, exc: BaseException, attempt_index: int) -> float:
        delay = compute_delay(self.policy, attempt_index, rng=self._rng)
        retry_after = _retry_after_from_error(exc)
        if retry_after is not None:
            # Honor the server hint, but never beyond the policy ceiling.
            delay = max(delay, min(retry_after, self.policy.max_delay))
        return delay

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` until it succeeds or retries are exhausted.

        The last error propagates unchanged.
        """
        policy = self.policy
        for attempt in range(policy.max_attempts):
            try:
                return await operation()
            except Exception as exc:
                if attempt + 1 >= policy.max_attempts or not policy.should_retry(exc):
                    raise
                delay = self.delay_for(exc, attempt)
                logger.warning(
                    "Attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt + 1,
                    policy.max_attempts,
                    exc,
                    delay,
                )
                if self._on_retry is not None:
                    self._on_retry(attempt + 1, delay, exc)
                await self._sleep(delay)

        raise RuntimeError("retry loop exited without a result")  # pragma: no cover

    async def execute_stream(
        self, operation: Callable[[], Awaitable[AsyncIterator[T]]]
    ) -> AsyncIterator[T]:
        """Retry stream *establishment*; return the established stream.

        Errors raised while iterating the returned stream are not retried:
        replaying would duplicate output the caller already saw.
        """
        return await self.execute(operation)
