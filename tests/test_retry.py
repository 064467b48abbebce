"""Retry handler: bounded backoff, classification, and server hints."""

from __future__ import annotations

import asyncio
import random

from hypothesis import given, settings
from hypothesis import strategies as st
import httpx
import pytest

from llmux.errors import (
    APIError,
    AuthenticationError,
    ConfigurationError,
    InvalidInputError,
    NetworkError,
    RateLimitError,
)
from llmux.retry import (
    RetryHandler,
    RetryPolicy,
    compute_delay,
    default_should_retry,
    policy_for_settings,
)
from llmux.types import GenerationSettings
from tests.helpers import RecordingSleep

pytestmark = pytest.mark.unit


class _Flaky:
    """Fails with the scripted errors, then returns ``"ok"``."""

    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


# =============================================================================
# RetryHandler.execute
# =============================================================================


@pytest.mark.asyncio
async def test_rate_limited_twice_then_success() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay=0.01)
    retries: list[tuple[int, float, BaseException]] = []
    sleep = RecordingSleep()
    operation = _Flaky(RateLimitError("limited"), RateLimitError("limited"))

    handler = RetryHandler(
        policy, on_retry=lambda n, d, e: retries.append((n, d, e)), sleep=sleep
    )
    result = await handler.execute(operation)

    assert result == "ok"
    assert operation.calls == 3
    assert [n for n, _, _ in retries] == [1, 2]
    assert all(isinstance(e, RateLimitError) for _, _, e in retries)
    assert sleep.delays == [d for _, d, _ in retries]


@pytest.mark.asyncio
async def test_exhaustion_reraises_the_last_error_unchanged() -> None:
    last = NetworkError("reset again")
    operation = _Flaky(NetworkError("reset"), NetworkError("reset"), last)

    handler = RetryHandler(RetryPolicy(max_attempts=3, base_delay=0.01), sleep=RecordingSleep())
    with pytest.raises(NetworkError) as exc:
        await handler.execute(operation)

    assert exc.value is last
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried() -> None:
    operation = _Flaky(AuthenticationError("bad key", status_code=401))
    sleep = RecordingSleep()

    with pytest.raises(AuthenticationError):
        await RetryHandler(RetryPolicy(max_attempts=5), sleep=sleep).execute(operation)

    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_single_attempt_policy_never_sleeps() -> None:
    operation = _Flaky(RateLimitError("limited"))
    sleep = RecordingSleep()

    with pytest.raises(RateLimitError):
        await RetryHandler(RetryPolicy(max_attempts=1), sleep=sleep).execute(operation)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_cancellation_is_never_retried() -> None:
    calls = 0

    async def _cancelled() -> str:
        nonlocal calls
        calls += 1
        raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        await RetryHandler(RetryPolicy(max_attempts=3), sleep=RecordingSleep()).execute(
            _cancelled
        )
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_after_hint_raises_the_delay_up_to_the_ceiling() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=5.0, jitter_range=(1.0, 1.0))
    sleep = RecordingSleep()
    operation = _Flaky(
        RateLimitError("limited", retry_after_s=2.0),
        RateLimitError("limited", retry_after_s=60.0),
    )

    await RetryHandler(policy, sleep=sleep).execute(operation)

    assert sleep.delays == [2.0, 5.0]


@pytest.mark.asyncio
async def test_execute_stream_retries_establishment_only() -> None:
    attempts = 0

    async def _items():
        yield 1
        raise NetworkError("mid-stream")

    async def _open():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise NetworkError("connect failed")
        return _items()

    handler = RetryHandler(RetryPolicy(max_attempts=3, base_delay=0.01), sleep=RecordingSleep())
    stream = await handler.execute_stream(_open)

    assert await stream.__anext__() == 1
    with pytest.raises(NetworkError, match="mid-stream"):
        await stream.__anext__()
    assert attempts == 2


# =============================================================================
# Classification
# =============================================================================


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (RateLimitError("x"), True),
        (NetworkError("x"), True),
        (httpx.ConnectError("refused"), True),
        (TimeoutError(), True),
        (APIError("x", status_code=503), True),
        (APIError("x", status_code=400), False),
        (APIError("x", status_code=503, retryable=False), False),
        (APIError("The server is overloaded"), True),
        (APIError("Invalid schema"), False),
        (AuthenticationError("x", retryable=True), False),
        (InvalidInputError("x"), False),
        (ConfigurationError("x"), False),
        (ValueError("x"), False),
    ],
)
def test_default_should_retry(exc: BaseException, expected: bool) -> None:
    assert default_should_retry(exc) is expected


def test_transient_cause_is_found_through_the_exception_chain() -> None:
    wrapper = RuntimeError("sdk failure")
    wrapper.__cause__ = httpx.ReadTimeout("timed out")

    assert default_should_retry(wrapper) is True


# =============================================================================
# Policy and backoff
# =============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay": 0},
        {"max_delay": -1},
        {"exponential_base": 0},
        {"jitter_range": (1.1, 1.2)},
        {"jitter_range": (0.0, 1.0)},
    ],
)
def test_policy_rejects_invalid_values(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_presets_follow_reasoning_effort() -> None:
    assert policy_for_settings(None) == RetryPolicy.default()
    assert policy_for_settings(GenerationSettings(reasoning_effort="low")) == (
        RetryPolicy.aggressive()
    )
    assert policy_for_settings(GenerationSettings(reasoning_effort="high")) == (
        RetryPolicy.conservative()
    )
    assert RetryPolicy.aggressive().max_attempts == 5
    assert RetryPolicy.conservative().max_delay == 10.0


def test_jitter_stays_inside_its_range() -> None:
    policy = RetryPolicy(base_delay=1.0, jitter_range=(0.5, 1.5))
    rng = random.Random(7)

    delays = [compute_delay(policy, 0, rng=rng) for _ in range(100)]

    assert all(0.5 <= d <= 1.5 for d in delays)
    assert len(set(delays)) > 1


@given(
    base=st.floats(min_value=0.01, max_value=5.0),
    growth=st.floats(min_value=1.0, max_value=4.0),
    ceiling=st.floats(min_value=0.01, max_value=120.0),
    attempt=st.integers(min_value=0, max_value=40),
)
@settings(max_examples=50, deadline=None, derandomize=True)
def test_backoff_is_monotonic_and_capped(
    base: float, growth: float, ceiling: float, attempt: int
) -> None:
    """Property: without jitter, delays never shrink and never exceed max_delay."""
    policy = RetryPolicy(
        base_delay=base, max_delay=ceiling, exponential_base=growth, jitter_range=(1.0, 1.0)
    )

    current = compute_delay(policy, attempt)
    following = compute_delay(policy, attempt + 1)

    assert current <= following
    assert following <= ceiling
