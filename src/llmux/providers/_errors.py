"""Map vendor SDK and httpx failures onto the llmux error taxonomy.

Every provider funnels its exceptions through ``wrap_provider_error`` so the
retry handler sees structured fields (status, ``Retry-After``, retryable)
instead of having to guess from message text.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx

from llmux._http import RETRYABLE_STATUS_CODES
from llmux.config import api_key_env_var
from llmux.errors import (
    APIError,
    AuthenticationError,
    LlmuxError,
    NetworkError,
    RateLimitError,
    _walk_exception_chain,
)

_STATUS_ATTRS = ("status_code", "status", "code")
_GOOGLE_DURATION = re.compile(r"^(\d+(?:\.\d+)?)s$")
_TRANSPORT_ERROR_NAMES = frozenset({"APIConnectionError", "APITimeoutError"})


def _as_http_status(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599:
        return value
    return None


def extract_status_code(exc: BaseException) -> int | None:
    """First HTTP status found on the exception or anything it chains to."""
    for link in _walk_exception_chain(exc):
        candidates = [getattr(link, attr, None) for attr in _STATUS_ATTRS]
        candidates.append(getattr(getattr(link, "response", None), "status_code", None))
        for candidate in candidates:
            status = _as_http_status(candidate)
            if status is not None:
                return status
    return None


def _seconds_from_header(headers: Any) -> float | None:
    if headers is None or not hasattr(headers, "get"):
        return None
    raw = headers.get("Retry-After")
    if not isinstance(raw, str):
        return None
    try:
        seconds = float(raw.strip())
    except ValueError:
        # HTTP-date form is not honored.
        return None
    return seconds if seconds >= 0 else None


def _seconds_from_google_details(exc: BaseException) -> float | None:
    """Read ``RetryInfo.retryDelay`` from a google-genai ``ClientError.details`` body."""
    body = getattr(exc, "details", None)
    error = body.get("error") if isinstance(body, dict) else None
    entries = error.get("details") if isinstance(error, dict) else None
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if not isinstance(entry, dict) or "RetryInfo" not in str(entry.get("@type", "")):
            continue
        match = _GOOGLE_DURATION.match(str(entry.get("retryDelay", "")))
        if match:
            return float(match.group(1))
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Server-suggested wait in seconds, from an attribute, header or RetryInfo."""
    for link in _walk_exception_chain(exc):
        direct = getattr(link, "retry_after", None)
        if isinstance(direct, (int, float)) and direct >= 0:
            return float(direct)
        for seconds in (
            _seconds_from_header(getattr(getattr(link, "response", None), "headers", None)),
            _seconds_from_google_details(link),
        ):
            if seconds is not None:
                return seconds
    return None


def _credentials_hint(provider: str, status: int | None, detail: str) -> str | None:
    lowered = detail.lower()
    mentions_key = "api key" in lowered or "api_key" in lowered
    if status in (401, 403) or (status == 400 and mentions_key):
        variable = api_key_env_var(provider) or "the provider API key"
        return f"Check credentials and permissions; set {variable} or pass Config.api_key."
    return None


def _classify(
    status: int | None, retry_after_s: float | None
) -> tuple[type[APIError], bool | None]:
    if status is None:
        return APIError, None
    if status in (401, 403):
        return AuthenticationError, False
    retryable = status in RETRYABLE_STATUS_CODES or retry_after_s is not None
    return (RateLimitError if status == 429 else APIError), retryable


def _is_transport_failure(exc: BaseException) -> bool:
    return any(
        isinstance(link, (httpx.TransportError, httpx.TimeoutException, TimeoutError))
        or type(link).__name__ in _TRANSPORT_ERROR_NAMES
        for link in _walk_exception_chain(exc)
    )


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    allow_network_errors: bool = True,
    message: str | None = None,
    hint: str | None = None,
) -> LlmuxError:
    """Return the llmux error for *exc*; cancellation is re-raised, never wrapped."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, APIError):
        # Keep what the inner layer recorded; only fill the gaps.
        exc.provider = exc.provider or provider
        exc.phase = exc.phase or phase
        exc.hint = exc.hint or hint
        return exc
    if isinstance(exc, LlmuxError):
        return exc

    status = extract_status_code(exc)
    prefix = message or f"{provider} {phase} failed"
    detail = str(exc)

    if status is None and allow_network_errors and _is_transport_failure(exc):
        return NetworkError(
            f"{prefix}: {detail}" if detail else prefix,
            hint=hint or "Check network connectivity and the provider base URL.",
            provider=provider,
        )

    retry_after_s = extract_retry_after_s(exc)
    err_cls, retryable = _classify(status, retry_after_s)
    if status is not None:
        prefix = f"{prefix} (status={status})"
    return err_cls(
        f"{prefix}: {detail}" if detail else prefix,
        hint=hint if hint is not None else _credentials_hint(provider, status, detail),
        retryable=retryable,
        status_code=status,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )


async def raise_for_stream_status(response: httpx.Response, *, provider: str) -> None:
    """Raise before the first delta when the stream request itself was refused."""
    if not response.is_error:
        return
    try:
        body = (await response.aread()).decode("utf-8", errors="replace").strip()
    finally:
        await response.aclose()
    status = response.status_code
    retry_after_s = _seconds_from_header(response.headers)
    err_cls, retryable = _classify(status, retry_after_s)
    raise err_cls(
        f"{provider} stream failed (status={status}): {body[:500]}",
        hint=_credentials_hint(provider, status, body),
        retryable=retryable,
        status_code=status,
        retry_after_s=retry_after_s,
        provider=provider,
        phase="stream",
    )
