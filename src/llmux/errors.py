"""Exception hierarchy for llmux."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class LlmuxError(Exception):
    """Base exception for all llmux errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(LlmuxError):
    """Configuration validation or resolution failed."""


class InvalidInputError(LlmuxError):
    """The caller passed a value the library cannot act on."""


class UnsupportedOperationError(LlmuxError):
    """The provider or session cannot perform the requested operation."""


class NetworkError(LlmuxError):
    """Transport-level failure (connect, read, TLS, dropped socket)."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider


class APIError(LlmuxError):
    """Provider returned a structured error.

    Providers attach retry metadata so the retry handler can decide without
    guessing. When ``retryable`` is ``None`` the handler falls back to status
    codes and, last, to transient message patterns.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""


class AuthenticationError(APIError):
    """Credential missing, invalid, or lacking permission (HTTP 401/403)."""


class ToolArgumentError(InvalidInputError):
    """A tool argument was missing or had the wrong type."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        argument: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.argument = argument


class RealtimeConnectionError(LlmuxError):
    """Realtime transport could not be established or re-established."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
