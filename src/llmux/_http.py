"""Small HTTP-related constants shared across llmux.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Retryable status codes shared by provider mapping and core retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

# Lower-cased substrings that mark an API error message as transient. Providers
# reword these over time, so this list is a floor, not a complete classifier.
TRANSIENT_MESSAGE_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "temporarily unavailable",
    "service unavailable",
    "overloaded",
    "bad gateway",
    "gateway timeout",
    "502",
    "503",
    "504",
)


def is_transient_message(message: str) -> bool:
    """Return True when *message* reads like a transient server-side failure."""
    lowered = message.lower()
    return any(pattern in lowered for pattern in TRANSIENT_MESSAGE_PATTERNS)
