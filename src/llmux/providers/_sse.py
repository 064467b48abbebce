"""httpx plumbing for SSE streaming endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import httpx

from llmux.normalizer import normalize
from llmux.providers._errors import raise_for_stream_status, wrap_provider_error

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from llmux.deltas import CanonicalDelta
    from llmux.normalizer import Grammar

logger = logging.getLogger(__name__)


async def _lines(response: httpx.Response, *, provider: str) -> AsyncIterator[str]:
    try:
        async for line in response.aiter_lines():
            yield line
    except httpx.HTTPError as e:
        raise wrap_provider_error(e, provider=provider, phase="stream") from e


async def _deltas(
    response: httpx.Response, grammar: Grammar, *, provider: str, tag_final: bool
) -> AsyncIterator[CanonicalDelta]:
    try:
        async for delta in normalize(
            _lines(response, provider=provider), grammar, tag_final=tag_final
        ):
            yield delta
    finally:
        await response.aclose()


async def open_sse_stream(
    client: httpx.AsyncClient,
    *,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    grammar: Grammar,
    provider: str,
    tag_final: bool = False,
    params: dict[str, str] | None = None,
) -> AsyncIterator[CanonicalDelta]:
    """POST *payload* and return the normalized delta stream.

    Connection failures and error statuses raise here, before any delta is
    produced, so callers can retry establishment.
    """
    request = client.build_request(
        "POST",
        url,
        json=payload,
        headers={"Accept": "text/event-stream", **headers},
        params=params,
    )
    try:
        response = await client.send(request, stream=True)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise wrap_provider_error(e, provider=provider, phase="stream") from e
    await raise_for_stream_status(response, provider=provider)
    logger.debug("%s stream established (%s)", provider, response.status_code)
    return _deltas(response, grammar, provider=provider, tag_final=tag_final)
