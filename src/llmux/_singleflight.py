"""Coalesce concurrent cache misses for the same key onto one call."""

from __future__ import annotations

import asyncio
import copy
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

K = TypeVar("K")
T = TypeVar("T")


def _retrieve(fut: asyncio.Future[Any]) -> None:
    # Marks the exception as retrieved when no waiter ever awaits the future.
    if not fut.cancelled():
        fut.exception()


class SingleFlight(Generic[K, T]):
    """Per-key call coalescing.

    The first caller for a key becomes the leader and runs the work; callers
    arriving while it runs wait on the leader's future and receive their own
    deep copy of its result. A waiter's cancellation does not cancel the leader.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._calls: dict[K, asyncio.Future[T]] = {}

    def __len__(self) -> int:
        return len(self._calls)

    async def do(
        self,
        key: K,
        work: Callable[[], Awaitable[T]],
        *,
        lookup: Callable[[K], Awaitable[T | None]],
        store: Callable[[K, T], Awaitable[None]],
    ) -> T:
        """Return ``lookup(key)`` if present, else the single shared result of *work*.

        Errors from *work* reach the leader and every waiter unchanged.
        """
        async with self._lock:
            hit = await lookup(key)
            if hit is not None:
                return hit
            pending = self._calls.get(key)
            if pending is None:
                pending = asyncio.get_running_loop().create_future()
                pending.add_done_callback(_retrieve)
                self._calls[key] = pending
                leader = True
            else:
                leader = False

        if not leader:
            return copy.deepcopy(await asyncio.shield(pending))

        try:
            value = await work()
            await store(key, value)
        except asyncio.CancelledError:
            pending.cancel()
            raise
        except Exception as e:
            pending.set_exception(e)
            raise
        else:
            pending.set_result(value)
            return value
        finally:
            async with self._lock:
                self._calls.pop(key, None)
