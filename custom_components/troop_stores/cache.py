"""Process-local read cache with in-flight request deduplication.

One ``CollectionCache`` guards one collection (all items, all loans). A fresh
entry is served without touching the store; concurrent cold readers share a
single load; ``invalidate()`` drops both the cached data and any in-flight
load so that a load started before a write can never repopulate the cache
with pre-write data.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from .const import CACHE_TTL_SECONDS, DOMAIN

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CollectionCache(Generic[T]):
    """TTL cache for one collection with single-flight loading."""

    def __init__(
        self,
        *,
        name: str = "collection",
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._ttl = ttl
        self._clock = clock or time.monotonic
        self._data: T | None = None
        self._expires_at: float | None = None
        self._inflight: asyncio.Task[T] | None = None
        # Bumped by invalidate(); a load only populates the generation it started in
        self._generation = 0

    @property
    def is_fresh(self) -> bool:
        return self._expires_at is not None and self._clock() < self._expires_at

    def peek(self) -> T | None:
        """Return the cached data if fresh, without loading."""

        if self.is_fresh:
            return self._data
        return None

    async def get(self, loader: Callable[[], Awaitable[T]]) -> T:
        """Return the cached collection, loading it through ``loader`` on a miss."""

        if self.is_fresh:
            return self._data  # type: ignore[return-value]

        # Shielded so a caller that stops waiting does not cancel the shared load
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        task: asyncio.Task[T] = asyncio.ensure_future(self._load(loader, self._generation))
        self._inflight = task
        return await asyncio.shield(task)

    async def _load(self, loader: Callable[[], Awaitable[T]], generation: int) -> T:
        started = self._clock()
        try:
            data = await loader()
        finally:
            if self._inflight is asyncio.current_task():
                self._inflight = None
        if generation == self._generation:
            self._data = data
            self._expires_at = self._clock() + self._ttl
        _LOGGER.debug(
            "Cache load finished",
            extra={
                "domain": DOMAIN,
                "op": "cache_load",
                "cache": self._name,
                "stored": generation == self._generation,
                "duration_ms": int((self._clock() - started) * 1000),
            },
        )
        return data

    def invalidate(self) -> None:
        self._generation += 1
        self._data = None
        self._expires_at = None
        self._inflight = None
