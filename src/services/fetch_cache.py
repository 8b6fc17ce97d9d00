from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Awaitable, Callable, Generic, Hashable, Iterable, Mapping, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class FetchCache(Generic[K, V]):
    """In-memory TTL cache with at most one in-flight load per key.

    Loaded values, including "not found" markers and expected-failure results,
    are retained for ``ttl``. Exceptions are handed to every waiter and never
    retained. A cancelled waiter stops waiting without cancelling the shared load.
    """

    def __init__(
        self,
        ttl: timedelta,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "cache",
    ) -> None:
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._values: dict[K, tuple[float, V]] = {}
        self._pending: dict[K, asyncio.Future[V]] = {}

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._values)

    async def get(self, key: K, loader: Callable[[K], Awaitable[V]]) -> V:
        found, value = self._lookup(key)
        if found:
            return value

        pending = self._pending.get(key)
        if pending is None:
            logger.debug("%s miss for %s", self.name, key)
            pending = asyncio.ensure_future(loader(key))
            self._pending[key] = pending
            pending.add_done_callback(lambda fut: self._complete(key, fut))
        return await asyncio.shield(pending)

    async def get_many(
        self,
        keys: Iterable[K],
        loader: Callable[[list[K]], Awaitable[Mapping[K, V]]],
        default: V,
    ) -> dict[K, V]:
        """Resolve ``keys`` with one batched ``loader`` call for the keys not yet cached or in flight.

        Keys absent from the loader's mapping resolve to ``default``.
        """
        results: dict[K, V] = {}
        waiting: dict[K, asyncio.Future[V]] = {}
        missing: list[K] = []
        for key in dict.fromkeys(keys):
            found, value = self._lookup(key)
            if found:
                results[key] = value
            elif key in self._pending:
                waiting[key] = self._pending[key]
            else:
                missing.append(key)

        if missing:
            logger.debug("%s miss for %d keys", self.name, len(missing))
            loop = asyncio.get_running_loop()
            futures: dict[K, asyncio.Future[V]] = {key: loop.create_future() for key in missing}
            for key, fut in futures.items():
                self._pending[key] = fut
                fut.add_done_callback(lambda done, key=key: self._complete(key, done))
            batch = asyncio.ensure_future(loader(list(missing)))
            batch.add_done_callback(lambda done: _distribute(done, futures, default))
            waiting.update(futures)

        if waiting:
            pending_keys = list(waiting)
            values = await asyncio.gather(*(asyncio.shield(waiting[key]) for key in pending_keys))
            results.update(zip(pending_keys, values))
        return results

    def clear(self) -> None:
        self._values.clear()

    def _lookup(self, key: K) -> tuple[bool, V]:
        entry = self._values.get(key)
        if entry is None:
            return False, None  # type: ignore[return-value]
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return False, None  # type: ignore[return-value]
        logger.debug("%s hit for %s", self.name, key)
        return True, value

    def _complete(self, key: K, fut: asyncio.Future[V]) -> None:
        if self._pending.get(key) is fut:
            del self._pending[key]
        if fut.cancelled():
            return
        if fut.exception() is not None:
            return
        ttl_seconds = self.ttl.total_seconds()
        if ttl_seconds > 0:
            self._values[key] = (self._clock() + ttl_seconds, fut.result())

    def _evict_expired(self) -> None:
        now = self._clock()
        for key in [key for key, (expires_at, _) in self._values.items() if now >= expires_at]:
            del self._values[key]


def _distribute(batch: asyncio.Future[Mapping[K, V]], futures: Mapping[K, asyncio.Future[V]], default: V) -> None:
    for key, fut in futures.items():
        if fut.done():
            continue
        if batch.cancelled():
            fut.cancel()
        elif batch.exception() is not None:
            fut.set_exception(batch.exception())  # type: ignore[arg-type]
        else:
            fut.set_result(batch.result().get(key, default))


__all__ = ["FetchCache"]
