"""Async keyed cache whose factory runs at most once per key.

Concurrent first callers for the same key share one in-flight future. A factory
that raises removes its key so a later caller can try again; failures are never
cached.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Generic
from typing import Hashable
from typing import TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class KeyedCache(Generic[K, V]):
    def __init__(self):
        self._items: dict[K, asyncio.Future[V]] = {}

    async def get_or_add(self, key: K, factory: Callable[[K], Awaitable[V]]) -> V:
        future = self._items.get(key)
        if future is None:
            # Registration happens before the first await, so no other caller
            # can slip in between the lookup and the insert.
            future = asyncio.get_running_loop().create_future()
            self._items[key] = future
            try:
                value = await factory(key)
            except BaseException as exc:
                if self._items.get(key) is future:
                    del self._items[key]
                if isinstance(exc, asyncio.CancelledError):
                    future.cancel()
                else:
                    future.set_exception(exc)
                    # Mark retrieved so waiters-free failures do not warn at GC.
                    future.exception()
                raise
            future.set_result(value)
            return value

        return await asyncio.shield(future)

    def remove(self, key: K) -> asyncio.Future[V] | None:
        """Detach a key and return its (possibly still pending) future."""
        return self._items.pop(key, None)


@dataclass
class JobOutput:
    type: str
    payload: dict[str, Any]


class JobOutputStore:
    """Per-job accumulation of the operations an updater reports back.

    Each job gets a list guarded by its own lock, created lazily on first output.
    ``pop`` detaches the whole list atomically when the job is finalized.
    """

    def __init__(self):
        self._cache: KeyedCache[str, tuple[asyncio.Lock, list[JobOutput]]] = KeyedCache()

    @staticmethod
    async def _create(job_id: str) -> tuple[asyncio.Lock, list[JobOutput]]:
        return asyncio.Lock(), []

    async def add(self, job_id: str, type: str, payload: dict[str, Any]) -> None:
        lock, outputs = await self._cache.get_or_add(job_id, self._create)
        async with lock:
            outputs.append(JobOutput(type=type, payload=payload))

    async def pop(self, job_id: str) -> list[JobOutput]:
        future = self._cache.remove(job_id)
        if future is None:
            return []
        lock, outputs = await future
        async with lock:
            collected = list(outputs)
        logger.debug("Collected %s output(s) for job %s", len(collected), job_id)
        return collected
