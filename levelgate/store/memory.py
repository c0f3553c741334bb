"""
In-memory store.

Implements the full store capability surface over a sorted key list.
Intended for development, tests and the bundled example application.

Live subscriptions are registered synchronously when the stream is
created, and every commit notifies subscribers before ``put``/``delete``
returns, so subscribers see changes in commit order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from bisect import bisect_left, bisect_right, insort
from collections.abc import AsyncIterator
from typing import Any

from ..errors import BackpressureOverflowError, KeyNotFoundError, StoreError
from .protocol import ChangeEvent, RangeQuery, StoreCapabilities

logger = logging.getLogger(__name__)

_CLOSED = object()


class LiveSubscription:
    """
    One subscriber's view of committed changes in a key range.

    Each subscription owns a bounded queue. When a commit finds the queue
    full the subscription is marked overflowed: queued changes are still
    delivered, after which the iterator raises ``BackpressureOverflowError``
    instead of silently skipping the change that did not fit.
    """

    def __init__(
        self,
        store: MemoryStore,
        query: RangeQuery,
        *,
        maxsize: int,
        replay: list[tuple[str, Any]] | None = None,
    ):
        self._store = store
        self.query = query
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._replay = list(replay or [])
        self._overflowed = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    def offer(self, event: ChangeEvent) -> None:
        """Queue a change for delivery, without blocking the committer."""
        if self._closed or self._overflowed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._overflowed = True
            logger.warning(
                f"[memory_store] Live subscriber overflowed at key={event.key} "
                f"(queue size {self._queue.maxsize})"
            )

    def __aiter__(self) -> LiveSubscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self._closed:
            raise StopAsyncIteration
        if self._replay:
            key, value = self._replay.pop(0)
            return ChangeEvent("put", key, value).to_dict()
        if self._overflowed and self._queue.empty():
            self.close()
            raise BackpressureOverflowError(
                "Live subscriber fell behind and a change could not be delivered"
            )

        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            raise StopAsyncIteration
        return item.to_dict()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._detach(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # A reader is only ever blocked on an empty queue
            pass

    async def aclose(self) -> None:
        self.close()


class MemoryStore:
    """
    Sorted in-memory key-value store with nested sublevels.

    Example:
        root = MemoryStore()
        items = root.sublevel("items")
        await items.put("a", {"n": 1})
        async for record in items.create_read_stream(RangeQuery(gte="a")):
            ...
    """

    def __init__(
        self,
        *,
        name: str = "",
        supports_create: bool = False,
        live_queue_size: int = 128,
    ):
        if live_queue_size < 1:
            raise ValueError("live_queue_size must be at least 1")
        self.name = name
        self._supports_create = supports_create
        self._live_queue_size = live_queue_size
        self._data: dict[str, Any] = {}
        self._keys: list[str] = []
        self._subscribers: set[LiveSubscription] = set()
        self._children: dict[str, MemoryStore] = {}
        self._seq = itertools.count()

    @property
    def capabilities(self) -> StoreCapabilities:
        return StoreCapabilities(
            supports_create=self._supports_create,
            supports_create_key=True,
            supports_live=True,
        )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ==================== Point operations ====================

    async def get(self, key: str) -> Any:
        if key not in self._data:
            raise KeyNotFoundError(key)
        return self._data[key]

    async def put(self, key: str, value: Any) -> None:
        if not isinstance(key, str) or not key:
            raise StoreError("Keys must be non-empty strings", key=repr(key))
        if key not in self._data:
            insort(self._keys, key)
        self._data[key] = value
        self._notify(ChangeEvent("put", key, value))

    async def delete(self, key: str) -> None:
        if key not in self._data:
            return
        del self._data[key]
        del self._keys[bisect_left(self._keys, key)]
        self._notify(ChangeEvent("del", key))

    async def create_key(self, value: Any = None) -> str:
        # Time-ordered so generated keys sort by creation
        return f"{time.time_ns():016x}{next(self._seq):06x}"

    async def create(self, value: Any) -> str:
        if not self._supports_create:
            raise StoreError(f"Store '{self.name}' does not support create")
        key = await self.create_key(value)
        await self.put(key, value)
        return key

    # ==================== Streams ====================

    def _select(self, query: RangeQuery) -> list[str]:
        keys = self._keys
        lo, hi = 0, len(keys)
        if query.gte is not None:
            lo = max(lo, bisect_left(keys, query.gte))
        if query.gt is not None:
            lo = max(lo, bisect_right(keys, query.gt))
        if query.lte is not None:
            hi = min(hi, bisect_right(keys, query.lte))
        if query.lt is not None:
            hi = min(hi, bisect_left(keys, query.lt))

        selected = keys[lo:hi] if lo < hi else []
        if query.reverse:
            selected.reverse()
        if query.limit >= 0:
            selected = selected[: query.limit]
        return selected

    async def _scan(self, query: RangeQuery) -> AsyncIterator[Any]:
        # Snapshot of the range at creation time
        snapshot = [(key, self._data[key]) for key in self._select(query)]
        for key, value in snapshot:
            if query.keys and query.values:
                yield {"key": key, "value": value}
            elif query.keys:
                yield key
            else:
                yield value
            await asyncio.sleep(0)

    def create_read_stream(self, query: RangeQuery) -> AsyncIterator[Any]:
        return self._scan(query)

    def create_key_stream(self, query: RangeQuery) -> AsyncIterator[str]:
        return self._scan(query.model_copy(update={"keys": True, "values": False}))

    def create_live_stream(self, query: RangeQuery) -> LiveSubscription:
        replay = None
        if query.old:
            replay = [(key, self._data[key]) for key in self._select(query)]
        subscription = LiveSubscription(
            self,
            query,
            maxsize=self._live_queue_size,
            replay=replay,
        )
        self._subscribers.add(subscription)
        logger.debug(
            f"[memory_store] Live subscription opened on '{self.name}' "
            f"(subscribers={len(self._subscribers)})"
        )
        return subscription

    def _notify(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscribers):
            if subscription.query.contains(event.key):
                subscription.offer(event)

    def _detach(self, subscription: LiveSubscription) -> None:
        self._subscribers.discard(subscription)
        logger.debug(
            f"[memory_store] Live subscription closed on '{self.name}' "
            f"(subscribers={len(self._subscribers)})"
        )

    # ==================== Sublevels ====================

    def sublevel(self, name: str) -> MemoryStore:
        child = self._children.get(name)
        if child is None:
            child = MemoryStore(
                name=f"{self.name}/{name}" if self.name else name,
                supports_create=self._supports_create,
                live_queue_size=self._live_queue_size,
            )
            self._children[name] = child
        return child

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        return f"MemoryStore(name='{self.name}', keys={len(self._keys)})"


__all__ = ["LiveSubscription", "MemoryStore"]
