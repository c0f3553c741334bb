"""
Stream Adapter.

Bridges store iterators and live subscriptions to an outbound sequence
with explicit backpressure:

- The adapter pulls the next element only after the previous one was
  accepted downstream, so at most one element is in flight.
- Elements are emitted in source order, without buffering.
- Closing the outbound side (client disconnect, cancellation) closes the
  ``StreamHandle``, which releases the store iterator or subscription.

Usage:
    handle = StreamHandle(store.create_read_stream(query), StreamKind.RANGE)
    async for chunk in StreamAdapter(handle).iter_json_array():
        await send(chunk)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from .errors import LevelgateError, StoreError, error_body
from .wire import ClosingStream, encode_json

logger = logging.getLogger(__name__)


class StreamKind(str, Enum):
    RANGE = "range"  # finite, restartable by re-issuing the query
    LIVE = "live"  # unbounded, not restartable


async def _iterate_sync(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


def as_async_iterator(source: Any) -> AsyncIterator[Any]:
    """
    Accept an async iterator, async iterable or plain iterable.

    Raises:
        TypeError: If ``source`` is not iterable
    """
    if hasattr(source, "__anext__"):
        return source
    if hasattr(source, "__aiter__"):
        return source.__aiter__()
    if isinstance(source, (str, bytes, dict)) or not hasattr(source, "__iter__"):
        raise TypeError(f"Expected an iterable stream source, got {type(source).__name__}")
    return _iterate_sync(source)


class StreamHandle:
    """
    An open range scan or live subscription, owned by one response.

    Closing is idempotent and runs the registered ``on_close`` callbacks
    exactly once, whether the stream was exhausted, failed, or abandoned.
    """

    def __init__(self, source: Any, kind: StreamKind = StreamKind.RANGE, *, label: str = ""):
        self.id = str(uuid4())
        self.kind = kind
        self.label = label
        self.source = as_async_iterator(source)
        self.delivered = 0
        self.error: BaseException | None = None
        self._closed = False
        self._on_close: list[Callable[[StreamHandle], Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_live(self) -> bool:
        return self.kind is StreamKind.LIVE

    def on_close(self, callback: Callable[[StreamHandle], Any]) -> None:
        if self._closed:
            callback(self)
        else:
            self._on_close.append(callback)

    def __aiter__(self) -> StreamHandle:
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        try:
            item = await self.source.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except Exception as e:
            self.error = e
            await self.aclose()
            raise
        self.delivered += 1
        return item

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            close = getattr(self.source, "aclose", None)
            if close is not None:
                await close()
        finally:
            callbacks, self._on_close = self._on_close, []
            for callback in callbacks:
                try:
                    callback(self)
                except Exception as e:
                    logger.error(f"[stream] on_close callback failed for {self.id}: {e}")
            logger.debug(
                f"[stream] Closed {self.kind.value} stream {self.id} "
                f"after {self.delivered} element(s)"
            )

    async def __aenter__(self) -> StreamHandle:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"StreamHandle(id={self.id}, kind={self.kind.value}, closed={self._closed})"


class OutboundSink(Protocol):
    """Destination of a piped stream. ``send`` returns once the element is accepted."""

    async def send(self, item: Any) -> None:
        ...


def _stream_error(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, LevelgateError):
        return error_body(exc)
    return error_body(StoreError(f"Stream failed: {type(exc).__name__}"))


class StreamAdapter:
    """
    Backpressure-aware views over one ``StreamHandle``.

    A failure raised by the source after the response has started is
    emitted as a final ``{"error": ...}`` element and the stream is closed.
    """

    def __init__(self, handle: StreamHandle, *, encoder: Callable[[Any], bytes] = encode_json):
        self.handle = handle
        self._encode = encoder

    async def pipe(self, sink: OutboundSink) -> int:
        """Push every element into ``sink``, awaiting each send. Returns the count."""
        count = 0
        try:
            async for item in self.handle:
                await sink.send(item)
                count += 1
        finally:
            await self.handle.aclose()
        return count

    def iter_json_array(self) -> ClosingStream:
        """Encode the stream as one JSON array, element by element."""
        return ClosingStream(self._json_array(), self.handle.aclose)

    def iter_ndjson(self) -> ClosingStream:
        """Encode the stream as newline-delimited JSON."""
        return ClosingStream(self._ndjson(), self.handle.aclose)

    async def _json_array(self) -> AsyncIterator[bytes]:
        yield b"["
        first = True
        try:
            async for item in self.handle:
                yield (b"" if first else b",") + self._encode(item)
                first = False
        except Exception as e:
            logger.warning(f"[stream] Range stream {self.handle.id} failed: {e}")
            yield (b"" if first else b",") + self._encode(_stream_error(e))
        yield b"]"

    async def _ndjson(self) -> AsyncIterator[bytes]:
        try:
            async for item in self.handle:
                yield self._encode(item) + b"\n"
        except Exception as e:
            logger.warning(f"[stream] {self.handle.kind.value} stream {self.handle.id} failed: {e}")
            yield self._encode(_stream_error(e)) + b"\n"


__all__ = [
    "OutboundSink",
    "StreamAdapter",
    "StreamHandle",
    "StreamKind",
    "as_async_iterator",
]
