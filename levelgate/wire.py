"""
Wire response.

Transport-neutral response produced by the dispatcher. The HTTP layer
turns it into a FastAPI ``Response`` or ``StreamingResponse``; tests and
the procedure-call protocol can consume it directly.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

JSON_MEDIA_TYPE = "application/json"
NDJSON_MEDIA_TYPE = "application/x-ndjson"


def encode_json(value: Any) -> bytes:
    """
    Compact JSON encoding used for every body and stream element.

    Raises:
        TypeError: If the value holds something JSON cannot represent
        ValueError: On NaN, infinities or circular references
    """
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode(
        "utf-8"
    )


class ClosingStream:
    """
    Byte iterator that runs a cleanup callback when it is closed.

    Unlike a bare async generator, closing it releases resources even if
    iteration never started (a response abandoned before the first chunk).
    Exhaustion or an error while iterating closes it as well.
    """

    def __init__(self, chunks: AsyncIterator[bytes], on_close: Callable[[], Awaitable[None]]):
        self._chunks = chunks
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> ClosingStream:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._chunks.__anext__()
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            close = getattr(self._chunks, "aclose", None)
            if close is not None:
                await close()
        finally:
            await self._on_close()


@dataclass
class WireResponse:
    """
    Status, headers and either a complete body or a chunk iterator.

    A streamed response owns its iterator: consuming it to the end, or
    calling ``aclose()``, releases the underlying stream.
    """

    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    stream: AsyncIterator[bytes] | None = None
    media_type: str = JSON_MEDIA_TYPE

    @classmethod
    def from_json(
        cls,
        value: Any,
        *,
        status: int = 200,
        headers: dict[str, str] | None = None,
    ) -> WireResponse:
        return cls(status=status, headers=dict(headers or {}), body=encode_json(value))

    @property
    def is_stream(self) -> bool:
        return self.stream is not None

    async def read(self) -> bytes:
        """Drain a streamed body (or return the complete one)."""
        if self.stream is None:
            return self.body
        chunks = [chunk async for chunk in self.stream]
        self.body = b"".join(chunks)
        self.stream = None
        return self.body

    def json(self) -> Any:
        if self.stream is not None:
            raise RuntimeError("Streamed response must be read() before json()")
        return json.loads(self.body) if self.body else None

    async def aclose(self) -> None:
        if self.stream is None:
            return
        close = getattr(self.stream, "aclose", None)
        self.stream = None
        if close is not None:
            await close()


__all__ = ["JSON_MEDIA_TYPE", "NDJSON_MEDIA_TYPE", "ClosingStream", "WireResponse", "encode_json"]
