"""
Transform Pipeline.

Request side: ``to_args`` turns a matched request into the argument tuple
of the bound method, then validates it against the declared argument
schemas. A violation raises ``ArgumentValidationError`` before anything
is invoked.

Response side: ``to_response`` turns an invocation outcome into a
``WireResponse``:

- ``Value(v)``   -> 200 with the JSON encoding of ``v``
- ``Failure(e)`` -> first matching declared error schema (its ``code``,
  else 500); unmatched errors use the error's own status
- ``Stream(h)``  -> chunked JSON array for range scans, NDJSON for live
  subscriptions

A method-supplied response transform replaces the default and writes
through a ``ResponseSink``.

Transform signatures:
    def request_transform(request: NormalizedRequest, bound: BoundMethod) -> list
    async def response_transform(outcome: Outcome, sink: ResponseSink) -> None

Either may be sync or async.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from .errors import (
    ArgumentValidationError,
    LevelgateError,
    ReturnValidationError,
    SchemaError,
    TransformError,
    error_body,
    error_document,
    error_status,
)
from .streams import StreamAdapter, StreamHandle
from .wire import JSON_MEDIA_TYPE, NDJSON_MEDIA_TYPE, ClosingStream, WireResponse, encode_json

if TYPE_CHECKING:
    from .context import BoundMethod
    from .manifest.models import MethodDef
    from .request import NormalizedRequest
    from .schema import SchemaRegistry

logger = logging.getLogger(__name__)


# =============================================================================
# Invocation outcomes
# =============================================================================


@dataclass(frozen=True)
class Value:
    value: Any
    status: int = 200


@dataclass(frozen=True)
class Failure:
    error: BaseException


@dataclass(frozen=True)
class Stream:
    handle: StreamHandle


Outcome = Union[Value, Failure, Stream]


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


# =============================================================================
# Request side
# =============================================================================


def default_args(bound: BoundMethod, request: NormalizedRequest) -> list[Any]:
    """
    Convention argument extraction.

    Order: captured path parameters (or the key suffix when the endpoint
    has no path pattern), then the JSON body if present, then the range
    query if present.
    """
    args: list[Any] = []
    endpoint = bound.method.endpoint
    if bound.path_args:
        args.extend(bound.path_args)
    elif (endpoint is None or endpoint.pattern is None) and request.has_key:
        args.append(request.key)
    if request.has_body:
        args.append(request.json())
    if request.query is not None:
        args.append(request.query.to_dict())
    return args


async def to_args(
    bound: BoundMethod,
    request: NormalizedRequest,
    schemas: SchemaRegistry,
) -> list[Any]:
    """
    Build and validate the argument tuple for ``bound``.

    Raises:
        TransformError: If a custom request transform raised or returned
            something other than a sequence of the declared length
        ArgumentValidationError: If the arguments violate their schemas
    """
    method = bound.method
    transform = method.request_transform

    if transform is None:
        args = default_args(bound, request)
    else:
        try:
            result = await _maybe_await(transform(request, bound))
        except LevelgateError:
            raise
        except Exception as e:
            raise TransformError(
                f"Request transform for '{method.name}' raised: {e}",
                method=method.name,
            ) from e
        if isinstance(result, (str, bytes)) or not isinstance(result, Sequence):
            raise TransformError(
                f"Request transform for '{method.name}' must return a sequence, "
                f"got {type(result).__name__}",
                method=method.name,
            )
        args = list(result)
        if method.arguments is not None and len(args) != len(method.arguments):
            raise TransformError(
                f"Request transform for '{method.name}' returned {len(args)} argument(s), "
                f"expected {len(method.arguments)}",
                method=method.name,
            )

    validate_args(method, args, schemas)
    return args


def validate_args(method: MethodDef, args: Sequence[Any], schemas: SchemaRegistry) -> None:
    """Raises ``ArgumentValidationError`` (or ``SchemaError``) on a violation."""
    schemas.validate_arguments(method.arguments, args, method_name=method.name)


def require_body(request: NormalizedRequest) -> Any:
    """The JSON body of a write request; an empty body is a client error."""
    if not request.has_body:
        raise ArgumentValidationError(
            f"{request.method} requires a JSON body",
            violations=["body: missing"],
        )
    return request.json()


# =============================================================================
# Response sink
# =============================================================================

_EOF = object()


class ResponseSink:
    """
    Writable response handed to custom response transforms.

    Status and headers may change until the first write commits them.
    Each write waits until the previous chunk was taken by the transport,
    so a transform writing a stream is paced by the client.
    """

    def __init__(self, *, status: int = 200, media_type: str = JSON_MEDIA_TYPE):
        self.status = status
        self.media_type = media_type
        self.headers: dict[str, str] = {}
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        self._started = asyncio.Event()
        self._committed = False
        self._closed = False
        self.error: BaseException | None = None

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def closed(self) -> bool:
        return self._closed

    def set_status(self, status: int) -> None:
        if self._committed:
            raise TransformError("Cannot set status after the response body started")
        self.status = status

    def set_header(self, name: str, value: str) -> None:
        if self._committed:
            raise TransformError("Cannot set headers after the response body started")
        if name.lower() == "content-type":
            self.media_type = value
        else:
            self.headers[name] = value

    async def write(self, chunk: bytes | str) -> None:
        if self._closed:
            raise TransformError("Response sink is closed")
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._committed = True
        self._started.set()
        await self._queue.put(chunk)

    async def write_json(self, value: Any, *, newline: bool = False) -> None:
        await self.write(encode_json(value) + (b"\n" if newline else b""))

    async def end(self, chunk: bytes | str | None = None) -> None:
        if chunk is not None:
            await self.write(chunk)
        self._finish()

    def _finish(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self.error = error
        self._started.set()
        # A full queue means the reader has a chunk to take and will then
        # see the sink closed
        if self._queue.empty():
            self._queue.put_nowait(_EOF)

    async def wait_started(self) -> None:
        await self._started.wait()

    async def chunks(self) -> AsyncIterator[bytes]:
        """
        Chunks in write order.

        Raises:
            TransformError: After the last chunk, if the transform failed
                once the body had started
        """
        while True:
            if self._closed and self._queue.empty():
                break
            item = await self._queue.get()
            if item is _EOF:
                break
            yield item
        if self.error is not None:
            raise TransformError(
                f"Response transform failed after the body started: {self.error}"
            ) from self.error


# =============================================================================
# Response side
# =============================================================================


class ResponseTransformer:
    """
    Converts outcomes into wire responses.

    Args:
        schemas: Registry used to match errors against declared schemas
        match_error_schemas: When False, declared errors match by name only
    """

    def __init__(self, schemas: SchemaRegistry, *, match_error_schemas: bool = True):
        self._schemas = schemas
        self._match_schemas = match_error_schemas

    async def to_response(
        self,
        method: MethodDef | None,
        outcome: Outcome,
        *,
        ndjson: bool = False,
    ) -> WireResponse:
        transform = method.response_transform if method is not None else None
        if transform is not None:
            return await self._custom(method, transform, outcome)
        return self.default_response(method, outcome, ndjson=ndjson)

    # ==================== Default convention ====================

    def default_response(
        self,
        method: MethodDef | None,
        outcome: Outcome,
        *,
        ndjson: bool = False,
    ) -> WireResponse:
        if isinstance(outcome, Value):
            try:
                return WireResponse.from_json(outcome.value, status=outcome.status)
            except (TypeError, ValueError) as e:
                name = method.name if method is not None else "value"
                logger.warning(f"[transforms] Return value of '{name}' is not JSON: {e}")
                return self.error_response(
                    method,
                    ReturnValidationError(f"Return value of '{name}' is not JSON: {e}", method=name),
                )
        if isinstance(outcome, Failure):
            return self.error_response(method, outcome.error)
        return self.stream_response(outcome.handle, ndjson=ndjson)

    def stream_response(self, handle: StreamHandle, *, ndjson: bool = False) -> WireResponse:
        adapter = StreamAdapter(handle)
        if handle.is_live or ndjson:
            return WireResponse(
                status=200,
                headers={"Cache-Control": "no-cache"},
                stream=adapter.iter_ndjson(),
                media_type=NDJSON_MEDIA_TYPE,
            )
        return WireResponse(status=200, stream=adapter.iter_json_array())

    def error_response(self, method: MethodDef | None, error: BaseException) -> WireResponse:
        """
        Match ``error`` against the method's declared error union in order.

        A matching schema's ``code`` (else 500) becomes the status and the
        error document becomes the body. Unmatched errors fall back to the
        error's own status and envelope.
        """
        document = error_document(error)
        for declared in method.errors if method is not None else ():
            if declared.name is not None and declared.name != document["name"]:
                continue
            if self._match_schemas and not self._matches(declared.schema, document):
                continue
            return WireResponse.from_json(document, status=declared.code or 500)
        return WireResponse.from_json(error_body(error), status=error_status(error))

    def _matches(self, schema: Any, document: dict[str, Any]) -> bool:
        try:
            return self._schemas.validate(schema, document).ok
        except SchemaError as e:
            logger.warning(f"[transforms] Error schema could not be evaluated: {e.message}")
            return False

    # ==================== Custom transforms ====================

    async def _custom(self, method: MethodDef, transform: Any, outcome: Outcome) -> WireResponse:
        sink = ResponseSink()

        async def drive() -> None:
            try:
                await _maybe_await(transform(outcome, sink))
            except Exception as e:
                logger.error(
                    f"[transforms] Response transform for '{method.name}' failed: {e}",
                    exc_info=True,
                )
                sink._finish(e)
            else:
                sink._finish()
            finally:
                if isinstance(outcome, Stream):
                    await outcome.handle.aclose()

        task = asyncio.create_task(drive())
        try:
            await sink.wait_started()
        except asyncio.CancelledError:
            task.cancel()
            raise

        if sink.error is not None and not sink.committed:
            await asyncio.gather(task, return_exceptions=True)
            raise TransformError(
                f"Response transform for '{method.name}' raised: {sink.error}",
                method=method.name,
            ) from sink.error

        async def stop() -> None:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        return WireResponse(
            status=sink.status,
            headers=dict(sink.headers),
            stream=ClosingStream(sink.chunks(), stop),
            media_type=sink.media_type,
        )


__all__ = [
    "Failure",
    "Outcome",
    "ResponseSink",
    "ResponseTransformer",
    "Stream",
    "Value",
    "default_args",
    "require_body",
    "to_args",
    "validate_args",
]
