"""
Dispatcher for Levelgate.

Top-level orchestrator. Two entry points share one invocation core:

- ``dispatch(request)``: REST. Match, transform, invoke, respond.
- ``call(path, method, args)``: procedure-call protocol. Every method of
  every sublevel is reachable by name, with or without an endpoint.

Per-request errors never escape ``dispatch``/``call_response``: they move
the dispatch to FAILED and are converted into an error response. The
dispatcher performs no retries.

Usage:
    dispatcher = Dispatcher(load_manifest(doc, MemoryStore()))

    response = await dispatcher.dispatch(
        NormalizedRequest.build("GET", "/db/items/a")
    )
    value = await dispatcher.call(["db", "items"], "get", ["a"])
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from .context import BoundMethod, DispatchContext, DispatchState
from .errors import (
    BackpressureOverflowError,
    LevelgateError,
    ReturnValidationError,
    RouteNotFoundError,
    StoreError,
)
from .manifest.models import (
    LIVE_OPERATIONS,
    STORE_OPERATIONS,
    STREAM_OPERATIONS,
    Manifest,
    MethodDef,
    MethodKind,
    Sublevel,
)
from .matching import ConventionRoute, EndpointMatcher, MatchKind, MatchResult
from .observability import DispatchLogger, DispatchMetrics, get_metrics
from .request import NormalizedRequest, split_path
from .schema import SchemaRegistry
from .store.protocol import RangeQuery
from .streams import StreamHandle, StreamKind, as_async_iterator
from .transforms import (
    Failure,
    Outcome,
    ResponseTransformer,
    Stream,
    Value,
    require_body,
    to_args,
    validate_args,
)
from .wire import ClosingStream, WireResponse

logger = logging.getLogger(__name__)


class ReturnValidation(str, Enum):
    """What to do when a method's return value violates its schema."""

    OFF = "off"
    WARN = "warn"  # log and respond anyway (fail-open)
    STRICT = "strict"  # respond with ReturnValidationError


@dataclass(frozen=True)
class DispatcherOptions:
    return_validation: ReturnValidation = ReturnValidation.WARN
    validate_errors: bool = True


# Convention route -> store primitive whose MethodDef supplies schemas
_ROUTE_OPERATIONS: dict[ConventionRoute, str] = {
    ConventionRoute.PUT: "put",
    ConventionRoute.CREATE: "create",
    ConventionRoute.DELETE: "del",
    ConventionRoute.GET: "get",
    ConventionRoute.READ_RANGE: "createReadStream",
    ConventionRoute.LIVE: "createLiveStream",
    ConventionRoute.DELETE_RANGE: "createKeyStream",
}


class Dispatcher:
    """
    Routes requests to bound methods and drives their responses.

    The manifest is read-only; a dispatcher holds no per-request state, so
    one instance serves any number of concurrent requests.

    Args:
        manifest: Loaded manifest
        options: Validation behaviour
        matcher: Endpoint matcher (default ``EndpointMatcher``)
        metrics: Metrics sink (default: process-wide)
    """

    def __init__(
        self,
        manifest: Manifest,
        *,
        options: DispatcherOptions | None = None,
        matcher: EndpointMatcher | None = None,
        metrics: DispatchMetrics | None = None,
    ):
        self.manifest = manifest
        self.options = options or DispatcherOptions()
        self._matcher = matcher or EndpointMatcher()
        self._metrics = metrics or get_metrics()
        self._responses = ResponseTransformer(
            manifest.schemas,
            match_error_schemas=self.options.validate_errors,
        )

    @property
    def schemas(self) -> SchemaRegistry:
        return self.manifest.schemas

    @property
    def metrics(self) -> DispatchMetrics:
        return self._metrics

    # =========================================================================
    # REST
    # =========================================================================

    async def dispatch(self, request: NormalizedRequest) -> WireResponse:
        """Handle one REST request. Never raises for per-request errors."""
        ctx = DispatchContext(protocol="rest", description=request.describe())
        log = DispatchLogger(request_id=str(ctx.request_id))
        log.dispatch_started(protocol=ctx.protocol, request=ctx.description)

        try:
            result = self._matcher.match_or_raise(self.manifest, request)
            self._enter(ctx, log, DispatchState.MATCHED)
            ctx.route_kind = result.kind.value
            ctx.target = result.target
            ctx.sublevel_path = result.sublevel.path
            log.route_selected(
                kind=ctx.route_kind,
                target=ctx.target,
                sublevel="/" + "/".join(ctx.sublevel_path),
            )

            if result.kind is MatchKind.METHOD:
                method = result.method
                bound = BoundMethod(method, result.sublevel, result.request, result.path_args)
                self._enter(ctx, log, DispatchState.TRANSFORMING)
                args = await to_args(bound, result.request, self.schemas)
                self._enter(ctx, log, DispatchState.INVOKING)
                outcome = await self._invoke(bound, args, log)
            else:
                self._enter(ctx, log, DispatchState.TRANSFORMING)
                method, args = self._convention_args(result)
                self._enter(ctx, log, DispatchState.INVOKING)
                outcome = await self._invoke_convention(result, method, args, log)

            self._enter(ctx, log, DispatchState.RESPONDING)
            response = await self._responses.to_response(method, outcome)
        except Exception as e:
            return self._failed(ctx, log, e)

        return self._finish(ctx, log, response)

    # =========================================================================
    # Procedure calls
    # =========================================================================

    def lookup(self, path: str | Sequence[str], method_name: str) -> BoundMethod:
        """
        Bind ``method_name`` on the sublevel at exactly ``path``.

        Raises:
            RouteNotFoundError: If the sublevel or method does not exist
        """
        segments = split_path(path)
        sublevel = self.manifest.sublevel(segments)
        if sublevel is None:
            raise RouteNotFoundError(
                f"No sublevel at /{'/'.join(segments)}",
                path=list(segments),
            )
        method = sublevel.method(method_name)
        if method is None:
            available = ", ".join(m.name for m in sublevel.methods) or "none"
            raise RouteNotFoundError(
                f"No method '{method_name}' at /{'/'.join(segments)}. Available: {available}",
                path=list(segments),
                method=method_name,
            )
        return BoundMethod(method, sublevel)

    async def call(
        self,
        path: str | Sequence[str],
        method_name: str,
        args: Sequence[Any] = (),
    ) -> Any:
        """
        Invoke a method by name.

        Returns the method's value, or a ``StreamHandle`` for stream
        outcomes (the caller owns and must close it).

        Raises:
            RouteNotFoundError: Unknown sublevel or method
            ArgumentValidationError: Arguments violate the declared schemas
            Exception: Whatever the invocation failed with
        """
        bound = self.lookup(path, method_name)
        args = list(args)
        validate_args(bound.method, args, self.schemas)
        outcome = await self._invoke(bound, args, DispatchLogger(request_id=str(uuid4())))
        if isinstance(outcome, Failure):
            raise outcome.error
        if isinstance(outcome, Stream):
            return outcome.handle
        return outcome.value

    async def call_response(
        self,
        path: str | Sequence[str],
        method_name: str,
        args: Sequence[Any] = (),
    ) -> WireResponse:
        """
        Procedure call rendered as a wire response.

        Streams are always newline-delimited JSON. Custom request and
        response transforms are HTTP-shaped and do not apply.
        """
        description = f"CALL /{'/'.join(split_path(path))}#{method_name}"
        ctx = DispatchContext(protocol="rpc", description=description)
        log = DispatchLogger(request_id=str(ctx.request_id))
        log.dispatch_started(protocol=ctx.protocol, request=description)

        try:
            bound = self.lookup(path, method_name)
            self._enter(ctx, log, DispatchState.MATCHED)
            ctx.route_kind = MatchKind.METHOD.value
            ctx.target = method_name
            ctx.sublevel_path = bound.path

            self._enter(ctx, log, DispatchState.TRANSFORMING)
            args = list(args)
            validate_args(bound.method, args, self.schemas)

            self._enter(ctx, log, DispatchState.INVOKING)
            outcome = await self._invoke(bound, args, log)

            self._enter(ctx, log, DispatchState.RESPONDING)
            response = self._responses.default_response(bound.method, outcome, ndjson=True)
        except Exception as e:
            return self._failed(ctx, log, e)

        return self._finish(ctx, log, response)

    # =========================================================================
    # Invocation
    # =========================================================================

    async def _invoke(self, bound: BoundMethod, args: list[Any], log: DispatchLogger) -> Outcome:
        """Invoke a bound method. Failures come back as ``Failure``, never raised."""
        method = bound.method
        try:
            if method.is_store_op:
                result = await self._call_store(bound.sublevel, method.operation, args)
            elif method.kind is MethodKind.SYNC:
                # Called inline; a sync method must not block
                result = method.implementation(bound.store, *args)
                if inspect.isawaitable(result):
                    if inspect.iscoroutine(result):
                        result.close()
                    return Failure(
                        ReturnValidationError(
                            f"Sync method '{method.name}' returned an awaitable; declare it async",
                            method=method.name,
                        )
                    )
            else:
                result = method.implementation(bound.store, *args)
                if inspect.isawaitable(result):
                    result = await result
        except LevelgateError as e:
            return Failure(e)
        except Exception as e:
            if method.is_store_op:
                logger.error(f"[dispatcher] Store operation '{method.operation}' failed: {e}", exc_info=True)
                return Failure(StoreError(f"Store operation '{method.operation}' failed: {e}"))
            logger.warning(f"[dispatcher] Method '{method.name}' raised {type(e).__name__}: {e}")
            return Failure(e)

        if isinstance(result, BaseException):
            return Failure(result)

        if method.kind is MethodKind.READABLE and not isinstance(result, StreamHandle):
            try:
                result = StreamHandle(as_async_iterator(result), StreamKind.RANGE, label=method.name)
            except TypeError as e:
                return Failure(
                    ReturnValidationError(
                        f"Readable method '{method.name}' must return an iterable: {e}",
                        method=method.name,
                    )
                )

        if isinstance(result, StreamHandle):
            self._watch(result, log)
            return Stream(result)

        return self._check_return(method, result)

    async def _call_store(self, sublevel: Sublevel, operation: str, args: list[Any]) -> Any:
        primitive = getattr(sublevel.store, STORE_OPERATIONS[operation])
        if operation in STREAM_OPERATIONS:
            query = RangeQuery.from_value(args[0] if args else None)
            kind = StreamKind.LIVE if operation in LIVE_OPERATIONS else StreamKind.RANGE
            return StreamHandle(
                primitive(query),
                kind,
                label=f"{operation} /{'/'.join(sublevel.path)}",
            )
        return await primitive(*args)

    def _check_return(self, method: MethodDef, value: Any) -> Outcome:
        mode = self.options.return_validation
        if method.returns is None or mode is ReturnValidation.OFF:
            return Value(value)

        result = self.schemas.validate(method.returns, value)
        if result.ok:
            return Value(value)

        if mode is ReturnValidation.STRICT:
            return Failure(
                ReturnValidationError(
                    f"Method '{method.name}' returned a value violating its return schema",
                    method=method.name,
                    violations=list(result.violations),
                )
            )
        logger.warning(
            f"[dispatcher] Return value of '{method.name}' violates its schema: "
            f"{'; '.join(result.violations)}"
        )
        return Value(value)

    def _watch(self, handle: StreamHandle, log: DispatchLogger) -> None:
        self._metrics.record_stream_opened()

        def closed(h: StreamHandle) -> None:
            overflowed = isinstance(h.error, BackpressureOverflowError)
            self._metrics.record_stream_closed(overflowed=overflowed)
            log.stream_closed(
                stream_id=h.id,
                kind=h.kind.value,
                delivered=h.delivered,
                error=f"{type(h.error).__name__}: {h.error}" if h.error else None,
            )

        handle.on_close(closed)

    # =========================================================================
    # Convention routes
    # =========================================================================

    def _convention_args(self, result: MatchResult) -> tuple[MethodDef, list[Any]]:
        """Select the store-op MethodDef for a convention route and validate its arguments."""
        route = result.route
        request = result.request
        sublevel = result.sublevel
        query = request.query.to_dict() if request.query is not None else None

        if route is ConventionRoute.PUT:
            method = sublevel.store_op("put")
            args = [request.key, require_body(request)]
        elif route is ConventionRoute.CREATE:
            body = require_body(request)
            if sublevel.store.capabilities.supports_create:
                method = sublevel.store_op("create")
                args = [body]
            else:
                # Key is generated at invocation; only the value is validated here
                method = sublevel.store_op("put")
                if method.arguments is not None and len(method.arguments) == 2:
                    self.schemas.validate_arguments(
                        method.arguments[1:], [body], method_name=method.name
                    )
                return method, [body]
        elif route in (ConventionRoute.DELETE, ConventionRoute.GET):
            method = sublevel.store_op(_ROUTE_OPERATIONS[route])
            args = [request.key]
        else:
            method = sublevel.store_op(_ROUTE_OPERATIONS[route])
            args = [query]

        validate_args(method, args, self.schemas)
        return method, args

    async def _invoke_convention(
        self,
        result: MatchResult,
        method: MethodDef,
        args: list[Any],
        log: DispatchLogger,
    ) -> Outcome:
        route = result.route
        sublevel = result.sublevel
        store = sublevel.store

        try:
            if route is ConventionRoute.PUT:
                await store.put(*args)
                return Value({"key": args[0]})
            if route is ConventionRoute.CREATE:
                if method.operation == "create":
                    key = await store.create(args[0])
                else:
                    key = await store.create_key(args[0])
                    await store.put(key, args[0])
                return Value({"key": key}, status=201)
            if route is ConventionRoute.DELETE:
                await store.delete(args[0])
                return Value({"key": args[0]})
            if route is ConventionRoute.DELETE_RANGE:
                return Value({"deleted": await self._delete_range(sublevel, args[0])})
        except LevelgateError as e:
            return Failure(e)
        except Exception as e:
            logger.error(f"[dispatcher] Convention route '{route.value}' failed: {e}", exc_info=True)
            return Failure(StoreError(f"Store operation '{route.value}' failed: {e}"))

        # GET, READ_RANGE, LIVE map directly onto their primitive
        return await self._invoke(BoundMethod(method, sublevel, result.request), args, log)

    async def _delete_range(self, sublevel: Sublevel, query: dict[str, Any] | None) -> int:
        keys = StreamHandle(
            sublevel.store.create_key_stream(RangeQuery.from_value(query)),
            StreamKind.RANGE,
        )
        deleted = 0
        async with keys:
            async for key in keys:
                await sublevel.store.delete(key)
                deleted += 1
        logger.info(f"[dispatcher] Deleted {deleted} key(s) from /{'/'.join(sublevel.path)}")
        return deleted

    # =========================================================================
    # Completion
    # =========================================================================

    def _enter(self, ctx: DispatchContext, log: DispatchLogger, state: DispatchState) -> None:
        previous = ctx.state
        ctx.transition(state)
        log.state_changed(previous.value, state.value)

    def _failed(self, ctx: DispatchContext, log: DispatchLogger, error: Exception) -> WireResponse:
        if isinstance(error, LevelgateError):
            logger.info(f"[dispatcher] {ctx.description} failed: {error.name}: {error.message}")
        else:
            logger.error(f"[dispatcher] {ctx.description} failed unexpectedly: {error}", exc_info=True)
        ctx.fail(error)
        response = self._responses.error_response(None, error)
        self._complete(ctx, log, response.status)
        return response

    def _finish(self, ctx: DispatchContext, log: DispatchLogger, response: WireResponse) -> WireResponse:
        if response.stream is None:
            self._complete(ctx, log, response.status)
            return response
        ctx.streamed = True
        status = response.status

        # Recorded when the stream is exhausted, fails or is abandoned
        async def completed() -> None:
            self._complete(ctx, log, status)

        response.stream = ClosingStream(response.stream, completed)
        return response

    def _complete(self, ctx: DispatchContext, log: DispatchLogger, status: int) -> None:
        if ctx.status is not None:
            return
        ctx.status = status
        if ctx.state is DispatchState.RESPONDING:
            self._enter(ctx, log, DispatchState.DONE)
        self._metrics.record_dispatch(ctx.route_kind, status, ctx.elapsed_ms)
        log.dispatch_completed(
            status=status,
            duration_ms=ctx.elapsed_ms,
            streamed=ctx.streamed,
            error=ctx.error,
        )
        logger.debug(f"[dispatcher] Dispatch record: {ctx.describe()}")


__all__ = ["Dispatcher", "DispatcherOptions", "ReturnValidation"]
