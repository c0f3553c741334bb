"""
Levelgate - Manifest-driven HTTP gateway over a key-value store

FastAPI application entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import unquote

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from levelgate import __version__
from levelgate.app.config import AppSettings
from levelgate.app.dependencies import get_settings, initialize_services, shutdown_services
from levelgate.dispatcher import Dispatcher
from levelgate.errors import LevelgateError
from levelgate.manifest.models import HTTP_VERBS
from levelgate.matching import CONVENTION_VERBS
from levelgate.request import NormalizedRequest, split_path
from levelgate.wire import WireResponse

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class CallRequest(BaseModel):
    """Body of a procedure call."""

    path: list[str] | str = Field(default_factory=list, description="Sublevel path")
    method: str = Field(..., description="Method name")
    args: list[Any] = Field(default_factory=list, description="Argument tuple")


class WireStreamingResponse(StreamingResponse):
    """Streaming response that always closes its body, even on disconnect."""

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            close = getattr(self.body_iterator, "aclose", None)
            if close is not None:
                await close()


def to_http_response(wire: WireResponse) -> Response:
    """Render a dispatcher response with FastAPI response classes."""
    if wire.stream is not None:
        return WireStreamingResponse(
            wire.stream,
            status_code=wire.status,
            headers=wire.headers,
            media_type=wire.media_type,
        )
    return Response(
        content=wire.body,
        status_code=wire.status,
        headers=wire.headers,
        media_type=wire.media_type,
    )


def request_segments(request: Request, prefix: str) -> tuple[str, ...]:
    """
    Path segments below ``prefix``, percent-decoded exactly once.

    Segments are split on the raw path so an encoded ``%`` or ``/`` inside
    a key survives; the decoded ``path`` parameter is the fallback for
    servers that do not provide ``raw_path``.
    """
    raw = request.scope.get("raw_path")
    if raw is None:
        return split_path(request.path_params["path"])
    segments = [unquote(s) for s in raw.decode("latin-1").split("/") if s]
    return tuple(segments[len(split_path(prefix)) :])


def _dispatcher(request: Request) -> Dispatcher | None:
    return request.app.state.dispatcher


def _unavailable() -> JSONResponse:
    return JSONResponse(
        {"error": {"name": "ServiceUnavailable", "message": "Dispatcher not initialized"}},
        status_code=503,
    )


def create_app(
    dispatcher: Dispatcher | None = None,
    settings: AppSettings | None = None,
) -> FastAPI:
    """
    Build the HTTP application.

    When ``dispatcher`` is None it is built on startup from the configured
    manifest (``LEVELGATE_MANIFEST_PATH``).
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        owned = app.state.dispatcher is None
        if owned:
            logger.info("Starting Levelgate services...")
            try:
                app.state.dispatcher = await initialize_services()
                logger.info("Levelgate services initialized successfully")
            except Exception as e:
                logger.error(f"Failed to initialize services: {e}", exc_info=True)
                raise

        yield

        if owned:
            logger.info("Shutting down Levelgate services...")
            await shutdown_services()
            app.state.dispatcher = None

    app = FastAPI(
        title="Levelgate",
        description="Manifest-driven REST and procedure-call gateway over a key-value store",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.dispatcher = dispatcher
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"])
    async def health_check(request: Request) -> dict[str, Any]:
        """Health check endpoint."""
        current = _dispatcher(request)
        if current is None:
            return {"status": "starting", "service": settings.service_name}
        return {
            "status": "healthy",
            "service": settings.service_name,
            "environment": settings.environment,
            "sublevels": sum(1 for _ in current.manifest.walk()),
        }

    @app.get("/_metrics", tags=["health"])
    async def metrics(request: Request) -> dict[str, Any]:
        """Dispatch counters and latency percentiles."""
        current = _dispatcher(request)
        if current is None:
            return {}
        return current.metrics.get_stats()

    @app.get(f"{settings.rpc_path}/manifest", tags=["rpc"])
    async def describe_manifest(request: Request) -> Any:
        """Sublevels, methods, schemas and endpoints served by this gateway."""
        current = _dispatcher(request)
        if current is None:
            return _unavailable()
        return current.manifest.describe()

    @app.post(settings.rpc_path, tags=["rpc"])
    async def call(body: CallRequest, request: Request) -> Response:
        """Invoke any method by sublevel path and name."""
        current = _dispatcher(request)
        if current is None:
            return _unavailable()
        wire = await current.call_response(body.path, body.method, body.args)
        return to_http_response(wire)

    async def rest(request: Request) -> Response:
        current = _dispatcher(request)
        if current is None:
            return _unavailable()
        try:
            normalized = NormalizedRequest.build(
                request.method,
                request_segments(request, settings.rest_prefix),
                params=dict(request.query_params),
                headers=list(request.headers.items()),
                body=await request.body(),
            )
        except LevelgateError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return to_http_response(await current.dispatch(normalized))

    app.add_api_route(
        f"{settings.rest_prefix}/{{path:path}}",
        rest,
        methods=sorted(HTTP_VERBS | CONVENTION_VERBS),
        include_in_schema=False,
    )

    return app


app = create_app()


def run() -> None:
    """Serve the configured gateway with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "levelgate.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
