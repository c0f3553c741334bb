"""
Dependency wiring for the Levelgate HTTP service.

Provides the settings singleton and the process-wide dispatcher built
from the configured manifest.
"""

from __future__ import annotations

import importlib
import logging
import os
from functools import lru_cache

from levelgate.app.config import AppSettings
from levelgate.dispatcher import Dispatcher, DispatcherOptions, ReturnValidation
from levelgate.manifest import FileManifestLoader, load_manifest
from levelgate.store import MemoryStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get application settings from environment.

    Uses lru_cache for singleton pattern.
    """
    modules = os.getenv("LEVELGATE_FUNCTION_MODULES", "")
    return AppSettings(
        # Service
        service_name=os.getenv("LEVELGATE_SERVICE_NAME", "levelgate"),
        environment=os.getenv("LEVELGATE_ENVIRONMENT", "development"),
        debug=os.getenv("LEVELGATE_DEBUG", "false").lower() == "true",
        log_level=os.getenv("LEVELGATE_LOG_LEVEL", "INFO"),
        # Manifest
        manifest_path=os.getenv("LEVELGATE_MANIFEST_PATH") or None,
        function_modules=[m.strip() for m in modules.split(",") if m.strip()],
        # HTTP surface
        rest_prefix=os.getenv("LEVELGATE_REST_PREFIX", ""),
        rpc_path=os.getenv("LEVELGATE_RPC_PATH", "/_rpc"),
        # Dispatch
        return_validation=os.getenv("LEVELGATE_RETURN_VALIDATION", "warn").lower(),
        live_queue_size=int(os.getenv("LEVELGATE_LIVE_QUEUE_SIZE", "128")),
        # Server
        host=os.getenv("LEVELGATE_HOST", "0.0.0.0"),
        port=int(os.getenv("LEVELGATE_PORT", "8000")),
    )


# Global instance (initialized on startup)
_dispatcher: Dispatcher | None = None


def build_dispatcher(settings: AppSettings) -> Dispatcher:
    """
    Load the configured manifest over a fresh ``MemoryStore``.

    Function modules are imported first so their registrations are in
    place when locators are resolved.

    Raises:
        ManifestError: If the manifest cannot be loaded
    """
    for module in settings.function_modules:
        logger.info(f"[app] Importing function module: {module}")
        importlib.import_module(module)

    store = MemoryStore(live_queue_size=settings.live_queue_size)
    if settings.manifest_path:
        manifest = FileManifestLoader(settings.manifest_path).load(store)
    else:
        logger.warning("[app] No LEVELGATE_MANIFEST_PATH set; serving convention routes only")
        manifest = load_manifest({}, store)

    return Dispatcher(
        manifest,
        options=DispatcherOptions(return_validation=ReturnValidation(settings.return_validation)),
    )


def get_dispatcher() -> Dispatcher:
    """
    Get the process-wide dispatcher.

    Raises:
        RuntimeError: If services were not initialized
    """
    if _dispatcher is None:
        raise RuntimeError("Dispatcher not initialized; call initialize_services() first")
    return _dispatcher


def set_dispatcher(dispatcher: Dispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher


async def initialize_services() -> Dispatcher:
    """
    Initialize the dispatcher on application startup.

    Called from FastAPI lifespan. Load-time errors propagate and abort
    startup.
    """
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(get_settings())
    return _dispatcher


async def shutdown_services() -> None:
    """Release the dispatcher on shutdown."""
    global _dispatcher
    _dispatcher = None
