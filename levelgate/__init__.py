"""
Levelgate - manifest-driven REST and procedure-call gateway over a
key-value store.

A manifest declares a tree of sublevels and, on each, methods with JSON
schemas for their arguments, return value and errors, plus optional HTTP
endpoints. Levelgate routes every request either to a declared method or
to the built-in REST convention over the store:

- **Schema validation**: arguments are checked before anything runs
- **Endpoint matching**: method endpoints shadow the convention routes,
  earliest declaration wins
- **Streams**: range scans and live subscriptions with backpressure
- **Procedure calls**: every method is callable by path and name

Quick Start:
    >>> from levelgate import Dispatcher, MemoryStore, NormalizedRequest, load_manifest
    >>>
    >>> manifest = load_manifest({"sublevels": {"items": {}}}, MemoryStore())
    >>> dispatcher = Dispatcher(manifest)
    >>> response = await dispatcher.dispatch(
    ...     NormalizedRequest.build("PUT", "/items/a", body=b'{"foo":"bar"}')
    ... )
"""

__version__ = "0.1.0"

# Core exports for convenient imports
from levelgate.context import BoundMethod, DispatchContext, DispatchState
from levelgate.dispatcher import Dispatcher, DispatcherOptions, ReturnValidation
from levelgate.errors import (
    ArgumentValidationError,
    BackpressureOverflowError,
    EndpointConflictError,
    KeyNotFoundError,
    LevelgateError,
    ManifestError,
    MethodError,
    RegistryError,
    ReturnValidationError,
    RouteNotFoundError,
    SchemaError,
    StoreError,
    TransformError,
)
from levelgate.manifest import FileManifestLoader, Manifest, ManifestLoader, load_manifest
from levelgate.matching import EndpointMatcher, MatchKind, MatchResult
from levelgate.registry import FunctionRegistry, get_function_registry, reset_function_registry
from levelgate.request import NormalizedRequest
from levelgate.schema import SchemaRegistry, ValidationResult, validate
from levelgate.store import MemoryStore, RangeQuery, Store, StoreCapabilities
from levelgate.streams import StreamAdapter, StreamHandle, StreamKind
from levelgate.transforms import Failure, ResponseSink, Stream, Value
from levelgate.wire import WireResponse

__all__ = [
    "__version__",
    # Dispatch
    "BoundMethod",
    "DispatchContext",
    "DispatchState",
    "Dispatcher",
    "DispatcherOptions",
    "ReturnValidation",
    # Errors
    "ArgumentValidationError",
    "BackpressureOverflowError",
    "EndpointConflictError",
    "KeyNotFoundError",
    "LevelgateError",
    "ManifestError",
    "MethodError",
    "RegistryError",
    "ReturnValidationError",
    "RouteNotFoundError",
    "SchemaError",
    "StoreError",
    "TransformError",
    # Manifest
    "FileManifestLoader",
    "Manifest",
    "ManifestLoader",
    "load_manifest",
    # Matching
    "EndpointMatcher",
    "MatchKind",
    "MatchResult",
    # Registries
    "FunctionRegistry",
    "SchemaRegistry",
    "ValidationResult",
    "get_function_registry",
    "reset_function_registry",
    "validate",
    # Requests and responses
    "NormalizedRequest",
    "WireResponse",
    "Failure",
    "ResponseSink",
    "Stream",
    "Value",
    # Store and streams
    "MemoryStore",
    "RangeQuery",
    "Store",
    "StoreCapabilities",
    "StreamAdapter",
    "StreamHandle",
    "StreamKind",
]
