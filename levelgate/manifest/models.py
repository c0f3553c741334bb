"""
Manifest Model.

Typed, immutable in-memory representation of a loaded manifest: a tree of
sublevels, each bound to a store and owning an ordered set of methods.
Built once by the loader and shared read-only by every request.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from ..errors import RegistryError

if TYPE_CHECKING:
    from ..request import NormalizedRequest
    from ..schema import Schema, SchemaRegistry
    from ..store.protocol import Store

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Verbs an endpoint may declare
HTTP_VERBS = frozenset({"GET", "PUT", "POST", "DELETE", "PATCH", "SUBSCRIBE"})

DEFAULT_ENDPOINT_VERB = "POST"

# Manifest method name -> Store attribute
STORE_OPERATIONS: Mapping[str, str] = MappingProxyType(
    {
        "get": "get",
        "put": "put",
        "del": "delete",
        "createReadStream": "create_read_stream",
        "createKeyStream": "create_key_stream",
        "createLiveStream": "create_live_stream",
        "create": "create",
        "createKey": "create_key",
    }
)

STREAM_OPERATIONS = frozenset({"createReadStream", "createKeyStream", "createLiveStream"})
LIVE_OPERATIONS = frozenset({"createLiveStream"})

KEY_SCHEMA: dict[str, Any] = {"type": "string", "minLength": 1}

RANGE_QUERY_SCHEMA: dict[str, Any] = {
    "type": ["object", "null"],
    "properties": {
        "gt": {"type": "string"},
        "gte": {"type": "string"},
        "lt": {"type": "string"},
        "lte": {"type": "string"},
        "limit": {"type": "integer", "minimum": -1},
        "reverse": {"type": "boolean"},
        "keys": {"type": "boolean"},
        "values": {"type": "boolean"},
        "old": {"type": "boolean"},
    },
}

# Argument schemas used when a store-op method declares none
DEFAULT_STORE_ARGUMENTS: Mapping[str, tuple[Any, ...]] = MappingProxyType(
    {
        "get": (KEY_SCHEMA,),
        "put": (KEY_SCHEMA, {}),
        "del": (KEY_SCHEMA,),
        "createReadStream": (RANGE_QUERY_SCHEMA,),
        "createKeyStream": (RANGE_QUERY_SCHEMA,),
        "createLiveStream": (RANGE_QUERY_SCHEMA,),
        "create": ({},),
        "createKey": (),
    }
)


class MethodKind(str, Enum):
    """How a method is invoked."""

    ASYNC = "async"
    SYNC = "sync"
    READABLE = "readable"
    STORE = "store"


# =============================================================================
# Match predicates
# =============================================================================


class MatchPredicate(ABC):
    """
    Pure predicate over a normalized request.

    The closed set of variants is ``DefaultVerbMatch``, ``CustomPredicate``
    and ``RemoteReference``. The endpoint checks the verb before consulting
    the predicate.
    """

    @abstractmethod
    def matches(self, request: NormalizedRequest) -> bool:
        ...

    @property
    def analysable(self) -> bool:
        """Whether the loader can reason about which requests this accepts."""
        return False

    @abstractmethod
    def describe(self) -> dict[str, Any]:
        ...


@dataclass(frozen=True)
class DefaultVerbMatch(MatchPredicate):
    """Matches any request carrying ``verb`` (the path is checked by the endpoint)."""

    verb: str

    def matches(self, request: NormalizedRequest) -> bool:
        return request.method == self.verb

    @property
    def analysable(self) -> bool:
        return True

    def describe(self) -> dict[str, Any]:
        return {"type": "verb", "verb": self.verb}


@dataclass(frozen=True)
class CustomPredicate(MatchPredicate):
    """A predicate callable supplied directly in code."""

    fn: Callable[[NormalizedRequest], bool]
    name: str = "custom"

    def matches(self, request: NormalizedRequest) -> bool:
        return bool(self.fn(request))

    def describe(self) -> dict[str, Any]:
        return {"type": "custom", "name": self.name}


@dataclass(frozen=True)
class RemoteReference(MatchPredicate):
    """
    A predicate named by locator in the manifest.

    The loader resolves the locator against the function registry; an
    unresolved reference never reaches request time.
    """

    locator: str
    resolved: Callable[[NormalizedRequest], bool] | None = field(default=None, compare=False)

    def matches(self, request: NormalizedRequest) -> bool:
        if self.resolved is None:
            raise RegistryError(f"Predicate reference '{self.locator}' was never resolved")
        return bool(self.resolved(request))

    def describe(self) -> dict[str, Any]:
        return {"type": "reference", "locator": self.locator}


# =============================================================================
# Endpoint spec
# =============================================================================


def parse_pattern(path: str | None) -> tuple[str, ...] | None:
    """Split an endpoint path pattern (``/stats/:id``) into segments."""
    if path is None:
        return None
    return tuple(segment for segment in path.split("/") if segment)


def match_pattern(
    pattern: tuple[str, ...] | None,
    path: tuple[str, ...],
) -> tuple[str, ...] | None:
    """
    Match a key suffix against a pattern.

    Returns the captured parameter values in order, or None when the path
    does not fit. A None pattern accepts any suffix and captures nothing.
    """
    if pattern is None:
        return ()
    if len(pattern) != len(path):
        return None
    captured: list[str] = []
    for expected, actual in zip(pattern, path):
        if expected.startswith(":"):
            captured.append(actual)
        elif expected != actual:
            return None
    return tuple(captured)


@dataclass(frozen=True)
class EndpointSpec:
    """HTTP exposure of a method: verb, optional path pattern, predicate."""

    method: str = DEFAULT_ENDPOINT_VERB
    predicate: MatchPredicate | None = None
    pattern: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        if self.predicate is None:
            object.__setattr__(self, "predicate", DefaultVerbMatch(self.method))

    def match(self, request: NormalizedRequest) -> tuple[str, ...] | None:
        """Captured path parameters if the request matches, else None."""
        if request.method != self.method:
            return None
        captured = match_pattern(self.pattern, request.path)
        if captured is None:
            return None
        if not self.predicate.matches(request):
            return None
        return captured

    @property
    def path(self) -> str | None:
        if self.pattern is None:
            return None
        return "/" + "/".join(self.pattern)

    def describe(self) -> dict[str, Any]:
        return {"method": self.method, "path": self.path, "test": self.predicate.describe()}


# =============================================================================
# Methods, sublevels, manifest
# =============================================================================


@dataclass(frozen=True)
class ErrorSchema:
    """One member of a method's declared error union."""

    schema: Schema
    name: str | None = None
    code: int | None = None


@dataclass(frozen=True, eq=False)
class MethodDef:
    """A method exposed on a sublevel."""

    name: str
    kind: MethodKind
    arguments: tuple[Schema, ...] | None = None
    returns: Schema | None = None
    errors: tuple[ErrorSchema, ...] = ()
    endpoint: EndpointSpec | None = None
    request_transform: Callable[..., Any] | None = None
    response_transform: Callable[..., Any] | None = None
    implementation: Callable[..., Any] | None = None
    operation: str | None = None
    declared: bool = True

    @property
    def is_store_op(self) -> bool:
        return self.kind is MethodKind.STORE

    @property
    def is_stream(self) -> bool:
        return self.kind is MethodKind.READABLE or (
            self.is_store_op and self.operation in STREAM_OPERATIONS
        )

    @property
    def is_live(self) -> bool:
        return self.is_store_op and self.operation in LIVE_OPERATIONS

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.kind.value,
            "arguments": list(self.arguments) if self.arguments is not None else None,
            "return": self.returns,
            "errors": [
                {"schema": e.schema, "name": e.name, "code": e.code} for e in self.errors
            ],
            "endpoint": self.endpoint.describe() if self.endpoint else None,
        }


def store_method(operation: str, *, declared: bool = False) -> MethodDef:
    """Build the default store-op method for a primitive."""
    return MethodDef(
        name=operation,
        kind=MethodKind.STORE,
        arguments=DEFAULT_STORE_ARGUMENTS[operation],
        operation=operation,
        declared=declared,
    )


@dataclass(frozen=True, eq=False)
class Sublevel:
    """A namespaced partition of the store with its methods and children."""

    name: str
    path: tuple[str, ...]
    store: Store
    methods: tuple[MethodDef, ...] = ()
    children: Mapping[str, Sublevel] = field(default_factory=lambda: MappingProxyType({}))

    def method(self, name: str) -> MethodDef | None:
        for method in self.methods:
            if method.name == name:
                return method
        return None

    def store_op(self, operation: str) -> MethodDef:
        """The store-op method for a primitive, declared or default."""
        method = self.method(operation)
        if method is not None and method.is_store_op:
            return method
        return store_method(operation)

    @property
    def endpoint_methods(self) -> tuple[MethodDef, ...]:
        return tuple(m for m in self.methods if m.endpoint is not None)

    def describe(self) -> dict[str, Any]:
        return {
            "path": list(self.path),
            "methods": {m.name: m.describe() for m in self.methods},
            "sublevels": {name: child.describe() for name, child in self.children.items()},
        }


@dataclass(frozen=True, eq=False)
class Manifest:
    """Root of a loaded manifest."""

    root: Sublevel
    schemas: SchemaRegistry

    def resolve(self, path: tuple[str, ...]) -> tuple[Sublevel, int]:
        """Deepest sublevel prefix of ``path`` and how many segments it consumed."""
        node = self.root
        depth = 0
        for segment in path:
            child = node.children.get(segment)
            if child is None:
                break
            node = child
            depth += 1
        return node, depth

    def sublevel(self, path: tuple[str, ...] | list[str]) -> Sublevel | None:
        """The sublevel at exactly ``path``, or None."""
        node, depth = self.resolve(tuple(path))
        return node if depth == len(path) else None

    def walk(self):
        """Yield every sublevel, parents before children."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(list(node.children.values())))

    @property
    def verbs(self) -> frozenset[str]:
        """Every verb declared by some endpoint."""
        return frozenset(
            m.endpoint.method for node in self.walk() for m in node.endpoint_methods
        )

    def describe(self) -> dict[str, Any]:
        return self.root.describe()


__all__ = [
    "DEFAULT_ENDPOINT_VERB",
    "DEFAULT_STORE_ARGUMENTS",
    "HTTP_VERBS",
    "LIVE_OPERATIONS",
    "RANGE_QUERY_SCHEMA",
    "STORE_OPERATIONS",
    "STREAM_OPERATIONS",
    "CustomPredicate",
    "DefaultVerbMatch",
    "EndpointSpec",
    "ErrorSchema",
    "Manifest",
    "MatchPredicate",
    "MethodDef",
    "MethodKind",
    "RemoteReference",
    "Sublevel",
    "match_pattern",
    "parse_pattern",
    "store_method",
]
