"""
Store capability surface.

The dispatcher talks to the key-value store only through this protocol.
Optional primitives (``create``, ``create_key``) are advertised through
``StoreCapabilities`` flags, checked once when a manifest is loaded so
nothing probes for method existence at request time.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ArgumentValidationError

# Query parameters understood by the range query. Anything else in the
# URL query string stays available to custom transforms.
RANGE_FIELDS = frozenset({"gt", "gte", "lt", "lte", "limit", "reverse", "keys", "values", "old"})

_TRUE = {"true", "1", "yes", ""}
_FALSE = {"false", "0", "no"}


class RangeQuery(BaseModel):
    """
    Bounds selecting a contiguous key range.

    ``limit`` of -1 means unbounded. ``keys``/``values`` shape read-stream
    records; ``old`` asks a live stream to replay the current range before
    switching to live changes.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    gt: str | None = None
    gte: str | None = None
    lt: str | None = None
    lte: str | None = None
    limit: int = Field(default=-1, ge=-1)
    reverse: bool = False
    keys: bool = True
    values: bool = True
    old: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> RangeQuery | None:
        """
        Decode a URL query mapping into a range query.

        Returns None when no range field is present.

        Raises:
            ArgumentValidationError: If a field cannot be decoded
        """
        fields = {k: v for k, v in params.items() if k in RANGE_FIELDS}
        if not fields:
            return None

        decoded: dict[str, Any] = {}
        for name, raw in fields.items():
            if name in ("reverse", "keys", "values", "old"):
                lowered = raw.lower()
                if lowered in _TRUE:
                    decoded[name] = True
                elif lowered in _FALSE:
                    decoded[name] = False
                else:
                    raise ArgumentValidationError(
                        f"Query parameter '{name}' must be a boolean",
                        violations=[f"{name}: {raw!r} is not a boolean"],
                    )
            else:
                decoded[name] = raw

        return cls.from_value(decoded)

    @classmethod
    def from_value(cls, value: Any) -> RangeQuery:
        """
        Build a range query from a JSON value (procedure-call arguments).

        Raises:
            ArgumentValidationError: If the value is not a valid range object
        """
        if value is None:
            return cls()
        if isinstance(value, RangeQuery):
            return value
        try:
            return cls.model_validate(value)
        except ValidationError as e:
            violations = [
                f"{'/'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            ]
            raise ArgumentValidationError("Invalid range query", violations=violations) from e

    def contains(self, key: str) -> bool:
        """Whether ``key`` falls inside the bounds (limit is not considered)."""
        if self.gt is not None and not key > self.gt:
            return False
        if self.gte is not None and not key >= self.gte:
            return False
        if self.lt is not None and not key < self.lt:
            return False
        if self.lte is not None and not key <= self.lte:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_defaults=True)


@dataclass(frozen=True)
class ChangeEvent:
    """A committed mutation, as delivered to live subscribers."""

    type: Literal["put", "del"]
    key: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        if self.type == "del":
            return {"type": self.type, "key": self.key}
        return {"type": self.type, "key": self.key, "value": self.value}


@dataclass(frozen=True)
class StoreCapabilities:
    """Presence flags for the optional store primitives."""

    supports_create: bool = False
    supports_create_key: bool = True
    supports_live: bool = True


@runtime_checkable
class Store(Protocol):
    """
    Key-value store bound to one sublevel.

    Point operations are coroutines; stream operations return async
    iterators that support ``aclose()`` so an abandoned response releases
    the underlying iterator or subscription.
    """

    @property
    def capabilities(self) -> StoreCapabilities:
        ...

    async def get(self, key: str) -> Any:
        """Return the value, raising ``KeyNotFoundError`` if absent."""
        ...

    async def put(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        """Delete a key. Deleting an absent key is a no-op."""
        ...

    def create_read_stream(self, query: RangeQuery) -> AsyncIterator[Any]:
        ...

    def create_key_stream(self, query: RangeQuery) -> AsyncIterator[str]:
        ...

    def create_live_stream(self, query: RangeQuery) -> AsyncIterator[dict[str, Any]]:
        ...

    async def create(self, value: Any) -> str:
        """Store ``value`` under a generated key (optional primitive)."""
        ...

    async def create_key(self, value: Any = None) -> str:
        """Generate a fresh key without writing (optional primitive)."""
        ...

    def sublevel(self, name: str) -> Store:
        """Return the child partition named ``name``."""
        ...


__all__ = [
    "RANGE_FIELDS",
    "ChangeEvent",
    "RangeQuery",
    "Store",
    "StoreCapabilities",
]
