"""
Normalized request descriptor.

Both wire protocols are reduced to a ``NormalizedRequest`` before
matching: an upper-cased verb, the path as a segment tuple, the decoded
range query, case-insensitive headers and the raw body.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from .errors import ArgumentValidationError
from .store.protocol import RangeQuery


def split_path(path: str | Sequence[str]) -> tuple[str, ...]:
    """
    Split a path into non-empty segments.

    String paths are taken as already percent-decoded; transports holding
    the raw path pass a decoded segment sequence instead.
    """
    if isinstance(path, str):
        return tuple(segment for segment in path.split("/") if segment)
    return tuple(segment for segment in path if segment)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a JSON value")


@dataclass(frozen=True)
class NormalizedRequest:
    """
    Transport-independent view of an incoming request.

    ``path`` is relative to ``prefix``: the matcher re-bases the request on
    the sublevel it resolves, so predicates and transforms see the key
    suffix in ``path`` and the sublevel path in ``prefix``.
    """

    method: str
    path: tuple[str, ...] = ()
    query: RangeQuery | None = None
    params: Mapping[str, str] = field(default_factory=dict)
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""
    prefix: tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        method: str,
        path: str | Sequence[str],
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | Sequence[tuple[str, str]] | httpx.Headers | None = None,
        body: bytes | str = b"",
    ) -> NormalizedRequest:
        """
        Build a request from raw transport values.

        Raises:
            ArgumentValidationError: If the query string is not a valid range
        """
        params = dict(params or {})
        return cls(
            method=method.upper(),
            path=split_path(path),
            query=RangeQuery.from_params(params),
            params=params,
            headers=httpx.Headers(headers or {}),
            body=body.encode() if isinstance(body, str) else body,
        )

    @property
    def key(self) -> str | None:
        """The key suffix below the resolved sublevel, if any."""
        return "/".join(self.path) if self.path else None

    @property
    def has_key(self) -> bool:
        return bool(self.path)

    @property
    def has_query(self) -> bool:
        return self.query is not None

    @property
    def has_body(self) -> bool:
        return bool(self.body.strip())

    @property
    def full_path(self) -> tuple[str, ...]:
        return self.prefix + self.path

    def relative_to(self, depth: int) -> NormalizedRequest:
        """Re-base the request so the first ``depth`` segments become the prefix."""
        full = self.full_path
        return replace(self, prefix=full[:depth], path=full[depth:])

    def json(self) -> Any:
        """
        Decode the body as JSON. An empty body decodes to None.

        Raises:
            ArgumentValidationError: If the body is not valid JSON
        """
        if not self.has_body:
            return None
        try:
            return json.loads(self.body, parse_constant=_reject_constant)
        except ValueError as e:  # JSONDecodeError, UnicodeDecodeError, NaN/Infinity
            raise ArgumentValidationError(
                "Request body is not valid JSON",
                violations=[f"body: {e}"],
            ) from e

    def describe(self) -> str:
        return f"{self.method} /{'/'.join(self.full_path)}"


__all__ = ["NormalizedRequest", "split_path"]
