"""
Endpoint Matcher.

Decides which method, or which convention route, handles a request:

1. Walk the path against the sublevel tree to find the deepest sublevel
   and the remaining key suffix.
2. Test every endpoint method of that sublevel in declaration order; the
   first match wins. Method endpoints always take precedence over the
   convention routes, so a method path shadows the keys it covers.
3. Otherwise consult the convention table keyed on
   (verb, has key, has query).
4. Nothing matched: ``RouteNotFoundError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import RouteNotFoundError

if TYPE_CHECKING:
    from .manifest.models import Manifest, MethodDef, Sublevel
    from .request import NormalizedRequest

logger = logging.getLogger(__name__)


class ConventionRoute(str, Enum):
    """Built-in REST routes and the store operation behind each."""

    PUT = "put"
    CREATE = "create"
    DELETE = "del"
    GET = "get"
    READ_RANGE = "createReadStream"
    LIVE = "createLiveStream"
    DELETE_RANGE = "deleteRange"


def _convention_table() -> dict[tuple[str, bool, bool], ConventionRoute]:
    table: dict[tuple[str, bool, bool], ConventionRoute] = {}
    for has_query in (False, True):
        table[("PUT", True, has_query)] = ConventionRoute.PUT
        table[("POST", False, has_query)] = ConventionRoute.CREATE
        table[("DELETE", True, has_query)] = ConventionRoute.DELETE
        table[("GET", True, has_query)] = ConventionRoute.GET
        table[("GET", False, has_query)] = ConventionRoute.READ_RANGE
        table[("SUBSCRIBE", False, has_query)] = ConventionRoute.LIVE
    # Deleting a whole sublevel requires an explicit range
    table[("DELETE", False, True)] = ConventionRoute.DELETE_RANGE
    return table


CONVENTION_TABLE = _convention_table()

# Verbs reachable through the convention table
CONVENTION_VERBS = frozenset(verb for verb, _, _ in CONVENTION_TABLE)


class MatchKind(str, Enum):
    METHOD = "method"
    CONVENTION = "convention"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of matching one request.

    ``request`` is re-based on the resolved sublevel (its ``path`` is the
    key suffix). ``path_args`` holds values captured by ``:param``
    segments of the winning endpoint pattern.
    """

    kind: MatchKind
    request: NormalizedRequest
    sublevel: Sublevel | None = None
    method: MethodDef | None = None
    route: ConventionRoute | None = None
    path_args: tuple[str, ...] = ()
    evaluated: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def matched(self) -> bool:
        return self.kind is not MatchKind.NO_MATCH

    @property
    def target(self) -> str:
        if self.method is not None:
            return self.method.name
        if self.route is not None:
            return self.route.value
        return "-"

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "request": self.request.describe(),
            "sublevel": list(self.sublevel.path) if self.sublevel else None,
            "target": self.target,
            "path_args": list(self.path_args),
            "evaluated": list(self.evaluated),
        }


class EndpointMatcher:
    """
    Stateless matcher over an immutable manifest.

    Example:
        result = EndpointMatcher().match(manifest, request)
        if result.kind is MatchKind.METHOD:
            ...
    """

    def match(self, manifest: Manifest, request: NormalizedRequest) -> MatchResult:
        sublevel, depth = manifest.resolve(request.full_path)
        relative = request.relative_to(depth)

        evaluated: list[str] = []
        for method in sublevel.endpoint_methods:
            evaluated.append(method.name)
            captured = self._evaluate(method, relative)
            if captured is not None:
                logger.debug(
                    f"[matcher] {relative.describe()} -> method '{method.name}' "
                    f"at /{'/'.join(sublevel.path)}"
                )
                return MatchResult(
                    kind=MatchKind.METHOD,
                    request=relative,
                    sublevel=sublevel,
                    method=method,
                    path_args=captured,
                    evaluated=tuple(evaluated),
                )

        route = CONVENTION_TABLE.get((relative.method, relative.has_key, relative.has_query))
        if route is not None:
            logger.debug(f"[matcher] {relative.describe()} -> convention '{route.value}'")
            return MatchResult(
                kind=MatchKind.CONVENTION,
                request=relative,
                sublevel=sublevel,
                route=route,
                evaluated=tuple(evaluated),
            )

        logger.debug(f"[matcher] {relative.describe()} -> no match")
        return MatchResult(
            kind=MatchKind.NO_MATCH,
            request=relative,
            sublevel=sublevel,
            evaluated=tuple(evaluated),
        )

    def match_or_raise(self, manifest: Manifest, request: NormalizedRequest) -> MatchResult:
        """
        Like ``match`` but a miss raises.

        Raises:
            RouteNotFoundError: If neither a method nor a convention route matches
        """
        result = self.match(manifest, request)
        if not result.matched:
            raise RouteNotFoundError(
                f"No route for {request.describe()}",
                method=request.method,
                path="/" + "/".join(request.full_path),
            )
        return result

    @staticmethod
    def _evaluate(method: MethodDef, request: NormalizedRequest) -> tuple[str, ...] | None:
        # Predicates are meant to be total; one that raises counts as a miss
        try:
            return method.endpoint.match(request)
        except Exception as e:
            logger.error(
                f"[matcher] Predicate for method '{method.name}' raised: {e}",
                exc_info=True,
            )
            return None


def match(manifest: Manifest, request: NormalizedRequest) -> MatchResult:
    """Match with a default ``EndpointMatcher``."""
    return EndpointMatcher().match(manifest, request)


__all__ = [
    "CONVENTION_TABLE",
    "CONVENTION_VERBS",
    "ConventionRoute",
    "EndpointMatcher",
    "MatchKind",
    "MatchResult",
    "match",
]
