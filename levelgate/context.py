"""
Dispatch Context for Levelgate.

Request-scoped state for one pass through the dispatcher state machine:

    MATCHED -> TRANSFORMING -> INVOKING -> RESPONDING -> DONE

with an error edge from every non-terminal state to FAILED (after which
the error response is produced). One context exists per in-flight
request; contexts never share mutable state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .manifest.models import MethodDef, Sublevel
    from .request import NormalizedRequest
    from .store.protocol import Store


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DispatchState(str, Enum):
    RECEIVED = "received"
    MATCHED = "matched"
    TRANSFORMING = "transforming"
    INVOKING = "invoking"
    RESPONDING = "responding"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({DispatchState.DONE, DispatchState.FAILED})

_ALLOWED: dict[DispatchState, frozenset[DispatchState]] = {
    DispatchState.RECEIVED: frozenset({DispatchState.MATCHED}),
    DispatchState.MATCHED: frozenset({DispatchState.TRANSFORMING, DispatchState.INVOKING}),
    DispatchState.TRANSFORMING: frozenset({DispatchState.INVOKING}),
    DispatchState.INVOKING: frozenset({DispatchState.RESPONDING}),
    DispatchState.RESPONDING: frozenset({DispatchState.DONE}),
}


@dataclass(frozen=True)
class BoundMethod:
    """
    A method joined with the sublevel it runs against and the values the
    request supplied for it. This is the unit the dispatcher invokes.
    """

    method: MethodDef
    sublevel: Sublevel
    request: NormalizedRequest | None = None
    path_args: tuple[str, ...] = ()

    @property
    def store(self) -> Store:
        return self.sublevel.store

    @property
    def name(self) -> str:
        return self.method.name

    @property
    def path(self) -> tuple[str, ...]:
        return self.sublevel.path


@dataclass
class DispatchContext:
    """
    Request-scoped record of one dispatch.

    Tracks the state machine, the routing decision and timing.
    ``describe()`` renders it for the completion log.
    """

    request_id: UUID = field(default_factory=uuid4)
    started_at: datetime = field(default_factory=_utc_now)
    protocol: str = "rest"
    description: str = ""

    state: DispatchState = DispatchState.RECEIVED
    transitions: list[tuple[DispatchState, float]] = field(default_factory=list)

    # Filled in once matched
    route_kind: str = ""
    target: str = ""
    sublevel_path: tuple[str, ...] = ()

    status: int | None = None
    error: str | None = None
    streamed: bool = False

    @property
    def elapsed_ms(self) -> float:
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: DispatchState) -> None:
        """
        Move to ``state``.

        FAILED is reachable from any non-terminal state. Leaving a terminal
        state raises ``RuntimeError``.
        """
        if self.finished:
            raise RuntimeError(f"Dispatch {self.request_id} already {self.state.value}")
        if state is not DispatchState.FAILED and state not in _ALLOWED.get(self.state, ()):
            raise RuntimeError(
                f"Invalid dispatch transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.transitions.append((state, round(self.elapsed_ms, 3)))

    def fail(self, error: BaseException) -> None:
        self.error = f"{type(error).__name__}: {error}"
        if not self.finished:
            self.transition(DispatchState.FAILED)

    def describe(self) -> dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "elapsed_ms": round(self.elapsed_ms, 3),
            "protocol": self.protocol,
            "request": self.description,
            "route_kind": self.route_kind,
            "target": self.target,
            "sublevel": "/" + "/".join(self.sublevel_path),
            "state": self.state.value,
            "transitions": [(s.value, t) for s, t in self.transitions],
            "status": self.status,
            "error": self.error,
            "streamed": self.streamed,
        }


__all__ = ["BoundMethod", "DispatchContext", "DispatchState", "TERMINAL_STATES"]
