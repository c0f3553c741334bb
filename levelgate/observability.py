"""
Observability for Levelgate.

Structured logging and metrics for dispatch monitoring and debugging.

- ``JSONLogger`` emits one JSON object per event through the standard
  ``logging`` module, with optional request correlation.
- ``DispatchLogger`` wraps it with dispatch lifecycle events.
- ``DispatchMetrics`` keeps process-wide counters and a duration
  histogram, exposed by the HTTP app at ``/_metrics``.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class LogLevel(Enum):
    """Record levels, valued as their stdlib ``logging`` numbers."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


class StructuredLogger(Protocol):
    """Logger taking a message plus key-value context."""

    def debug(self, message: str, **context: Any) -> None:
        ...

    def info(self, message: str, **context: Any) -> None:
        ...

    def warning(self, message: str, **context: Any) -> None:
        ...

    def error(self, message: str, **context: Any) -> None:
        ...


# =============================================================================
# JSON Logger
# =============================================================================


@dataclass
class JSONLogger:
    """
    Structured logger that outputs JSON-formatted records.

    Example output:
        {"timestamp": "2026-01-02T10:30:00+00:00", "level": "info",
         "message": "Dispatch completed", "request_id": "abc-123",
         "status": 200}
    """

    name: str = "levelgate"
    request_id: str | None = None
    extra_context: dict[str, Any] = field(default_factory=dict)
    _python_logger: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._python_logger = logging.getLogger(self.name)

    def _emit(self, level: LogLevel, message: str, context: dict[str, Any]) -> None:
        if not self._python_logger.isEnabledFor(level.value):
            return
        record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.name.lower(),
            "message": message,
        }
        record.update(self.extra_context)
        record.update(context)
        if self.request_id:
            record["request_id"] = self.request_id
        # Values json cannot encode are logged by their str()
        self._python_logger.log(level.value, json.dumps(record, default=str))

    def debug(self, message: str, **context: Any) -> None:
        self._emit(LogLevel.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._emit(LogLevel.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._emit(LogLevel.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._emit(LogLevel.ERROR, message, context)

    def with_context(self, **extra: Any) -> JSONLogger:
        """Copy of this logger whose records also carry ``extra``."""
        return replace(self, extra_context={**self.extra_context, **extra})


# =============================================================================
# Dispatch Logger
# =============================================================================


@dataclass
class DispatchLogger:
    """
    Lifecycle events for one dispatch.

    Example:
        log = DispatchLogger(request_id="abc-123")
        log.dispatch_started(protocol="rest", request="GET /db/items/a")
        log.route_selected(kind="convention", target="get", sublevel="/db/items")
        log.dispatch_completed(status=200, duration_ms=1.2)
    """

    request_id: str
    inner: StructuredLogger | None = None

    def __post_init__(self) -> None:
        if self.inner is None:
            self.inner = JSONLogger(name="levelgate.dispatch", request_id=self.request_id)

    def dispatch_started(self, protocol: str, request: str) -> None:
        self.inner.debug("Dispatch started", protocol=protocol, request=request)

    def route_selected(self, kind: str, target: str, sublevel: str) -> None:
        self.inner.debug("Route selected", route_kind=kind, target=target, sublevel=sublevel)

    def state_changed(self, from_state: str, to_state: str) -> None:
        self.inner.debug("State changed", from_state=from_state, to_state=to_state)

    def dispatch_completed(
        self,
        status: int,
        duration_ms: float,
        streamed: bool = False,
        error: str | None = None,
    ) -> None:
        if error is None:
            self.inner.info(
                "Dispatch completed",
                status=status,
                duration_ms=round(duration_ms, 2),
                streamed=streamed,
            )
        else:
            self.inner.warning(
                "Dispatch failed",
                status=status,
                duration_ms=round(duration_ms, 2),
                error=error,
            )

    def stream_closed(self, stream_id: str, kind: str, delivered: int, error: str | None) -> None:
        log = self.inner.warning if error else self.inner.debug
        log(
            "Stream closed",
            stream_id=stream_id,
            stream_kind=kind,
            delivered=delivered,
            error=error,
        )


# =============================================================================
# Metrics
# =============================================================================


def _percentile(ordered: list[float], fraction: float) -> float | None:
    """Linear interpolation between the closest ranks of a sorted sample."""
    if not ordered:
        return None
    position = (len(ordered) - 1) * fraction
    lower = int(position)
    upper = min(lower + 1, len(ordered) - 1)
    return ordered[lower] + (position - lower) * (ordered[upper] - ordered[lower])


@dataclass
class DispatchMetrics:
    """
    Dispatch counters and a duration histogram.

    Can be exported to Prometheus, StatsD or similar via ``get_stats()``.
    """

    dispatches_total: int = 0
    dispatches_failed: int = 0
    by_route_kind: Counter = field(default_factory=Counter)
    by_status: Counter = field(default_factory=Counter)

    streams_opened: int = 0
    streams_closed: int = 0
    overflows_total: int = 0

    durations_ms: list[float] = field(default_factory=list)
    max_histogram_entries: int = 1000

    def record_dispatch(self, route_kind: str, status: int, duration_ms: float) -> None:
        self.dispatches_total += 1
        if status >= 400:
            self.dispatches_failed += 1
        self.by_route_kind[route_kind or "none"] += 1
        self.by_status[str(status)] += 1

        self.durations_ms.append(duration_ms)
        if len(self.durations_ms) > self.max_histogram_entries:
            del self.durations_ms[: len(self.durations_ms) - self.max_histogram_entries]

    def record_stream_opened(self) -> None:
        self.streams_opened += 1

    def record_stream_closed(self, overflowed: bool = False) -> None:
        self.streams_closed += 1
        if overflowed:
            self.overflows_total += 1

    @property
    def streams_active(self) -> int:
        return self.streams_opened - self.streams_closed

    def get_stats(self) -> dict[str, Any]:
        ordered = sorted(self.durations_ms)
        return {
            "dispatches": {
                "total": self.dispatches_total,
                "failed": self.dispatches_failed,
                "by_route_kind": dict(self.by_route_kind),
                "by_status": dict(self.by_status),
            },
            "duration_ms": {
                "p50": _percentile(ordered, 0.5),
                "p95": _percentile(ordered, 0.95),
                "p99": _percentile(ordered, 0.99),
            },
            "streams": {
                "opened": self.streams_opened,
                "closed": self.streams_closed,
                "active": self.streams_active,
                "overflows": self.overflows_total,
            },
        }

    def reset(self) -> None:
        self.dispatches_total = 0
        self.dispatches_failed = 0
        self.by_route_kind.clear()
        self.by_status.clear()
        self.streams_opened = 0
        self.streams_closed = 0
        self.overflows_total = 0
        self.durations_ms.clear()


# Global metrics instance
_global_metrics = DispatchMetrics()


def get_metrics() -> DispatchMetrics:
    """Get the global metrics instance."""
    return _global_metrics


def reset_metrics() -> None:
    """Reset global metrics (useful for testing)."""
    _global_metrics.reset()


__all__ = [
    "DispatchLogger",
    "DispatchMetrics",
    "JSONLogger",
    "LogLevel",
    "StructuredLogger",
    "get_metrics",
    "reset_metrics",
]
