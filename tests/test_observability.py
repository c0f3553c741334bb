"""
Tests for Levelgate observability module.
"""

import json
import logging

import pytest

from levelgate.observability import (
    DispatchLogger,
    DispatchMetrics,
    JSONLogger,
    get_metrics,
    reset_metrics,
)


class RecordingLogger:
    """StructuredLogger that keeps every event."""

    def __init__(self):
        self.events = []

    def _record(self, level, message, context):
        self.events.append((level, message, context))

    def debug(self, message, **context):
        self._record("debug", message, context)

    def info(self, message, **context):
        self._record("info", message, context)

    def warning(self, message, **context):
        self._record("warning", message, context)

    def error(self, message, **context):
        self._record("error", message, context)


def json_records(caplog):
    return [json.loads(r.getMessage()) for r in caplog.records]


# =============================================================================
# JSONLogger Tests
# =============================================================================


class TestJSONLogger:
    """Tests for JSONLogger."""

    def test_logs_valid_json(self, caplog):
        caplog.set_level(logging.INFO, logger="test")

        JSONLogger(name="test").info("Test message", status=200)

        (record,) = json_records(caplog)
        assert record["message"] == "Test message"
        assert record["level"] == "info"
        assert record["status"] == 200
        assert "timestamp" in record

    def test_includes_request_id_and_extra_context(self, caplog):
        caplog.set_level(logging.INFO, logger="test")
        logger = JSONLogger(name="test", request_id="req-123", extra_context={"service": "levelgate"})

        logger.info("Test message")

        (record,) = json_records(caplog)
        assert record["request_id"] == "req-123"
        assert record["service"] == "levelgate"

    def test_skips_disabled_levels(self, caplog):
        caplog.set_level(logging.WARNING, logger="test")
        logger = JSONLogger(name="test")

        logger.debug("hidden")
        logger.info("hidden")
        logger.error("shown")

        assert [r["message"] for r in json_records(caplog)] == ["shown"]

    def test_unserializable_context_is_stringified(self, caplog):
        caplog.set_level(logging.INFO, logger="test")

        JSONLogger(name="test").info("Test message", path=("db", "items"), error=ValueError("x"))

        (record,) = json_records(caplog)
        assert record["path"] == ["db", "items"]
        assert record["error"] == "x"

    def test_with_context_creates_new_logger(self):
        logger = JSONLogger(name="test", request_id="req-123")
        new_logger = logger.with_context(sublevel="/db/items")

        assert new_logger is not logger
        assert new_logger.request_id == "req-123"
        assert new_logger.extra_context == {"sublevel": "/db/items"}
        assert logger.extra_context == {}


# =============================================================================
# DispatchLogger Tests
# =============================================================================


class TestDispatchLogger:
    """Tests for DispatchLogger."""

    def test_default_inner_logger(self):
        log = DispatchLogger(request_id="req-1")

        assert isinstance(log.inner, JSONLogger)
        assert log.inner.request_id == "req-1"

    def test_lifecycle_events(self):
        inner = RecordingLogger()
        log = DispatchLogger(request_id="req-1", inner=inner)

        log.dispatch_started(protocol="rest", request="GET /db/items/a")
        log.route_selected(kind="convention", target="get", sublevel="/db/items")
        log.state_changed(from_state="received", to_state="matched")
        log.dispatch_completed(status=200, duration_ms=1.234)

        assert [e[1] for e in inner.events] == [
            "Dispatch started",
            "Route selected",
            "State changed",
            "Dispatch completed",
        ]
        assert inner.events[-1] == (
            "info",
            "Dispatch completed",
            {"status": 200, "duration_ms": 1.23, "streamed": False},
        )

    def test_failed_dispatch_is_a_warning(self):
        inner = RecordingLogger()
        log = DispatchLogger(request_id="req-1", inner=inner)

        log.dispatch_completed(status=404, duration_ms=0.5, error="RouteNotFoundError")

        level, message, context = inner.events[0]
        assert level == "warning"
        assert message == "Dispatch failed"
        assert context["error"] == "RouteNotFoundError"

    def test_stream_closed_level_follows_error(self):
        inner = RecordingLogger()
        log = DispatchLogger(request_id="req-1", inner=inner)

        log.stream_closed(stream_id="s1", kind="range", delivered=3, error=None)
        log.stream_closed(stream_id="s2", kind="live", delivered=1, error="BackpressureOverflowError")

        assert [e[0] for e in inner.events] == ["debug", "warning"]
        assert inner.events[0][2]["delivered"] == 3


# =============================================================================
# DispatchMetrics Tests
# =============================================================================


class TestDispatchMetrics:
    """Tests for DispatchMetrics."""

    def test_record_dispatch(self):
        metrics = DispatchMetrics()

        metrics.record_dispatch("convention", 200, 10.0)
        metrics.record_dispatch("method", 201, 20.0)
        metrics.record_dispatch("", 404, 1.0)

        stats = metrics.get_stats()
        assert stats["dispatches"] == {
            "total": 3,
            "failed": 1,
            "by_route_kind": {"convention": 1, "method": 1, "none": 1},
            "by_status": {"200": 1, "201": 1, "404": 1},
        }

    def test_percentiles(self):
        metrics = DispatchMetrics()
        for duration in range(1, 101):
            metrics.record_dispatch("convention", 200, float(duration))

        durations = metrics.get_stats()["duration_ms"]

        assert durations["p50"] == pytest.approx(50.5)
        assert durations["p99"] == pytest.approx(99.01)

    def test_empty_percentiles(self):
        assert DispatchMetrics().get_stats()["duration_ms"] == {"p50": None, "p95": None, "p99": None}

    def test_histogram_is_bounded(self):
        metrics = DispatchMetrics(max_histogram_entries=5)

        for duration in range(10):
            metrics.record_dispatch("convention", 200, float(duration))

        assert metrics.durations_ms == [5.0, 6.0, 7.0, 8.0, 9.0]
        assert metrics.dispatches_total == 10

    def test_streams(self):
        metrics = DispatchMetrics()

        metrics.record_stream_opened()
        metrics.record_stream_opened()
        metrics.record_stream_closed(overflowed=True)

        assert metrics.get_stats()["streams"] == {
            "opened": 2,
            "closed": 1,
            "active": 1,
            "overflows": 1,
        }

    def test_reset(self):
        metrics = DispatchMetrics()
        metrics.record_dispatch("method", 500, 3.0)
        metrics.record_stream_opened()

        metrics.reset()

        assert metrics.get_stats()["dispatches"]["total"] == 0
        assert metrics.streams_active == 0
        assert metrics.durations_ms == []

    def test_global_metrics(self):
        get_metrics().record_dispatch("method", 200, 1.0)

        reset_metrics()

        assert get_metrics().dispatches_total == 0
