"""
Pytest configuration and fixtures for Levelgate tests.
"""

import json

import pytest

from levelgate.observability import reset_metrics
from levelgate.registry import FunctionRegistry, reset_function_registry
from levelgate.request import NormalizedRequest
from levelgate.schema import reset_schema_registry
from levelgate.store import MemoryStore


@pytest.fixture(autouse=True)
def _reset_globals():
    """Process-wide registries and metrics start empty in every test."""
    reset_metrics()
    reset_function_registry()
    reset_schema_registry()
    yield
    reset_metrics()
    reset_function_registry()
    reset_schema_registry()


@pytest.fixture
def functions():
    """A fresh function registry."""
    return FunctionRegistry()


@pytest.fixture
def store():
    """An empty in-memory root store."""
    return MemoryStore()


@pytest.fixture
def make_request():
    """Build a NormalizedRequest; dict/list bodies are encoded as compact JSON."""

    def _make(method, path, body=None, params=None, headers=None):
        if body is None:
            raw = b""
        elif isinstance(body, (bytes, str)):
            raw = body
        else:
            raw = json.dumps(body, separators=(",", ":"))
        return NormalizedRequest.build(method, path, params=params, headers=headers, body=raw)

    return _make


@pytest.fixture
def items_manifest():
    """Manifest document with sublevels db -> items."""
    return {"sublevels": {"db": {"sublevels": {"items": {}}}}}
