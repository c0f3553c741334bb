"""
Levelgate store layer.

The store is an external collaborator reached through the ``Store``
protocol. ``MemoryStore`` is a complete in-memory implementation.
"""

from .memory import LiveSubscription, MemoryStore
from .protocol import RANGE_FIELDS, ChangeEvent, RangeQuery, Store, StoreCapabilities

__all__ = [
    "RANGE_FIELDS",
    "ChangeEvent",
    "LiveSubscription",
    "MemoryStore",
    "RangeQuery",
    "Store",
    "StoreCapabilities",
]
