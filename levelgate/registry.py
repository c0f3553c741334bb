"""
Function Registry for Levelgate.

Manifests never carry executable code. Match predicates, request/response
transforms and method implementations are registered here by identifier
before a manifest is loaded, and the manifest refers to them by that
identifier. The loader resolves every reference eagerly, so a missing
function is a startup error rather than a request-time surprise.

Example:
    registry = get_function_registry()

    @registry.method("counters.bump")
    async def bump(store, key, amount):
        ...

    @registry.predicate("isStats")
    def is_stats(request):
        return request.path == ("stats",)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from .errors import RegistryError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class FunctionKind(str, Enum):
    """Namespaces in the function registry."""

    PREDICATE = "predicate"
    TRANSFORM = "transform"
    METHOD = "method"


class FunctionRegistry:
    """
    Identifier -> callable registry, one namespace per ``FunctionKind``.

    Populated at startup and read-only while requests are served.
    """

    def __init__(self) -> None:
        self._functions: dict[FunctionKind, dict[str, Callable[..., Any]]] = {
            kind: {} for kind in FunctionKind
        }

    def register(self, kind: FunctionKind, name: str, fn: Callable[..., Any]) -> None:
        """
        Register a callable under ``name``.

        Raises:
            RegistryError: If the name is already taken or fn is not callable
        """
        if not callable(fn):
            raise RegistryError(f"Cannot register non-callable {kind.value} '{name}'")
        namespace = self._functions[kind]
        if name in namespace:
            raise RegistryError(
                f"{kind.value.capitalize()} '{name}' already registered. "
                "Use a unique name or unregister first."
            )
        namespace[name] = fn
        logger.info(f"[registry] Registered {kind.value}: {name}")

    def register_predicate(self, name: str, fn: Callable[..., Any]) -> None:
        self.register(FunctionKind.PREDICATE, name, fn)

    def register_transform(self, name: str, fn: Callable[..., Any]) -> None:
        self.register(FunctionKind.TRANSFORM, name, fn)

    def register_method(self, name: str, fn: Callable[..., Any]) -> None:
        self.register(FunctionKind.METHOD, name, fn)

    def _decorator(self, kind: FunctionKind, name: str | None) -> Callable[[F], F]:
        def wrap(fn: F) -> F:
            self.register(kind, name or fn.__name__, fn)
            return fn

        return wrap

    def predicate(self, name: str | None = None) -> Callable[[F], F]:
        """Decorator form of ``register_predicate``."""
        return self._decorator(FunctionKind.PREDICATE, name)

    def transform(self, name: str | None = None) -> Callable[[F], F]:
        """Decorator form of ``register_transform``."""
        return self._decorator(FunctionKind.TRANSFORM, name)

    def method(self, name: str | None = None) -> Callable[[F], F]:
        """Decorator form of ``register_method``."""
        return self._decorator(FunctionKind.METHOD, name)

    def resolve(self, kind: FunctionKind, locator: str) -> Callable[..., Any]:
        """
        Resolve a locator to a registered callable.

        Raises:
            RegistryError: If nothing is registered under the locator
        """
        fn = self._functions[kind].get(locator)
        if fn is None:
            available = ", ".join(sorted(self._functions[kind])) or "(none)"
            raise RegistryError(
                f"No {kind.value} registered as '{locator}'. Available: {available}",
                locator=locator,
            )
        return fn

    def has(self, kind: FunctionKind, name: str) -> bool:
        return name in self._functions[kind]

    def names(self, kind: FunctionKind) -> list[str]:
        return list(self._functions[kind].keys())

    def unregister(self, kind: FunctionKind, name: str) -> bool:
        if name in self._functions[kind]:
            del self._functions[kind][name]
            logger.info(f"[registry] Unregistered {kind.value}: {name}")
            return True
        return False

    def clear(self) -> None:
        """Clear all registered functions (for testing)."""
        for namespace in self._functions.values():
            namespace.clear()

    def __len__(self) -> int:
        return sum(len(ns) for ns in self._functions.values())


# Global registry instance
_registry: FunctionRegistry | None = None


def get_function_registry() -> FunctionRegistry:
    """
    Get the global function registry.

    Creates the registry on first access (lazy initialization).
    """
    global _registry
    if _registry is None:
        _registry = FunctionRegistry()
    return _registry


def reset_function_registry() -> None:
    """
    Reset the global function registry (for testing).

    Creates a fresh registry instance.
    """
    global _registry
    if _registry is not None:
        _registry.clear()
    _registry = None


__all__ = [
    "FunctionKind",
    "FunctionRegistry",
    "get_function_registry",
    "reset_function_registry",
]
