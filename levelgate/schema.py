"""
Schema Registry.

Holds named JSON schemas referenced by manifests and answers validation
queries. Validation is a pure function of (schema, value): it never
raises for an invalid value, and a malformed schema surfaces as
``SchemaError`` rather than escaping as a library exception.

Usage:
    registry = SchemaRegistry()
    registry.register("urn:levelgate:item", {"type": "object"})

    result = registry.validate({"$ref": "urn:levelgate:item"}, {"foo": "bar"})
    if not result.ok:
        print(result.violations)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError as JSONSchemaError
from referencing import Registry
from referencing.exceptions import Unresolvable
from referencing.jsonschema import DRAFT7

from .errors import ArgumentValidationError, SchemaError

logger = logging.getLogger(__name__)

Schema = dict[str, Any] | bool


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one value against one schema."""

    ok: bool
    violations: tuple[str, ...] = field(default_factory=tuple)

    def __bool__(self) -> bool:
        return self.ok


VALID = ValidationResult(ok=True)


def _format_violation(error: Any) -> str:
    location = "/".join(str(p) for p in error.absolute_path)
    return f"{location or '<root>'}: {error.message}"


class SchemaRegistry:
    """
    Registry of named schemas plus a validation entry point.

    Schemas are registered once at startup (while loading a manifest) and
    only read afterwards.
    """

    def __init__(self) -> None:
        self._schemas: dict[str, Schema] = {}
        self._refs: Registry = Registry()

    def register(self, name: str, schema: Schema) -> None:
        """
        Register a named schema so other schemas can ``$ref`` it.

        Raises:
            SchemaError: If the schema is malformed or the name is taken
        """
        if name in self._schemas:
            raise SchemaError(f"Schema '{name}' already registered")
        self.check(schema)
        self._schemas[name] = schema
        self._refs = self._refs.with_resource(name, DRAFT7.create_resource(schema))
        logger.debug(f"[schemas] Registered schema: {name}")

    def get(self, name: str) -> Schema | None:
        return self._schemas.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._schemas.keys())

    def check(self, schema: Any) -> None:
        """Raise ``SchemaError`` if ``schema`` is not a valid draft-7 schema."""
        if not isinstance(schema, dict | bool):
            raise SchemaError(f"Schema must be an object or boolean, got {type(schema).__name__}")
        try:
            Draft7Validator.check_schema(schema)
        except JSONSchemaError as e:
            raise SchemaError(f"Malformed schema: {e.message}") from e

    def validate(self, schema: Schema | None, value: Any) -> ValidationResult:
        """
        Validate ``value`` against ``schema``.

        A ``None`` schema accepts anything. Violations are sorted so the
        result is deterministic for a given input.

        Raises:
            SchemaError: If the schema is malformed or has unresolvable refs
        """
        if schema is None:
            return VALID
        self.check(schema)

        validator = Draft7Validator(schema, registry=self._refs)
        try:
            errors = sorted(validator.iter_errors(value), key=lambda e: list(map(str, e.path)))
        except Unresolvable as e:
            raise SchemaError(f"Unresolvable schema reference: {e}") from e

        if not errors:
            return VALID
        return ValidationResult(ok=False, violations=tuple(_format_violation(e) for e in errors))

    def validate_arguments(
        self,
        schemas: Sequence[Schema] | None,
        args: Sequence[Any],
        *,
        method_name: str = "",
    ) -> None:
        """
        Validate an argument tuple position by position.

        ``None`` schemas mean the method is untyped and any tuple passes.

        Raises:
            ArgumentValidationError: On arity mismatch or any violation
        """
        if schemas is None:
            return
        if len(args) != len(schemas):
            raise ArgumentValidationError(
                f"{method_name or 'method'} expects {len(schemas)} argument(s), got {len(args)}",
                method=method_name,
            )

        violations: list[str] = []
        for index, (schema, value) in enumerate(zip(schemas, args)):
            result = self.validate(schema, value)
            violations.extend(f"arguments[{index}] {v}" for v in result.violations)

        if violations:
            raise ArgumentValidationError(
                f"Invalid arguments for {method_name or 'method'}",
                violations=violations,
                method=method_name,
            )


# Global registry instance
_registry: SchemaRegistry | None = None


def get_schema_registry() -> SchemaRegistry:
    """Get the process-wide schema registry (created lazily)."""
    global _registry
    if _registry is None:
        _registry = SchemaRegistry()
    return _registry


def validate(schema: Schema | None, value: Any) -> ValidationResult:
    """Validate against the process-wide registry."""
    return get_schema_registry().validate(schema, value)


def reset_schema_registry() -> None:
    """Reset the process-wide registry (for testing)."""
    global _registry
    _registry = None


__all__ = [
    "Schema",
    "SchemaRegistry",
    "ValidationResult",
    "get_schema_registry",
    "reset_schema_registry",
    "validate",
]
