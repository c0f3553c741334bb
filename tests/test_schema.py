"""
Tests for the schema registry.
"""

import pytest

from levelgate.errors import ArgumentValidationError, SchemaError
from levelgate.schema import SchemaRegistry, get_schema_registry, validate

# =============================================================================
# Validation
# =============================================================================


class TestValidate:
    """Tests for SchemaRegistry.validate."""

    def test_none_schema_accepts_anything(self):
        assert SchemaRegistry().validate(None, {"any": ["thing"]}).ok

    def test_valid_value(self):
        result = SchemaRegistry().validate({"type": "string"}, "hello")

        assert result.ok
        assert result.violations == ()

    def test_invalid_value_reports_location(self):
        schema = {"type": "object", "properties": {"n": {"type": "integer"}}}

        result = SchemaRegistry().validate(schema, {"n": "x"})

        assert not result.ok
        assert len(result.violations) == 1
        assert result.violations[0].startswith("n: ")

    def test_root_violation_location(self):
        result = SchemaRegistry().validate({"type": "integer"}, "x")

        assert result.violations[0].startswith("<root>: ")

    def test_result_is_deterministic(self):
        registry = SchemaRegistry()
        schema = {
            "type": "object",
            "properties": {"a": {"type": "integer"}, "b": {"type": "string"}},
        }

        first = registry.validate(schema, {"a": "x", "b": 1})
        second = registry.validate(schema, {"a": "x", "b": 1})

        assert first == second
        assert len(first.violations) == 2

    def test_boolean_schemas(self):
        registry = SchemaRegistry()

        assert registry.validate(True, 1).ok
        assert not registry.validate(False, 1).ok

    def test_result_is_truthy_when_ok(self):
        registry = SchemaRegistry()

        assert registry.validate({"type": "integer"}, 1)
        assert not registry.validate({"type": "integer"}, "1")

    def test_malformed_schema_raises_schema_error(self):
        with pytest.raises(SchemaError):
            SchemaRegistry().validate({"type": 12}, 1)

    def test_non_schema_value_raises_schema_error(self):
        with pytest.raises(SchemaError):
            SchemaRegistry().validate(["not", "a", "schema"], 1)


# =============================================================================
# Named schemas
# =============================================================================


class TestNamedSchemas:
    """Tests for registering schemas and resolving $ref."""

    def test_ref_resolves_registered_schema(self):
        registry = SchemaRegistry()
        registry.register("urn:levelgate:item", {"type": "object", "required": ["foo"]})

        ref = {"$ref": "urn:levelgate:item"}

        assert registry.validate(ref, {"foo": 1}).ok
        assert not registry.validate(ref, {}).ok

    def test_get_and_names(self):
        registry = SchemaRegistry()
        registry.register("urn:levelgate:n", {"type": "integer"})

        assert registry.get("urn:levelgate:n") == {"type": "integer"}
        assert registry.get("urn:levelgate:missing") is None
        assert registry.names == ["urn:levelgate:n"]

    def test_duplicate_name_rejected(self):
        registry = SchemaRegistry()
        registry.register("urn:levelgate:n", {"type": "integer"})

        with pytest.raises(SchemaError, match="already registered"):
            registry.register("urn:levelgate:n", {"type": "string"})

    def test_malformed_schema_not_registered(self):
        registry = SchemaRegistry()

        with pytest.raises(SchemaError):
            registry.register("urn:levelgate:bad", {"type": 12})

        assert registry.names == []

    def test_unresolvable_ref_raises_schema_error(self):
        with pytest.raises(SchemaError, match="Unresolvable"):
            SchemaRegistry().validate({"$ref": "urn:levelgate:missing"}, 1)


# =============================================================================
# Argument tuples
# =============================================================================


class TestValidateArguments:
    """Tests for positional argument validation."""

    def test_untyped_method_accepts_any_tuple(self):
        SchemaRegistry().validate_arguments(None, [1, "two", {"three": 3}])

    def test_matching_tuple_passes(self):
        SchemaRegistry().validate_arguments(
            [{"type": "string"}, {"type": "integer"}],
            ["key", 3],
            method_name="bump",
        )

    def test_arity_mismatch(self):
        with pytest.raises(ArgumentValidationError, match="expects 2 argument"):
            SchemaRegistry().validate_arguments(
                [{"type": "string"}, {"type": "integer"}],
                ["key"],
                method_name="bump",
            )

    def test_violations_name_positions(self):
        with pytest.raises(ArgumentValidationError) as exc_info:
            SchemaRegistry().validate_arguments(
                [{"type": "string"}, {"type": "integer"}],
                ["key", "three"],
                method_name="bump",
            )

        error = exc_info.value
        assert error.status_code == 400
        assert len(error.violations) == 1
        assert error.violations[0].startswith("arguments[1]")
        assert error.to_dict()["error"]["method"] == "bump"


# =============================================================================
# Global registry
# =============================================================================


class TestGlobalRegistry:
    def test_module_validate_uses_global_registry(self):
        get_schema_registry().register("urn:levelgate:flag", {"type": "boolean"})

        assert validate({"$ref": "urn:levelgate:flag"}, True).ok
        assert not validate({"$ref": "urn:levelgate:flag"}, "yes").ok

    def test_reset_between_tests(self):
        assert get_schema_registry().names == []
