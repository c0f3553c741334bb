"""
Tests for manifest loading.
"""

import json

import pytest

from levelgate.errors import EndpointConflictError, ManifestError
from levelgate.manifest import FileManifestLoader, ManifestLoader, load_manifest
from levelgate.manifest.models import MethodKind, RemoteReference
from levelgate.schema import SchemaRegistry
from levelgate.store import MemoryStore


@pytest.fixture
def bump_functions(functions):
    async def bump(store, key, amount):
        return amount

    functions.register_method("counters.bump", bump)
    functions.register_predicate("isStats", lambda request: request.key == "stats")
    functions.register_transform("bodyArgs", lambda request, bound: [request.json()])
    return functions


# =============================================================================
# Structure
# =============================================================================


class TestManifestStructure:
    """Tests for the shape of a loaded manifest."""

    def test_empty_document_exposes_store_methods(self, functions, store):
        manifest = load_manifest({}, store, functions=functions)

        names = [m.name for m in manifest.root.methods]
        assert "get" in names
        assert "createLiveStream" in names
        assert "create" not in names  # store lacks the primitive

    def test_create_included_when_store_supports_it(self, functions):
        manifest = load_manifest({}, MemoryStore(supports_create=True), functions=functions)

        assert manifest.root.method("create") is not None

    def test_store_methods_can_be_disabled(self, functions, store):
        manifest = load_manifest({"storeMethods": False}, store, functions=functions)

        assert manifest.root.methods == ()
        assert manifest.root.store_op("get").is_store_op

    def test_nested_sublevels_bind_child_stores(self, functions, store, items_manifest):
        manifest = load_manifest(items_manifest, store, functions=functions)

        items = manifest.sublevel(["db", "items"])
        assert items.path == ("db", "items")
        assert items.store is store.sublevel("db").sublevel("items")
        assert manifest.sublevel(["db", "nope"]) is None

    def test_resolve_finds_deepest_prefix(self, functions, store, items_manifest):
        manifest = load_manifest(items_manifest, store, functions=functions)

        sublevel, depth = manifest.resolve(("db", "items", "a", "b"))

        assert sublevel.name == "items"
        assert depth == 2

    def test_walk_parents_first(self, functions, store, items_manifest):
        manifest = load_manifest(items_manifest, store, functions=functions)

        assert [s.path for s in manifest.walk()] == [(), ("db",), ("db", "items")]

    def test_methods_in_declaration_order(self, bump_functions, store):
        manifest = load_manifest(
            {
                "storeMethods": False,
                "methods": [
                    {"name": "second", "implementation": "counters.bump"},
                    {"name": "first", "implementation": "counters.bump"},
                ],
            },
            store,
            functions=bump_functions,
        )

        assert [m.name for m in manifest.root.methods] == ["second", "first"]

    def test_describe(self, bump_functions, store):
        manifest = load_manifest(
            {
                "storeMethods": False,
                "methods": {
                    "bump": {
                        "implementation": "counters.bump",
                        "arguments": [{"type": "string"}, {"type": "integer"}],
                        "endpoint": {"method": "patch", "path": "/:key"},
                    }
                },
            },
            store,
            functions=bump_functions,
        )

        described = manifest.describe()["methods"]["bump"]
        assert described["type"] == "async"
        assert described["endpoint"]["method"] == "PATCH"
        assert described["endpoint"]["path"] == "/:key"
        assert manifest.verbs == frozenset({"PATCH"})


# =============================================================================
# Methods and locators
# =============================================================================


class TestMethods:
    """Tests for method declarations."""

    def test_resolves_locators_eagerly(self, bump_functions, store):
        manifest = load_manifest(
            {
                "methods": {
                    "bump": {
                        "implementation": "counters.bump",
                        "requestTransform": "bodyArgs",
                        "endpoint": {"method": "POST", "path": "/stats", "test": "isStats"},
                    }
                }
            },
            store,
            functions=bump_functions,
        )

        bump = manifest.root.method("bump")
        assert bump.kind is MethodKind.ASYNC
        assert bump.implementation is not None
        assert bump.request_transform is not None
        assert isinstance(bump.endpoint.predicate, RemoteReference)
        assert bump.endpoint.predicate.resolved is not None

    def test_implementation_defaults_to_method_name(self, functions, store):
        functions.register_method("tally", lambda store: 0)

        manifest = load_manifest(
            {"methods": {"tally": {"type": "sync"}}}, store, functions=functions
        )

        assert manifest.root.method("tally").kind is MethodKind.SYNC

    def test_unresolved_implementation(self, functions, store):
        with pytest.raises(ManifestError, match="No method registered as 'missing'"):
            load_manifest(
                {"methods": {"x": {"implementation": "missing"}}}, store, functions=functions
            )

    def test_unresolved_predicate(self, bump_functions, store):
        with pytest.raises(ManifestError, match="test"):
            load_manifest(
                {
                    "methods": {
                        "x": {
                            "implementation": "counters.bump",
                            "endpoint": {"method": "POST", "test": "nope"},
                        }
                    }
                },
                store,
                functions=bump_functions,
            )

    def test_unresolved_transform(self, bump_functions, store):
        with pytest.raises(ManifestError, match="responseTransform"):
            load_manifest(
                {
                    "methods": {
                        "x": {"implementation": "counters.bump", "responseTransform": "nope"}
                    }
                },
                store,
                functions=bump_functions,
            )

    def test_duplicate_method_in_list(self, bump_functions, store):
        with pytest.raises(ManifestError, match="Duplicate method 'x'"):
            load_manifest(
                {
                    "methods": [
                        {"name": "x", "implementation": "counters.bump"},
                        {"name": "x", "implementation": "counters.bump"},
                    ]
                },
                store,
                functions=bump_functions,
            )

    def test_nameless_method_rejected(self, bump_functions, store):
        with pytest.raises(ManifestError, match="no name"):
            load_manifest(
                {"methods": [{"implementation": "counters.bump"}]},
                store,
                functions=bump_functions,
            )

    def test_declared_store_method(self, functions, store):
        manifest = load_manifest(
            {"methods": {"fetch": {"operation": "get", "return": {"type": "object"}}}},
            store,
            functions=functions,
        )

        fetch = manifest.root.method("fetch")
        assert fetch.is_store_op
        assert fetch.operation == "get"
        assert fetch.arguments == ({"type": "string", "minLength": 1},)

    def test_unknown_store_primitive(self, functions, store):
        with pytest.raises(ManifestError, match="not a store primitive"):
            load_manifest(
                {"methods": {"x": {"type": "store", "operation": "truncate"}}},
                store,
                functions=functions,
            )

    def test_store_lacking_primitive(self, functions, store):
        with pytest.raises(ManifestError, match="requires 'create'"):
            load_manifest({"methods": {"create": {}}}, store, functions=functions)

    def test_bad_verb(self, bump_functions, store):
        with pytest.raises(ManifestError, match="not one of"):
            load_manifest(
                {"methods": {"x": {"implementation": "counters.bump", "endpoint": {"method": "TRACE"}}}},
                store,
                functions=bump_functions,
            )

    def test_malformed_document(self, functions, store):
        with pytest.raises(ManifestError, match="malformed") as exc_info:
            load_manifest({"methods": {"x": {"type": "weird"}}}, store, functions=functions)

        assert exc_info.value.details["violations"]

    def test_invalid_sublevel_name(self, functions, store):
        with pytest.raises(ManifestError, match="Invalid sublevel name"):
            load_manifest({"sublevels": {"a/b": {}}}, store, functions=functions)


# =============================================================================
# Schemas
# =============================================================================


class TestSchemas:
    """Tests for schema registration and checking at load time."""

    def test_named_schemas_registered(self, bump_functions, store):
        schemas = SchemaRegistry()

        manifest = load_manifest(
            {
                "schemas": {"urn:levelgate:amount": {"type": "integer"}},
                "methods": {
                    "bump": {
                        "implementation": "counters.bump",
                        "arguments": [{"type": "string"}, {"$ref": "urn:levelgate:amount"}],
                    }
                },
            },
            store,
            functions=bump_functions,
            schemas=schemas,
        )

        assert manifest.schemas is schemas
        assert schemas.names == ["urn:levelgate:amount"]

    def test_malformed_named_schema(self, functions, store):
        with pytest.raises(ManifestError, match="Schema 'urn:levelgate:bad'"):
            load_manifest(
                {"schemas": {"urn:levelgate:bad": {"type": 12}}}, store, functions=functions
            )

    def test_malformed_method_schema(self, bump_functions, store):
        with pytest.raises(ManifestError, match=r"arguments\[0\]"):
            load_manifest(
                {"methods": {"bump": {"implementation": "counters.bump", "arguments": [{"type": 12}]}}},
                store,
                functions=bump_functions,
            )

    def test_error_schemas_loaded(self, bump_functions, store):
        manifest = load_manifest(
            {
                "methods": {
                    "bump": {
                        "implementation": "counters.bump",
                        "errors": [{"name": "NotFoundError", "code": 404, "schema": {"type": "object"}}],
                    }
                }
            },
            store,
            functions=bump_functions,
        )

        (error,) = manifest.root.method("bump").errors
        assert error.name == "NotFoundError"
        assert error.code == 404


# =============================================================================
# Endpoint conflicts
# =============================================================================


class TestEndpointConflicts:
    """Tests for the convention-route overlap rule."""

    def _load(self, functions, store, endpoint):
        return load_manifest(
            {"methods": {"x": {"implementation": "counters.bump", "endpoint": endpoint}}},
            store,
            functions=functions,
        )

    def test_get_any_path_conflicts(self, bump_functions, store):
        with pytest.raises(EndpointConflictError) as exc_info:
            self._load(bump_functions, store, {"method": "GET"})

        assert exc_info.value.details["method"] == "x"

    def test_get_key_parameter_conflicts(self, bump_functions, store):
        with pytest.raises(EndpointConflictError, match="key route"):
            self._load(bump_functions, store, {"method": "GET", "path": "/:id"})

    def test_delete_root_conflicts(self, bump_functions, store):
        with pytest.raises(EndpointConflictError, match="range route"):
            self._load(bump_functions, store, {"method": "DELETE", "path": "/"})

    def test_literal_segment_allowed(self, bump_functions, store):
        manifest = self._load(bump_functions, store, {"method": "GET", "path": "/stats"})

        assert manifest.root.method("x").endpoint.path == "/stats"

    def test_predicate_makes_endpoint_unanalysable(self, bump_functions, store):
        manifest = self._load(bump_functions, store, {"method": "GET", "test": "isStats"})

        assert manifest.root.method("x").endpoint.method == "GET"

    def test_other_verbs_allowed(self, bump_functions, store):
        manifest = self._load(bump_functions, store, {"method": "PUT", "path": "/:key"})

        assert manifest.root.method("x") is not None

    def test_conflict_in_nested_sublevel(self, bump_functions, store):
        with pytest.raises(EndpointConflictError):
            load_manifest(
                {
                    "sublevels": {
                        "db": {
                            "methods": {
                                "x": {"implementation": "counters.bump", "endpoint": {"method": "GET"}}
                            }
                        }
                    }
                },
                store,
                functions=bump_functions,
            )


# =============================================================================
# File loading
# =============================================================================


class TestFileManifestLoader:
    """Tests for loading manifests from JSON files."""

    def test_load_file(self, tmp_path, functions, store, items_manifest):
        path = tmp_path / "manifest.json"
        path.write_text(json.dumps(items_manifest))

        manifest = FileManifestLoader(path, loader=ManifestLoader(functions=functions)).load(store)

        assert manifest.sublevel(["db", "items"]) is not None

    def test_duplicate_keys_rejected(self, tmp_path, functions, store):
        path = tmp_path / "manifest.json"
        path.write_text('{"methods": {"get": {}, "get": {}}}')

        with pytest.raises(ManifestError, match="Duplicate key 'get'"):
            FileManifestLoader(path, loader=ManifestLoader(functions=functions)).load(store)

    def test_missing_file(self, tmp_path, store):
        with pytest.raises(ManifestError, match="Cannot read manifest"):
            FileManifestLoader(tmp_path / "missing.json").load(store)

    def test_invalid_json(self, tmp_path, store):
        path = tmp_path / "manifest.json"
        path.write_text("{not json")

        with pytest.raises(ManifestError, match="not valid JSON"):
            FileManifestLoader(path).load(store)
