"""
Manifest Loader.

Turns a manifest document into the immutable runtime ``Manifest``:

1. Validates the document shape (pydantic)
2. Registers named schemas and checks every method schema
3. Resolves implementation, predicate and transform locators against the
   function registry (eagerly, so nothing is looked up at request time)
4. Checks store capabilities for declared store-op methods
5. Rejects custom GET/DELETE endpoints that exactly overlap a convention
   route

Any failure raises ``ManifestError`` (or its subclass
``EndpointConflictError``); a dispatcher is never built from a manifest
that failed to load.

Usage:
    manifest = load_manifest(doc, MemoryStore(), functions=registry)

    # From a JSON file
    manifest = FileManifestLoader("manifest.json").load(store)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..errors import EndpointConflictError, ManifestError, RegistryError, SchemaError
from ..registry import FunctionKind, FunctionRegistry, get_function_registry
from ..schema import SchemaRegistry
from .document import ManifestDocument, MethodDocument, SublevelDocument
from .models import (
    HTTP_VERBS,
    LIVE_OPERATIONS,
    STORE_OPERATIONS,
    EndpointSpec,
    ErrorSchema,
    Manifest,
    MethodDef,
    MethodKind,
    RemoteReference,
    Sublevel,
    parse_pattern,
    store_method,
)

if TYPE_CHECKING:
    from ..store.protocol import Store, StoreCapabilities

logger = logging.getLogger(__name__)

# Verbs whose convention routes cannot be shadowed wholesale
_PROTECTED_VERBS = frozenset({"GET", "DELETE"})


def _format_validation_error(e: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
    ]


class ManifestLoader:
    """
    Builds ``Manifest`` instances from documents.

    Args:
        functions: Registry used to resolve locators (global by default)
        schemas: Schema registry the manifest's named schemas go into
        store_methods: Default for implicitly declaring store-op methods
    """

    def __init__(
        self,
        *,
        functions: FunctionRegistry | None = None,
        schemas: SchemaRegistry | None = None,
        store_methods: bool = True,
    ):
        self._functions = functions if functions is not None else get_function_registry()
        self._schemas = schemas
        self._store_methods = store_methods

    def load(self, doc: Mapping[str, Any] | ManifestDocument, store: Store) -> Manifest:
        """
        Load a manifest over ``store``.

        Raises:
            ManifestError: On any structural problem
            EndpointConflictError: If an endpoint overlaps a convention route
        """
        if isinstance(doc, ManifestDocument):
            document = doc
        else:
            try:
                document = ManifestDocument.model_validate(doc)
            except ValidationError as e:
                raise ManifestError(
                    "Manifest document is malformed",
                    violations=_format_validation_error(e),
                ) from e

        schemas = self._schemas if self._schemas is not None else SchemaRegistry()
        for name, schema in document.schemas.items():
            try:
                schemas.register(name, schema)
            except SchemaError as e:
                raise ManifestError(f"Schema '{name}': {e.message}") from e

        root = self._build_sublevel(
            name="",
            path=(),
            doc=document,
            store=store,
            schemas=schemas,
            store_methods=self._store_methods,
        )
        manifest = Manifest(root=root, schemas=schemas)

        logger.info(
            f"[manifest] Loaded manifest | "
            f"sublevels={sum(1 for _ in manifest.walk())} | "
            f"methods={sum(len(s.methods) for s in manifest.walk())} | "
            f"verbs={sorted(manifest.verbs)}"
        )
        return manifest

    # ==================== Sublevels ====================

    def _build_sublevel(
        self,
        *,
        name: str,
        path: tuple[str, ...],
        doc: SublevelDocument,
        store: Store,
        schemas: SchemaRegistry,
        store_methods: bool,
    ) -> Sublevel:
        if doc.store_methods is not None:
            store_methods = doc.store_methods

        capabilities = store.capabilities
        methods: list[MethodDef] = []
        seen: set[str] = set()

        for method_name, method_doc in doc.method_items():
            where = self._where(path, method_name)
            if not method_name:
                raise ManifestError(f"Method at {where} has no name")
            if method_name in seen:
                raise ManifestError(f"Duplicate method '{method_name}' at /{'/'.join(path)}")
            seen.add(method_name)
            methods.append(
                self._build_method(method_name, method_doc, path, capabilities, schemas)
            )

        if store_methods:
            for operation in STORE_OPERATIONS:
                if operation in seen or not self._supported(operation, capabilities):
                    continue
                methods.append(store_method(operation))

        children: dict[str, Sublevel] = {}
        for child_name, child_doc in doc.sublevels.items():
            if not child_name or "/" in child_name:
                raise ManifestError(f"Invalid sublevel name {child_name!r} under /{'/'.join(path)}")
            children[child_name] = self._build_sublevel(
                name=child_name,
                path=path + (child_name,),
                doc=child_doc,
                store=store.sublevel(child_name),
                schemas=schemas,
                store_methods=store_methods,
            )

        sublevel = Sublevel(
            name=name,
            path=path,
            store=store,
            methods=tuple(methods),
            children=MappingProxyType(children),
        )
        self._check_conflicts(sublevel)
        return sublevel

    @staticmethod
    def _where(path: tuple[str, ...], name: str | None) -> str:
        return "/" + "/".join(path + ((name,) if name else ()))

    @staticmethod
    def _supported(operation: str, capabilities: StoreCapabilities) -> bool:
        if operation == "create":
            return capabilities.supports_create
        if operation == "createKey":
            return capabilities.supports_create_key
        if operation in LIVE_OPERATIONS:
            return capabilities.supports_live
        return True

    # ==================== Methods ====================

    def _build_method(
        self,
        name: str,
        doc: MethodDocument,
        path: tuple[str, ...],
        capabilities: StoreCapabilities,
        schemas: SchemaRegistry,
    ) -> MethodDef:
        where = self._where(path, name)

        kind = self._infer_kind(name, doc)
        operation: str | None = None
        implementation = None

        if kind is MethodKind.STORE:
            operation = doc.operation or name
            if operation not in STORE_OPERATIONS:
                raise ManifestError(
                    f"Method {where} is a store method but '{operation}' is not a store "
                    f"primitive. Known: {', '.join(STORE_OPERATIONS)}"
                )
            if not self._supported(operation, capabilities):
                raise ManifestError(f"Method {where} requires '{operation}', which the store lacks")
        else:
            implementation = self._resolve(
                FunctionKind.METHOD, doc.implementation or name, where, "implementation"
            )

        for label, schema in self._declared_schemas(doc):
            try:
                schemas.check(schema)
            except SchemaError as e:
                raise ManifestError(f"Method {where} {label}: {e.message}") from e

        arguments = tuple(doc.arguments) if doc.arguments is not None else None
        if arguments is None and kind is MethodKind.STORE:
            arguments = store_method(operation).arguments

        return MethodDef(
            name=name,
            kind=kind,
            arguments=arguments,
            returns=doc.returns,
            errors=tuple(
                ErrorSchema(schema=e.schema_, name=e.name, code=e.code) for e in doc.errors
            ),
            endpoint=self._build_endpoint(doc, where),
            request_transform=(
                self._resolve(FunctionKind.TRANSFORM, doc.request_transform, where, "requestTransform")
                if doc.request_transform
                else None
            ),
            response_transform=(
                self._resolve(
                    FunctionKind.TRANSFORM, doc.response_transform, where, "responseTransform"
                )
                if doc.response_transform
                else None
            ),
            implementation=implementation,
            operation=operation,
        )

    @staticmethod
    def _infer_kind(name: str, doc: MethodDocument) -> MethodKind:
        if doc.type is not None:
            return MethodKind(doc.type)
        if doc.operation or (name in STORE_OPERATIONS and doc.implementation is None):
            return MethodKind.STORE
        return MethodKind.ASYNC

    @staticmethod
    def _declared_schemas(doc: MethodDocument):
        for index, schema in enumerate(doc.arguments or []):
            yield f"arguments[{index}]", schema
        if doc.returns is not None:
            yield "return", doc.returns
        for index, error in enumerate(doc.errors):
            yield f"errors[{index}]", error.schema_

    def _resolve(self, kind: FunctionKind, locator: str, where: str, label: str):
        try:
            return self._functions.resolve(kind, locator)
        except RegistryError as e:
            raise ManifestError(f"Method {where} {label}: {e.message}") from e

    def _build_endpoint(self, doc: MethodDocument, where: str) -> EndpointSpec | None:
        if doc.endpoint is None:
            return None
        verb = doc.endpoint.method
        if verb not in HTTP_VERBS:
            raise ManifestError(
                f"Method {where} endpoint verb '{verb}' is not one of {sorted(HTTP_VERBS)}"
            )
        predicate = None
        if doc.endpoint.test:
            predicate = RemoteReference(
                locator=doc.endpoint.test,
                resolved=self._resolve(FunctionKind.PREDICATE, doc.endpoint.test, where, "test"),
            )
        return EndpointSpec(
            method=verb,
            predicate=predicate,
            pattern=parse_pattern(doc.endpoint.path),
        )

    # ==================== Conflicts ====================

    def _check_conflicts(self, sublevel: Sublevel) -> None:
        """
        Reject GET/DELETE endpoints that exactly overlap a convention route.

        Only verb-only predicates can be analysed. An unconstrained path, an
        empty path or a single parameter segment accepts exactly the
        requests the key/range convention routes accept. Literal segments
        shadow individual keys and are allowed.
        """
        for method in sublevel.endpoint_methods:
            endpoint = method.endpoint
            if endpoint.method not in _PROTECTED_VERBS or not endpoint.predicate.analysable:
                continue

            pattern = endpoint.pattern
            if pattern is None:
                overlap = "every key and range route"
            elif len(pattern) == 0:
                overlap = f"the convention range route ({endpoint.method} /)"
            elif len(pattern) == 1 and pattern[0].startswith(":"):
                overlap = f"the convention key route ({endpoint.method} /{{key}})"
            else:
                continue

            raise EndpointConflictError(
                f"Method {self._where(sublevel.path, method.name)} endpoint "
                f"{endpoint.method} {endpoint.path or '(any path)'} overlaps {overlap}",
                method=method.name,
                sublevel=list(sublevel.path),
            )


def load_manifest(
    doc: Mapping[str, Any] | ManifestDocument,
    store: Store,
    *,
    functions: FunctionRegistry | None = None,
    schemas: SchemaRegistry | None = None,
    store_methods: bool = True,
) -> Manifest:
    """Convenience wrapper around ``ManifestLoader.load``."""
    loader = ManifestLoader(functions=functions, schemas=schemas, store_methods=store_methods)
    return loader.load(doc, store)


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ManifestError(f"Duplicate key '{key}' in manifest file")
        result[key] = value
    return result


class FileManifestLoader:
    """
    Loads a manifest from a JSON file.

    Duplicate object keys (two methods with the same name) are rejected
    instead of silently keeping the last one.
    """

    def __init__(self, path: str | Path, *, loader: ManifestLoader | None = None):
        self._path = Path(path)
        self._loader = loader or ManifestLoader()

    def read(self) -> dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestError(f"Cannot read manifest {self._path}: {e}") from e
        try:
            return json.loads(text, object_pairs_hook=_reject_duplicates)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Manifest {self._path} is not valid JSON: {e}") from e

    def load(self, store: Store) -> Manifest:
        logger.info(f"[manifest] Loading manifest from {self._path}")
        return self._loader.load(self.read(), store)


__all__ = ["FileManifestLoader", "ManifestLoader", "load_manifest"]
