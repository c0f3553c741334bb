"""
Levelgate Manifest.

Declarative description of a sublevel tree, its methods, their schemas
and HTTP endpoints. Documents are validated by pydantic models and loaded
into an immutable ``Manifest`` once at startup.
"""

from .document import (
    EndpointDocument,
    ErrorSchemaDocument,
    ManifestDocument,
    MethodDocument,
    SublevelDocument,
)
from .loader import FileManifestLoader, ManifestLoader, load_manifest
from .models import (
    HTTP_VERBS,
    STORE_OPERATIONS,
    CustomPredicate,
    DefaultVerbMatch,
    EndpointSpec,
    ErrorSchema,
    Manifest,
    MatchPredicate,
    MethodDef,
    MethodKind,
    RemoteReference,
    Sublevel,
    store_method,
)

__all__ = [
    # Documents
    "EndpointDocument",
    "ErrorSchemaDocument",
    "ManifestDocument",
    "MethodDocument",
    "SublevelDocument",
    # Loading
    "FileManifestLoader",
    "ManifestLoader",
    "load_manifest",
    # Runtime model
    "HTTP_VERBS",
    "STORE_OPERATIONS",
    "CustomPredicate",
    "DefaultVerbMatch",
    "EndpointSpec",
    "ErrorSchema",
    "Manifest",
    "MatchPredicate",
    "MethodDef",
    "MethodKind",
    "RemoteReference",
    "Sublevel",
    "store_method",
]
