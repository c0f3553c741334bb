"""
Manifest Document Schema.

Pydantic models for the JSON manifest document. These describe the
document as written; ``ManifestLoader`` turns a validated document into
the immutable runtime ``Manifest``.

Example:
    doc = ManifestDocument.model_validate({
        "methods": {
            "bump": {
                "type": "async",
                "implementation": "counters.bump",
                "arguments": [{"type": "string"}, {"type": "integer"}],
                "endpoint": {"method": "PATCH", "path": "/:key"},
            }
        },
        "sublevels": {"items": {}},
    })
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorSchemaDocument(BaseModel):
    """One declared error: a schema plus optional name and HTTP status."""

    model_config = ConfigDict(extra="ignore")

    schema_: dict[str, Any] | bool = Field(default=True, alias="schema")
    name: str | None = Field(default=None, description="Error name to match")
    code: int | None = Field(default=None, ge=400, le=599, description="HTTP status")


class EndpointDocument(BaseModel):
    """HTTP exposure of a method."""

    model_config = ConfigDict(extra="ignore")

    method: str = Field(default="POST", description="HTTP verb")
    path: str | None = Field(default=None, description="Path pattern relative to the sublevel")
    test: str | None = Field(default=None, description="Registered predicate locator")

    @field_validator("method")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class MethodDocument(BaseModel):
    """A method declaration."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str | None = Field(default=None, description="Set when methods are given as a list")
    type: Literal["async", "sync", "readable", "store"] | None = None
    implementation: str | None = Field(default=None, description="Registered method locator")
    operation: str | None = Field(default=None, description="Store primitive for store methods")
    arguments: list[dict[str, Any] | bool] | None = None
    returns: dict[str, Any] | bool | None = Field(default=None, alias="return")
    errors: list[ErrorSchemaDocument] = Field(default_factory=list)
    endpoint: EndpointDocument | None = None
    request_transform: str | None = Field(default=None, alias="requestTransform")
    response_transform: str | None = Field(default=None, alias="responseTransform")
    description: str = ""


class SublevelDocument(BaseModel):
    """A sublevel: its methods and nested sublevels."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    methods: dict[str, MethodDocument] | list[MethodDocument] = Field(default_factory=dict)
    sublevels: dict[str, SublevelDocument] = Field(default_factory=dict)
    store_methods: bool | None = Field(default=None, alias="storeMethods")

    def method_items(self) -> list[tuple[str | None, MethodDocument]]:
        """Methods in declaration order as (name, document) pairs."""
        if isinstance(self.methods, dict):
            return [(name, doc) for name, doc in self.methods.items()]
        return [(doc.name, doc) for doc in self.methods]


class ManifestDocument(SublevelDocument):
    """The manifest root: a sublevel plus named schemas."""

    schemas: dict[str, dict[str, Any] | bool] = Field(default_factory=dict)
    version: int = Field(default=1, description="Document format version")


SublevelDocument.model_rebuild()
ManifestDocument.model_rebuild()


__all__ = [
    "EndpointDocument",
    "ErrorSchemaDocument",
    "ManifestDocument",
    "MethodDocument",
    "SublevelDocument",
]
