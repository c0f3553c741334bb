"""
Error taxonomy for Levelgate.

Load-time errors abort startup. Per-request errors are caught at the
dispatcher boundary and converted into wire responses using the
``status_code`` and ``to_dict()`` carried by each class.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Classification of errors for handling decisions."""

    # Load time (fatal)
    MANIFEST_ERROR = "manifest_error"
    ENDPOINT_CONFLICT = "endpoint_conflict"
    REGISTRY_ERROR = "registry_error"

    # Request time (client)
    ROUTE_NOT_FOUND = "route_not_found"
    ARGUMENT_VALIDATION = "argument_validation"
    SCHEMA_ERROR = "schema_error"
    NOT_FOUND = "not_found"

    # Request time (server)
    TRANSFORM_ERROR = "transform_error"
    METHOD_ERROR = "method_error"
    BACKPRESSURE_OVERFLOW = "backpressure_overflow"
    STORE_ERROR = "store_error"
    RETURN_VALIDATION = "return_validation"
    INTERNAL_ERROR = "internal_error"


class LevelgateError(Exception):
    """Base class for all Levelgate errors."""

    status_code: int = 500
    error_type: ErrorType = ErrorType.INTERNAL_ERROR

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "name": self.name,
                "type": self.error_type.value,
                "message": self.message,
                **self.details,
            }
        }


# =============================================================================
# Load-time errors
# =============================================================================


class ManifestError(LevelgateError):
    """Structural problem in a manifest document."""

    error_type = ErrorType.MANIFEST_ERROR


class EndpointConflictError(ManifestError):
    """A custom endpoint exactly overlaps a convention route."""

    error_type = ErrorType.ENDPOINT_CONFLICT


class RegistryError(LevelgateError):
    """A locator could not be resolved, or a name was registered twice."""

    error_type = ErrorType.REGISTRY_ERROR


# =============================================================================
# Request-time errors
# =============================================================================


class RouteNotFoundError(LevelgateError):
    """No method or convention route handles the request."""

    status_code = 404
    error_type = ErrorType.ROUTE_NOT_FOUND


class SchemaError(LevelgateError):
    """A schema is malformed and cannot be evaluated."""

    status_code = 400
    error_type = ErrorType.SCHEMA_ERROR


class ArgumentValidationError(LevelgateError):
    """The argument tuple does not satisfy the method's declared schemas."""

    status_code = 400
    error_type = ErrorType.ARGUMENT_VALIDATION

    def __init__(self, message: str, violations: list[str] | None = None, **details: Any):
        self.violations = list(violations or [])
        super().__init__(message, violations=self.violations, **details)


class TransformError(LevelgateError):
    """A request or response transform raised or returned malformed data."""

    error_type = ErrorType.TRANSFORM_ERROR


class ReturnValidationError(LevelgateError):
    """A method returned a value violating its declared return schema."""

    error_type = ErrorType.RETURN_VALIDATION


class BackpressureOverflowError(LevelgateError):
    """A live subscriber could not keep up and a change would be dropped."""

    error_type = ErrorType.BACKPRESSURE_OVERFLOW


class StoreError(LevelgateError):
    """Opaque failure raised by the underlying store."""

    error_type = ErrorType.STORE_ERROR


class KeyNotFoundError(StoreError):
    """The requested key does not exist."""

    status_code = 404
    error_type = ErrorType.NOT_FOUND

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Key not found: {key}", key=key)

    @property
    def name(self) -> str:
        return "NotFoundError"


class MethodError(LevelgateError):
    """
    Error raised by a user method so it can be matched against the
    method's declared error schemas.

    Example:
        raise MethodError("NotFoundError", "no such counter", data={"key": key})
    """

    error_type = ErrorType.METHOD_ERROR

    def __init__(
        self,
        name: str,
        message: str = "",
        *,
        data: dict[str, Any] | None = None,
        code: int | None = None,
    ):
        self._name = name
        self.data = dict(data or {})
        if code is not None:
            self.status_code = code
        super().__init__(message or name, **self.data)

    @property
    def name(self) -> str:
        return self._name


def error_document(exc: BaseException) -> dict[str, Any]:
    """
    Build the JSON value an error schema is evaluated against.

    The document is flat: ``{"name", "message", ...data}``.
    """
    if isinstance(exc, LevelgateError):
        return {"name": exc.name, "message": exc.message, **exc.details}
    return {"name": type(exc).__name__, "message": str(exc)}


def error_status(exc: BaseException) -> int:
    if isinstance(exc, LevelgateError):
        return exc.status_code
    return 500


def error_body(exc: BaseException) -> dict[str, Any]:
    """Wire body for an error no declared error schema claimed."""
    if isinstance(exc, LevelgateError):
        return exc.to_dict()
    # Unexpected exceptions do not leak their message
    return {
        "error": {
            "name": "InternalError",
            "type": ErrorType.INTERNAL_ERROR.value,
            "message": "Internal server error",
        }
    }


__all__ = [
    "ErrorType",
    "LevelgateError",
    "ManifestError",
    "EndpointConflictError",
    "RegistryError",
    "RouteNotFoundError",
    "SchemaError",
    "ArgumentValidationError",
    "TransformError",
    "ReturnValidationError",
    "BackpressureOverflowError",
    "StoreError",
    "KeyNotFoundError",
    "MethodError",
    "error_body",
    "error_document",
    "error_status",
]
