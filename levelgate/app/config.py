"""
Application settings for the Levelgate HTTP service.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator


class AppSettings(BaseModel):
    """
    Application settings model.

    Built from ``LEVELGATE_*`` environment variables by
    ``levelgate.app.dependencies.get_settings``.
    """

    # Service identity
    service_name: str = "levelgate"
    environment: str = "development"
    debug: bool = False
    log_level: str = Field(default="INFO", description="Root logging level")

    # Manifest
    manifest_path: str | None = Field(default=None, description="JSON manifest file")
    function_modules: list[str] = Field(
        default_factory=list,
        description="Modules imported before loading, to register functions",
    )

    # HTTP surface
    rest_prefix: str = Field(default="", description="URL prefix of the REST surface")
    rpc_path: str = Field(default="/_rpc", description="Procedure-call endpoint")

    # Dispatch
    return_validation: Literal["off", "warn", "strict"] = "warn"
    live_queue_size: int = Field(default=128, ge=1, description="Per-subscriber queue bound")

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("rest_prefix", "rpc_path")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = "/" + value
        return value


__all__ = ["AppSettings"]
