"""
Levelgate HTTP client.

Async client for both protocols a Levelgate gateway serves: the
procedure-call endpoint and the REST convention routes.

Usage:
    async with LevelgateClient("http://localhost:8000") as client:
        await client.put("db/items", "a", {"foo": "bar"})
        value = await client.get("db/items", "a")
        total = await client.call("db/counters", "bump", "hits", 1)

        async for change in client.subscribe("db/items", gte="a"):
            ...

Testing against an in-process app:
    client = LevelgateClient("http://test", transport=httpx.ASGITransport(app=app))
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any
from urllib.parse import quote

import httpx

from .wire import NDJSON_MEDIA_TYPE

logger = logging.getLogger(__name__)


class RemoteError(Exception):
    """An error response from the gateway, or an error element in a stream."""

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        super().__init__(f"[levelgate] {self.name}: {self.message} (status={status_code})")

    @property
    def _error(self) -> dict[str, Any]:
        if isinstance(self.body, dict):
            inner = self.body.get("error", self.body)
            if isinstance(inner, dict):
                return inner
        return {}

    @property
    def name(self) -> str:
        return str(self._error.get("name", "RemoteError"))

    @property
    def message(self) -> str:
        return str(self._error.get("message", self.body))


def _segments(path: str | Sequence[str]) -> list[str]:
    if isinstance(path, str):
        return [s for s in path.split("/") if s]
    return [s for s in path if s]


def _query_params(query: dict[str, Any]) -> dict[str, str]:
    params: dict[str, str] = {}
    for name, value in query.items():
        if value is None:
            continue
        params[name] = str(value).lower() if isinstance(value, bool) else str(value)
    return params


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    if response.headers.get("content-type", "").startswith(NDJSON_MEDIA_TYPE):
        return [json.loads(line) for line in response.text.splitlines() if line.strip()]
    try:
        return response.json()
    except ValueError:
        return response.text


class LevelgateClient:
    """
    Async client for a Levelgate gateway.

    Args:
        base_url: Gateway URL
        rpc_path: Procedure-call endpoint path
        rest_prefix: Prefix of the REST routes
        timeout: Request timeout in seconds (live streams are not timed out)
        transport: Optional httpx transport (e.g. ``httpx.ASGITransport``)
    """

    def __init__(
        self,
        base_url: str,
        *,
        rpc_path: str = "/_rpc",
        rest_prefix: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._rpc_path = "/" + rpc_path.strip("/")
        self._rest_prefix = ("/" + rest_prefix.strip("/")) if rest_prefix.strip("/") else ""
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> LevelgateClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ==================== Internals ====================

    def _rest_url(self, path: str | Sequence[str], key: str | None = None) -> str:
        segments = [quote(s, safe="") for s in _segments(path)]
        url = self._rest_prefix + "/" + "/".join(segments)
        if key is not None:
            url = url.rstrip("/") + "/" + "/".join(quote(s, safe="") for s in key.split("/"))
        elif not url.endswith("/"):
            url += "/"
        return url

    @staticmethod
    def _check_response(response: httpx.Response) -> Any:
        body = _decode(response)
        if not response.is_success:
            raise RemoteError(response.status_code, body)
        return body

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        logger.debug(f"[client] {method} {url} -> {response.status_code}")
        return self._check_response(response)

    async def _stream(self, method: str, url: str, **kwargs: Any) -> AsyncIterator[Any]:
        client = await self._get_client()
        async with client.stream(method, url, timeout=None, **kwargs) as response:
            if not response.is_success:
                await response.aread()
                raise RemoteError(response.status_code, _decode(response))
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                record = json.loads(line)
                if isinstance(record, dict) and set(record) == {"error"}:
                    raise RemoteError(response.status_code, record)
                yield record

    # ==================== Procedure calls ====================

    async def call(self, path: str | Sequence[str], method: str, *args: Any) -> Any:
        """
        Invoke ``method`` on the sublevel at ``path``.

        Stream results are collected into a list; use ``call_stream`` for
        unbounded streams.

        Raises:
            RemoteError: On an error response
        """
        payload = {"path": _segments(path), "method": method, "args": list(args)}
        return await self._request("POST", self._rpc_path, json=payload)

    async def call_stream(
        self,
        path: str | Sequence[str],
        method: str,
        *args: Any,
    ) -> AsyncIterator[Any]:
        """Invoke a stream method, yielding records as they arrive."""
        payload = {"path": _segments(path), "method": method, "args": list(args)}
        async for record in self._stream("POST", self._rpc_path, json=payload):
            yield record

    async def manifest(self) -> dict[str, Any]:
        """Describe the sublevels and methods the gateway serves."""
        return await self._request("GET", f"{self._rpc_path}/manifest")

    # ==================== REST conventions ====================

    async def get(self, path: str | Sequence[str], key: str) -> Any:
        return await self._request("GET", self._rest_url(path, key))

    async def put(self, path: str | Sequence[str], key: str, value: Any) -> Any:
        return await self._request(
            "PUT",
            self._rest_url(path, key),
            content=json.dumps(value),
            headers={"Content-Type": "application/json"},
        )

    async def delete(self, path: str | Sequence[str], key: str) -> Any:
        return await self._request("DELETE", self._rest_url(path, key))

    async def create(self, path: str | Sequence[str], value: Any) -> str:
        """Store ``value`` under a generated key and return the key."""
        body = await self._request(
            "POST",
            self._rest_url(path),
            content=json.dumps(value),
            headers={"Content-Type": "application/json"},
        )
        return body["key"]

    async def read_range(self, path: str | Sequence[str], **query: Any) -> list[Any]:
        """Read a key range (``gt/gte/lt/lte/limit/reverse/keys/values``)."""
        return await self._request("GET", self._rest_url(path), params=_query_params(query))

    async def delete_range(self, path: str | Sequence[str], **query: Any) -> int:
        """Delete every key in a range. At least one bound is required."""
        if not _query_params(query):
            raise ValueError("delete_range requires at least one range bound")
        body = await self._request("DELETE", self._rest_url(path), params=_query_params(query))
        return body["deleted"]

    async def subscribe(self, path: str | Sequence[str], **query: Any) -> AsyncIterator[Any]:
        """Follow committed changes in a key range until the caller stops iterating."""
        async for record in self._stream(
            "SUBSCRIBE", self._rest_url(path), params=_query_params(query)
        ):
            yield record

    async def request(
        self,
        method: str,
        path: str | Sequence[str],
        key: str | None = None,
        *,
        body: Any = None,
        **query: Any,
    ) -> Any:
        """Issue any verb, for custom method endpoints."""
        kwargs: dict[str, Any] = {"params": _query_params(query)}
        if body is not None:
            kwargs["content"] = json.dumps(body)
            kwargs["headers"] = {"Content-Type": "application/json"}
        return await self._request(method.upper(), self._rest_url(path, key), **kwargs)


__all__ = ["LevelgateClient", "RemoteError"]
