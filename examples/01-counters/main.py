"""
Counters Gateway Example

This example demonstrates a manifest-driven gateway:
1. Register method implementations, predicates and transforms
2. Load a JSON manifest over an in-memory store
3. Talk to it over REST conventions, custom endpoints and procedure calls

Run: python examples/01-counters/main.py
Serve instead: python examples/01-counters/main.py serve
"""

import asyncio
import sys
from pathlib import Path

import httpx

from levelgate import (
    Dispatcher,
    FileManifestLoader,
    KeyNotFoundError,
    MemoryStore,
    RangeQuery,
    get_function_registry,
)
from levelgate.app.config import AppSettings
from levelgate.app.main import create_app
from levelgate.client import LevelgateClient, RemoteError

MANIFEST = Path(__file__).with_name("manifest.json")

registry = get_function_registry()

# =============================================================================
# Functions referenced by the manifest
# =============================================================================


@registry.method("counters.bump")
async def bump(store, name, by):
    try:
        value = await store.get(name)
    except KeyNotFoundError:
        value = 0
    value += by
    await store.put(name, value)
    return {"name": name, "value": value}


@registry.method("counters.stats")
async def stats(store):
    count = 0
    async for _ in store.create_key_stream(RangeQuery()):
        count += 1
    return {"count": count}


@registry.method("counters.reset")
async def reset(store, name):
    await store.get(name)  # NotFoundError when the counter never existed
    await store.put(name, 0)
    return {"name": name, "value": 0}


@registry.predicate("counters.isStats")
def is_stats(request):
    return request.path == ("stats",)


@registry.transform("counters.bumpArgs")
def bump_args(request, bound):
    """PATCH /counters/:name with an optional {"by": n} body."""
    body = request.json() or {}
    return [bound.path_args[0], body.get("by", 1)]


# =============================================================================
# Demo
# =============================================================================


def build_app():
    dispatcher = Dispatcher(FileManifestLoader(MANIFEST).load(MemoryStore()))
    return create_app(dispatcher, AppSettings())


async def main():
    print("=" * 60)
    print("Levelgate Counters Example")
    print("=" * 60)

    app = build_app()
    async with LevelgateClient("http://demo", transport=httpx.ASGITransport(app=app)) as client:
        # Custom endpoint with a request transform
        await client.request("PATCH", "counters", "hits")
        result = await client.request("PATCH", "counters", "hits", body={"by": 41})
        print(f"\nPATCH /counters/hits -> {result}")

        # Predicate-guarded GET shadows the convention GET for one key
        print(f"GET /counters/stats -> {await client.get('counters', 'stats')}")

        # Convention routes
        await client.put("events", "2026-01-01", {"kind": "signup"})
        await client.put("events", "2026-01-02", {"kind": "login"})
        key = await client.create("events", {"kind": "logout"})
        print(f"POST /events/ -> created {key}")
        print(f"GET /events/?gte=2026 -> {await client.read_range('events', gte='2026')}")

        # Procedure calls reach every method, with or without an endpoint
        print(f"\nreset(hits) -> {await client.call('counters', 'reset', 'hits')}")
        try:
            await client.call("counters", "reset", "misses")
        except RemoteError as e:
            print(f"reset(misses) -> {e.status_code} {e.name}: {e.message}")

    print("\n" + "=" * 60)
    print("Example complete!")
    print("=" * 60)


if __name__ == "__main__":
    if sys.argv[1:] == ["serve"]:
        import uvicorn

        uvicorn.run(build_app(), host="127.0.0.1", port=8000)
    else:
        asyncio.run(main())
