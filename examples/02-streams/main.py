"""
Streams Example

This example demonstrates the stream side of the dispatcher, without HTTP:
1. A readable method rendered by a custom response transform as CSV
2. A range scan sent as a JSON array
3. A live subscription that sees later mutations only

Run: python examples/02-streams/main.py
"""

import asyncio
import json

from levelgate import (
    Dispatcher,
    FunctionRegistry,
    MemoryStore,
    NormalizedRequest,
    RangeQuery,
    load_manifest,
)

MANIFEST = {
    "sublevels": {
        "people": {
            "methods": {
                "export": {
                    "type": "readable",
                    "endpoint": {"method": "GET", "path": "/export.csv"},
                    "responseTransform": "csv",
                }
            }
        }
    }
}

functions = FunctionRegistry()

# =============================================================================
# Functions
# =============================================================================


@functions.method()
def export(store):
    return store.create_read_stream(RangeQuery())


@functions.transform()
async def csv(outcome, sink):
    """Write one CSV row per record as the stream is pulled."""
    sink.set_header("Content-Type", "text/csv")
    sink.set_header("Content-Disposition", 'attachment; filename="people.csv"')
    await sink.write("key,name,age\n")
    async for record in outcome.handle:
        person = record["value"]
        await sink.write(f"{record['key']},{person['name']},{person['age']}\n")
    await sink.end()


# =============================================================================
# Demo
# =============================================================================


async def main():
    print("=" * 60)
    print("Levelgate Streams Example")
    print("=" * 60)

    store = MemoryStore()
    dispatcher = Dispatcher(load_manifest(MANIFEST, store, functions=functions))
    people = store.sublevel("people")

    for key, name, age in [("p1", "Ada", 36), ("p2", "Alan", 41), ("p3", "Grace", 85)]:
        await dispatcher.dispatch(
            NormalizedRequest.build("PUT", f"/people/{key}", body=json.dumps({"name": name, "age": age}))
        )

    # Custom response transform
    response = await dispatcher.dispatch(NormalizedRequest.build("GET", "/people/export.csv"))
    print(f"\nGET /people/export.csv -> {response.status} {response.media_type}")
    print((await response.read()).decode())

    # Range scan as a JSON array
    response = await dispatcher.dispatch(
        NormalizedRequest.build("GET", "/people/", params={"gte": "p2", "keys": "false"})
    )
    print(f"GET /people/?gte=p2&keys=false -> {(await response.read()).decode()}")

    # Live subscription
    response = await dispatcher.dispatch(NormalizedRequest.build("SUBSCRIBE", "/people/"))
    print(f"\nSUBSCRIBE /people/ -> {response.media_type}, subscribers={people.subscriber_count}")
    await people.put("p4", {"name": "Edsger", "age": 72})
    await people.delete("p1")
    for _ in range(2):
        print(f"  change: {(await response.stream.__anext__()).decode().strip()}")
    await response.aclose()
    print(f"closed, subscribers={people.subscriber_count}")

    print("\n" + "=" * 60)
    print("Example complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
