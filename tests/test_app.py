"""
Tests for the FastAPI application.
"""

import json

import pytest
from fastapi.testclient import TestClient

from levelgate.app.config import AppSettings
from levelgate.app.dependencies import build_dispatcher, get_settings
from levelgate.app.main import create_app
from levelgate.dispatcher import Dispatcher, ReturnValidation
from levelgate.errors import ManifestError
from levelgate.manifest import load_manifest


def app_document():
    return {
        "sublevels": {
            "db": {
                "sublevels": {
                    "items": {
                        "methods": {
                            "myCustomMethod": {
                                "arguments": [{"type": "string"}, {"type": "object"}],
                                "endpoint": {"method": "PATCH"},
                            },
                            "letters": {"type": "readable"},
                        }
                    }
                }
            }
        }
    }


@pytest.fixture
def dispatcher(functions, store):
    async def my_custom_method(store, key, patch):
        return {"key": key, **patch}

    functions.register_method("myCustomMethod", my_custom_method)
    functions.register_method("letters", lambda store: iter("abc"))
    return Dispatcher(load_manifest(app_document(), store, functions=functions))


@pytest.fixture
def client(dispatcher):
    return TestClient(create_app(dispatcher, AppSettings()))


# =============================================================================
# Service endpoints
# =============================================================================


class TestServiceEndpoints:
    """Tests for health, metrics and manifest description."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "service": "levelgate",
            "environment": "development",
            "sublevels": 3,
        }

    def test_metrics(self, client):
        client.get("/db/items/missing")

        stats = client.get("/_metrics").json()

        assert stats["dispatches"]["total"] == 1
        assert stats["dispatches"]["by_status"] == {"404": 1}

    def test_manifest(self, client):
        described = client.get("/_rpc/manifest").json()

        items = described["sublevels"]["db"]["sublevels"]["items"]
        assert items["methods"]["myCustomMethod"]["endpoint"]["method"] == "PATCH"

    def test_without_dispatcher(self):
        client = TestClient(create_app(None, AppSettings()))

        assert client.get("/health").json()["status"] == "starting"
        assert client.get("/db/items/a").status_code == 503
        assert client.post("/_rpc", json={"method": "get"}).status_code == 503


# =============================================================================
# REST surface
# =============================================================================


class TestRestSurface:
    """Tests for convention and custom routes over HTTP."""

    def test_put_get_round_trip(self, client):
        body = '{"z":1,"a":[true,null,"é"]}'

        put = client.put("/db/items/k", content=body.encode("utf-8"))
        got = client.get("/db/items/k")

        assert put.json() == {"key": "k"}
        assert got.status_code == 200
        assert got.headers["content-type"].startswith("application/json")
        assert got.content == body.encode("utf-8")

    def test_range_read(self, client):
        for key in ("c", "a", "b", "x"):
            client.put(f"/db/items/{key}", json=key)

        response = client.get("/db/items/", params={"gte": "a", "lt": "m"})

        assert [r["key"] for r in response.json()] == ["a", "b", "c"]

    def test_create(self, client):
        response = client.post("/db/items/", json={"foo": "bar"})

        assert response.status_code == 201
        key = response.json()["key"]
        assert client.get(f"/db/items/{key}").json() == {"foo": "bar"}

    def test_delete_and_range_delete(self, client):
        for key in ("a", "b", "c"):
            client.put(f"/db/items/{key}", json=1)

        assert client.delete("/db/items/a").json() == {"key": "a"}
        assert client.delete("/db/items/a").status_code == 200
        assert client.delete("/db/items", params={"gte": "b"}).json() == {"deleted": 2}
        assert client.delete("/db/items").status_code == 404

    def test_custom_patch(self, client):
        response = client.patch("/db/items/42", json={"n": 1})

        assert response.json() == {"key": "42", "n": 1}

    def test_percent_encoded_key_decoded_once(self, client):
        client.put("/db/items/100%2541", json=1)
        client.put("/db/items/50%25%20off", json=2)

        assert client.get("/db/items/100%2541").json() == 1
        assert [r["key"] for r in client.get("/db/items/").json()] == ["100%41", "50% off"]

    def test_invalid_range_query(self, client):
        response = client.get("/db/items/", params={"limit": "-5"})

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "argument_validation"

    def test_missing_key(self, client):
        response = client.get("/db/items/nope")

        assert response.status_code == 404
        assert response.json()["error"]["name"] == "NotFoundError"

    def test_custom_prefixes(self, dispatcher):
        client = TestClient(create_app(dispatcher, AppSettings(rest_prefix="api/", rpc_path="rpc")))

        client.put("/api/db/items/k", json=1)

        assert client.get("/api/db/items/k").json() == 1
        assert client.post("/rpc", json={"path": "db/items", "method": "get", "args": ["k"]}).json() == 1


# =============================================================================
# Procedure calls
# =============================================================================


class TestProcedureCalls:
    """Tests for the procedure-call endpoint."""

    def test_call(self, client):
        client.post("/_rpc", json={"path": ["db", "items"], "method": "put", "args": ["k", [1]]})

        response = client.post("/_rpc", json={"path": ["db", "items"], "method": "get", "args": ["k"]})

        assert response.json() == [1]

    def test_stream_is_ndjson(self, client):
        response = client.post("/_rpc", json={"path": "db/items", "method": "letters"})

        assert response.headers["content-type"].startswith("application/x-ndjson")
        assert [json.loads(line) for line in response.text.splitlines()] == ["a", "b", "c"]

    def test_validation_error(self, client):
        response = client.post(
            "/_rpc", json={"path": "db/items", "method": "myCustomMethod", "args": [1, 2]}
        )

        assert response.status_code == 400
        assert len(response.json()["error"]["violations"]) == 2

    def test_unknown_method(self, client):
        response = client.post("/_rpc", json={"path": "db/items", "method": "nope"})

        assert response.status_code == 404

    def test_malformed_call_body(self, client):
        assert client.post("/_rpc", json={"path": "db/items"}).status_code == 422


# =============================================================================
# Settings and wiring
# =============================================================================


class TestSettings:
    """Tests for AppSettings and dispatcher construction."""

    def test_prefix_normalization(self):
        settings = AppSettings(rest_prefix="api/", rpc_path="rpc/", log_level="debug")

        assert settings.rest_prefix == "/api"
        assert settings.rpc_path == "/rpc"
        assert settings.log_level == "DEBUG"

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv("LEVELGATE_SERVICE_NAME", "gateway")
        monkeypatch.setenv("LEVELGATE_FUNCTION_MODULES", "a.b, c")
        monkeypatch.setenv("LEVELGATE_RETURN_VALIDATION", "STRICT")
        get_settings.cache_clear()
        try:
            settings = get_settings()
        finally:
            get_settings.cache_clear()

        assert settings.service_name == "gateway"
        assert settings.function_modules == ["a.b", "c"]
        assert settings.return_validation == "strict"

    def test_build_dispatcher_from_file(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text(json.dumps({"sublevels": {"db": {}}}))

        dispatcher = build_dispatcher(
            AppSettings(manifest_path=str(path), return_validation="strict", live_queue_size=4)
        )

        assert dispatcher.manifest.sublevel(["db"]) is not None
        assert dispatcher.options.return_validation is ReturnValidation.STRICT

    def test_build_dispatcher_without_manifest(self):
        dispatcher = build_dispatcher(AppSettings())

        assert [s.path for s in dispatcher.manifest.walk()] == [()]
        assert dispatcher.manifest.root.store_op("get").operation == "get"

    def test_bad_manifest_aborts(self, tmp_path):
        path = tmp_path / "manifest.json"
        path.write_text(json.dumps({"methods": {"x": {"implementation": "missing"}}}))

        with pytest.raises(ManifestError):
            build_dispatcher(AppSettings(manifest_path=str(path)))
