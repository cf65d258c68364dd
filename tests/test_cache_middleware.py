"""
Tests for the response caching and invalidation decorators.
"""
import asyncio
from collections import Counter
from typing import Optional
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.testclient import TestClient

from edgecache.gateway.middleware import (
    cache_response,
    clear_cache_by_tags,
    clear_cache_on_mutation,
)
from edgecache.shared.caching.cache_manager import CachedResponse
from edgecache.shared.config import CacheSettings, Settings
from edgecache.shared.schemas import ApiEnvelope, api_error, api_success


@pytest.fixture
def calls():
    return Counter()


@pytest.fixture
def app(store, calls):
    """Application exercising the caching decorators."""
    app = FastAPI()

    @app.middleware("http")
    async def identify(request: Request, call_next):
        user = request.headers.get("X-User")
        if user:
            request.state.user_id = user
        return await call_next(request)

    @app.get("/api/items")
    @cache_response(300, tags=["items"], store=store)
    async def list_items(page: int = 1):
        calls["items"] += 1
        return api_success(data={"page": page, "call": calls["items"]})

    @app.post("/api/items")
    @clear_cache_by_tags(["items"], store=store)
    async def create_item():
        calls["create"] += 1
        return api_success(data={"created": True}, status_code=201)

    @app.put("/api/items")
    @cache_response(300, store=store)
    async def replace_items():
        calls["replace"] += 1
        return {"replaced": calls["replace"]}

    @app.get("/api/profile")
    @cache_response("short", vary_by_user=True, store=store)
    async def profile(request: Request):
        calls["profile"] += 1
        return {"user": getattr(request.state, "user_id", None)}

    @app.get("/api/featured")
    @cache_response(300, key_generator=lambda request: "featured", store=store)
    async def featured():
        calls["featured"] += 1
        return {"call": calls["featured"]}

    @app.get("/api/not-found")
    @cache_response(300, store=store)
    async def not_found():
        calls["not_found"] += 1
        return api_error("Not found", status_code=404)

    @app.get("/api/http-error")
    @cache_response(300, store=store)
    async def http_error():
        calls["http_error"] += 1
        raise HTTPException(status_code=500, detail="boom")

    @app.get("/api/logical-error")
    @cache_response(300, store=store)
    async def logical_error():
        calls["logical_error"] += 1
        return ApiEnvelope(success=False, message="Upstream unavailable")

    @app.get("/api/mapping-error")
    @cache_response(300, store=store)
    async def mapping_error():
        calls["mapping_error"] += 1
        return {"success": False, "message": "Upstream unavailable", "data": None}

    @app.get("/api/json-error")
    @cache_response(300, store=store)
    async def json_error():
        calls["json_error"] += 1
        return JSONResponse({"success": False, "message": "Upstream unavailable", "data": None})

    @app.get("/api/names/{name}")
    @cache_response(300, store=store)
    async def get_name(name: str, b: Optional[str] = None):
        calls["names"] += 1
        return {"name": name, "b": b}

    @app.get("/api/crash")
    @cache_response(300, store=store)
    async def crash():
        calls["crash"] += 1
        raise RuntimeError("handler crashed")

    @app.get("/api/sync")
    @cache_response(300, store=store)
    def sync_endpoint():
        calls["sync"] += 1
        return {"call": calls["sync"]}

    @app.get("/api/stream")
    @cache_response(300, store=store)
    async def stream():
        calls["stream"] += 1
        return StreamingResponse(iter([b"chunk"]), media_type="text/plain")

    @app.get("/api/slow")
    @cache_response(300, store=store)
    async def slow():
        calls["slow"] += 1
        await asyncio.sleep(0.05)
        return {"call": calls["slow"]}

    @app.delete("/api/blog/{post_id}")
    @clear_cache_on_mutation(["route:/api/blog*"], store=store)
    async def delete_post(post_id: int):
        return {"deleted": post_id}

    @app.get("/api/blog")
    @cache_response(300, store=store)
    async def blog():
        calls["blog"] += 1
        return {"call": calls["blog"]}

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestCacheResponse:
    """Test the response cache decorator."""

    def test_miss_hit_invalidate_scenario(self, client, calls):
        first = client.get("/api/items")
        assert first.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert calls["items"] == 1

        second = client.get("/api/items")
        assert second.headers["X-Cache"] == "HIT"
        assert second.content == first.content
        assert calls["items"] == 1

        created = client.post("/api/items")
        assert created.status_code == 201

        third = client.get("/api/items")
        assert third.headers["X-Cache"] == "MISS"
        assert calls["items"] == 2
        assert third.json()["data"]["call"] == 2

    def test_hit_preserves_content_type(self, client):
        client.get("/api/items")
        hit = client.get("/api/items")
        assert hit.headers["content-type"] == "application/json"
        assert hit.json()["success"] is True

    def test_mutations_bypass_cache(self, client, calls):
        first = client.put("/api/items")
        second = client.put("/api/items")

        assert calls["replace"] == 2
        assert "X-Cache" not in first.headers
        assert second.json() == {"replaced": 2}

    def test_query_parameters_are_cached_independently(self, client, calls):
        assert client.get("/api/items?page=1").json()["data"]["page"] == 1
        assert client.get("/api/items?page=2").json()["data"]["page"] == 2
        assert calls["items"] == 2

        assert client.get("/api/items?page=1").headers["X-Cache"] == "HIT"
        assert client.get("/api/items?page=2").headers["X-Cache"] == "HIT"

    def test_encoded_query_separator_in_path_is_a_different_entry(self, client, calls):
        encoded = client.get("/api/names/x%3Fb=1")
        assert encoded.json() == {"name": "x?b=1", "b": None}

        with_query = client.get("/api/names/x?b=1")
        assert with_query.headers["X-Cache"] == "MISS"
        assert with_query.json() == {"name": "x", "b": "1"}
        assert calls["names"] == 2

    def test_vary_by_user(self, client, calls):
        alice = client.get("/api/profile", headers={"X-User": "alice"})
        bob = client.get("/api/profile", headers={"X-User": "bob"})
        anonymous = client.get("/api/profile")

        assert alice.json() == {"user": "alice"}
        assert bob.json() == {"user": "bob"}
        assert anonymous.json() == {"user": None}
        assert calls["profile"] == 3

        again = client.get("/api/profile", headers={"X-User": "alice"})
        assert again.headers["X-Cache"] == "HIT"
        assert again.json() == {"user": "alice"}

    def test_custom_key_generator(self, client, store, calls):
        client.get("/api/featured?page=1")
        hit = client.get("/api/featured?page=2")

        assert hit.headers["X-Cache"] == "HIT"
        assert calls["featured"] == 1
        assert store.memory.get("featured") is not None

    @pytest.mark.parametrize("path,counter", [
        ("/api/not-found", "not_found"),
        ("/api/http-error", "http_error"),
        ("/api/logical-error", "logical_error"),
        ("/api/mapping-error", "mapping_error"),
        ("/api/json-error", "json_error"),
    ])
    def test_errors_are_never_stored(self, client, store, calls, path, counter):
        first = client.get(path)
        second = client.get(path)

        assert calls[counter] == 2
        assert second.status_code == first.status_code
        assert store.stats()['sets'] == 0

    def test_logical_error_keeps_200(self, client):
        response = client.get("/api/logical-error")
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.headers["X-Cache"] == "MISS"

    def test_handler_exceptions_propagate(self, client, store, calls):
        with pytest.raises(RuntimeError, match="handler crashed"):
            client.get("/api/crash")
        with pytest.raises(RuntimeError):
            client.get("/api/crash")

        assert calls["crash"] == 2
        assert store.stats()['sets'] == 0

    def test_sync_endpoints(self, client, calls):
        assert client.get("/api/sync").headers["X-Cache"] == "MISS"
        assert client.get("/api/sync").json() == {"call": 1}
        assert calls["sync"] == 1

    def test_streaming_responses_are_not_stored(self, client, calls):
        assert client.get("/api/stream").text == "chunk"
        assert client.get("/api/stream").text == "chunk"
        assert calls["stream"] == 2

    def test_stored_value_is_a_cached_response(self, client, store):
        client.get("/api/items")
        cached = store.memory.get("route:/api/items")

        assert isinstance(cached, CachedResponse)
        assert cached.status_code == 200
        assert "x-cache" not in {name.lower() for name in cached.headers}

    def test_ttl_expiry(self, client, clock, calls):
        client.get("/api/items")
        clock.advance(301)

        assert client.get("/api/items").headers["X-Cache"] == "MISS"
        assert calls["items"] == 2

    def test_malformed_entry_is_recomputed(self, client, store, calls):
        store.memory.set("route:/api/items", {"unexpected": "shape"}, ttl=300)

        response = client.get("/api/items")
        assert response.headers["X-Cache"] == "MISS"
        assert calls["items"] == 1
        assert isinstance(store.memory.get("route:/api/items"), CachedResponse)

    def test_unknown_ttl_category(self):
        with pytest.raises(ValueError, match="Unknown cache TTL category"):
            cache_response("fortnight")

    @pytest.mark.asyncio
    async def test_concurrent_requests_run_handler_once(self, app, calls):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            responses = await asyncio.gather(*[ac.get("/api/slow") for _ in range(5)])

        assert calls["slow"] == 1
        statuses = sorted(response.headers["X-Cache"] for response in responses)
        assert statuses == ["HIT", "HIT", "HIT", "HIT", "MISS"]
        assert len({response.content for response in responses}) == 1


class TestCacheDisabled:

    def test_pass_through_when_disabled(self, store, calls):
        app = FastAPI()
        app.state.settings = Settings(cache=CacheSettings(cache_enabled=False))

        @app.get("/api/items")
        @cache_response(300, store=store)
        async def list_items():
            calls["items"] += 1
            return {"call": calls["items"]}

        client = TestClient(app)
        first = client.get("/api/items")
        second = client.get("/api/items")

        assert "X-Cache" not in first.headers
        assert second.json() == {"call": 2}
        assert store.stats()['sets'] == 0


class TestInvalidation:
    """Test the invalidation decorators."""

    def test_invalidation_failure_does_not_fail_request(self, client, store):
        store.clear_by_tags = AsyncMock(side_effect=RuntimeError("backend down"))

        response = client.post("/api/items")

        assert response.status_code == 201
        assert response.json()["data"] == {"created": True}
        store.clear_by_tags.assert_awaited_once_with(["items"])

    def test_failed_mutation_does_not_invalidate(self, store, calls):
        app = FastAPI()

        @app.post("/api/items")
        @clear_cache_by_tags(["items"], store=store)
        async def create_item():
            return api_error("Validation failed", status_code=422)

        asyncio.run(store.set("route:/api/items", "cached", ttl=60, tags=["items"]))
        response = TestClient(app).post("/api/items")

        assert response.status_code == 422
        assert store.memory.get("route:/api/items") == "cached"

    def test_clear_cache_on_mutation(self, client, calls):
        client.get("/api/blog")
        assert client.get("/api/blog").headers["X-Cache"] == "HIT"

        assert client.delete("/api/blog/7").json() == {"deleted": 7}

        assert client.get("/api/blog").headers["X-Cache"] == "MISS"
        assert calls["blog"] == 2
