import logging

import redis
from starlette.datastructures import QueryParams

from api_dependencies import get_cache
from api_endpoints import app
from cache_layer import CacheService, conversations_cache_key, request_cache_key
from conftest import create_property


class BrokenRedis:
    """Every command fails as if the server were unreachable."""

    def _fail(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("connection refused")

    get = setex = delete = scan_iter = _fail


def test_disabled_cache_is_a_noop():
    cache = CacheService(None)
    assert not cache.enabled
    cache.set("k", {"a": 1})
    assert cache.get("k") is None
    cache.delete("k")
    cache.delete_pattern("*")


def test_roundtrip_and_pattern_invalidation(cache, fake_redis):
    cache.set("cache:api/properties:", {"page": 1}, 300)
    cache.set("cache:api/properties/abc:", {"id": "abc"}, 600)
    cache.set("cache:conversations:u1:client:1:20", [1, 2], 120)
    assert cache.get("cache:api/properties/abc:") == {"id": "abc"}

    cache.invalidate_property_cache()
    assert list(fake_redis.store) == ["cache:conversations:u1:client:1:20"]

    cache.invalidate_conversations("u1")
    assert fake_redis.store == {}


def test_undecodable_entry_is_a_miss(cache, fake_redis, caplog):
    fake_redis.store["broken"] = "{not json"
    with caplog.at_level(logging.WARNING):
        assert cache.get("broken") is None
    assert "undecodable" in caplog.text


def test_get_or_load_reports_hits(cache):
    calls = []

    def loader():
        calls.append(1)
        return {"value": 42}

    assert cache.get_or_load("key", 60, loader) == ({"value": 42}, False)
    assert cache.get_or_load("key", 60, loader) == ({"value": 42}, True)
    assert len(calls) == 1


def test_backend_failure_degrades_to_miss(caplog):
    cache = CacheService(BrokenRedis())
    with caplog.at_level(logging.WARNING):
        assert cache.get("k") is None
        cache.set("k", {"a": 1})
        cache.delete("k")
        cache.delete_pattern("cache:*")
        payload, hit = cache.get_or_load("k", 60, lambda: {"fresh": True})
    assert payload == {"fresh": True}
    assert hit is False
    assert "Cache get error" in caplog.text


def test_api_reads_are_identical_without_cache(client, owner):
    create_property(client, owner["headers"], title="Cached")
    create_property(client, owner["headers"], title="Uncached")
    with_cache = client.get("/api/properties", params={"city": "Nice"}).json()

    app.dependency_overrides[get_cache] = lambda: CacheService(BrokenRedis())
    r = client.get("/api/properties", params={"city": "Nice"})
    assert r.status_code == 200
    assert r.headers["X-Cache-Status"] == "MISS"
    assert r.json() == with_cache


def test_request_cache_key_sorts_query():
    key = request_cache_key("/api/properties", QueryParams("page=2&city=Nice&limit=10"))
    assert key == "cache:api/properties:city=Nice&limit=10&page=2"
    assert request_cache_key("/api/properties/42", QueryParams("")) == "cache:api/properties/42:"


def test_conversation_cache_key():
    assert conversations_cache_key("u1", "owner", 2, 20) == "cache:conversations:u1:owner:2:20"
