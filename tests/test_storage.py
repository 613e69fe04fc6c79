"""
Tests for cache storage backends and the partition registry.
"""
import pytest

from app.cache import (
    CacheCategory,
    CachedResponse,
    CacheStoreRegistry,
    FetchRequest,
    MemoryCacheBackend,
    SqliteCacheBackend,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_backend(request, tmp_path):
    if request.param == "memory":
        return MemoryCacheBackend()
    return SqliteCacheBackend(tmp_path / "cache.db")


def _get(path):
    return FetchRequest(url=f"https://hub.example.com{path}")


def _response(body=b"body", **headers):
    return CachedResponse(status=200, body=body, headers=headers or {"Content-Type": "text/plain"})


# =============================================================================
# Partitions
# =============================================================================

def test_open_is_idempotent(any_backend):
    registry = CacheStoreRegistry(any_backend, version="v1")
    first = registry.open(CacheCategory.API)
    first.put(_get("/api/teams"), _response())

    second = registry.open(CacheCategory.API)
    assert first == second
    assert second.match(_get("/api/teams")) is not None
    assert registry.list_partitions().count("hockey-hub-api-v1") == 1


def test_partition_names_embed_category_and_version(any_backend):
    registry = CacheStoreRegistry(any_backend, version="v3", prefix="hockey-hub")
    assert registry.partition_name(CacheCategory.IMAGES) == "hockey-hub-images-v3"
    assert "hockey-hub-static-v3" in registry.current_names()
    assert len(registry.current_names()) == len(CacheCategory)


def test_put_and_match_round_trip_headers(any_backend):
    partition = CacheStoreRegistry(any_backend, version="v1").open(CacheCategory.STATIC)
    partition.put(_get("/app.js"), _response(b"console.log(1)", **{"Content-Type": "text/javascript", "ETag": "abc"}))

    entry = partition.match(_get("/app.js"))
    assert entry.response.body == b"console.log(1)"
    assert entry.response.headers["content-type"] == "text/javascript"
    assert entry.response.headers["ETAG"] == "abc"


def test_overwrite_keeps_one_entry_and_moves_to_end(any_backend):
    partition = CacheStoreRegistry(any_backend, version="v1").open(CacheCategory.API)
    partition.put(_get("/api/a"), _response(b"a1"))
    partition.put(_get("/api/b"), _response(b"b1"))
    partition.put(_get("/api/a"), _response(b"a2"))

    assert partition.count() == 2
    assert partition.keys() == [
        "GET https://hub.example.com/api/b",
        "GET https://hub.example.com/api/a",
    ]
    assert partition.match(_get("/api/a")).response.body == b"a2"


def test_stored_copy_is_independent_of_caller(any_backend):
    partition = CacheStoreRegistry(any_backend, version="v1").open(CacheCategory.API)
    response = _response(b"original")
    partition.put(_get("/api/a"), response)
    response.headers["X-Later"] = "mutated"

    assert "X-Later" not in partition.match(_get("/api/a")).response.headers


# =============================================================================
# Generations
# =============================================================================

def test_delete_stale_keeps_current_generation(any_backend):
    old = CacheStoreRegistry(any_backend, version="v1")
    old.open(CacheCategory.API)
    old.open(CacheCategory.STATIC)
    any_backend.create_partition("other-app-cache")

    new = CacheStoreRegistry(any_backend, version="v2")
    new.open(CacheCategory.STATIC)
    deleted = new.delete_stale(new.current_names())

    assert sorted(deleted) == ["hockey-hub-api-v1", "hockey-hub-static-v1"]
    remaining = new.list_partitions()
    assert "hockey-hub-static-v2" in remaining
    assert "other-app-cache" in remaining


def test_delete_all_removes_every_app_partition(any_backend):
    CacheStoreRegistry(any_backend, version="v1").open(CacheCategory.API)
    registry = CacheStoreRegistry(any_backend, version="v2")
    registry.open(CacheCategory.IMAGES)
    any_backend.create_partition("other-app-cache")

    assert registry.delete_all() == 2
    assert registry.list_partitions() == ["other-app-cache"]


def test_invalidate_removes_url_from_current_partitions(any_backend):
    registry = CacheStoreRegistry(any_backend, version="v1")
    registry.open(CacheCategory.API).put(_get("/api/teams"), _response())
    registry.open(CacheCategory.DYNAMIC).put(_get("/api/teams"), _response())
    registry.open(CacheCategory.API).put(_get("/api/players"), _response())

    assert registry.invalidate("https://hub.example.com/api/teams") == 2
    assert registry.open(CacheCategory.API).keys() == ["GET https://hub.example.com/api/players"]


def test_get_stats_counts_entries(any_backend):
    registry = CacheStoreRegistry(any_backend, version="v1")
    api = registry.open(CacheCategory.API)
    api.put(_get("/api/a"), _response())
    api.put(_get("/api/b"), _response())

    assert registry.get_stats()["hockey-hub-api-v1"] == 2


# =============================================================================
# Durability
# =============================================================================

def test_sqlite_entries_survive_reopen(tmp_path):
    path = tmp_path / "cache.db"
    CacheStoreRegistry(SqliteCacheBackend(path), version="v1").open(CacheCategory.STATIC).put(
        _get("/"), _response(b"<html>shell</html>")
    )

    reopened = CacheStoreRegistry(SqliteCacheBackend(path), version="v1").open(CacheCategory.STATIC)
    assert reopened.match(_get("/")).response.body == b"<html>shell</html>"
