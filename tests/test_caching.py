from server.caching import CacheKey, QueryCache, normalize_query


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_cache_key_normalizes_query_and_jobs():
    assert CacheKey.query_result("How  To Install", 5) == CacheKey.query_result("how to install", 5)
    assert CacheKey.query_result("q", 5, ["b", "a"]) == CacheKey.query_result("q", 5, ["a", "b"])
    assert CacheKey.query_result("q", 5) != CacheKey.query_result("q", 10)
    assert CacheKey.query_result("q", 5).startswith("query:")
    assert normalize_query("  Mixed\tCase  ") == "mixed case"


def test_get_and_set():
    cache = QueryCache()
    assert cache.get("missing") is None

    cache.set("k", {"value": 1}, query="Question")
    assert cache.get("k") == {"value": 1}
    assert cache.size() == 1

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["entries"][0]["query"] == "question"


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = QueryCache(ttl_seconds=10, clock=clock)
    cache.set("k", "v")

    clock.now = 10
    assert cache.get("k") == "v"
    clock.now = 10.5
    assert cache.get("k") is None
    assert cache.size() == 0


def test_cleanup_expired():
    clock = FakeClock()
    cache = QueryCache(ttl_seconds=10, clock=clock)
    cache.set("old", 1)
    clock.now = 8
    cache.set("new", 2)
    clock.now = 15

    assert cache.cleanup_expired() == 1
    assert cache.get("new") == 2


def test_least_recently_used_is_evicted():
    clock = FakeClock()
    cache = QueryCache(max_entries=2, clock=clock)
    cache.set("a", 1)
    clock.now = 1
    cache.set("b", 2)
    clock.now = 2
    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_frequently_hit_entries_survive_eviction():
    clock = FakeClock()
    cache = QueryCache(max_entries=2, hit_weight_seconds=60, clock=clock)
    cache.set("popular", 1)
    cache.get("popular")
    clock.now = 30
    cache.set("recent", 2)
    clock.now = 31
    cache.set("newest", 3)

    # popular scores 0 + 60, recent scores 30
    assert cache.get("popular") == 1
    assert cache.get("recent") is None


def test_overwriting_an_existing_key_does_not_evict():
    cache = QueryCache(max_entries=1)
    cache.set("k", 1)
    cache.set("k", 2)
    assert cache.get("k") == 2


def test_clear_and_delete():
    cache = QueryCache()
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.clear()
    assert cache.size() == 0
