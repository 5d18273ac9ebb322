"""
Tests for ProcessCache.
"""

from aidev_pipeline.pipeline.cache import ProcessCache


class FakeClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestProcessCache:
    def test_get_and_set(self):
        cache = ProcessCache("test")
        assert cache.get("k") is None

        cache.set("k", "v")

        assert cache.get("k") == "v"
        assert len(cache) == 1

    def test_entries_expire(self):
        clock = FakeClock()
        cache = ProcessCache("test", ttl_seconds=60, clock=clock)
        cache.set("k", "v")

        clock.value += 59
        assert cache.get("k") == "v"
        clock.value += 1
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl_overrides_default(self):
        clock = FakeClock()
        cache = ProcessCache("test", ttl_seconds=60, clock=clock)
        cache.set("short", 1, ttl=5)
        cache.set("long", 2)

        clock.value += 10

        assert cache.get("short") is None
        assert cache.get("long") == 2

    def test_get_or_load_calls_loader_once(self):
        cache = ProcessCache("test")
        calls = []

        def loader():
            calls.append(1)
            return "loaded"

        assert cache.get_or_load("k", loader) == "loaded"
        assert cache.get_or_load("k", loader) == "loaded"
        assert len(calls) == 1

    def test_invalidate_key_and_all(self):
        cache = ProcessCache("test")
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate("a") == 1
        assert cache.invalidate("missing") == 0
        assert cache.get("b") == 2
        assert cache.invalidate() == 1
        assert len(cache) == 0

    def test_invalidate_prefix(self):
        cache = ProcessCache("test")
        cache.set("myorg/storefront/a.py", "a")
        cache.set("myorg/storefront/b.py", "b")
        cache.set("myorg/other/a.py", "c")

        assert cache.invalidate_prefix("myorg/storefront/") == 2
        assert cache.get("myorg/other/a.py") == "c"

    def test_membership_markers(self):
        cache = ProcessCache("reviewed")
        assert "7:abc" not in cache

        cache.add("7:abc")

        assert "7:abc" in cache

    def test_rebuilt_lazily_after_invalidate(self):
        cache = ProcessCache("test")
        versions = iter(["v1", "v2"])

        assert cache.get_or_load("k", lambda: next(versions)) == "v1"
        cache.invalidate()
        assert cache.get_or_load("k", lambda: next(versions)) == "v2"
