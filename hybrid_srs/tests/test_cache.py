import asyncio
import unittest

from hybrid_srs.common.cache import CacheEntry, KeyBuilder, MemoryCacheBackend


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCacheEntry(unittest.TestCase):
    """Test the CacheEntry class."""

    def test_ttl(self):
        clock = FakeClock()
        entry = CacheEntry({"test": "value"}, ttl=10, clock=clock)
        self.assertEqual(entry.expires_at, entry.created_at + 10)
        self.assertFalse(entry.is_expired())
        self.assertEqual(entry.get_ttl(), 10)

        clock.advance(10)
        self.assertTrue(entry.is_expired())
        self.assertEqual(entry.get_ttl(), 0.0)

    def test_no_expiry(self):
        entry = CacheEntry("test")
        self.assertIsNone(entry.expires_at)
        self.assertFalse(entry.is_expired())
        self.assertIsNone(entry.get_ttl())

    def test_access(self):
        clock = FakeClock()
        entry = CacheEntry("test", clock=clock)
        clock.advance(5)
        entry.access()
        entry.access()
        self.assertEqual(entry.access_count, 2)
        self.assertEqual(entry.last_accessed, clock.now)
        self.assertEqual(entry.get_age(), 5)


class TestMemoryCacheBackend(unittest.TestCase):
    """Test the MemoryCacheBackend class."""

    def setUp(self):
        self.clock = FakeClock()
        self.cache = MemoryCacheBackend(max_size=3, clock=self.clock)
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

    def tearDown(self):
        self.loop.close()

    def test_get_set(self):
        result = self.loop.run_until_complete(self.cache.set("key", {"a": 1}))
        self.assertTrue(result.success)

        result = self.loop.run_until_complete(self.cache.get("key"))
        self.assertTrue(result.hit)
        self.assertEqual(result.value, {"a": 1})

        result = self.loop.run_until_complete(self.cache.get("missing"))
        self.assertFalse(result.hit)
        self.assertFalse(result.success)

    def test_ttl_expiry(self):
        self.loop.run_until_complete(self.cache.set("key", "value", ttl=5))
        self.clock.advance(4)
        self.assertTrue(self.loop.run_until_complete(self.cache.has("key")))
        self.clock.advance(2)
        result = self.loop.run_until_complete(self.cache.get("key"))
        self.assertFalse(result.hit)

        stats = self.loop.run_until_complete(self.cache.get_stats())
        self.assertEqual(stats["expirations"], 1)

    def test_default_ttl(self):
        cache = MemoryCacheBackend(default_ttl=1, clock=self.clock)
        self.loop.run_until_complete(cache.set("key", "value"))
        self.clock.advance(2)
        self.assertFalse(self.loop.run_until_complete(cache.get("key")).hit)

    def test_lru_eviction(self):
        for key in ("a", "b", "c"):
            self.loop.run_until_complete(self.cache.set(key, key))
        # touch "a" so "b" becomes least recently used
        self.loop.run_until_complete(self.cache.get("a"))
        self.loop.run_until_complete(self.cache.set("d", "d"))

        self.assertEqual(len(self.cache), 3)
        self.assertFalse(self.loop.run_until_complete(self.cache.has("b")))
        self.assertTrue(self.loop.run_until_complete(self.cache.has("a")))
        stats = self.loop.run_until_complete(self.cache.get_stats())
        self.assertEqual(stats["evictions"], 1)

    def test_expired_entries_swept_before_evicting(self):
        self.loop.run_until_complete(self.cache.set("old", 1, ttl=1))
        self.loop.run_until_complete(self.cache.set("b", 2))
        self.loop.run_until_complete(self.cache.set("c", 3))
        self.clock.advance(2)
        self.loop.run_until_complete(self.cache.set("d", 4))

        stats = self.loop.run_until_complete(self.cache.get_stats())
        self.assertEqual(stats["evictions"], 0)
        self.assertEqual(stats["expirations"], 1)
        self.assertTrue(self.loop.run_until_complete(self.cache.has("b")))

    def test_overwrite_is_last_write_wins(self):
        self.loop.run_until_complete(self.cache.set("key", 1))
        self.loop.run_until_complete(self.cache.set("key", 2))
        self.assertEqual(self.loop.run_until_complete(self.cache.get("key")).value, 2)
        self.assertEqual(len(self.cache), 1)

    def test_delete_and_clear(self):
        self.loop.run_until_complete(self.cache.set("a", 1))
        self.assertTrue(self.loop.run_until_complete(self.cache.delete("a")))
        self.assertFalse(self.loop.run_until_complete(self.cache.delete("a")))
        self.loop.run_until_complete(self.cache.set("b", 1))
        self.loop.run_until_complete(self.cache.clear())
        self.assertEqual(len(self.cache), 0)

    def test_get_many_and_hit_rate(self):
        self.loop.run_until_complete(self.cache.set("a", 1))
        results = self.loop.run_until_complete(self.cache.get_many(["a", "b"]))
        self.assertTrue(results["a"].hit)
        self.assertFalse(results["b"].hit)
        stats = self.loop.run_until_complete(self.cache.get_stats())
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["hit_rate"], 0.5)

    def test_max_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            MemoryCacheBackend(max_size=0)


class TestKeyBuilder(unittest.TestCase):
    """Test the KeyBuilder class."""

    def test_build(self):
        self.assertEqual(KeyBuilder.build("a", 1, namespace="ns", version="2"), "ns:a:1:v2")
        self.assertEqual(KeyBuilder.build(None), "null")

    def test_long_and_structured_parts_are_hashed(self):
        key = KeyBuilder.build("x" * 100, {"b": 2, "a": 1})
        first, second = key.split(":")
        self.assertEqual(len(first), 16)
        self.assertEqual(len(second), 10)
        self.assertEqual(key, KeyBuilder.build("x" * 100, {"a": 1, "b": 2}))

    def test_embedding_key_covers_model_and_dimensions(self):
        base = KeyBuilder.embedding_key("hola", "model-a", 64)
        self.assertTrue(base.startswith("embedding:"))
        self.assertEqual(base, KeyBuilder.embedding_key("hola", "model-a", 64))
        self.assertNotEqual(base, KeyBuilder.embedding_key("hola", "model-b", 64))
        self.assertNotEqual(base, KeyBuilder.embedding_key("hola", "model-a", 128))
        self.assertNotEqual(base, KeyBuilder.embedding_key("adios", "model-a", 64))


if __name__ == "__main__":
    unittest.main()
