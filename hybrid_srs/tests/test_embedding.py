import asyncio
import unittest
from types import SimpleNamespace

import numpy as np

from hybrid_srs.common.cache import MemoryCacheBackend
from hybrid_srs.common.error_handling import DimensionMismatchError, ExternalServiceError, ValidationError
from hybrid_srs.config import FeatureFlags
from hybrid_srs.health import HealthStatus
from hybrid_srs.learning.embedding import (
    EmbeddingService,
    HashingEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_provider,
    fallback_vector,
)
from hybrid_srs.tests.helpers import (
    TEST_DIMENSIONS,
    CountingProvider,
    FailingProvider,
    SlowProvider,
    make_config,
)


def make_service(provider=None, timeout_seconds=2.0, **embedding_overrides):
    config = make_config(embedding=embedding_overrides)
    features = FeatureFlags()
    service = EmbeddingService(
        provider=provider or CountingProvider(),
        cache=MemoryCacheBackend(max_size=100),
        features=features,
        embedding_config=config.embedding,
        cache_ttl_seconds=60,
        timeout_seconds=timeout_seconds
    )
    return service, features


class TestEmbeddingService(unittest.TestCase):
    """Test embedding, caching and fallback behaviour."""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

    def tearDown(self):
        self.loop.close()

    def test_second_embed_is_cached(self):
        provider = CountingProvider()
        service, _ = make_service(provider)

        first = self.loop.run_until_complete(service.embed("el gato negro"))
        second = self.loop.run_until_complete(service.embed("el gato negro"))

        self.assertFalse(first.cached)
        self.assertTrue(second.cached)
        self.assertEqual(len(first.vector), TEST_DIMENSIONS)
        self.assertAlmostEqual(float(np.linalg.norm(first.vector)), 1.0)
        self.assertAlmostEqual(EmbeddingService.similarity(first.vector, second.vector), 1.0)
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(first.token_count, 3)

    def test_cache_flag_off_bypasses_cache(self):
        provider = CountingProvider()
        service, features = make_service(provider)
        features.use_semantic_cache = False

        self.loop.run_until_complete(service.embed("hola"))
        record = self.loop.run_until_complete(service.embed("hola"))

        self.assertFalse(record.cached)
        self.assertEqual(len(provider.calls), 2)

    def test_model_and_dimensions_are_part_of_cache_key(self):
        service, _ = make_service()
        self.loop.run_until_complete(service.embed("hola"))
        record = self.loop.run_until_complete(service.embed("hola", dimensions=32))
        self.assertFalse(record.cached)
        self.assertEqual(record.dimensions, 32)
        self.assertEqual(len(record.vector), 32)

    def test_invalid_text(self):
        service, _ = make_service()
        for text in ("", "   ", None, "x" * 10001):
            with self.assertRaises(ValidationError):
                self.loop.run_until_complete(service.embed(text))

    def test_non_positive_dimensions_are_rejected(self):
        provider = CountingProvider()
        service, _ = make_service(provider)
        for dimensions in (0, -8):
            with self.assertRaises(ValidationError):
                self.loop.run_until_complete(service.embed("hola", dimensions=dimensions))
        self.assertEqual(provider.calls, [])

    def test_max_length_text_is_accepted(self):
        service, _ = make_service()
        record = self.loop.run_until_complete(service.embed("x" * 10000))
        self.assertFalse(record.fallback)

    def test_provider_failure_falls_back_and_is_not_cached(self):
        provider = FailingProvider()
        service, _ = make_service(provider)

        first = self.loop.run_until_complete(service.embed("hola"))
        second = self.loop.run_until_complete(service.embed("hola"))

        self.assertTrue(first.fallback)
        self.assertTrue(second.fallback)
        self.assertFalse(second.cached)
        self.assertEqual(provider.calls, 2)
        self.assertEqual(first.vector, second.vector)
        self.assertEqual(first.vector, fallback_vector("hola", TEST_DIMENSIONS))

        health = self.loop.run_until_complete(service.health_check())
        self.assertEqual(health.status, HealthStatus.DEGRADED)

    def test_provider_retries_before_falling_back(self):
        provider = FailingProvider()
        service, _ = make_service(provider, max_retries=2, retry_delay=0.0)
        record = self.loop.run_until_complete(service.embed("hola"))
        self.assertTrue(record.fallback)
        self.assertEqual(provider.calls, 3)

    def test_timeout_falls_back(self):
        service, _ = make_service(SlowProvider(delay=0.5), timeout_seconds=0.01)
        record = self.loop.run_until_complete(service.embed("hola"))
        self.assertTrue(record.fallback)

    def test_batch_mixes_hits_and_misses_in_chunks(self):
        provider = CountingProvider()
        service, _ = make_service(provider, batch_size=2)
        self.loop.run_until_complete(service.embed("uno"))

        records = self.loop.run_until_complete(service.batch_embed(["uno", "dos", "tres", "cuatro", "cinco"]))

        self.assertEqual([record.cached for record in records], [True, False, False, False, False])
        # one call for the warm-up, then 4 misses in chunks of 2
        self.assertEqual(len(provider.calls), 3)

    def test_batch_validates_everything_first(self):
        provider = CountingProvider()
        service, _ = make_service(provider)
        with self.assertRaises(ValidationError):
            self.loop.run_until_complete(service.batch_embed(["ok", ""]))
        self.assertEqual(provider.calls, [])

    def test_healthy_after_successful_calls(self):
        service, _ = make_service()
        self.loop.run_until_complete(service.embed("hola"))
        health = self.loop.run_until_complete(service.health_check())
        self.assertEqual(health.status, HealthStatus.HEALTHY)
        self.assertEqual(health.details["provider"], "hashing")


class TestSimilarity(unittest.TestCase):

    def test_bounds_and_special_cases(self):
        self.assertAlmostEqual(EmbeddingService.similarity([1, 0], [0, 1]), 0.0)
        self.assertAlmostEqual(EmbeddingService.similarity([1, 2], [-1, -2]), -1.0)
        self.assertAlmostEqual(EmbeddingService.similarity([1, 2], [2, 4]), 1.0)
        self.assertEqual(EmbeddingService.similarity([0, 0], [1, 1]), 0.0)

    def test_dimension_mismatch(self):
        with self.assertRaises(DimensionMismatchError):
            EmbeddingService.similarity([1, 2, 3], [1, 2])


class TestProviders(unittest.TestCase):

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

    def tearDown(self):
        self.loop.close()

    def test_hashing_provider_is_deterministic_and_lexical(self):
        provider = HashingEmbeddingProvider()
        gato, gatos, perro = self.loop.run_until_complete(
            provider.embed(["gato", "gatos", "perro"], "any", 512)
        )
        self.assertEqual(gato, self.loop.run_until_complete(provider.embed(["gato"], "any", 512))[0])
        self.assertGreater(
            EmbeddingService.similarity(gato, gatos),
            EmbeddingService.similarity(gato, perro)
        )

    def test_openai_provider_orders_by_index(self):
        async def create(model, input, dimensions):
            return SimpleNamespace(data=[
                SimpleNamespace(index=1, embedding=[0.0, 1.0]),
                SimpleNamespace(index=0, embedding=[1.0, 0.0]),
            ])

        client = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        provider = OpenAIEmbeddingProvider(api_key="test", client=client)
        vectors = self.loop.run_until_complete(provider.embed(["a", "b"], "text-embedding-3-small", 2))
        self.assertEqual(vectors, [[1.0, 0.0], [0.0, 1.0]])

    def test_openai_provider_checks_dimensions(self):
        async def create(model, input, dimensions):
            return SimpleNamespace(data=[SimpleNamespace(index=0, embedding=[1.0, 0.0, 0.0])])

        client = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        provider = OpenAIEmbeddingProvider(api_key="test", client=client)
        with self.assertRaises(DimensionMismatchError):
            self.loop.run_until_complete(provider.embed(["a"], "m", 2))

    def test_openai_provider_wraps_client_errors(self):
        async def create(model, input, dimensions):
            raise ConnectionError("network down")

        client = SimpleNamespace(embeddings=SimpleNamespace(create=create))
        provider = OpenAIEmbeddingProvider(api_key="test", client=client)
        with self.assertRaises(ExternalServiceError):
            self.loop.run_until_complete(provider.embed(["a"], "m", 2))

    def test_build_provider(self):
        config = make_config()
        self.assertIsInstance(build_provider(config.embedding), HashingEmbeddingProvider)

        openai_config = make_config(embedding={"provider": "openai"})
        with self.assertRaises(ValueError):
            build_provider(openai_config.embedding)


if __name__ == "__main__":
    unittest.main()
