"""
Embedding Service

Turns text into fixed-width vectors through a pluggable provider, caches the
results, and computes cosine similarity.

Providers:
- HashingEmbeddingProvider: local feature-hashed character trigrams. Needs no
  network and gives related spellings related vectors; the default.
- OpenAIEmbeddingProvider: the OpenAI embeddings endpoint.

When a provider fails or times out after its retries, the service returns a
deterministic pseudo-random unit vector flagged ``fallback=True``. Fallback
vectors are never cached, so the next call tries the provider again.
"""

import abc
import hashlib
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence

import numpy as np
from openai import AsyncOpenAI

from hybrid_srs.common.cache import CacheBackend, KeyBuilder
from hybrid_srs.common.error_handling import (
    DimensionMismatchError,
    ExternalServiceError,
    ValidationError,
    retry,
    with_timeout,
)
from hybrid_srs.common.logger import app_logger
from hybrid_srs.health import ComponentHealth, HealthStatus
from hybrid_srs.learning.models import EmbeddingRecord

logger = app_logger.getChild("learning.embedding")

FALLBACK_MODEL = "fallback-hash"
RECENT_OUTCOME_WINDOW = 20


def count_tokens(text: str) -> int:
    """Rough token count; whitespace-separated words."""
    return len(text.split())


def fallback_vector(text: str, dimensions: int) -> List[float]:
    """
    Deterministic unit vector seeded from the SHA-256 of ``text``.

    Carries no semantic information; it only keeps the shape of the
    response stable while the provider is unavailable.
    """
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    seed = int.from_bytes(digest[:8], "little", signed=False)
    rng = np.random.default_rng(seed)
    vector = rng.standard_normal(dimensions)
    norm = np.linalg.norm(vector)
    return (vector / norm).tolist() if norm else vector.tolist()


class EmbeddingProvider(abc.ABC):
    """Computes embeddings for a batch of texts."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        pass

    @abc.abstractmethod
    async def embed(self, texts: Sequence[str], model: str, dimensions: int) -> List[List[float]]:
        """
        Embed ``texts``.

        Args:
            texts: Non-empty texts
            model: Model identifier
            dimensions: Required vector width

        Returns:
            One vector per text, in order, each of length ``dimensions``
        """
        pass

    async def close(self) -> None:
        return None


class HashingEmbeddingProvider(EmbeddingProvider):
    """
    Character n-gram feature hashing.

    Each lower-cased, boundary-padded n-gram is hashed to a bucket and a sign;
    the bucket counts are L2-normalized. Words sharing many n-grams get high
    cosine similarity, unrelated words land near zero.
    """

    def __init__(self, ngram: int = 3):
        if ngram < 1:
            raise ValueError("ngram must be at least 1")
        self.ngram = ngram

    @property
    def name(self) -> str:
        return "hashing"

    def _ngrams(self, text: str) -> List[str]:
        grams = []
        for token in text.lower().split():
            padded = f"#{token}#"
            if len(padded) <= self.ngram:
                grams.append(padded)
                continue
            grams.extend(padded[i:i + self.ngram] for i in range(len(padded) - self.ngram + 1))
        return grams

    def _vectorize(self, text: str, dimensions: int) -> List[float]:
        vector = np.zeros(dimensions, dtype=np.float64)
        for gram in self._ngrams(text):
            digest = hashlib.md5(gram.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm == 0:
            return vector.tolist()
        return (vector / norm).tolist()

    async def embed(self, texts: Sequence[str], model: str, dimensions: int) -> List[List[float]]:
        return [self._vectorize(text, dimensions) for text in texts]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embeddings from the OpenAI API."""

    def __init__(self, api_key: str, api_base: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=api_base)

    @property
    def name(self) -> str:
        return "openai"

    async def embed(self, texts: Sequence[str], model: str, dimensions: int) -> List[List[float]]:
        try:
            response = await self._client.embeddings.create(
                model=model,
                input=list(texts),
                dimensions=dimensions
            )
        except Exception as e:
            raise ExternalServiceError(service="openai", operation="embeddings.create", cause=e) from e

        vectors = [item.embedding for item in sorted(response.data, key=lambda item: item.index)]
        for vector in vectors:
            if len(vector) != dimensions:
                raise DimensionMismatchError(expected=dimensions, actual=len(vector))
        return vectors

    async def close(self) -> None:
        await self._client.close()


def build_provider(embedding_config: Any) -> EmbeddingProvider:
    """Pick the provider named in config; OpenAI requires an API key."""
    if embedding_config.provider == "openai":
        if not embedding_config.api_key:
            raise ValueError("embedding.api_key is required for the openai provider")
        return OpenAIEmbeddingProvider(
            api_key=embedding_config.api_key,
            api_base=embedding_config.api_base
        )
    return HashingEmbeddingProvider()


class EmbeddingService:
    """
    Embedding lookups with a semantic cache in front of the provider.

    The cache is consulted only while ``features.use_semantic_cache`` is on;
    the flag is read on every call so it can be flipped at runtime.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: CacheBackend,
        features: Any,
        embedding_config: Any,
        cache_ttl_seconds: float = 86400,
        timeout_seconds: float = 2.0
    ):
        """
        Args:
            provider: Embedding provider
            cache: Cache backend for embedding records
            features: FeatureFlags (read live)
            embedding_config: EmbeddingConfig section
            cache_ttl_seconds: TTL for cached embeddings
            timeout_seconds: Time budget per provider attempt
        """
        self.provider = provider
        self.cache = cache
        self.features = features
        self.config = embedding_config
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._recent_fallbacks: Deque[bool] = deque(maxlen=RECENT_OUTCOME_WINDOW)
        self._provider_calls = 0
        self._fallback_count = 0

    def _validate(self, text: Any) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Text must be a non-empty string", field="text")
        if len(text) > self.config.max_text_length:
            raise ValidationError(
                f"Text exceeds maximum length of {self.config.max_text_length} characters",
                field="text",
                details={"length": len(text)}
            )
        return text

    def _resolve(self, model: Optional[str], dimensions: Optional[int]):
        model = model or self.config.model
        dimensions = self.config.dimensions if dimensions is None else dimensions
        if dimensions < 1:
            raise ValidationError("Dimensions must be positive", field="dimensions")
        return model, dimensions

    async def _call_provider(self, texts: List[str], model: str, dimensions: int) -> List[List[float]]:
        @retry(
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            ignore_exceptions=(ValidationError, DimensionMismatchError)
        )
        async def attempt():
            return await with_timeout(
                self.provider.embed(texts, model, dimensions),
                self.timeout_seconds,
                service=f"embedding:{self.provider.name}",
                operation="embed"
            )

        self._provider_calls += 1
        vectors = await attempt()
        if len(vectors) != len(texts):
            raise ExternalServiceError(
                service=f"embedding:{self.provider.name}",
                operation="embed",
                details={"expected": len(texts), "received": len(vectors)}
            )
        return vectors

    def _fallback_record(self, text: str, dimensions: int) -> EmbeddingRecord:
        self._fallback_count += 1
        self._recent_fallbacks.append(True)
        return EmbeddingRecord(
            text_hash=KeyBuilder.text_hash(text),
            vector=fallback_vector(text, dimensions),
            model=FALLBACK_MODEL,
            dimensions=dimensions,
            token_count=count_tokens(text),
            cached=False,
            fallback=True
        )

    async def _cache_lookup(self, keys: List[str]) -> Dict[str, EmbeddingRecord]:
        if not self.features.use_semantic_cache:
            return {}
        results = await self.cache.get_many(list(dict.fromkeys(keys)))
        return {key: self._as_cached(result.value) for key, result in results.items() if result.hit}

    @staticmethod
    def _as_cached(record: EmbeddingRecord) -> EmbeddingRecord:
        return EmbeddingRecord(
            text_hash=record.text_hash,
            vector=record.vector,
            model=record.model,
            dimensions=record.dimensions,
            token_count=record.token_count,
            cached=True,
            fallback=False
        )

    async def _cache_put(self, key: str, record: EmbeddingRecord) -> None:
        if self.features.use_semantic_cache and not record.fallback:
            await self.cache.set(key, record, ttl=self.cache_ttl_seconds)

    async def embed(
        self,
        text: str,
        model: Optional[str] = None,
        dimensions: Optional[int] = None
    ) -> EmbeddingRecord:
        """
        Embed one text.

        Args:
            text: Non-empty text of at most ``max_text_length`` characters
            model: Model override
            dimensions: Width override

        Returns:
            EmbeddingRecord; ``cached`` when served from cache, ``fallback``
            when the provider could not be reached

        Raises:
            ValidationError: for empty or oversized text
        """
        records = await self.batch_embed([text], model=model, dimensions=dimensions)
        return records[0]

    async def batch_embed(
        self,
        texts: Sequence[str],
        model: Optional[str] = None,
        dimensions: Optional[int] = None
    ) -> List[EmbeddingRecord]:
        """
        Embed several texts, serving cache hits first and sending the misses
        to the provider in chunks of ``batch_size``.

        Every text is validated before any provider call is made.
        """
        texts = [self._validate(text) for text in texts]
        model, dimensions = self._resolve(model, dimensions)

        results: List[Optional[EmbeddingRecord]] = [None] * len(texts)
        keys = [KeyBuilder.embedding_key(text, model, dimensions) for text in texts]
        misses: List[int] = []

        hits = await self._cache_lookup(keys)
        for index, key in enumerate(keys):
            if key in hits:
                results[index] = hits[key]
            else:
                misses.append(index)

        batch_size = self.config.batch_size
        for offset in range(0, len(misses), batch_size):
            chunk = misses[offset:offset + batch_size]
            chunk_texts = [texts[index] for index in chunk]
            try:
                vectors = await self._call_provider(chunk_texts, model, dimensions)
            except Exception as e:
                logger.warning(
                    f"Embedding provider {self.provider.name} failed for {len(chunk)} text(s), "
                    f"using fallback vectors: {e}"
                )
                for index in chunk:
                    results[index] = self._fallback_record(texts[index], dimensions)
                continue

            for index, vector in zip(chunk, vectors):
                record = EmbeddingRecord(
                    text_hash=KeyBuilder.text_hash(texts[index]),
                    vector=[float(value) for value in vector],
                    model=model,
                    dimensions=dimensions,
                    token_count=count_tokens(texts[index]),
                    cached=False,
                    fallback=False
                )
                self._recent_fallbacks.append(False)
                await self._cache_put(keys[index], record)
                results[index] = record

        return results

    @staticmethod
    def similarity(vector_a: Sequence[float], vector_b: Sequence[float]) -> float:
        """
        Cosine similarity in [-1, 1].

        Raises:
            DimensionMismatchError: when the vectors differ in length
        """
        a = np.asarray(vector_a, dtype=np.float64)
        b = np.asarray(vector_b, dtype=np.float64)
        if a.shape != b.shape:
            raise DimensionMismatchError(expected=a.shape[0], actual=b.shape[0])
        norm = np.linalg.norm(a) * np.linalg.norm(b)
        if norm == 0:
            return 0.0
        return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.name,
            "model": self.config.model,
            "dimensions": self.config.dimensions,
            "provider_calls": self._provider_calls,
            "fallbacks": self._fallback_count,
            "cache_enabled": bool(self.features.use_semantic_cache),
            "cache": await self.cache.get_stats()
        }

    async def health_check(self) -> ComponentHealth:
        start = time.perf_counter()
        stats = await self.get_stats()
        recent = list(self._recent_fallbacks)
        fallback_ratio = sum(recent) / len(recent) if recent else 0.0
        if fallback_ratio == 0:
            status, message = HealthStatus.HEALTHY, ""
        elif fallback_ratio < 1.0:
            status, message = HealthStatus.DEGRADED, "some recent embeddings used fallback vectors"
        else:
            status, message = HealthStatus.DEGRADED, "embedding provider unavailable, serving fallback vectors"
        stats["recent_fallback_ratio"] = round(fallback_ratio, 3)
        return ComponentHealth(
            name="embedding",
            status=status,
            latency_ms=(time.perf_counter() - start) * 1000,
            message=message,
            details=stats
        )

    async def close(self) -> None:
        await self.provider.close()
        await self.cache.clear()

