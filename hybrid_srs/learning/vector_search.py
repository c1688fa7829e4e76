"""
Vector Search

Semantic nearest-neighbour search over the ``vocabulary``, ``descriptions``
and ``images`` collections, plus two-stage hybrid search: a structured
filter narrows the candidate set, then only those candidates are ranked by
vector similarity.

Unlike the graph, search fails loudly. With the feature off callers get
FeatureDisabledError; with it on but the embedding or index unusable they get
SearchUnavailableError. An empty list always means "nothing matched".
"""

import abc
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from hybrid_srs.common.error_handling import (
    DimensionMismatchError,
    EngineError,
    FeatureDisabledError,
    NotFoundError,
    SearchUnavailableError,
    ValidationError,
)
from hybrid_srs.common.logger import app_logger, log_execution_time
from hybrid_srs.health import ComponentHealth, HealthStatus
from hybrid_srs.learning.embedding import EmbeddingService
from hybrid_srs.learning.models import ScoredResult, VocabularyItem

logger = app_logger.getChild("learning.vector_search")

VOCABULARY_COLLECTION = "vocabulary"


@dataclass
class IndexedVector:
    id: str
    vector: np.ndarray
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchIndexResult:
    """Outcome of a bulk indexing call."""

    indexed: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "indexed": self.indexed,
            "failed": self.failed,
            "errors": list(self.errors),
            "duration_ms": round(self.duration_ms, 2)
        }


class VectorIndex(abc.ABC):
    """Storage and similarity ranking for vectors grouped in collections."""

    @abc.abstractmethod
    async def upsert(self, collection: str, item_id: str, vector: Sequence[float],
                     payload: Optional[Dict[str, Any]] = None) -> None:
        pass

    @abc.abstractmethod
    async def get(self, collection: str, item_id: str) -> Optional[IndexedVector]:
        pass

    @abc.abstractmethod
    async def delete(self, collection: str, item_id: str) -> bool:
        pass

    @abc.abstractmethod
    async def query(
        self,
        collection: str,
        vector: Sequence[float],
        limit: int,
        threshold: float,
        candidate_ids: Optional[Set[str]] = None,
        exclude_ids: Optional[Set[str]] = None
    ) -> List[Tuple[str, float, Dict[str, Any]]]:
        """
        Rank stored vectors by cosine similarity to ``vector``.

        Args:
            collection: Collection name
            vector: Query vector
            limit: Maximum results
            threshold: Minimum similarity to keep
            candidate_ids: Restrict ranking to these ids when given
            exclude_ids: Ids never returned

        Returns:
            ``(id, similarity, payload)`` tuples, most similar first
        """
        pass

    @abc.abstractmethod
    async def filter_ids(self, collection: str, predicate) -> Set[str]:
        """Ids whose payload satisfies ``predicate(payload) -> bool``."""
        pass

    @abc.abstractmethod
    async def stats(self) -> Dict[str, Any]:
        pass


class InMemoryVectorIndex(VectorIndex):
    """
    Brute-force cosine index in process memory.

    Vectors are normalized on insert so ranking is a single matrix product.
    Each collection fixes its dimension on first insert.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, IndexedVector]] = {}
        self._dimensions: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _normalize(vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float64)
        norm = np.linalg.norm(array)
        return array / norm if norm else array

    def _check_dimensions(self, collection: str, size: int) -> None:
        expected = self._dimensions.get(collection)
        if expected is not None and expected != size:
            raise DimensionMismatchError(expected=expected, actual=size)

    async def upsert(self, collection: str, item_id: str, vector: Sequence[float],
                     payload: Optional[Dict[str, Any]] = None) -> None:
        array = self._normalize(vector)
        async with self._lock:
            self._check_dimensions(collection, array.shape[0])
            self._dimensions.setdefault(collection, array.shape[0])
            self._collections.setdefault(collection, {})[item_id] = IndexedVector(
                id=item_id, vector=array, payload=dict(payload or {})
            )

    async def get(self, collection: str, item_id: str) -> Optional[IndexedVector]:
        async with self._lock:
            return self._collections.get(collection, {}).get(item_id)

    async def delete(self, collection: str, item_id: str) -> bool:
        async with self._lock:
            return self._collections.get(collection, {}).pop(item_id, None) is not None

    async def query(
        self,
        collection: str,
        vector: Sequence[float],
        limit: int,
        threshold: float,
        candidate_ids: Optional[Set[str]] = None,
        exclude_ids: Optional[Set[str]] = None
    ) -> List[Tuple[str, float, Dict[str, Any]]]:
        query = self._normalize(vector)
        async with self._lock:
            items = list(self._collections.get(collection, {}).values())
            if items:
                self._check_dimensions(collection, query.shape[0])

        if candidate_ids is not None:
            items = [item for item in items if item.id in candidate_ids]
        if exclude_ids:
            items = [item for item in items if item.id not in exclude_ids]
        if not items or limit <= 0:
            return []

        matrix = np.vstack([item.vector for item in items])
        scores = np.clip(matrix @ query, -1.0, 1.0)
        order = sorted(range(len(items)), key=lambda i: (-scores[i], items[i].id))

        results = []
        for i in order:
            score = float(scores[i])
            if score < threshold:
                break
            results.append((items[i].id, score, dict(items[i].payload)))
            if len(results) >= limit:
                break
        return results

    async def filter_ids(self, collection: str, predicate) -> Set[str]:
        async with self._lock:
            items = list(self._collections.get(collection, {}).values())
        return {item.id for item in items if predicate(item.payload)}

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "collections": {name: len(items) for name, items in self._collections.items()},
                "dimensions": dict(self._dimensions)
            }


class CandidateFilter(abc.ABC):
    """First stage of hybrid search: structured narrowing of candidates."""

    @abc.abstractmethod
    async def candidate_ids(self, collection: str, sql_filter: Dict[str, Any]) -> Set[str]:
        pass


class PayloadCandidateFilter(CandidateFilter):
    """
    Matches the filter against the payload stored next to each vector.

    ``{"language": "es"}`` is an equality test; ``{"difficulty": ["beginner",
    "intermediate"]}`` matches any listed value; when the payload field itself
    is a list (e.g. ``tags``) the test is membership.
    """

    def __init__(self, index: VectorIndex):
        self.index = index

    @staticmethod
    def matches(payload: Dict[str, Any], sql_filter: Dict[str, Any]) -> bool:
        for field_name, expected in sql_filter.items():
            if field_name not in payload:
                return False
            actual = payload[field_name]
            allowed = expected if isinstance(expected, (list, tuple, set)) else [expected]
            if isinstance(actual, (list, tuple, set)):
                if not any(value in actual for value in allowed):
                    return False
            elif actual not in allowed:
                return False
        return True

    async def candidate_ids(self, collection: str, sql_filter: Dict[str, Any]) -> Set[str]:
        return await self.index.filter_ids(collection, lambda payload: self.matches(payload, sql_filter))


class VectorSearchService:
    """Semantic and hybrid search over the configured collections."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        index: VectorIndex,
        features: Any,
        search_config: Any,
        candidate_filter: Optional[CandidateFilter] = None
    ):
        self.embedding_service = embedding_service
        self.index = index
        self.features = features
        self.config = search_config
        self.candidate_filter = candidate_filter or PayloadCandidateFilter(index)

    @property
    def enabled(self) -> bool:
        return bool(self.features.use_vector_search)

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise FeatureDisabledError("vector_search")

    def _check_collection(self, collection: str) -> None:
        if collection not in self.config.collections:
            raise ValidationError(
                f"Unknown collection '{collection}'",
                field="collection",
                details={"allowed": list(self.config.collections)}
            )

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.default_limit
        if limit < 1:
            raise ValidationError("limit must be at least 1", field="limit")
        return min(limit, self.config.max_limit)

    def _resolve_threshold(self, threshold: Optional[float]) -> float:
        if threshold is None:
            return self.config.similarity_threshold
        if not -1.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be within [-1, 1]", field="threshold")
        return threshold

    async def _query_vector(self, query: str) -> List[float]:
        record = await self.embedding_service.embed(query)
        if record.fallback:
            raise SearchUnavailableError(
                "Query embedding unavailable",
                details={"reason": "embedding_fallback"}
            )
        return record.vector

    async def _ranked(
        self,
        collection: str,
        vector: Sequence[float],
        limit: int,
        threshold: float,
        candidate_ids: Optional[Set[str]] = None,
        exclude_ids: Optional[Set[str]] = None
    ) -> List[ScoredResult]:
        try:
            rows = await self.index.query(
                collection, vector, limit, threshold,
                candidate_ids=candidate_ids, exclude_ids=exclude_ids
            )
        except EngineError:
            raise
        except Exception as e:
            logger.error(f"Vector index query failed on {collection}: {e}")
            raise SearchUnavailableError("Vector index unavailable", cause=e) from e
        return [
            ScoredResult(id=item_id, collection=collection, similarity=score, rank=rank, payload=payload)
            for rank, (item_id, score, payload) in enumerate(rows, start=1)
        ]

    @log_execution_time(logger)
    async def search(
        self,
        query: str,
        collection: str = VOCABULARY_COLLECTION,
        limit: Optional[int] = None,
        threshold: Optional[float] = None
    ) -> List[ScoredResult]:
        """
        Items in ``collection`` semantically close to ``query``.

        Args:
            query: Free text
            collection: One of the configured collections
            limit: Maximum results (capped at ``max_limit``)
            threshold: Minimum cosine similarity; defaults to ``similarity_threshold``

        Returns:
            Results sorted by similarity, ranks starting at 1

        Raises:
            FeatureDisabledError: vector search is switched off
            SearchUnavailableError: query embedding fell back or the index failed
            ValidationError: bad collection, limit, threshold or query
        """
        self._require_enabled()
        self._check_collection(collection)
        limit = self._resolve_limit(limit)
        threshold = self._resolve_threshold(threshold)
        vector = await self._query_vector(query)
        return await self._ranked(collection, vector, limit, threshold)

    @log_execution_time(logger)
    async def hybrid_search(
        self,
        query: str,
        collection: str = VOCABULARY_COLLECTION,
        sql_filter: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None
    ) -> List[ScoredResult]:
        """
        Filter first, then rank the survivors by similarity.

        An empty or missing ``sql_filter`` degenerates to plain ``search``.
        """
        self._require_enabled()
        self._check_collection(collection)
        limit = self._resolve_limit(limit)
        threshold = self._resolve_threshold(threshold)
        if not sql_filter:
            return await self.search(query, collection, limit, threshold)

        try:
            candidate_ids = await self.candidate_filter.candidate_ids(collection, sql_filter)
        except EngineError:
            raise
        except Exception as e:
            logger.error(f"Candidate filter failed on {collection}: {e}")
            raise SearchUnavailableError("Structured filter unavailable", cause=e) from e

        if not candidate_ids:
            return []
        vector = await self._query_vector(query)
        return await self._ranked(collection, vector, limit, threshold, candidate_ids=candidate_ids)

    async def find_similar(
        self,
        collection: str,
        item_id: str,
        limit: int = 10,
        threshold: float = 0.0,
        missing_ok: bool = True
    ) -> List[ScoredResult]:
        """
        Items whose stored vectors are closest to ``item_id``'s.

        Returns [] when the item has not been indexed, or raises NotFoundError
        when ``missing_ok`` is False.
        """
        self._require_enabled()
        self._check_collection(collection)
        limit = self._resolve_limit(limit)
        stored = await self.index.get(collection, item_id)
        if stored is None:
            if not missing_ok:
                raise NotFoundError(resource=f"{collection} item", resource_id=item_id)
            return []
        return await self._ranked(collection, stored.vector, limit, threshold, exclude_ids={item_id})

    async def index_item(
        self,
        collection: str,
        item_id: str,
        text: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Embed ``text`` and store it under ``item_id``.

        Raises:
            SearchUnavailableError: the embedding fell back; fallback vectors
                are never indexed
        """
        self._require_enabled()
        self._check_collection(collection)
        record = await self.embedding_service.embed(text)
        if record.fallback:
            raise SearchUnavailableError(
                f"Cannot index {item_id}: embedding unavailable",
                details={"item_id": item_id}
            )
        await self.index.upsert(collection, item_id, record.vector, payload)

    async def batch_index(
        self,
        collection: str,
        items: Iterable[Dict[str, Any]]
    ) -> BatchIndexResult:
        """
        Index many ``{"id", "text", "payload"}`` items; failures are counted,
        not raised.
        """
        self._require_enabled()
        self._check_collection(collection)
        start = time.perf_counter()
        result = BatchIndexResult()
        items = list(items)

        max_length = self.embedding_service.config.max_text_length
        texts = [item.get("text", "") for item in items]
        valid = [
            i for i, text in enumerate(texts)
            if isinstance(text, str) and text.strip() and len(text) <= max_length and items[i].get("id")
        ]
        for i in sorted(set(range(len(items))) - set(valid)):
            result.failed += 1
            result.errors.append({"id": items[i].get("id"), "error": "missing id or invalid text"})

        records = await self.embedding_service.batch_embed([texts[i] for i in valid]) if valid else []
        for i, record in zip(valid, records):
            item_id = items[i].get("id")
            if record.fallback:
                result.failed += 1
                result.errors.append({"id": item_id, "error": "embedding unavailable"})
                continue
            try:
                await self.index.upsert(collection, item_id, record.vector, items[i].get("payload"))
                result.indexed += 1
            except Exception as e:
                result.failed += 1
                result.errors.append({"id": item_id, "error": str(e)})

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Indexed {result.indexed} item(s) into {collection}, {result.failed} failed "
            f"in {result.duration_ms:.1f}ms"
        )
        return result

    async def index_vocabulary(self, items: Iterable[VocabularyItem]) -> BatchIndexResult:
        return await self.batch_index(
            VOCABULARY_COLLECTION,
            [{"id": item.id, "text": item.search_text, "payload": item.payload()} for item in items]
        )

    async def health_check(self) -> ComponentHealth:
        if not self.enabled:
            return ComponentHealth(name="vector_search", status=HealthStatus.DISABLED)
        start = time.perf_counter()
        try:
            stats = await self.index.stats()
        except Exception as e:
            return ComponentHealth(
                name="vector_search",
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.perf_counter() - start) * 1000,
                message=f"vector index unavailable: {e}"
            )
        return ComponentHealth(
            name="vector_search",
            status=HealthStatus.HEALTHY,
            latency_ms=(time.perf_counter() - start) * 1000,
            details=stats
        )
