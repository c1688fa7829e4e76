"""
Confusion Graph

Per-user weighted graph of "asked A, answered B" confusions, updated from
live interaction events and queried for related words.

Edges are stored with direction (asked -> answered) but read without it:
after ``record_confusion(A, B)`` both ``get_related(A)`` and
``get_related(B)`` return the other item, ranked by the combined weight of
both directions.
"""

import abc
import asyncio
import datetime
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from hybrid_srs.common.error_handling import retry_with_timeout, with_timeout
from hybrid_srs.common.logger import app_logger, with_context
from hybrid_srs.health import ComponentHealth, HealthStatus
from hybrid_srs.learning.models import ConfusionEdge, ScoredResult, utcnow

logger = app_logger.getChild("learning.graph")

SimilaritySource = Callable[[str, int], Awaitable[List[ScoredResult]]]


class ConfusionGraphStore(abc.ABC):
    """Storage for confusion edges."""

    @abc.abstractmethod
    async def increment(
        self,
        user_id: str,
        source_id: str,
        target_id: str,
        amount: float = 1.0,
        at: Optional[datetime.datetime] = None
    ) -> ConfusionEdge:
        """
        Add ``amount`` to the edge weight, creating the edge if needed.

        Increments must be additive under concurrency: two concurrent calls
        with amount 1 leave the weight 2 higher.
        """
        pass

    @abc.abstractmethod
    async def edges_for_item(self, user_id: str, item_id: str) -> List[ConfusionEdge]:
        """All of the user's edges with ``item_id`` at either end."""
        pass

    @abc.abstractmethod
    async def edges_for_user(self, user_id: str) -> List[ConfusionEdge]:
        pass

    @abc.abstractmethod
    async def ping(self) -> Dict[str, Any]:
        """Liveness probe; returns store statistics."""
        pass


class InMemoryConfusionGraphStore(ConfusionGraphStore):
    """Confusion edges in process memory, indexed by user and by item."""

    def __init__(self):
        self._edges: Dict[tuple, ConfusionEdge] = {}
        self._by_item: Dict[tuple, set] = defaultdict(set)
        self._by_user: Dict[str, set] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def increment(
        self,
        user_id: str,
        source_id: str,
        target_id: str,
        amount: float = 1.0,
        at: Optional[datetime.datetime] = None
    ) -> ConfusionEdge:
        at = at or utcnow()
        key = (user_id, source_id, target_id)
        async with self._lock:
            edge = self._edges.get(key)
            if edge is None:
                edge = ConfusionEdge(user_id, source_id, target_id, weight=0.0, last_updated=at)
                self._edges[key] = edge
                self._by_item[(user_id, source_id)].add(key)
                self._by_item[(user_id, target_id)].add(key)
                self._by_user[user_id].add(key)
            edge.weight += amount
            edge.last_updated = max(edge.last_updated, at)
            return ConfusionEdge(edge.user_id, edge.source_id, edge.target_id, edge.weight, edge.last_updated)

    def _snapshot(self, keys) -> List[ConfusionEdge]:
        return [
            ConfusionEdge(edge.user_id, edge.source_id, edge.target_id, edge.weight, edge.last_updated)
            for edge in (self._edges[key] for key in keys)
        ]

    async def edges_for_item(self, user_id: str, item_id: str) -> List[ConfusionEdge]:
        async with self._lock:
            return self._snapshot(self._by_item.get((user_id, item_id), ()))

    async def edges_for_user(self, user_id: str) -> List[ConfusionEdge]:
        async with self._lock:
            return self._snapshot(self._by_user.get(user_id, ()))

    async def ping(self) -> Dict[str, Any]:
        return {"edges": len(self._edges), "users": len(self._by_user)}


class GraphService:
    """
    Records confusions and answers related-word queries.

    Everything public here fails soft: store errors and timeouts are logged
    and turned into empty results, because the graph only ever refines a
    schedule that SM-2 has already produced. ``neighbour_weights`` is the one
    strict call, for callers that need to know the graph failed.
    """

    def __init__(
        self,
        store: ConfusionGraphStore,
        features: Any,
        graph_config: Any,
        timeout_seconds: float = 0.5,
        similarity_source: Optional[SimilaritySource] = None,
        timeout_retries: int = 1,
        retry_delay: float = 0.05
    ):
        """
        Args:
            store: Edge storage
            features: FeatureFlags (read live)
            graph_config: GraphConfig section
            timeout_seconds: Time budget per store call
            similarity_source: ``(item_id, limit) -> [ScoredResult]`` used to
                top up sparse neighbourhoods from embedding similarity
            timeout_retries: Extra attempts for a store call that timed out
            retry_delay: Initial backoff between those attempts
        """
        self.store = store
        self.features = features
        self.config = graph_config
        self.timeout_seconds = timeout_seconds
        self.similarity_source = similarity_source
        self.timeout_retries = timeout_retries
        self.retry_delay = retry_delay

    async def _store_call(self, operation: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_with_timeout(
            factory,
            self.timeout_seconds,
            service="graph",
            operation=operation,
            max_retries=self.timeout_retries,
            retry_delay=self.retry_delay
        )

    @property
    def enabled(self) -> bool:
        return bool(self.features.use_knowledge_graph)

    def _decayed(self, edge: ConfusionEdge, now: datetime.datetime) -> float:
        half_life = self.config.decay_half_life_days
        if not half_life:
            return edge.weight
        age_days = max(0.0, (now - edge.last_updated).total_seconds() / 86400.0)
        return edge.weight * 0.5 ** (age_days / half_life)

    async def record_confusion(self, user_id: str, item_a: str, item_b: str) -> None:
        """
        Record that the user answered ``item_b`` when asked ``item_a``.

        No-op when the knowledge graph is disabled or ``item_a == item_b``.
        """
        if not self.enabled:
            return
        if not item_a or not item_b or item_a == item_b:
            logger.debug(f"Ignoring confusion self-loop or empty id for user {user_id}")
            return
        try:
            await self._store_call("increment", lambda: self.store.increment(user_id, item_a, item_b))
        except Exception as e:
            with_context(
                logger.name, user_id=user_id, source_id=item_a, target_id=item_b
            ).warning(f"Failed to record confusion: {e}")

    async def neighbour_weights(
        self,
        user_id: str,
        item_id: str,
        now: Optional[datetime.datetime] = None
    ) -> Dict[str, float]:
        """
        Combined (decayed) weight per neighbour of ``item_id``, both directions.

        Raises store errors and DependencyTimeoutError; returns {} when the
        knowledge graph is disabled.
        """
        if not self.enabled:
            return {}
        now = now or utcnow()
        edges = await self._store_call("edges_for_item", lambda: self.store.edges_for_item(user_id, item_id))
        weights: Dict[str, float] = defaultdict(float)
        for edge in edges:
            if not edge.touches(item_id):
                continue
            weights[edge.other(item_id)] += self._decayed(edge, now)
        return dict(weights)

    async def confusion_penalty_weight(
        self,
        user_id: str,
        item_id: str,
        now: Optional[datetime.datetime] = None
    ) -> float:
        """Total decayed confusion weight touching ``item_id``. Raises like ``neighbour_weights``."""
        return sum((await self.neighbour_weights(user_id, item_id, now)).values())

    async def get_related(self, user_id: str, item_id: str, limit: int = 5) -> List[str]:
        """
        Items the user confuses with ``item_id``, strongest first.

        When the user has fewer than ``min_history_edges`` neighbours for the
        item, the list is topped up with the most similar items by embedding.
        Returns [] when disabled or when the store fails.
        """
        if not self.enabled or limit <= 0:
            return []
        try:
            weights = await self.neighbour_weights(user_id, item_id)
        except Exception as e:
            logger.warning(f"Related lookup failed for user {user_id}, item {item_id}: {e}")
            return []

        related = [
            neighbour for neighbour, _ in
            sorted(weights.items(), key=lambda pair: (-pair[1], pair[0]))
        ][:limit]

        if len(weights) < self.config.min_history_edges and len(related) < limit:
            related.extend(await self._similar_items(item_id, limit, exclude=set(related) | {item_id}))

        return related[:limit]

    async def _similar_items(self, item_id: str, limit: int, exclude: set) -> List[str]:
        if self.similarity_source is None:
            return []
        try:
            results = await with_timeout(
                self.similarity_source(item_id, limit + len(exclude)),
                self.timeout_seconds,
                service="vector_search",
                operation="find_similar"
            )
        except Exception as e:
            logger.debug(f"Cold-start similarity lookup unavailable for {item_id}: {e}")
            return []
        similar = []
        for result in results:
            if result.id in exclude or result.id in similar:
                continue
            similar.append(result.id)
            if len(similar) >= limit:
                break
        return similar

    async def get_confusion_pairs(self, user_id: str, limit: int = 20) -> List[ConfusionEdge]:
        """The user's strongest confusion edges, heaviest first. [] when disabled or failing."""
        if not self.enabled:
            return []
        now = utcnow()
        try:
            edges = await self._store_call("edges_for_user", lambda: self.store.edges_for_user(user_id))
        except Exception as e:
            logger.warning(f"Confusion pair lookup failed for user {user_id}: {e}")
            return []

        decayed = [
            ConfusionEdge(edge.user_id, edge.source_id, edge.target_id, self._decayed(edge, now), edge.last_updated)
            for edge in edges
        ]
        decayed.sort(key=lambda edge: (-edge.weight, edge.source_id, edge.target_id))
        return decayed[:max(0, limit)]

    async def health_check(self) -> ComponentHealth:
        if not self.enabled:
            return ComponentHealth(name="graph", status=HealthStatus.DISABLED)
        start = time.perf_counter()
        try:
            stats = await with_timeout(
                self.store.ping(),
                self.timeout_seconds,
                service="graph",
                operation="ping"
            )
        except Exception as e:
            return ComponentHealth(
                name="graph",
                status=HealthStatus.DEGRADED,
                latency_ms=(time.perf_counter() - start) * 1000,
                message=f"confusion store unreachable: {e}"
            )
        return ComponentHealth(
            name="graph",
            status=HealthStatus.HEALTHY,
            latency_ms=(time.perf_counter() - start) * 1000,
            details=stats
        )
