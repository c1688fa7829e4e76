"""
Service container.

Builds every engine service once from an AppConfig and owns their
lifecycle. The FastAPI app keeps one container on ``app.state``; tests build
their own.
"""

import asyncio
import time
from typing import Optional

from hybrid_srs.common.cache import MemoryCacheBackend
from hybrid_srs.common.logger import app_logger
from hybrid_srs.config import AppConfig
from hybrid_srs.database.init_db import Database
from hybrid_srs.health import ComponentHealth, HealthAggregator, HealthStatus
from hybrid_srs.learning.availability import AvailabilityMonitor
from hybrid_srs.learning.bridge import SpacedRepetitionBridge
from hybrid_srs.learning.embedding import EmbeddingProvider, EmbeddingService, build_provider
from hybrid_srs.learning.graph import ConfusionGraphStore, GraphService, InMemoryConfusionGraphStore
from hybrid_srs.learning.learning_service import LearningService
from hybrid_srs.learning.repository import (
    InMemoryCardRepository,
    InMemoryInteractionRepository,
    SqlCardRepository,
    SqlConfusionGraphStore,
    SqlInteractionRepository,
)
from hybrid_srs.learning.sm2 import SpacedRepetitionCore
from hybrid_srs.learning.vector_search import VOCABULARY_COLLECTION, InMemoryVectorIndex, VectorIndex, VectorSearchService

logger = app_logger.getChild("container")


class EngineContainer:
    """All engine services, wired together."""

    def __init__(
        self,
        config: AppConfig,
        provider: Optional[EmbeddingProvider] = None,
        graph_store: Optional[ConfusionGraphStore] = None,
        vector_index: Optional[VectorIndex] = None
    ):
        """
        Args:
            config: Application configuration
            provider: Embedding provider; built from ``config.embedding`` when omitted
            graph_store: Confusion edge storage; follows ``config.database`` when omitted
            vector_index: Vector index; in-memory when omitted
        """
        self.config = config
        self.features = config.features
        self.database: Optional[Database] = None

        if config.database.backend == "sql":
            self.database = Database(config.database.url, echo=config.database.echo)
            self.cards = SqlCardRepository(self.database)
            self.interactions = SqlInteractionRepository(self.database)
            graph_store = graph_store or SqlConfusionGraphStore(self.database)
        else:
            self.cards = InMemoryCardRepository()
            self.interactions = InMemoryInteractionRepository()
            graph_store = graph_store or InMemoryConfusionGraphStore()

        self.embedding_cache = MemoryCacheBackend(
            max_size=config.cache.max_size,
            default_ttl=config.cache.ttl_seconds,
            name="embeddings"
        )
        self.embedding_service = EmbeddingService(
            provider=provider or build_provider(config.embedding),
            cache=self.embedding_cache,
            features=self.features,
            embedding_config=config.embedding,
            cache_ttl_seconds=config.cache.ttl_seconds,
            timeout_seconds=config.timeouts.embedding_seconds
        )
        self.vector_search = VectorSearchService(
            embedding_service=self.embedding_service,
            index=vector_index or InMemoryVectorIndex(),
            features=self.features,
            search_config=config.search
        )
        self.graph_service = GraphService(
            store=graph_store,
            features=self.features,
            graph_config=config.graph,
            timeout_seconds=config.timeouts.graph_seconds,
            timeout_retries=config.timeouts.retries,
            retry_delay=config.timeouts.retry_delay_seconds,
            similarity_source=self._similar_vocabulary
        )
        self.monitor = AvailabilityMonitor.from_config(config.bridge)
        self.learning_service = LearningService(
            cards=self.cards,
            interactions=self.interactions,
            graph=self.graph_service,
            features=self.features,
            learning_config=config.learning,
            monitor=self.monitor,
            timeout_seconds=config.timeouts.prediction_seconds,
            timeout_retries=config.timeouts.retries,
            retry_delay=config.timeouts.retry_delay_seconds
        )
        self.core = SpacedRepetitionCore.from_config(config.sm2)
        self.bridge = SpacedRepetitionBridge(
            core=self.core,
            learning=self.learning_service,
            cards=self.cards,
            features=self.features,
            bridge_config=config.bridge,
            monitor=self.monitor
        )

        self.health = HealthAggregator(timeout_seconds=config.timeouts.health_seconds, version=config.version)
        self.health.register("embedding", self.embedding_service.health_check)
        self.health.register("vector_search", self.vector_search.health_check)
        self.health.register("graph", self.graph_service.health_check)
        self.health.register("learning", self.learning_service.health_check)
        if self.database is not None:
            self.health.register("database", self._database_health)

        self._training_task: Optional[asyncio.Task] = None
        self._started = False

    async def _similar_vocabulary(self, item_id: str, limit: int):
        return await self.vector_search.find_similar(VOCABULARY_COLLECTION, item_id, limit=limit)

    async def _database_health(self) -> ComponentHealth:
        start = time.perf_counter()
        await self.database.ping()
        return ComponentHealth(
            name="database",
            status=HealthStatus.HEALTHY,
            latency_ms=(time.perf_counter() - start) * 1000,
            details={"dialect": self.database.database_url.split("://")[0]}
        )

    async def start(self, run_training: bool = True) -> None:
        """Open storage and start background training."""
        if self._started:
            return
        if self.database is not None:
            await self.database.initialize()
        if run_training:
            self._training_task = asyncio.create_task(
                self.learning_service.training_loop(self.config.learning.training_interval_seconds)
            )
        self._started = True
        logger.info(
            f"Engine started (storage={self.config.database.backend}, "
            f"embedding={self.embedding_service.provider.name}, "
            f"gnn_learning={self.features.use_gnn_learning})"
        )

    async def close(self) -> None:
        if self._training_task is not None:
            self._training_task.cancel()
            try:
                await self._training_task
            except asyncio.CancelledError:
                pass
            self._training_task = None
        await self.embedding_service.close()
        if self.database is not None:
            await self.database.close()
        self._started = False
        logger.info("Engine stopped")
