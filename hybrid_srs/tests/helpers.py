"""
Shared test fixtures: small configs, fake providers and stores.
"""

import asyncio
import datetime
from typing import Any, Dict, List, Optional, Sequence

from hybrid_srs.common.error_handling import ExternalServiceError
from hybrid_srs.config import AppConfig
from hybrid_srs.learning.embedding import EmbeddingProvider, HashingEmbeddingProvider
from hybrid_srs.learning.graph import ConfusionGraphStore
from hybrid_srs.learning.models import ConfusionEdge

TEST_DIMENSIONS = 64


def make_config(**overrides: Dict[str, Any]) -> AppConfig:
    """AppConfig for tests: small vectors, no retry delays, quiet logging."""
    data: Dict[str, Any] = {
        "environment": "testing",
        "embedding": {"dimensions": TEST_DIMENSIONS, "max_retries": 0, "retry_delay": 0.0},
        "logging": {"level": "WARNING"},
        "timeouts": {"retry_delay_seconds": 0.0},
    }
    for section, values in overrides.items():
        if isinstance(values, dict) and isinstance(data.get(section), dict):
            data[section] = {**data[section], **values}
        else:
            data[section] = values
    return AppConfig(**data)


class CountingProvider(HashingEmbeddingProvider):
    """Hashing provider that records every call."""

    def __init__(self):
        super().__init__()
        self.calls: List[List[str]] = []

    async def embed(self, texts: Sequence[str], model: str, dimensions: int) -> List[List[float]]:
        self.calls.append(list(texts))
        return await super().embed(texts, model, dimensions)


class FailingProvider(EmbeddingProvider):
    """Provider that always errors."""

    def __init__(self):
        self.calls = 0

    @property
    def name(self) -> str:
        return "failing"

    async def embed(self, texts: Sequence[str], model: str, dimensions: int) -> List[List[float]]:
        self.calls += 1
        raise ExternalServiceError(service="failing", operation="embed")


class SlowProvider(HashingEmbeddingProvider):
    """Provider that takes ``delay`` seconds per call."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    @property
    def name(self) -> str:
        return "slow"

    async def embed(self, texts: Sequence[str], model: str, dimensions: int) -> List[List[float]]:
        await asyncio.sleep(self.delay)
        return await super().embed(texts, model, dimensions)


class FailingGraphStore(ConfusionGraphStore):
    """Graph store whose every call raises."""

    def __init__(self):
        self.calls = 0

    async def increment(
        self,
        user_id: str,
        source_id: str,
        target_id: str,
        amount: float = 1.0,
        at: Optional[datetime.datetime] = None
    ) -> ConfusionEdge:
        self.calls += 1
        raise RuntimeError("graph store down")

    async def edges_for_item(self, user_id: str, item_id: str) -> List[ConfusionEdge]:
        self.calls += 1
        raise RuntimeError("graph store down")

    async def edges_for_user(self, user_id: str) -> List[ConfusionEdge]:
        self.calls += 1
        raise RuntimeError("graph store down")

    async def ping(self) -> Dict[str, Any]:
        raise RuntimeError("graph store down")
