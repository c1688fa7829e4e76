"""
Learning Engine

SM-2 scheduling core, embeddings, confusion graph, semantic search,
predictions and the bridge that blends them into one schedule.
"""

from hybrid_srs.learning.models import (
    DifficultyLevel,
    ScheduleSource,
    VocabularyItem,
    ReviewCard,
    Interaction,
    ConfusionEdge,
    EmbeddingRecord,
    Prediction,
    ScheduleEntry,
    ScoredResult
)

from hybrid_srs.learning.sm2 import SpacedRepetitionCore

from hybrid_srs.learning.embedding import (
    EmbeddingProvider,
    HashingEmbeddingProvider,
    OpenAIEmbeddingProvider,
    EmbeddingService
)

from hybrid_srs.learning.graph import (
    ConfusionGraphStore,
    InMemoryConfusionGraphStore,
    GraphService
)

from hybrid_srs.learning.vector_search import (
    VectorIndex,
    InMemoryVectorIndex,
    VectorSearchService
)

from hybrid_srs.learning.repository import (
    CardRepository,
    InteractionRepository,
    InMemoryCardRepository,
    InMemoryInteractionRepository,
    SqlCardRepository,
    SqlInteractionRepository,
    SqlConfusionGraphStore
)

from hybrid_srs.learning.availability import AvailabilityMonitor

from hybrid_srs.learning.learning_service import (
    PredictionProvider,
    BaselinePredictionProvider,
    GraphEnhancedPredictionProvider,
    LearningService
)

from hybrid_srs.learning.bridge import (
    BridgeMode,
    HybridSchedule,
    ReviewOutcome,
    SpacedRepetitionBridge
)

__all__ = [
    # Models
    'DifficultyLevel',
    'ScheduleSource',
    'VocabularyItem',
    'ReviewCard',
    'Interaction',
    'ConfusionEdge',
    'EmbeddingRecord',
    'Prediction',
    'ScheduleEntry',
    'ScoredResult',

    # Scheduling
    'SpacedRepetitionCore',

    # Embeddings and search
    'EmbeddingProvider',
    'HashingEmbeddingProvider',
    'OpenAIEmbeddingProvider',
    'EmbeddingService',
    'VectorIndex',
    'InMemoryVectorIndex',
    'VectorSearchService',

    # Graph
    'ConfusionGraphStore',
    'InMemoryConfusionGraphStore',
    'GraphService',

    # Storage
    'CardRepository',
    'InteractionRepository',
    'InMemoryCardRepository',
    'InMemoryInteractionRepository',
    'SqlCardRepository',
    'SqlInteractionRepository',
    'SqlConfusionGraphStore',

    # Predictions and bridge
    'AvailabilityMonitor',
    'PredictionProvider',
    'BaselinePredictionProvider',
    'GraphEnhancedPredictionProvider',
    'LearningService',
    'BridgeMode',
    'HybridSchedule',
    'ReviewOutcome',
    'SpacedRepetitionBridge'
]
