"""
Learning Domain Models

Vocabulary items, review cards, interaction events, confusion edges,
embedding records and the read-models returned by prediction and scheduling.
All timestamps are timezone-aware UTC.
"""

import enum
import uuid
import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MIN_EASE_FACTOR = 1.3
MAX_EASE_FACTOR = 2.5
DEFAULT_EASE_FACTOR = 2.5
MAX_RESPONSE_TIME_MS = 300000


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(value: datetime.datetime) -> datetime.datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return ensure_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.datetime.fromisoformat(text))


def _format_datetime(value: Optional[datetime.datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class DifficultyLevel(enum.Enum):
    """Difficulty tiers for vocabulary items."""
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

    @classmethod
    def from_success_rate(cls, rate: float) -> 'DifficultyLevel':
        """
        Map a predicted success rate to the tier the learner can handle.

        Args:
            rate: Predicted success rate (0-1)

        Returns:
            BEGINNER below 0.5, INTERMEDIATE below 0.8, otherwise ADVANCED
        """
        if rate < 0.5:
            return cls.BEGINNER
        elif rate < 0.8:
            return cls.INTERMEDIATE
        return cls.ADVANCED

    def step_up(self) -> 'DifficultyLevel':
        order = list(DifficultyLevel)
        return order[min(order.index(self) + 1, len(order) - 1)]

    def step_down(self) -> 'DifficultyLevel':
        order = list(DifficultyLevel)
        return order[max(order.index(self) - 1, 0)]

    @property
    def target_ease(self) -> float:
        """Ease factor a card settles toward at this tier."""
        return {
            DifficultyLevel.BEGINNER: 1.7,
            DifficultyLevel.INTERMEDIATE: 2.1,
            DifficultyLevel.ADVANCED: 2.5
        }[self]


class ScheduleSource(enum.Enum):
    """Which path produced a scheduled date."""
    SM2 = "sm2"
    GNN = "gnn"
    HYBRID = "hybrid"


@dataclass
class VocabularyItem:
    """A word or phrase being learned."""

    id: str
    word: str
    translation: str = ""
    language: str = "es"
    difficulty: DifficultyLevel = DifficultyLevel.BEGINNER
    embedding: Optional[List[float]] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id:
            self.id = str(uuid.uuid4())
        if isinstance(self.difficulty, str):
            self.difficulty = DifficultyLevel(self.difficulty)

    @property
    def search_text(self) -> str:
        """Text indexed for semantic search."""
        if self.translation:
            return f"{self.word} {self.translation}"
        return self.word

    def payload(self) -> Dict[str, Any]:
        """Structured fields stored next to the vector and used by filters."""
        return {
            "word": self.word,
            "translation": self.translation,
            "language": self.language,
            "difficulty": self.difficulty.value,
            "tags": list(self.tags),
            **self.metadata
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "word": self.word,
            "translation": self.translation,
            "language": self.language,
            "difficulty": self.difficulty.value,
            "tags": list(self.tags),
            "metadata": dict(self.metadata)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VocabularyItem':
        return cls(
            id=data.get("id") or "",
            word=data["word"],
            translation=data.get("translation", ""),
            language=data.get("language", "es"),
            difficulty=data.get("difficulty", DifficultyLevel.BEGINNER.value),
            embedding=data.get("embedding"),
            tags=list(data.get("tags") or []),
            metadata=dict(data.get("metadata") or {})
        )


@dataclass
class ReviewCard:
    """
    Scheduling state for one (user, vocabulary item) pair.

    ``version`` increases by one on every committed update and is what the
    repositories compare for optimistic concurrency.
    """

    id: str
    user_id: str
    vocabulary_id: str
    ease_factor: float = DEFAULT_EASE_FACTOR
    interval: int = 0
    repetitions: int = 0
    next_review: Optional[datetime.datetime] = None
    word: str = ""
    last_reviewed: Optional[datetime.datetime] = None
    version: int = 0

    def __post_init__(self):
        if not self.id:
            self.id = str(uuid.uuid4())
        if self.next_review is not None:
            self.next_review = ensure_utc(self.next_review)
        if self.last_reviewed is not None:
            self.last_reviewed = ensure_utc(self.last_reviewed)

    @classmethod
    def new(
        cls,
        user_id: str,
        vocabulary_id: str,
        word: str = "",
        now: Optional[datetime.datetime] = None
    ) -> 'ReviewCard':
        """Create a fresh card that is due immediately."""
        return cls(
            id="",
            user_id=user_id,
            vocabulary_id=vocabulary_id,
            ease_factor=DEFAULT_EASE_FACTOR,
            interval=0,
            repetitions=0,
            next_review=now or utcnow(),
            word=word
        )

    @property
    def key(self) -> tuple:
        return (self.user_id, self.vocabulary_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "vocabulary_id": self.vocabulary_id,
            "ease_factor": self.ease_factor,
            "interval": self.interval,
            "repetitions": self.repetitions,
            "next_review": _format_datetime(self.next_review),
            "word": self.word,
            "last_reviewed": _format_datetime(self.last_reviewed),
            "version": self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReviewCard':
        return cls(
            id=data.get("id") or "",
            user_id=data["user_id"],
            vocabulary_id=data["vocabulary_id"],
            ease_factor=float(data.get("ease_factor", DEFAULT_EASE_FACTOR)),
            interval=int(data.get("interval", 0)),
            repetitions=int(data.get("repetitions", 0)),
            next_review=_parse_datetime(data.get("next_review")),
            word=data.get("word", ""),
            last_reviewed=_parse_datetime(data.get("last_reviewed")),
            version=int(data.get("version", 0))
        )


@dataclass
class Interaction:
    """One review event. Append-only."""

    user_id: str
    vocabulary_id: str
    success: bool
    response_time_ms: int
    confused_with: Optional[str] = None
    timestamp: datetime.datetime = field(default_factory=utcnow)
    id: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = str(uuid.uuid4())
        self.timestamp = ensure_utc(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "vocabulary_id": self.vocabulary_id,
            "success": self.success,
            "response_time_ms": self.response_time_ms,
            "confused_with": self.confused_with,
            "timestamp": _format_datetime(self.timestamp)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Interaction':
        return cls(
            id=data.get("id") or "",
            user_id=data["user_id"],
            vocabulary_id=data["vocabulary_id"],
            success=bool(data["success"]),
            response_time_ms=int(data.get("response_time_ms", 0)),
            confused_with=data.get("confused_with"),
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow()
        )


@dataclass
class ConfusionEdge:
    """A directed, weighted "answered source when target was asked" edge for one user."""

    user_id: str
    source_id: str
    target_id: str
    weight: float = 1.0
    last_updated: datetime.datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple:
        return (self.user_id, self.source_id, self.target_id)

    def touches(self, item_id: str) -> bool:
        return item_id in (self.source_id, self.target_id)

    def other(self, item_id: str) -> str:
        """The endpoint that is not ``item_id``."""
        return self.target_id if self.source_id == item_id else self.source_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "weight": round(self.weight, 6),
            "last_updated": _format_datetime(self.last_updated)
        }


@dataclass
class EmbeddingRecord:
    """A computed (or fallback) embedding. Derived data, safe to drop."""

    text_hash: str
    vector: List[float]
    model: str
    dimensions: int
    token_count: int = 0
    cached: bool = False
    fallback: bool = False

    def to_dict(self, include_vector: bool = True) -> Dict[str, Any]:
        data = {
            "text_hash": self.text_hash,
            "model": self.model,
            "dimensions": self.dimensions,
            "token_count": self.token_count,
            "cached": self.cached,
            "fallback": self.fallback
        }
        if include_vector:
            data["vector"] = list(self.vector)
        return data


@dataclass
class Prediction:
    """Predicted outcome of the next review of one item."""

    user_id: str
    vocabulary_id: str
    next_review_date: datetime.datetime
    predicted_success_rate: float
    confidence: float
    recommended_difficulty: DifficultyLevel
    suggested_related_words: List[str] = field(default_factory=list)
    baseline_only: bool = True
    sample_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "vocabulary_id": self.vocabulary_id,
            "next_review_date": _format_datetime(self.next_review_date),
            "predicted_success_rate": round(self.predicted_success_rate, 4),
            "confidence": round(self.confidence, 4),
            "recommended_difficulty": self.recommended_difficulty.value,
            "suggested_related_words": list(self.suggested_related_words),
            "baseline_only": self.baseline_only,
            "sample_size": self.sample_size
        }


@dataclass
class ScheduleEntry:
    """A computed review slot. Never stored."""

    card_id: str
    vocabulary_id: str
    scheduled_date: datetime.datetime
    confidence_score: float
    recommended_related: List[str] = field(default_factory=list)
    source: ScheduleSource = ScheduleSource.SM2
    predicted_success_rate: Optional[float] = None
    priority: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "card_id": self.card_id,
            "vocabulary_id": self.vocabulary_id,
            "scheduled_date": _format_datetime(self.scheduled_date),
            "confidence_score": round(self.confidence_score, 4),
            "recommended_related": list(self.recommended_related),
            "source": self.source.value
        }
        if self.predicted_success_rate is not None:
            data["predicted_success_rate"] = round(self.predicted_success_rate, 4)
        if self.priority is not None:
            data["priority"] = round(self.priority, 4)
        return data


@dataclass
class ScoredResult:
    """One vector search hit."""

    id: str
    collection: str
    similarity: float
    rank: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collection": self.collection,
            "similarity": round(self.similarity, 6),
            "rank": self.rank,
            "payload": dict(self.payload)
        }
