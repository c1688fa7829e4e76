"""
Request models.

Bodies accept camelCase (``userId``) as well as snake_case (``user_id``).
"""

import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from hybrid_srs.learning.models import (
    DEFAULT_EASE_FACTOR,
    MAX_EASE_FACTOR,
    MAX_RESPONSE_TIME_MS,
    MIN_EASE_FACTOR,
    DifficultyLevel,
    ReviewCard,
    VocabularyItem,
)

MAX_BATCH_SIZE = 100


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InteractionRequest(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    vocabulary_id: str = Field(..., min_length=1, max_length=128)
    success: bool
    response_time_ms: int = Field(..., ge=0, le=MAX_RESPONSE_TIME_MS)
    confused_with: Optional[str] = Field(None, max_length=128)
    word: Optional[str] = Field(None, max_length=256)


class CardPayload(CamelModel):
    """A review card as sent by a client."""
    id: Optional[str] = None
    vocabulary_id: str = Field(..., min_length=1, max_length=128)
    ease_factor: float = Field(DEFAULT_EASE_FACTOR, ge=MIN_EASE_FACTOR, le=MAX_EASE_FACTOR)
    interval: int = Field(0, ge=0)
    repetitions: int = Field(0, ge=0)
    next_review: Optional[datetime.datetime] = None
    word: str = ""
    version: int = Field(0, ge=0)

    def to_card(self, user_id: str) -> ReviewCard:
        return ReviewCard(
            id=self.id or "",
            user_id=user_id,
            vocabulary_id=self.vocabulary_id,
            ease_factor=self.ease_factor,
            interval=self.interval,
            repetitions=self.repetitions,
            next_review=self.next_review,
            word=self.word,
            version=self.version
        )


class ScheduleRequest(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    cards: List[CardPayload] = Field(default_factory=list, max_length=500)


class AdaptDifficultyRequest(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    card: CardPayload


class PredictionRequest(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    vocabulary_id: str = Field(..., min_length=1, max_length=128)


class SearchRequest(CamelModel):
    query: str = Field(..., min_length=1)
    collection: str = "vocabulary"
    limit: Optional[int] = Field(None, ge=1)
    threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)
    sql_filter: Optional[Dict[str, Any]] = None


class IndexItem(CamelModel):
    """
    One document to index.

    Vocabulary items need ``word``; other collections take ``text`` and keep
    ``metadata`` as the stored payload.
    """
    id: str = Field(..., min_length=1, max_length=128)
    word: Optional[str] = None
    text: Optional[str] = None
    translation: str = ""
    language: str = "es"
    difficulty: DifficultyLevel = DifficultyLevel.BEGINNER
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def require_text(self):
        if not (self.word or self.text):
            raise ValueError("either word or text is required")
        return self

    def to_vocabulary_item(self) -> VocabularyItem:
        return VocabularyItem(
            id=self.id,
            word=self.word or self.text,
            translation=self.translation,
            language=self.language,
            difficulty=self.difficulty,
            tags=list(self.tags),
            metadata=dict(self.metadata)
        )

    def to_document(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text or self.word, "payload": dict(self.metadata)}


class IndexRequest(CamelModel):
    collection: str = "vocabulary"
    items: List[IndexItem] = Field(..., min_length=1, max_length=1000)


class EmbedRequest(CamelModel):
    text: Optional[str] = None
    texts: Optional[List[str]] = Field(None, min_length=1, max_length=MAX_BATCH_SIZE)
    model: Optional[str] = None
    dimensions: Optional[int] = Field(None, ge=1)
    include_vector: bool = True

    @model_validator(mode="after")
    def one_of_text_or_texts(self):
        if (self.text is None) == (self.texts is None):
            raise ValueError("provide exactly one of text or texts")
        return self


class SimilarityRequest(CamelModel):
    text_a: Optional[str] = None
    text_b: Optional[str] = None
    vector_a: Optional[List[float]] = None
    vector_b: Optional[List[float]] = None

    @model_validator(mode="after")
    def one_complete_pair(self):
        texts = self.text_a is not None and self.text_b is not None
        vectors = self.vector_a is not None and self.vector_b is not None
        if texts == vectors:
            raise ValueError("provide either textA and textB or vectorA and vectorB")
        return self
