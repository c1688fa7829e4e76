"""
ORM Tables

Review cards, the append-only interaction log and confusion edges.
"""

import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from hybrid_srs.database.base import Base


class ReviewCardRecord(Base):
    __tablename__ = "review_cards"
    __table_args__ = (
        UniqueConstraint("user_id", "vocabulary_id", name="uq_review_cards_user_vocabulary"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    vocabulary_id: Mapped[str] = mapped_column(String(128))
    ease_factor: Mapped[float] = mapped_column(Float, default=2.5)
    interval: Mapped[int] = mapped_column("interval_days", Integer, default=0)
    repetitions: Mapped[int] = mapped_column(Integer, default=0)
    next_review: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), index=True)
    word: Mapped[str] = mapped_column(String(256), default="")
    last_reviewed: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, default=0)


class InteractionRecord(Base):
    __tablename__ = "interactions"
    __table_args__ = (
        Index("ix_interactions_user_vocabulary_timestamp", "user_id", "vocabulary_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128))
    vocabulary_id: Mapped[str] = mapped_column(String(128), index=True)
    success: Mapped[bool] = mapped_column(Boolean)
    response_time_ms: Mapped[int] = mapped_column(Integer)
    confused_with: Mapped[Optional[str]] = mapped_column(String(128))
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True))


class ConfusionEdgeRecord(Base):
    __tablename__ = "confusion_edges"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    source_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    weight: Mapped[float] = mapped_column(Float, default=0.0)
    last_updated: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True))
