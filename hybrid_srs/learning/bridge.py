"""
Spaced Repetition Bridge

Joins the SM-2 core with the learning service. The SM-2 date is always
computed first; predictions may only pull it earlier by a bounded amount,
and only while the enhanced path is available. Reviews are committed here,
one at a time per (user, item).
"""

import asyncio
import datetime
import enum
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hybrid_srs.common.error_handling import ConcurrencyConflictError, ValidationError
from hybrid_srs.common.logger import app_logger, with_context
from hybrid_srs.learning.availability import AvailabilityMonitor
from hybrid_srs.learning.learning_service import LearningService
from hybrid_srs.learning.models import (
    MAX_EASE_FACTOR,
    MIN_EASE_FACTOR,
    Interaction,
    ReviewCard,
    ScheduleEntry,
    ScheduleSource,
    ensure_utc,
    utcnow,
)
from hybrid_srs.learning.repository import CardRepository
from hybrid_srs.learning.sm2 import SpacedRepetitionCore, clamp

logger = app_logger.getChild("learning.bridge")


class BridgeMode(enum.Enum):
    """Which path served a call."""
    GNN_AVAILABLE = "gnn_available"
    GNN_UNAVAILABLE = "gnn_unavailable"


@dataclass
class HybridSchedule:
    """Schedule entries plus the mode that produced them."""

    entries: List[ScheduleEntry]
    enhanced: bool
    mode: BridgeMode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "enhanced": self.enhanced,
            "mode": self.mode.value
        }


@dataclass
class ReviewOutcome:
    """Result of a committed review."""

    card: ReviewCard
    interaction: Interaction
    quality: int
    attempts: int = 1
    previous: Optional[ReviewCard] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card": self.card.to_dict(),
            "interaction": self.interaction.to_dict(),
            "quality": self.quality,
            "attempts": self.attempts
        }


class SpacedRepetitionBridge:
    """Hybrid scheduling, difficulty adaptation and review commits."""

    def __init__(
        self,
        core: SpacedRepetitionCore,
        learning: LearningService,
        cards: CardRepository,
        features: Any,
        bridge_config: Any,
        monitor: Optional[AvailabilityMonitor] = None
    ):
        """
        Args:
            core: SM-2 update rule
            learning: Prediction source
            cards: Card repository commits go to
            features: FeatureFlags (read live)
            bridge_config: BridgeConfig section
            monitor: Availability monitor; defaults to the learning service's
        """
        self.core = core
        self.learning = learning
        self.cards = cards
        self.features = features
        self.config = bridge_config
        self.monitor = monitor or learning.monitor
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._waiters: Dict[Tuple[str, str], int] = {}

    def is_gnn_available(self) -> bool:
        return bool(self.features.use_gnn_learning) and self.monitor.is_available()

    @property
    def mode(self) -> BridgeMode:
        return BridgeMode.GNN_AVAILABLE if self.is_gnn_available() else BridgeMode.GNN_UNAVAILABLE

    def _baseline_entry(self, card: ReviewCard, now: datetime.datetime) -> ScheduleEntry:
        return ScheduleEntry(
            card_id=card.id,
            vocabulary_id=card.vocabulary_id,
            scheduled_date=self.core.baseline_date(card, now),
            confidence_score=0.0,
            source=ScheduleSource.SM2
        )

    def shift_days(self, rate: float, confidence: float) -> float:
        """How many days earlier than SM-2 a prediction moves a review."""
        return self.config.max_shift_days * (1.0 - clamp(rate, 0.0, 1.0)) * clamp(confidence, 0.0, 1.0)

    async def get_hybrid_schedule(
        self,
        user_id: str,
        cards: Sequence[ReviewCard],
        now: Optional[datetime.datetime] = None
    ) -> HybridSchedule:
        """
        Schedule ``cards`` for ``user_id``.

        With the enhanced path available each card's SM-2 date is moved
        earlier by ``max_shift_days * (1 - rate) * confidence`` days, never
        before ``now``. An overdue card is scheduled at ``now``. Otherwise every
        entry is the SM-2 date unchanged. A failed prediction only affects
        its own card.
        """
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        now = ensure_utc(now) if now else utcnow()

        if not self.is_gnn_available():
            return HybridSchedule(
                entries=[self._baseline_entry(card, now) for card in cards],
                enhanced=False,
                mode=BridgeMode.GNN_UNAVAILABLE
            )

        entries = []
        enhanced = False
        for card in cards:
            baseline = self.core.baseline_date(card, now)
            try:
                prediction = await self.learning.get_prediction(user_id, card.vocabulary_id, card=card, now=now)
            except Exception as e:
                logger.warning(f"Prediction failed for card {card.id}, using SM-2 date: {e}")
                entries.append(self._baseline_entry(card, now))
                continue
            if prediction.baseline_only:
                entries.append(self._baseline_entry(card, now))
                continue

            shifted = baseline - datetime.timedelta(
                days=self.shift_days(prediction.predicted_success_rate, prediction.confidence)
            )
            enhanced = True
            entries.append(ScheduleEntry(
                card_id=card.id,
                vocabulary_id=card.vocabulary_id,
                scheduled_date=max(now, min(baseline, shifted)),
                confidence_score=prediction.confidence,
                recommended_related=list(prediction.suggested_related_words),
                source=ScheduleSource.HYBRID,
                predicted_success_rate=prediction.predicted_success_rate
            ))

        return HybridSchedule(
            entries=entries,
            enhanced=enhanced,
            mode=BridgeMode.GNN_AVAILABLE if enhanced else BridgeMode.GNN_UNAVAILABLE
        )

    async def adapt_difficulty(
        self,
        card: ReviewCard,
        user_id: Optional[str] = None,
        now: Optional[datetime.datetime] = None
    ) -> ReviewCard:
        """
        Nudge ``card.ease_factor`` toward the recommended difficulty.

        Only when the enhanced path is available and the prediction is
        confident enough; the step is at most ``max_ease_step`` and the result
        stays within the SM-2 ease bounds. Returns a new card, nothing is saved.
        """
        user_id = user_id or card.user_id
        if not self.is_gnn_available():
            return replace(card)

        prediction = await self.learning.get_prediction(user_id, card.vocabulary_id, card=card, now=now)
        if prediction.baseline_only or prediction.confidence < self.config.min_confidence:
            return replace(card)

        target = prediction.recommended_difficulty.target_ease
        step = clamp(target - card.ease_factor, -self.config.max_ease_step, self.config.max_ease_step)
        ease = clamp(card.ease_factor + step, MIN_EASE_FACTOR, MAX_EASE_FACTOR)
        if ease != card.ease_factor:
            logger.debug(
                f"Adapted ease for card {card.id}: {card.ease_factor:.2f} -> {ease:.2f} "
                f"({prediction.recommended_difficulty.value})"
            )
        return replace(card, ease_factor=round(ease, 4))

    def _lock_for(self, key: Tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def submit_review(
        self,
        user_id: str,
        vocabulary_id: str,
        success: bool,
        response_time_ms: int,
        confused_with: Optional[str] = None,
        word: Optional[str] = None,
        now: Optional[datetime.datetime] = None
    ) -> ReviewOutcome:
        """
        Record a review and advance the card.

        Reviews of the same (user, item) are applied one at a time. The
        interaction is appended first (with its best-effort confusion), then
        the SM-2 result is committed under an optimistic version check; on a
        conflict the card is re-read and recomputed up to
        ``max_commit_retries`` times.

        Raises:
            ValidationError: invalid ids or response time
            ConcurrencyConflictError: the card kept changing underneath
        """
        key = (user_id, vocabulary_id)
        lock = self._lock_for(key)
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                return await self._apply_review(
                    user_id, vocabulary_id, success, response_time_ms, confused_with, word, now
                )
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    async def _apply_review(
        self,
        user_id: str,
        vocabulary_id: str,
        success: bool,
        response_time_ms: int,
        confused_with: Optional[str],
        word: Optional[str],
        now: Optional[datetime.datetime]
    ) -> ReviewOutcome:
        now = ensure_utc(now) if now else utcnow()
        log = with_context(logger.name, user_id=user_id, vocabulary_id=vocabulary_id)

        interaction = await self.learning.record_interaction(
            user_id, vocabulary_id, success, response_time_ms,
            confused_with=confused_with, timestamp=now
        )
        quality = self.core.quality_for(success, response_time_ms)

        last_conflict: Optional[ConcurrencyConflictError] = None
        for attempt in range(1, self.config.max_commit_retries + 1):
            stored = await self.cards.get(user_id, vocabulary_id)
            current = stored or ReviewCard.new(user_id, vocabulary_id, word=word or "", now=now)
            if word and not current.word:
                current = replace(current, word=word)
            updated = self.core.compute_next(current, success, response_time_ms, now)
            try:
                committed = await self.cards.save(updated, expected_version=current.version)
            except ConcurrencyConflictError as e:
                last_conflict = e
                log.warning(f"Card version conflict on attempt {attempt}, retrying")
                continue
            log.info(
                f"Review committed: quality={quality} interval={committed.interval} "
                f"ease={committed.ease_factor} version={committed.version}"
            )
            return ReviewOutcome(
                card=committed,
                interaction=interaction,
                quality=quality,
                attempts=attempt,
                previous=stored
            )

        log.error(f"Giving up on card commit after {self.config.max_commit_retries} conflicts")
        raise last_conflict
