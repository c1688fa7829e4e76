"""
Learning Service

Records review interactions, predicts how the next review of an item will
go, and ranks the user's due cards. Predictions come from one of two
strategies picked per call: a baseline built only from the user's own
history, and a graph-enhanced one that also looks at confusion patterns.
The enhanced strategy is only used while GNN learning is switched on and the
availability monitor says it has been working; any failure in it degrades
that call to the baseline.
"""

import abc
import asyncio
import datetime
import time
from typing import Any, Dict, List, Optional, Sequence

from hybrid_srs.common.error_handling import ValidationError, retry_with_timeout
from hybrid_srs.common.logger import app_logger, log_execution_time, with_context
from hybrid_srs.health import ComponentHealth, HealthStatus
from hybrid_srs.learning.availability import AvailabilityMonitor
from hybrid_srs.learning.graph import GraphService
from hybrid_srs.learning.models import (
    MAX_RESPONSE_TIME_MS,
    ConfusionEdge,
    DifficultyLevel,
    Interaction,
    Prediction,
    ReviewCard,
    ScheduleEntry,
    ScheduleSource,
    ensure_utc,
    utcnow,
)
from hybrid_srs.learning.repository import CardRepository, InteractionRepository
from hybrid_srs.learning.sm2 import SpacedRepetitionCore, clamp

logger = app_logger.getChild("learning.service")

# Pseudo-observations pulling sparse item priors toward the global prior
PRIOR_SMOOTHING = 2.0


def rolling_success_rate(history: Sequence[Interaction], decay: float, prior: float) -> float:
    """
    Exponentially weighted success rate of ``history`` (newest first).

    The newest interaction has weight 1, the one before it ``decay``, then
    ``decay ** 2`` and so on. Empty history gives ``prior``.
    """
    if not history:
        return prior
    weighted = 0.0
    total = 0.0
    weight = 1.0
    for interaction in history:
        if interaction.success:
            weighted += weight
        total += weight
        weight *= decay
    return weighted / total


def recommended_difficulty(rate: float, interval_days: int, learning_config: Any) -> DifficultyLevel:
    """
    Difficulty tier for a predicted success rate.

    A learner who is succeeding on a short interval is pushed one tier up; one
    who is failing on a long interval is eased one tier down.
    """
    level = DifficultyLevel.from_success_rate(rate)
    if rate >= learning_config.easy_rate_threshold and interval_days <= learning_config.short_interval_days:
        return level.step_up()
    if rate < learning_config.hard_rate_threshold and interval_days >= learning_config.long_interval_days:
        return level.step_down()
    return level


def optimal_review_date(
    now: datetime.datetime,
    interval_days: int,
    rate: float,
    learning_config: Any
) -> datetime.datetime:
    """``now + interval * (0.5 + 2 * rate)`` days, clamped to the configured range."""
    days = max(interval_days, 1) * (0.5 + 2.0 * rate)
    days = clamp(days, learning_config.min_interval_days, learning_config.max_interval_days)
    return now + datetime.timedelta(days=days)


class PredictionProvider(abc.ABC):
    """Strategy producing a Prediction from a card and its recent history."""

    name = "base"

    def __init__(self, learning_config: Any, priors: Dict[str, float]):
        self.config = learning_config
        self.priors = priors

    def base_rate(self, vocabulary_id: str, history: Sequence[Interaction]) -> float:
        prior = self.priors.get(vocabulary_id, self.config.prior_success_rate)
        return rolling_success_rate(history, self.config.recency_decay, prior)

    @abc.abstractmethod
    async def predict(
        self,
        user_id: str,
        vocabulary_id: str,
        card: Optional[ReviewCard],
        history: Sequence[Interaction],
        now: datetime.datetime
    ) -> Prediction:
        pass


class BaselinePredictionProvider(PredictionProvider):
    """History-only prediction with zero confidence and no related words."""

    name = "baseline"

    async def predict(
        self,
        user_id: str,
        vocabulary_id: str,
        card: Optional[ReviewCard],
        history: Sequence[Interaction],
        now: datetime.datetime
    ) -> Prediction:
        interval = card.interval if card else 0
        rate = self.base_rate(vocabulary_id, history)
        return Prediction(
            user_id=user_id,
            vocabulary_id=vocabulary_id,
            next_review_date=optimal_review_date(now, interval, rate, self.config),
            predicted_success_rate=rate,
            confidence=0.0,
            recommended_difficulty=recommended_difficulty(rate, interval, self.config),
            suggested_related_words=[],
            baseline_only=True,
            sample_size=len(history)
        )


class GraphEnhancedPredictionProvider(PredictionProvider):
    """
    History plus confusion graph.

    Confusions touching the item lower both the predicted success rate and
    the confidence, by ``min(max_confusion_penalty, per_weight * weight)``.
    Confidence grows with the number of observed interactions and reaches 1
    at ``full_confidence_interactions``.
    """

    name = "graph_enhanced"

    def __init__(self, learning_config: Any, priors: Dict[str, float], graph: GraphService):
        super().__init__(learning_config, priors)
        self.graph = graph

    @property
    def full_confidence_at(self) -> int:
        return max(self.config.full_confidence_interactions, self.config.min_interactions_for_confidence)

    def confidence_for(self, sample_size: int, penalty: float) -> float:
        coverage = min(sample_size, self.full_confidence_at) / self.full_confidence_at
        return clamp(coverage * (1.0 - penalty), 0.0, 1.0)

    def penalty_for(self, weight: float) -> float:
        return min(self.config.max_confusion_penalty, self.config.confusion_penalty_per_weight * weight)

    async def predict(
        self,
        user_id: str,
        vocabulary_id: str,
        card: Optional[ReviewCard],
        history: Sequence[Interaction],
        now: datetime.datetime
    ) -> Prediction:
        interval = card.interval if card else 0
        weight = await self.graph.confusion_penalty_weight(user_id, vocabulary_id, now)
        penalty = self.penalty_for(weight)
        rate = clamp(self.base_rate(vocabulary_id, history) - penalty, 0.0, 1.0)

        related: List[str] = []
        if self.config.max_related_words > 0:
            related = await self.graph.get_related(user_id, vocabulary_id, limit=self.config.max_related_words)

        return Prediction(
            user_id=user_id,
            vocabulary_id=vocabulary_id,
            next_review_date=optimal_review_date(now, interval, rate, self.config),
            predicted_success_rate=rate,
            confidence=self.confidence_for(len(history), penalty),
            recommended_difficulty=recommended_difficulty(rate, interval, self.config),
            suggested_related_words=related[:self.config.max_related_words],
            baseline_only=False,
            sample_size=len(history)
        )


class LearningService:
    """Interaction recording, predictions and review prioritisation."""

    def __init__(
        self,
        cards: CardRepository,
        interactions: InteractionRepository,
        graph: GraphService,
        features: Any,
        learning_config: Any,
        monitor: Optional[AvailabilityMonitor] = None,
        timeout_seconds: float = 0.5,
        timeout_retries: int = 1,
        retry_delay: float = 0.05
    ):
        """
        Args:
            cards: Review card repository
            interactions: Interaction log
            graph: Confusion graph service
            features: FeatureFlags (read live)
            learning_config: LearningConfig section
            monitor: Availability monitor shared with the bridge
            timeout_seconds: Budget for store reads and the enhanced prediction
            timeout_retries: Extra attempts for a call that timed out
            retry_delay: Initial backoff between those attempts
        """
        self.cards = cards
        self.interactions = interactions
        self.graph = graph
        self.features = features
        self.config = learning_config
        self.monitor = monitor or AvailabilityMonitor()
        self.timeout_seconds = timeout_seconds
        self.timeout_retries = timeout_retries
        self.retry_delay = retry_delay
        self.priors: Dict[str, float] = {}
        self.last_trained_at: Optional[datetime.datetime] = None

        self.baseline_provider = BaselinePredictionProvider(learning_config, self.priors)
        self.enhanced_provider = GraphEnhancedPredictionProvider(learning_config, self.priors, graph)

    async def _bounded(self, service: str, operation: str, factory):
        return await retry_with_timeout(
            factory,
            self.timeout_seconds,
            service=service,
            operation=operation,
            max_retries=self.timeout_retries,
            retry_delay=self.retry_delay
        )

    def select_provider(self) -> PredictionProvider:
        """The strategy for this call: enhanced only while GNN learning is on and healthy."""
        if self.features.use_gnn_learning and self.monitor.is_available():
            return self.enhanced_provider
        return self.baseline_provider

    async def record_interaction(
        self,
        user_id: str,
        vocabulary_id: str,
        success: bool,
        response_time_ms: int,
        confused_with: Optional[str] = None,
        timestamp: Optional[datetime.datetime] = None
    ) -> Interaction:
        """
        Append an interaction and, when the answer was a confusion, record it in the graph.

        The confusion is best effort: a graph failure is logged and the
        interaction still stands.

        Raises:
            ValidationError: missing ids or response time outside [0, 300000]
        """
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        if not vocabulary_id:
            raise ValidationError("vocabulary_id is required", field="vocabulary_id")
        if response_time_ms is None or not 0 <= response_time_ms <= MAX_RESPONSE_TIME_MS:
            raise ValidationError(
                f"response_time_ms must be between 0 and {MAX_RESPONSE_TIME_MS}",
                field="response_time_ms",
                details={"value": response_time_ms}
            )

        interaction = Interaction(
            user_id=user_id,
            vocabulary_id=vocabulary_id,
            success=bool(success),
            response_time_ms=int(response_time_ms),
            confused_with=confused_with or None,
            timestamp=timestamp or utcnow()
        )
        await self.interactions.append(interaction)

        if interaction.confused_with and interaction.confused_with != vocabulary_id:
            await self.graph.record_confusion(user_id, vocabulary_id, interaction.confused_with)

        with_context(logger.name, user_id=user_id, vocabulary_id=vocabulary_id).debug(
            f"Recorded interaction success={interaction.success} "
            f"response_time_ms={interaction.response_time_ms}"
        )
        return interaction

    async def _recent_history(self, user_id: str, vocabulary_id: str) -> List[Interaction]:
        try:
            return await self._bounded(
                "interactions",
                "recent",
                lambda: self.interactions.recent(user_id, vocabulary_id, self.config.window_size)
            )
        except Exception as e:
            logger.warning(f"History lookup failed for user {user_id}, item {vocabulary_id}: {e}")
            return []

    async def get_prediction(
        self,
        user_id: str,
        vocabulary_id: str,
        card: Optional[ReviewCard] = None,
        now: Optional[datetime.datetime] = None
    ) -> Prediction:
        """
        Predict the next review of one item.

        Never raises for dependency failures: the enhanced path falls back to
        the baseline and the failure is counted by the availability monitor.

        Args:
            user_id: Learner
            vocabulary_id: Item
            card: The learner's card, when the caller already has it
            now: Reference time
        """
        if not user_id or not vocabulary_id:
            raise ValidationError("user_id and vocabulary_id are required")
        now = ensure_utc(now) if now else utcnow()

        if card is None:
            try:
                card = await self._bounded("cards", "get", lambda: self.cards.get(user_id, vocabulary_id))
            except Exception as e:
                logger.warning(f"Card lookup failed for user {user_id}, item {vocabulary_id}: {e}")
        history = await self._recent_history(user_id, vocabulary_id)

        provider = self.select_provider()
        if provider is self.enhanced_provider:
            try:
                prediction = await self._bounded(
                    "learning",
                    "predict",
                    lambda: provider.predict(user_id, vocabulary_id, card, history, now)
                )
            except Exception as e:
                self.monitor.record_failure(e)
                with_context(logger.name, user_id=user_id, vocabulary_id=vocabulary_id).warning(
                    f"Enhanced prediction failed, using baseline: {e}"
                )
            else:
                self.monitor.record_success()
                return prediction

        return await self.baseline_provider.predict(user_id, vocabulary_id, card, history, now)

    async def get_optimal_review_schedule(
        self,
        user_id: str,
        limit: int = 20,
        now: Optional[datetime.datetime] = None
    ) -> List[ScheduleEntry]:
        """
        Rank the user's due cards, most urgent first.

        ``priority = days_overdue * overdue_weight + (1 - predicted_success) * 100``
        """
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        if limit < 1:
            raise ValidationError("limit must be at least 1", field="limit", details={"value": limit})
        now = ensure_utc(now) if now else utcnow()

        due = await self.cards.due_for_user(user_id, now)
        gate = asyncio.Semaphore(self.config.max_concurrent_predictions)

        async def predict(card: ReviewCard) -> Prediction:
            async with gate:
                return await self.get_prediction(user_id, card.vocabulary_id, card=card, now=now)

        predictions = await asyncio.gather(*(predict(card) for card in due))

        entries = []
        for card, prediction in zip(due, predictions):
            overdue = SpacedRepetitionCore.days_overdue(card, now)
            priority = overdue * self.config.overdue_weight + (1.0 - prediction.predicted_success_rate) * 100.0
            entries.append(ScheduleEntry(
                card_id=card.id,
                vocabulary_id=card.vocabulary_id,
                scheduled_date=SpacedRepetitionCore.baseline_date(card, now),
                confidence_score=prediction.confidence,
                recommended_related=list(prediction.suggested_related_words),
                source=ScheduleSource.SM2 if prediction.baseline_only else ScheduleSource.GNN,
                predicted_success_rate=prediction.predicted_success_rate,
                priority=priority
            ))

        entries.sort(key=lambda entry: (-entry.priority, entry.vocabulary_id))
        return entries[:limit]

    async def get_confusion_pairs(self, user_id: str, limit: int = 20) -> List[ConfusionEdge]:
        if not user_id:
            raise ValidationError("user_id is required", field="user_id")
        return await self.graph.get_confusion_pairs(user_id, limit=limit)

    @log_execution_time(logger)
    async def train(self) -> Dict[str, Any]:
        """
        Recompute per-item success priors from the whole interaction log.

        Each prior is the item's observed success rate smoothed toward
        ``prior_success_rate``. Replaces the previous priors in place so the
        prediction providers see the new values immediately.
        """
        totals = await self.interactions.item_success_totals()
        prior = self.config.prior_success_rate
        priors = {
            vocabulary_id: (successes + prior * PRIOR_SMOOTHING) / (attempts + PRIOR_SMOOTHING)
            for vocabulary_id, (successes, attempts) in totals.items()
        }
        self.priors.clear()
        self.priors.update(priors)
        self.last_trained_at = utcnow()
        summary = {
            "items": len(priors),
            "interactions": sum(attempts for _, attempts in totals.values()),
            "trained_at": self.last_trained_at.isoformat()
        }
        logger.info(f"Trained item priors: {summary['items']} items from {summary['interactions']} interactions")
        return summary

    async def training_loop(self, interval_seconds: float) -> None:
        """Run ``train`` every ``interval_seconds`` while GNN learning is on. Runs until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            if not self.features.use_gnn_learning:
                continue
            try:
                await self.train()
            except Exception as e:
                logger.error(f"Scheduled training failed: {e}")

    async def health_check(self) -> ComponentHealth:
        start = time.perf_counter()
        details = {
            "mode": self.select_provider().name,
            "gnn_learning": bool(self.features.use_gnn_learning),
            "monitor": self.monitor.snapshot(),
            "trained_items": len(self.priors),
            "last_trained_at": self.last_trained_at.isoformat() if self.last_trained_at else None
        }
        try:
            await self.interactions.ping()
            await self.cards.ping()
        except Exception as e:
            return ComponentHealth(
                name="learning",
                status=HealthStatus.UNHEALTHY,
                latency_ms=(time.perf_counter() - start) * 1000,
                message=f"storage unreachable: {e}",
                details=details
            )

        status = HealthStatus.HEALTHY
        message = ""
        if self.features.use_gnn_learning and details["monitor"]["open"]:
            status = HealthStatus.DEGRADED
            message = "enhanced predictions unavailable, serving baseline"
        return ComponentHealth(
            name="learning",
            status=status,
            latency_ms=(time.perf_counter() - start) * 1000,
            message=message,
            details=details
        )
