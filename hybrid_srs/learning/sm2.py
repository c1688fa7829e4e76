"""
SM-2 Scheduling Core

Deterministic SuperMemo-2 update used as the baseline for every review card.
Nothing here performs I/O or keeps state between calls: given the same card,
outcome, response time and ``now`` the result is always the same.
"""

import datetime
from dataclasses import replace
from typing import Any, Dict, Iterable, Optional

from hybrid_srs.common.logger import app_logger
from hybrid_srs.learning.models import (
    MAX_EASE_FACTOR,
    MAX_RESPONSE_TIME_MS,
    MIN_EASE_FACTOR,
    ReviewCard,
    ensure_utc,
    utcnow,
)

logger = app_logger.getChild("learning.sm2")

PASSING_QUALITY = 3
FAILURE_EASE_PENALTY = 0.2
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6
MASTERED_MIN_EASE = 2.2
MASTERED_MIN_INTERVAL = 21
MASTERED_MIN_REPETITIONS = 3


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


class SpacedRepetitionCore:
    """
    SM-2 update rule with quality derived from correctness and response time.

    Quality scale (0-5):
        5 - correct and fast
        4 - correct after some hesitation
        3 - correct but slow
        0 - incorrect
    """

    def __init__(self, fast_threshold_ms: int = 5000, slow_threshold_ms: int = 15000):
        """
        Args:
            fast_threshold_ms: Correct answers at or under this time grade as 5
            slow_threshold_ms: Correct answers at or under this time grade as 4;
                anything slower grades as 3
        """
        if slow_threshold_ms < fast_threshold_ms:
            raise ValueError("slow_threshold_ms must be >= fast_threshold_ms")
        self.fast_threshold_ms = fast_threshold_ms
        self.slow_threshold_ms = slow_threshold_ms

    @classmethod
    def from_config(cls, sm2_config: Any) -> 'SpacedRepetitionCore':
        return cls(
            fast_threshold_ms=sm2_config.fast_threshold_ms,
            slow_threshold_ms=sm2_config.slow_threshold_ms
        )

    def quality_for(self, success: bool, response_time_ms: float) -> int:
        """
        Grade an answer on the SM-2 0-5 scale.

        Args:
            success: Whether the answer was correct
            response_time_ms: Time to answer, clamped to [0, 300000]

        Returns:
            Quality grade
        """
        if not success:
            return 0
        response_time_ms = clamp(response_time_ms, 0, MAX_RESPONSE_TIME_MS)
        if response_time_ms <= self.fast_threshold_ms:
            return 5
        if response_time_ms <= self.slow_threshold_ms:
            return 4
        return 3

    @staticmethod
    def next_ease(ease_factor: float, quality: int) -> float:
        """SM-2 ease update, bounded to [1.3, 2.5]."""
        q = 5 - quality
        updated = ease_factor + (0.1 - q * (0.08 + q * 0.02))
        return clamp(updated, MIN_EASE_FACTOR, MAX_EASE_FACTOR)

    def compute_next(
        self,
        card: ReviewCard,
        success: bool,
        response_time_ms: float,
        now: Optional[datetime.datetime] = None
    ) -> ReviewCard:
        """
        Advance a card by one review.

        Out-of-range card fields and response times are clamped rather than
        rejected, so this never raises for a well-typed card.

        Args:
            card: Current card state (not modified)
            success: Whether the answer was correct
            response_time_ms: Time to answer in milliseconds
            now: Review time; defaults to the current UTC time

        Returns:
            A new card with updated ease, interval, repetitions and dates.
            ``version`` is left for the repository to bump on commit.
        """
        now = ensure_utc(now) if now else utcnow()
        ease = clamp(card.ease_factor, MIN_EASE_FACTOR, MAX_EASE_FACTOR)
        interval = max(0, int(card.interval))
        repetitions = max(0, int(card.repetitions))
        quality = self.quality_for(success, response_time_ms)

        if quality >= PASSING_QUALITY:
            repetitions += 1
            ease = self.next_ease(ease, quality)
            if repetitions == 1:
                interval = FIRST_INTERVAL_DAYS
            elif repetitions == 2:
                interval = SECOND_INTERVAL_DAYS
            else:
                interval = max(FIRST_INTERVAL_DAYS, round(max(interval, 1) * ease))
        else:
            repetitions = 0
            interval = FIRST_INTERVAL_DAYS
            ease = max(MIN_EASE_FACTOR, ease - FAILURE_EASE_PENALTY)

        return replace(
            card,
            ease_factor=round(ease, 4),
            interval=interval,
            repetitions=repetitions,
            next_review=now + datetime.timedelta(days=interval),
            last_reviewed=now
        )

    @staticmethod
    def baseline_date(card: ReviewCard, now: Optional[datetime.datetime] = None) -> datetime.datetime:
        """
        The date SM-2 alone schedules ``card`` for.

        A card without ``next_review`` is placed ``interval`` days after ``now``.
        """
        if card.next_review is not None:
            return card.next_review
        now = ensure_utc(now) if now else utcnow()
        return now + datetime.timedelta(days=max(0, card.interval))

    @staticmethod
    def is_due(card: ReviewCard, now: Optional[datetime.datetime] = None) -> bool:
        now = ensure_utc(now) if now else utcnow()
        return card.next_review is None or card.next_review <= now

    @staticmethod
    def days_overdue(card: ReviewCard, now: Optional[datetime.datetime] = None) -> float:
        """Fractional days past ``next_review``; 0 when not yet due."""
        now = ensure_utc(now) if now else utcnow()
        if card.next_review is None:
            return 0.0
        return max(0.0, (now - card.next_review).total_seconds() / 86400.0)

    @staticmethod
    def is_mastered(card: ReviewCard) -> bool:
        return (
            card.ease_factor >= MASTERED_MIN_EASE
            and card.interval >= MASTERED_MIN_INTERVAL
            and card.repetitions >= MASTERED_MIN_REPETITIONS
        )

    def statistics(
        self,
        cards: Iterable[ReviewCard],
        now: Optional[datetime.datetime] = None
    ) -> Dict[str, Any]:
        """
        Summarize a deck.

        Returns:
            Dictionary with total, due, overdue (more than a day late),
            mastered and learning counts plus average ease and interval
        """
        now = ensure_utc(now) if now else utcnow()
        cards = list(cards)
        total = len(cards)
        due = sum(1 for card in cards if self.is_due(card, now))
        overdue = sum(1 for card in cards if self.days_overdue(card, now) > 1.0)
        mastered = sum(1 for card in cards if self.is_mastered(card))

        return {
            "total_cards": total,
            "due": due,
            "overdue": overdue,
            "mastered": mastered,
            "learning": total - mastered,
            "average_ease": sum(card.ease_factor for card in cards) / total if total else 0.0,
            "average_interval": sum(card.interval for card in cards) / total if total else 0.0
        }
