"""
Learning Repositories

Repository interfaces for review cards and the interaction log, with an
in-memory implementation (default, and what the tests use) and a SQLAlchemy
implementation selected by ``database.backend = "sql"``.

Card writes use optimistic concurrency: ``save(card, expected_version)``
only succeeds when the stored version still equals ``expected_version``
(0 meaning "not stored yet") and returns the card with ``version`` bumped.
"""

import abc
import asyncio
import datetime
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from hybrid_srs.common.error_handling import AsyncErrorTracer, ConcurrencyConflictError, StorageError
from hybrid_srs.common.logger import app_logger
from hybrid_srs.database.init_db import Database
from hybrid_srs.database.models import ConfusionEdgeRecord, InteractionRecord, ReviewCardRecord
from hybrid_srs.learning.graph import ConfusionGraphStore
from hybrid_srs.learning.models import ConfusionEdge, Interaction, ReviewCard, ensure_utc, utcnow

logger = app_logger.getChild("learning.repository")


class CardRepository(abc.ABC):
    """Storage for review cards, one per (user, vocabulary item)."""

    @abc.abstractmethod
    async def get(self, user_id: str, vocabulary_id: str) -> Optional[ReviewCard]:
        """
        Get the user's card for an item.

        Returns:
            The card, or None when the user has never reviewed the item
        """
        pass

    @abc.abstractmethod
    async def save(self, card: ReviewCard, expected_version: int) -> ReviewCard:
        """
        Insert or update a card under an optimistic version check.

        Args:
            card: Card state to store
            expected_version: Version the caller read; 0 inserts a new card

        Returns:
            The stored card with ``version == expected_version + 1``

        Raises:
            ConcurrencyConflictError: the stored version moved on, or a card
                for the same (user, item) already exists on insert
        """
        pass

    @abc.abstractmethod
    async def list_for_user(self, user_id: str) -> List[ReviewCard]:
        pass

    @abc.abstractmethod
    async def due_for_user(
        self,
        user_id: str,
        now: datetime.datetime,
        limit: Optional[int] = None
    ) -> List[ReviewCard]:
        """Cards with ``next_review <= now``, earliest first."""
        pass

    @abc.abstractmethod
    async def ping(self) -> bool:
        pass


class InteractionRepository(abc.ABC):
    """Append-only interaction log."""

    @abc.abstractmethod
    async def append(self, interaction: Interaction) -> Interaction:
        pass

    @abc.abstractmethod
    async def recent(self, user_id: str, vocabulary_id: str, limit: int) -> List[Interaction]:
        """The user's latest interactions with the item, newest first."""
        pass

    @abc.abstractmethod
    async def count(self, user_id: str, vocabulary_id: str) -> int:
        pass

    @abc.abstractmethod
    async def item_success_totals(self) -> Dict[str, Tuple[int, int]]:
        """``vocabulary_id -> (successes, attempts)`` across all users."""
        pass

    @abc.abstractmethod
    async def ping(self) -> bool:
        pass


class InMemoryCardRepository(CardRepository):

    def __init__(self):
        self._cards: Dict[Tuple[str, str], ReviewCard] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str, vocabulary_id: str) -> Optional[ReviewCard]:
        async with self._lock:
            card = self._cards.get((user_id, vocabulary_id))
            return replace(card) if card else None

    async def save(self, card: ReviewCard, expected_version: int) -> ReviewCard:
        async with self._lock:
            current = self._cards.get(card.key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise ConcurrencyConflictError(
                    entity="review_card",
                    entity_id=f"{card.user_id}:{card.vocabulary_id}",
                    expected_version=expected_version,
                    details={"stored_version": current_version}
                )
            stored = replace(card, id=current.id if current else card.id, version=expected_version + 1)
            self._cards[card.key] = stored
            return replace(stored)

    async def list_for_user(self, user_id: str) -> List[ReviewCard]:
        async with self._lock:
            return [replace(card) for key, card in self._cards.items() if key[0] == user_id]

    async def due_for_user(
        self,
        user_id: str,
        now: datetime.datetime,
        limit: Optional[int] = None
    ) -> List[ReviewCard]:
        now = ensure_utc(now)
        cards = [
            card for card in await self.list_for_user(user_id)
            if card.next_review is None or card.next_review <= now
        ]
        cards.sort(key=lambda card: (card.next_review or now, card.vocabulary_id))
        return cards[:limit] if limit is not None else cards

    async def ping(self) -> bool:
        return True


class InMemoryInteractionRepository(InteractionRepository):

    def __init__(self):
        self._log: Dict[Tuple[str, str], List[Interaction]] = {}
        self._lock = asyncio.Lock()

    async def append(self, interaction: Interaction) -> Interaction:
        async with self._lock:
            self._log.setdefault((interaction.user_id, interaction.vocabulary_id), []).append(interaction)
        return interaction

    async def recent(self, user_id: str, vocabulary_id: str, limit: int) -> List[Interaction]:
        async with self._lock:
            history = list(self._log.get((user_id, vocabulary_id), []))
        history.sort(key=lambda interaction: interaction.timestamp, reverse=True)
        return history[:max(0, limit)]

    async def count(self, user_id: str, vocabulary_id: str) -> int:
        async with self._lock:
            return len(self._log.get((user_id, vocabulary_id), []))

    async def item_success_totals(self) -> Dict[str, Tuple[int, int]]:
        totals: Dict[str, Tuple[int, int]] = {}
        async with self._lock:
            for (_, vocabulary_id), history in self._log.items():
                successes, attempts = totals.get(vocabulary_id, (0, 0))
                totals[vocabulary_id] = (
                    successes + sum(1 for interaction in history if interaction.success),
                    attempts + len(history)
                )
        return totals

    async def ping(self) -> bool:
        return True


def _card_from_record(record: ReviewCardRecord) -> ReviewCard:
    return ReviewCard(
        id=record.id,
        user_id=record.user_id,
        vocabulary_id=record.vocabulary_id,
        ease_factor=record.ease_factor,
        interval=record.interval,
        repetitions=record.repetitions,
        next_review=record.next_review,
        word=record.word or "",
        last_reviewed=record.last_reviewed,
        version=record.version
    )


def _interaction_from_record(record: InteractionRecord) -> Interaction:
    return Interaction(
        id=record.id,
        user_id=record.user_id,
        vocabulary_id=record.vocabulary_id,
        success=record.success,
        response_time_ms=record.response_time_ms,
        confused_with=record.confused_with,
        timestamp=record.timestamp
    )


class SqlCardRepository(CardRepository):
    """Review cards in a SQL database."""

    def __init__(self, database: Database):
        self.database = database

    async def get(self, user_id: str, vocabulary_id: str) -> Optional[ReviewCard]:
        async with AsyncErrorTracer("card_repository.get", capture_as=StorageError):
            async with self.database.session() as session:
                record = (await session.execute(
                    select(ReviewCardRecord).where(
                        ReviewCardRecord.user_id == user_id,
                        ReviewCardRecord.vocabulary_id == vocabulary_id
                    )
                )).scalar_one_or_none()
                return _card_from_record(record) if record else None

    async def save(self, card: ReviewCard, expected_version: int) -> ReviewCard:
        conflict = ConcurrencyConflictError(
            entity="review_card",
            entity_id=f"{card.user_id}:{card.vocabulary_id}",
            expected_version=expected_version
        )
        new_version = expected_version + 1
        async with AsyncErrorTracer("card_repository.save", capture_as=StorageError):
            async with self.database.session() as session:
                if expected_version == 0:
                    session.add(ReviewCardRecord(
                        id=card.id,
                        user_id=card.user_id,
                        vocabulary_id=card.vocabulary_id,
                        ease_factor=card.ease_factor,
                        interval=card.interval,
                        repetitions=card.repetitions,
                        next_review=card.next_review,
                        word=card.word,
                        last_reviewed=card.last_reviewed,
                        version=new_version
                    ))
                    try:
                        await session.commit()
                    except IntegrityError as e:
                        await session.rollback()
                        raise conflict from e
                    return replace(card, version=new_version)

                result = await session.execute(
                    update(ReviewCardRecord)
                    .where(
                        ReviewCardRecord.user_id == card.user_id,
                        ReviewCardRecord.vocabulary_id == card.vocabulary_id,
                        ReviewCardRecord.version == expected_version
                    )
                    .values(
                        ease_factor=card.ease_factor,
                        interval=card.interval,
                        repetitions=card.repetitions,
                        next_review=card.next_review,
                        word=card.word,
                        last_reviewed=card.last_reviewed,
                        version=new_version
                    )
                )
                if result.rowcount != 1:
                    await session.rollback()
                    raise conflict
                await session.commit()
                return replace(card, version=new_version)

    async def list_for_user(self, user_id: str) -> List[ReviewCard]:
        async with AsyncErrorTracer("card_repository.list_for_user", capture_as=StorageError):
            async with self.database.session() as session:
                records = (await session.execute(
                    select(ReviewCardRecord).where(ReviewCardRecord.user_id == user_id)
                )).scalars().all()
                return [_card_from_record(record) for record in records]

    async def due_for_user(
        self,
        user_id: str,
        now: datetime.datetime,
        limit: Optional[int] = None
    ) -> List[ReviewCard]:
        statement = (
            select(ReviewCardRecord)
            .where(
                ReviewCardRecord.user_id == user_id,
                ReviewCardRecord.next_review <= ensure_utc(now)
            )
            .order_by(ReviewCardRecord.next_review, ReviewCardRecord.vocabulary_id)
        )
        if limit is not None:
            statement = statement.limit(limit)
        async with AsyncErrorTracer("card_repository.due_for_user", capture_as=StorageError):
            async with self.database.session() as session:
                records = (await session.execute(statement)).scalars().all()
                return [_card_from_record(record) for record in records]

    async def ping(self) -> bool:
        return await self.database.ping()


class SqlInteractionRepository(InteractionRepository):
    """Interaction log in a SQL database."""

    def __init__(self, database: Database):
        self.database = database

    async def append(self, interaction: Interaction) -> Interaction:
        async with AsyncErrorTracer("interaction_repository.append", capture_as=StorageError):
            async with self.database.session() as session:
                session.add(InteractionRecord(
                    id=interaction.id,
                    user_id=interaction.user_id,
                    vocabulary_id=interaction.vocabulary_id,
                    success=interaction.success,
                    response_time_ms=interaction.response_time_ms,
                    confused_with=interaction.confused_with,
                    timestamp=interaction.timestamp
                ))
                await session.commit()
        return interaction

    async def recent(self, user_id: str, vocabulary_id: str, limit: int) -> List[Interaction]:
        async with AsyncErrorTracer("interaction_repository.recent", capture_as=StorageError):
            async with self.database.session() as session:
                records = (await session.execute(
                    select(InteractionRecord)
                    .where(
                        InteractionRecord.user_id == user_id,
                        InteractionRecord.vocabulary_id == vocabulary_id
                    )
                    .order_by(InteractionRecord.timestamp.desc())
                    .limit(max(0, limit))
                )).scalars().all()
                return [_interaction_from_record(record) for record in records]

    async def count(self, user_id: str, vocabulary_id: str) -> int:
        async with AsyncErrorTracer("interaction_repository.count", capture_as=StorageError):
            async with self.database.session() as session:
                return (await session.execute(
                    select(func.count(InteractionRecord.id)).where(
                        InteractionRecord.user_id == user_id,
                        InteractionRecord.vocabulary_id == vocabulary_id
                    )
                )).scalar_one()

    async def item_success_totals(self) -> Dict[str, Tuple[int, int]]:
        statement = select(
            InteractionRecord.vocabulary_id,
            func.sum(case((InteractionRecord.success.is_(True), 1), else_=0)),
            func.count(InteractionRecord.id)
        ).group_by(InteractionRecord.vocabulary_id)
        async with AsyncErrorTracer("interaction_repository.item_success_totals", capture_as=StorageError):
            async with self.database.session() as session:
                rows = (await session.execute(statement)).all()
                return {vocabulary_id: (int(successes or 0), int(attempts)) for vocabulary_id, successes, attempts in rows}

    async def ping(self) -> bool:
        return await self.database.ping()


class SqlConfusionGraphStore(ConfusionGraphStore):
    """Confusion edges in a SQL database; increments are ``weight = weight + n`` updates."""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _edge(record: ConfusionEdgeRecord) -> ConfusionEdge:
        return ConfusionEdge(
            user_id=record.user_id,
            source_id=record.source_id,
            target_id=record.target_id,
            weight=record.weight,
            last_updated=ensure_utc(record.last_updated)
        )

    async def _add(self, user_id: str, source_id: str, target_id: str,
                   amount: float, at: datetime.datetime) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(ConfusionEdgeRecord)
                .where(
                    ConfusionEdgeRecord.user_id == user_id,
                    ConfusionEdgeRecord.source_id == source_id,
                    ConfusionEdgeRecord.target_id == target_id
                )
                .values(weight=ConfusionEdgeRecord.weight + amount, last_updated=at)
            )
            if result.rowcount == 1:
                await session.commit()
                return True
            session.add(ConfusionEdgeRecord(
                user_id=user_id, source_id=source_id, target_id=target_id,
                weight=amount, last_updated=at
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def increment(
        self,
        user_id: str,
        source_id: str,
        target_id: str,
        amount: float = 1.0,
        at: Optional[datetime.datetime] = None
    ) -> ConfusionEdge:
        at = ensure_utc(at) if at else utcnow()
        async with AsyncErrorTracer("confusion_store.increment", capture_as=StorageError):
            # a lost insert race means the row now exists, so the second pass updates it
            if not await self._add(user_id, source_id, target_id, amount, at):
                await self._add(user_id, source_id, target_id, amount, at)
            async with self.database.session() as session:
                record = await session.get(ConfusionEdgeRecord, (user_id, source_id, target_id))
                return self._edge(record)

    async def edges_for_item(self, user_id: str, item_id: str) -> List[ConfusionEdge]:
        async with AsyncErrorTracer("confusion_store.edges_for_item", capture_as=StorageError):
            async with self.database.session() as session:
                records = (await session.execute(
                    select(ConfusionEdgeRecord).where(
                        ConfusionEdgeRecord.user_id == user_id,
                        (ConfusionEdgeRecord.source_id == item_id) | (ConfusionEdgeRecord.target_id == item_id)
                    )
                )).scalars().all()
                return [self._edge(record) for record in records]

    async def edges_for_user(self, user_id: str) -> List[ConfusionEdge]:
        async with AsyncErrorTracer("confusion_store.edges_for_user", capture_as=StorageError):
            async with self.database.session() as session:
                records = (await session.execute(
                    select(ConfusionEdgeRecord).where(ConfusionEdgeRecord.user_id == user_id)
                )).scalars().all()
                return [self._edge(record) for record in records]

    async def ping(self) -> Dict[str, int]:
        async with self.database.session() as session:
            edges = (await session.execute(select(func.count()).select_from(ConfusionEdgeRecord))).scalar_one()
        return {"edges": int(edges)}
