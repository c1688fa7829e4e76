import asyncio
import datetime
import unittest

from hybrid_srs.common.error_handling import ConcurrencyConflictError, StorageError
from hybrid_srs.database.init_db import Database
from hybrid_srs.learning.graph import InMemoryConfusionGraphStore
from hybrid_srs.learning.models import Interaction, ReviewCard
from hybrid_srs.learning.repository import (
    InMemoryCardRepository,
    InMemoryInteractionRepository,
    SqlCardRepository,
    SqlConfusionGraphStore,
    SqlInteractionRepository,
)

NOW = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


def card(vocabulary_id, days=0, user_id="u"):
    return ReviewCard(
        id="",
        user_id=user_id,
        vocabulary_id=vocabulary_id,
        interval=1,
        next_review=NOW + datetime.timedelta(days=days)
    )


def event(vocabulary_id, success, minutes_ago, user_id="u"):
    return Interaction(
        user_id=user_id,
        vocabulary_id=vocabulary_id,
        success=success,
        response_time_ms=1500,
        timestamp=NOW - datetime.timedelta(minutes=minutes_ago)
    )


class RepositoryBehaviour:
    """Scenarios every storage backend must pass; mixed into a TestCase."""

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.cards, self.interactions, self.graph_store = self.loop.run_until_complete(self.make_stores())

    def tearDown(self):
        self.loop.run_until_complete(self.close_stores())
        self.loop.close()

    async def make_stores(self):
        raise NotImplementedError

    async def close_stores(self):
        pass

    def wait(self, coro):
        return self.loop.run_until_complete(coro)

    def test_insert_then_update_bumps_version(self):
        inserted = self.wait(self.cards.save(card("a"), expected_version=0))
        self.assertEqual(inserted.version, 1)

        fetched = self.wait(self.cards.get("u", "a"))
        self.assertEqual(fetched.id, inserted.id)
        self.assertEqual(fetched.next_review, NOW)

        fetched.repetitions = 3
        updated = self.wait(self.cards.save(fetched, expected_version=1))
        self.assertEqual(updated.version, 2)
        self.assertEqual(self.wait(self.cards.get("u", "a")).repetitions, 3)

    def test_stale_version_conflicts(self):
        self.wait(self.cards.save(card("a"), expected_version=0))
        with self.assertRaises(ConcurrencyConflictError):
            self.wait(self.cards.save(card("a"), expected_version=0))
        with self.assertRaises(ConcurrencyConflictError):
            self.wait(self.cards.save(card("a"), expected_version=5))
        self.assertEqual(self.wait(self.cards.get("u", "a")).version, 1)

    def test_missing_card(self):
        self.assertIsNone(self.wait(self.cards.get("u", "missing")))

    def test_due_cards_sorted_and_filtered(self):
        self.wait(self.cards.save(card("later", days=-1), expected_version=0))
        self.wait(self.cards.save(card("first", days=-3), expected_version=0))
        self.wait(self.cards.save(card("future", days=2), expected_version=0))
        self.wait(self.cards.save(card("other", days=-5, user_id="v"), expected_version=0))

        due = self.wait(self.cards.due_for_user("u", NOW))
        self.assertEqual([c.vocabulary_id for c in due], ["first", "later"])
        self.assertEqual(len(self.wait(self.cards.due_for_user("u", NOW, limit=1))), 1)
        self.assertEqual(len(self.wait(self.cards.list_for_user("u"))), 3)

    def test_recent_interactions_newest_first(self):
        for minutes_ago, success in ((30, False), (10, True), (20, True)):
            self.wait(self.interactions.append(event("a", success, minutes_ago)))
        self.wait(self.interactions.append(event("b", True, 5)))

        recent = self.wait(self.interactions.recent("u", "a", limit=2))
        self.assertEqual([i.timestamp for i in recent], [
            NOW - datetime.timedelta(minutes=10),
            NOW - datetime.timedelta(minutes=20),
        ])
        self.assertEqual(self.wait(self.interactions.count("u", "a")), 3)

    def test_item_success_totals_span_users(self):
        self.wait(self.interactions.append(event("a", True, 3)))
        self.wait(self.interactions.append(event("a", False, 2, user_id="v")))
        self.wait(self.interactions.append(event("b", False, 1)))

        totals = self.wait(self.interactions.item_success_totals())
        self.assertEqual(totals, {"a": (1, 2), "b": (0, 1)})

    def test_graph_increments_accumulate(self):
        self.wait(self.graph_store.increment("u", "ser", "estar", at=NOW))
        edge = self.wait(self.graph_store.increment("u", "ser", "estar", amount=2.0, at=NOW))
        self.wait(self.graph_store.increment("u", "haber", "ser", at=NOW))

        self.assertEqual(edge.weight, 3.0)
        self.assertEqual(edge.last_updated, NOW)
        edges = self.wait(self.graph_store.edges_for_item("u", "ser"))
        self.assertEqual(len(edges), 2)
        self.assertEqual(len(self.wait(self.graph_store.edges_for_user("other"))), 0)

    def test_ping(self):
        self.assertTrue(self.wait(self.cards.ping()))
        self.assertTrue(self.wait(self.interactions.ping()))


class TestInMemoryRepositories(RepositoryBehaviour, unittest.TestCase):

    async def make_stores(self):
        return InMemoryCardRepository(), InMemoryInteractionRepository(), InMemoryConfusionGraphStore()

    def test_returned_cards_are_copies(self):
        saved = self.wait(self.cards.save(card("a"), expected_version=0))
        saved.repetitions = 99
        self.assertEqual(self.wait(self.cards.get("u", "a")).repetitions, 0)


class TestSqlRepositories(RepositoryBehaviour, unittest.TestCase):

    async def make_stores(self):
        self.database = Database("sqlite+aiosqlite:///:memory:")
        await self.database.initialize()
        return (
            SqlCardRepository(self.database),
            SqlInteractionRepository(self.database),
            SqlConfusionGraphStore(self.database),
        )

    async def close_stores(self):
        await self.database.close()

    def test_graph_ping_counts_edges(self):
        self.wait(self.graph_store.increment("u", "a", "b"))
        self.assertEqual(self.wait(self.graph_store.ping()), {"edges": 1})

    def test_storage_failures_are_wrapped(self):
        self.wait(self.database.close())
        with self.assertRaises(StorageError):
            self.wait(self.cards.get("u", "a"))
        with self.assertRaises(StorageError):
            self.wait(self.interactions.append(event("a", True, 1)))


if __name__ == "__main__":
    unittest.main()
