"""
Change feed and book view cache tests.

Verifies:
- Only committed changes reach subscribers
- Subscription filters and cancellation
- Cached book summaries are dropped when their book's rows change
"""

import pytest

from pepi.extensions import db
from pepi.models import Agent
from pepi.services import book_service, transaction_service
from pepi.services.change_feed import ChangeEvent, ChangeFeed, OP_INSERT, OP_UPDATE, get_feed
from pepi.services.view_cache import get_view_cache


@pytest.fixture
def received(app):
    events = []
    sub = get_feed().subscribe("agents", events.append)
    yield events
    sub.cancel()


class TestChangeFeed:

    def test_commit_publishes_insert(self, received):
        db.session.add(Agent(name="Agent Diaz", email="diaz@pepi.test", role="agent", is_active=True))
        db.session.commit()

        assert len(received) == 1
        assert received[0].operation == OP_INSERT
        assert received[0].values["email"] == "diaz@pepi.test"
        assert received[0].row_id is not None

    def test_rollback_publishes_nothing(self, received):
        db.session.add(Agent(name="Agent Diaz", email="diaz@pepi.test", role="agent", is_active=True))
        db.session.flush()
        db.session.rollback()

        assert received == []

    def test_update_published_after_commit(self, agent, received):
        agent.badge_number = "B-12"
        db.session.flush()
        assert received == []

        db.session.commit()

        assert [e.operation for e in received] == [OP_UPDATE]
        assert received[0].row_id == agent.id

    def test_filter_and_cancel(self):
        feed = ChangeFeed()
        book_one, everything = [], []
        sub = feed.subscribe("transactions", book_one.append, filter={"pepi_book_id": 1})
        feed.subscribe("transactions", everything.append)

        feed.publish(ChangeEvent("transactions", OP_INSERT, 10, {"pepi_book_id": 1}))
        feed.publish(ChangeEvent("transactions", OP_INSERT, 11, {"pepi_book_id": 2}))
        sub.cancel()
        feed.publish(ChangeEvent("transactions", OP_INSERT, 12, {"pepi_book_id": 1}))

        assert [e.row_id for e in book_one] == [10]
        assert [e.row_id for e in everything] == [10, 11, 12]
        assert feed.subscriber_count("transactions") == 1

    def test_failing_subscriber_does_not_block_others(self):
        feed = ChangeFeed()
        seen = []

        def broken(change):
            raise RuntimeError("boom")

        feed.subscribe("agents", broken)
        feed.subscribe("agents", seen.append)
        feed.publish(ChangeEvent("agents", OP_INSERT, 1))

        assert len(seen) == 1


class TestBookViewCache:

    def test_summary_cached_until_transaction_created(self, agent_actor, active_book):
        cache = get_view_cache()
        book_service.get_book_summary(active_book.id)
        assert cache.is_cached(active_book.id)

        transaction_service.create_transaction(agent_actor, "spending", 5000)

        assert not cache.is_cached(active_book.id)

    def test_approval_refreshes_summary(self, outbox, admin_actor, agent_actor, active_book):
        tx = transaction_service.create_transaction(agent_actor, "spending", 5000)
        before = book_service.get_book_summary(active_book.id)

        transaction_service.approve_spending_transaction(admin_actor, tx.id)
        after = book_service.get_book_summary(active_book.id)

        assert before["balance_cents"] == 100000
        assert after["balance_cents"] == 95000

    def test_stale_computation_not_stored(self, app):
        cache = get_view_cache()

        def compute():
            cache.invalidate_book(99)
            return {"balance_cents": 1}

        cache.get_summary(99, compute)

        assert not cache.is_cached(99)

    def test_app_cache_watches_ledger_tables(self, app):
        feed = get_feed()
        assert feed.subscriber_count("transactions") == 1
        assert feed.subscriber_count("pepi_books") == 1
        assert feed.subscriber_count("agents") == 0
