import json

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import FeedError
from fakes import FakeBackend, FakeFeed, feed_txn, make_budget, make_engine, make_item
from models import CategoryAssignment, CategoryType, LinkedItem, Transaction, WebhookEvent
from schemas import CategoryChoice, CategoryIn, FeedBatch, WebhookIn
from services import AssignmentManager, CategoryService, Split, TransactionService
from sync import SyncEngine, process_webhook, record_webhook


def _external_ids(session: Session) -> list[str]:
    return sorted(session.scalars(select(Transaction.external_id)).all())


def test_sync_walks_pages_and_stores_final_cursor() -> None:
    engine = make_engine()
    feed = FakeFeed(
        {
            None: FeedBatch(
                added=[feed_txn("a", "12.50"), feed_txn("b", "3.00")],
                next_cursor="c1",
                has_more=True,
            ),
            "c1": FeedBatch(added=[feed_txn("c", "8.00")], next_cursor="c2"),
        }
    )

    with Session(engine) as session:
        item = make_item(session)
        result = SyncEngine(session, feed).sync(item)

        assert result.added == 3
        assert result.final_cursor == "c2"
        assert feed.requested == [None, "c1"]
        assert session.get(LinkedItem, item.id).cursor == "c2"
        assert _external_ids(session) == ["a", "b", "c"]
        stored = session.scalar(select(Transaction).where(Transaction.external_id == "a"))
        assert stored.amount_cents == 1250
        assert stored.item_id == item.id


def test_sync_skips_duplicates_and_replays_safely() -> None:
    engine = make_engine()
    page = FeedBatch(
        added=[feed_txn("a", "1.00"), feed_txn("a", "1.00")], next_cursor="c1"
    )

    with Session(engine) as session:
        item = make_item(session)
        first = SyncEngine(session, FakeFeed({None: page})).sync(item)
        assert first.added == 1

        item.cursor = None
        session.commit()
        second = SyncEngine(session, FakeFeed({None: page})).sync(item)
        assert second.added == 0
        assert _external_ids(session) == ["a"]


def test_failed_page_keeps_cursor_of_last_completed_page() -> None:
    engine = make_engine()
    pages = {
        None: FeedBatch(added=[feed_txn("a", "1.00")], next_cursor="c1", has_more=True),
        "c1": FeedBatch(added=[feed_txn("b", "2.00")], next_cursor="c2", has_more=True),
        "c2": FeedBatch(added=[feed_txn("c", "3.00")], next_cursor="c3"),
    }
    feed = FakeFeed(pages)
    feed.fail_on.add("c2")

    with Session(engine) as session:
        item = make_item(session)
        with pytest.raises(FeedError):
            SyncEngine(session, feed).sync(item)

        session.expire_all()
        assert session.get(LinkedItem, item.id).cursor == "c2"
        assert _external_ids(session) == ["a", "b"]

        feed.fail_on.clear()
        feed.requested.clear()
        result = SyncEngine(session, feed).sync(session.get(LinkedItem, item.id))
        assert feed.requested == ["c2"]
        assert result.added == 1
        assert _external_ids(session) == ["a", "b", "c"]


def test_modified_before_added_is_inserted_classified_and_notified() -> None:
    engine = make_engine()
    feed = FakeFeed(
        {None: FeedBatch(modified=[feed_txn("late", "9.99")], next_cursor="c1")}
    )
    notified: list[str] = []

    def notifier(session: Session, txn: Transaction) -> None:
        notified.append(txn.external_id)

    with Session(engine) as session:
        make_budget(session)
        dining = CategoryService(session).create(CategoryIn(name="Dining"))
        backend = FakeBackend(CategoryChoice(category_id=dining.id))
        item = make_item(session)

        result = SyncEngine(session, feed, backend, notifier).sync(item)

        assert result.modified == 1
        assert result.categorized == 1
        assert _external_ids(session) == ["late"]
        assert len(backend.prompts) == 1
        assert notified == ["late"]
        [row] = session.scalars(select(CategoryAssignment)).all()
        assert (row.category_id, row.amount_cents, row.is_manual) == (dining.id, 999, False)


def test_modified_updates_existing_row() -> None:
    engine = make_engine()
    feed = FakeFeed(
        {
            None: FeedBatch(added=[feed_txn("a", "5.00")], next_cursor="c1", has_more=True),
            "c1": FeedBatch(
                modified=[feed_txn("a", "6.25", merchant_name="Cafe Nero")],
                next_cursor="c2",
            ),
        }
    )

    with Session(engine) as session:
        item = make_item(session)
        SyncEngine(session, feed).sync(item)
        txn = session.scalar(select(Transaction).where(Transaction.external_id == "a"))
        assert txn.amount_cents == 625
        assert txn.merchant_name == "Cafe Nero"


def test_amount_change_moves_single_assignment_with_it() -> None:
    engine = make_engine()
    feed = FakeFeed(
        {
            None: FeedBatch(added=[feed_txn("a", "40.00")], next_cursor="c1", has_more=True),
            "c1": FeedBatch(modified=[feed_txn("a", "48.00")], next_cursor="c2"),
        }
    )

    with Session(engine) as session:
        make_budget(session)
        dining = CategoryService(session).create(CategoryIn(name="Dining"))
        backend = FakeBackend(CategoryChoice(category_id=dining.id))
        item = make_item(session)

        SyncEngine(session, feed, backend).sync(item)

        session.expire_all()
        txn = session.scalar(select(Transaction).where(Transaction.external_id == "a"))
        assert txn.amount_cents == 4800
        assert [(a.category_id, a.amount_cents, a.is_manual) for a in txn.assignments] == [
            (dining.id, 4800, False)
        ]


def test_amount_change_drops_split_and_reopens_review() -> None:
    engine = make_engine()

    with Session(engine) as session:
        make_budget(session)
        categories = CategoryService(session)
        dining = categories.create(CategoryIn(name="Dining"))
        home = categories.create(CategoryIn(name="Home"))
        item = make_item(session)
        SyncEngine(
            session,
            FakeFeed({None: FeedBatch(added=[feed_txn("a", "40.00")], next_cursor="c1")}),
        ).sync(item)
        txn = session.scalar(select(Transaction).where(Transaction.external_id == "a"))
        AssignmentManager(session).assign(
            txn.id, [Split(dining.id, 2500), Split(home.id, 1500)], is_manual=True
        )
        TransactionService(session).mark_reviewed(txn.id)

        SyncEngine(
            session,
            FakeFeed({"c1": FeedBatch(modified=[feed_txn("a", "43.10")], next_cursor="c2")}),
        ).sync(item)

        session.expire_all()
        txn = session.get(Transaction, txn.id)
        assert txn.amount_cents == 4310
        assert txn.assignments == []
        assert txn.is_reviewed is False


def test_unchanged_amount_keeps_split() -> None:
    engine = make_engine()

    with Session(engine) as session:
        make_budget(session)
        categories = CategoryService(session)
        dining = categories.create(CategoryIn(name="Dining"))
        home = categories.create(CategoryIn(name="Home"))
        item = make_item(session)
        SyncEngine(
            session,
            FakeFeed({None: FeedBatch(added=[feed_txn("a", "40.00")], next_cursor="c1")}),
        ).sync(item)
        txn = session.scalar(select(Transaction).where(Transaction.external_id == "a"))
        AssignmentManager(session).assign(
            txn.id, [Split(dining.id, 2500), Split(home.id, 1500)], is_manual=True
        )

        SyncEngine(
            session,
            FakeFeed(
                {
                    "c1": FeedBatch(
                        modified=[feed_txn("a", "40.00", name="CORNER CAFE POSTED")],
                        next_cursor="c2",
                    )
                }
            ),
        ).sync(item)

        session.expire_all()
        assert sorted(a.amount_cents for a in session.get(Transaction, txn.id).assignments) == [
            1500,
            2500,
        ]


def test_removal_is_idempotent_and_drops_assignments() -> None:
    engine = make_engine()
    pages = {
        None: FeedBatch(added=[feed_txn("a", "4.00")], next_cursor="c1", has_more=True),
        "c1": FeedBatch(removed=["a", "a", "never-seen"], next_cursor="c2"),
    }

    with Session(engine) as session:
        make_budget(session)
        dining = CategoryService(session).create(CategoryIn(name="Dining"))
        backend = FakeBackend(CategoryChoice(category_id=dining.id))
        item = make_item(session)

        result = SyncEngine(session, FakeFeed(pages), backend).sync(item)

        assert result.added == 1
        assert result.categorized == 1
        assert result.removed == 1
        assert _external_ids(session) == []
        assert session.scalars(select(CategoryAssignment)).all() == []


def test_new_transactions_are_classified_and_transfers_excluded() -> None:
    engine = make_engine()
    page = FeedBatch(
        added=[
            feed_txn("coffee", "4.50"),
            feed_txn(
                "card",
                "250.00",
                merchant_name=None,
                name="CREDIT CARD AUTOPAY",
                hints=["LOAN_PAYMENTS"],
            ),
        ],
        next_cursor="c1",
    )

    with Session(engine) as session:
        make_budget(session)
        dining = CategoryService(session).create(CategoryIn(name="Dining"))
        excluded = CategoryService(session).by_type(CategoryType.excluded)
        backend = FakeBackend(CategoryChoice(category_id=dining.id))
        item = make_item(session)

        result = SyncEngine(session, FakeFeed({None: page}), backend).sync(item)

        assert result.categorized == 2
        assert len(backend.prompts) == 1
        rows = {
            t.external_id: [a.category_id for a in t.assignments]
            for t in session.scalars(select(Transaction)).all()
        }
        assert rows == {"coffee": [dining.id], "card": [excluded.id]}
        card = session.scalar(select(Transaction).where(Transaction.external_id == "card"))
        assert json.loads(card.source_category) == ["LOAN_PAYMENTS"]


def test_one_bad_record_does_not_stop_the_batch() -> None:
    engine = make_engine()
    page = FeedBatch(
        added=[feed_txn("a", "1.00"), feed_txn("b", "2.00"), feed_txn("c", "3.00")],
        next_cursor="c1",
    )
    calls: list[str] = []

    def flaky_notifier(session: Session, txn: Transaction) -> None:
        calls.append(txn.external_id)
        if txn.external_id == "b":
            raise RuntimeError("chat is down")

    with Session(engine) as session:
        item = make_item(session)
        result = SyncEngine(session, FakeFeed({None: page}), notifier=flaky_notifier).sync(
            item
        )
        assert result.added == 3
        assert calls == ["a", "b", "c"]
        assert session.get(LinkedItem, item.id).cursor == "c1"


def test_webhook_runs_sync_for_known_item() -> None:
    engine = make_engine()
    feed = FakeFeed({None: FeedBatch(added=[feed_txn("a", "1.00")], next_cursor="c1")})

    with Session(engine) as session:
        make_item(session, item_id="item-abc")
        event = record_webhook(
            session,
            WebhookIn(
                webhook_type="TRANSACTIONS",
                webhook_code="SYNC_UPDATES_AVAILABLE",
                item_id="item-abc",
            ),
        )
        result = process_webhook(SyncEngine(session, feed), event)

        assert result is not None and result.added == 1
        assert session.get(WebhookEvent, event.id).processed is True


def test_webhook_for_unknown_item_or_type_is_marked_processed() -> None:
    engine = make_engine()
    feed = FakeFeed()

    with Session(engine) as session:
        unknown = record_webhook(
            session,
            WebhookIn(webhook_type="TRANSACTIONS", webhook_code="DEFAULT_UPDATE", item_id="x"),
        )
        other = record_webhook(
            session, WebhookIn(webhook_type="ITEM", webhook_code="ERROR", item_id="x")
        )
        sync_engine = SyncEngine(session, feed)

        assert process_webhook(sync_engine, unknown) is None
        assert process_webhook(sync_engine, other) is None
        assert unknown.processed and unknown.error_message == "Linked item not found"
        assert other.processed and other.error_message is None
        assert feed.requested == []


def test_unexpected_item_failure_does_not_stop_other_items() -> None:
    engine = make_engine()
    # The first item's page is missing, so the feed raises KeyError.
    feed = FakeFeed(
        {
            "c9": FeedBatch(added=[feed_txn("b", "2.00")], next_cursor="c10"),
            "c10": FeedBatch(next_cursor="c10"),
        }
    )

    with Session(engine) as session:
        make_item(session, item_id="item-a")
        second = make_item(session, item_id="item-b")
        second.cursor = "c9"
        session.commit()

        results = SyncEngine(session, feed).sync_user(1)

        assert list(results) == [second.id]
        assert _external_ids(session) == ["b"]
        assert SyncEngine(session, feed).sync_all() == 1


def test_webhook_with_unexpected_failure_is_marked_processed() -> None:
    engine = make_engine()

    with Session(engine) as session:
        make_item(session, item_id="item-abc")
        event = record_webhook(
            session,
            WebhookIn(
                webhook_type="TRANSACTIONS",
                webhook_code="SYNC_UPDATES_AVAILABLE",
                item_id="item-abc",
            ),
        )

        assert process_webhook(SyncEngine(session, FakeFeed()), event) is None

        session.expire_all()
        stored = session.get(WebhookEvent, event.id)
        assert stored.processed is True
        assert stored.error_message
