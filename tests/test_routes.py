import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from fakes import FakeFeed, FakeMessenger, enable_foreign_keys, feed_txn, make_item
from main import AppContext, app, get_context, get_db
from models import NotificationStatus, Transaction, TransactionNotification
from notifications import NotificationWorkflow
from schemas import FeedBatch
from services import TransactionService


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    context = AppContext(
        feed=FakeFeed(
            {None: FeedBatch(added=[feed_txn("w-1", "7.25")], next_cursor="c1")}
        ),
        messenger=FakeMessenger(),
        session_factory=factory,
    )

    def override_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_context] = lambda: context
    test_client = TestClient(app)
    test_client.context = context
    test_client.factory = factory
    yield test_client
    app.dependency_overrides.clear()


def _create_budget(client: TestClient) -> None:
    response = client.post(
        "/api/budget",
        json={"name": "Home", "start_date": "2025-01-01", "end_date": "2025-12-31"},
    )
    assert response.status_code == 201


def test_budget_and_category_endpoints(client: TestClient) -> None:
    assert client.get("/api/budget").status_code == 404
    _create_budget(client)
    assert client.post(
        "/api/budget",
        json={"name": "Again", "start_date": "2025-01-01", "end_date": "2025-12-31"},
    ).status_code == 400

    created = client.post(
        "/api/budget/categories", json={"name": "Dining", "allocated_cents": 20000}
    )
    assert created.status_code == 201
    listed = client.get("/api/budget/categories").json()
    assert sorted(c["name"] for c in listed) == ["Dining", "Excluded", "Surplus"]

    surplus = next(c for c in listed if c["category_type"] == "surplus")
    response = client.patch(
        f"/api/budget/categories/{surplus['id']}", json={"name": "Extra"}
    )
    assert response.status_code == 400
    assert "color" in response.json()["detail"]

    assert client.delete("/api/budget/categories/9999").status_code == 404


def test_split_endpoint_rejects_mismatched_amounts(client: TestClient) -> None:
    _create_budget(client)
    dining = client.post("/api/budget/categories", json={"name": "Dining"}).json()
    home = client.post("/api/budget/categories", json={"name": "Home"}).json()
    with client.factory() as session:
        txn = TransactionService(session).insert_from_feed(feed_txn("t-1", "45.00"))

    bad = client.post(
        f"/api/transactions/{txn.id}/split",
        json={
            "splits": [
                {"category_id": dining["id"], "amount_cents": 1000},
                {"category_id": home["id"], "amount_cents": 1000},
            ]
        },
    )
    assert bad.status_code == 400
    assert "must equal" in bad.json()["detail"]

    good = client.post(
        f"/api/transactions/{txn.id}/split",
        json={
            "splits": [
                {"category_id": dining["id"], "amount_cents": 2500},
                {"category_id": home["id"], "amount_cents": 2000},
            ]
        },
    )
    assert good.status_code == 200
    body = good.json()
    assert body["is_reviewed"] is True
    assert sorted(a["amount_cents"] for a in body["assignments"]) == [2000, 2500]

    listing = client.get("/api/transactions").json()
    assert [item["id"] for item in listing["items"]] == [txn.id]
    assert listing["has_more"] is False


def test_plaid_webhook_syncs_in_background(client: TestClient) -> None:
    with client.factory() as session:
        make_item(session, item_id="item-xyz")

    response = client.post(
        "/webhooks/plaid",
        json={
            "webhook_type": "TRANSACTIONS",
            "webhook_code": "SYNC_UPDATES_AVAILABLE",
            "item_id": "item-xyz",
        },
    )
    assert response.status_code == 200
    assert response.json() == {"received": True}
    with client.factory() as session:
        assert session.scalars(select(Transaction.external_id)).all() == ["w-1"]


def test_slack_button_is_acknowledged_then_applied(client: TestClient) -> None:
    _create_budget(client)
    client.post("/api/budget/categories", json={"name": "Dining"})
    channel = client.put("/api/notifications/channel", json={"channel_id": "C9"})
    assert channel.json() == {"channel_id": "C9"}
    messenger = client.context.messenger
    with client.factory() as session:
        txn = TransactionService(session).insert_from_feed(feed_txn("t-1", "12.00"))
        workflow = NotificationWorkflow(session, messenger)
        ts = workflow.send_transaction_notification(txn).message_ts

    payload = {
        "type": "block_actions",
        "channel": {"id": "C9"},
        "message": messenger.messages[("C9", ts)],
        "actions": [{"action_id": "transaction_correct", "value": f"correct_{txn.id}"}],
    }
    response = client.post(
        "/webhooks/slack/interactive", data={"payload": json.dumps(payload)}
    )
    assert response.status_code == 200

    with client.factory() as session:
        stored = session.scalar(select(TransactionNotification))
        assert stored.status == NotificationStatus.resolved
    assert messenger.updates[-1][:2] == ("C9", ts)


def test_slack_view_submission_answers_with_errors(client: TestClient) -> None:
    payload = {
        "type": "view_submission",
        "view": {
            "callback_id": "split_transaction_1",
            "private_metadata": "forged",
            "state": {"values": {}},
        },
    }
    response = client.post(
        "/webhooks/slack/interactive", data={"payload": json.dumps(payload)}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["response_action"] == "errors"
    assert "split_1_category" in body["errors"]

    garbage = client.post("/webhooks/slack/interactive", data={"payload": "{nope"})
    assert garbage.status_code == 400


def test_month_end_endpoint_reports_counts(client: TestClient) -> None:
    _create_budget(client)
    client.post(
        "/api/budget/categories",
        json={"name": "Rainy Day", "category_type": "savings", "accumulated_cents": 500},
    )
    response = client.post("/api/month-end", json={"year": 2025, "month": 3})
    assert response.status_code == 200
    assert response.json()["savings_snapshots"] == 1


def test_budget_and_subcategory_updates(client: TestClient) -> None:
    assert client.put(
        "/api/budget",
        json={"name": "Home", "start_date": "2025-01-01", "end_date": "2025-12-31"},
    ).status_code == 404
    _create_budget(client)

    updated = client.put(
        "/api/budget",
        json={
            "name": "Family",
            "start_date": "2025-02-01",
            "end_date": "2026-01-31",
            "income_cents": 650000,
        },
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Family"
    assert updated.json()["income_cents"] == 650000
    assert client.put(
        "/api/budget",
        json={"name": "Family", "start_date": "2026-01-01", "end_date": "2025-01-01"},
    ).status_code == 400

    groceries = client.post("/api/budget/categories", json={"name": "Groceries"}).json()
    sub = client.post(
        f"/api/budget/categories/{groceries['id']}/subcategories",
        json={"name": "Produce", "expected_cents": 5000},
    ).json()
    response = client.put(
        f"/api/budget/categories/{groceries['id']}/subcategories/{sub['id']}",
        json={"name": "Fresh produce", "expected_cents": 7500},
    )
    assert response.json() == {"id": sub["id"], "name": "Fresh produce", "expected_cents": 7500}
    assert client.put(
        f"/api/budget/categories/{groceries['id']}/subcategories/9999",
        json={"name": "Other"},
    ).status_code == 404


def test_transaction_listing_validates_paging(client: TestClient) -> None:
    assert client.get("/api/transactions?page=abc").status_code == 422
    assert client.get("/api/transactions?limit=0").status_code == 422
    assert client.get("/api/transactions?page=2&limit=10").json()["page"] == 2
