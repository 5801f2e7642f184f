from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from fakes import make_engine, make_item
from feed import PlaidFeedClient, normalize_transaction
from models import LinkedItem, Transaction
from sync import SyncEngine


class _Response:
    def __init__(self, data: dict):
        self.data = data

    def to_dict(self) -> dict:
        return self.data


class StubPlaidApi:
    def __init__(self, pages: dict):
        self.pages = pages

    def transactions_sync(self, request):
        return _Response(self.pages[getattr(request, "cursor", None)])


def _raw(transaction_id: str, amount, **extra) -> dict:
    raw = {
        "transaction_id": transaction_id,
        "account_id": "acc-1",
        "amount": amount,
        "name": "CORNER CAFE 123",
        "merchant_name": "Corner Cafe",
        "date": date(2025, 3, 10),
        "pending": False,
        "personal_finance_category": {"primary": "FOOD_AND_DRINK", "detailed": None},
    }
    raw.update(extra)
    return raw


def test_normalize_reads_amount_and_hints() -> None:
    record = normalize_transaction(_raw("a", 12.5, name=None))
    assert record.amount_cents == 1250
    assert record.name == ""
    assert record.category_hints == ["FOOD_AND_DRINK"]


def test_malformed_record_is_skipped_and_cursor_still_advances() -> None:
    api = StubPlaidApi(
        {
            None: {
                "added": [_raw("good", 7.25), _raw("bad", None)],
                "modified": [{"amount": 3.0}],
                "removed": [],
                "next_cursor": "c1",
                "has_more": False,
            }
        }
    )
    client = PlaidFeedClient(api)

    batch = client.sync_batch("access-token", None)
    assert [r.transaction_id for r in batch.added] == ["good"]
    assert batch.modified == []

    engine = make_engine()
    with Session(engine) as session:
        item = make_item(session)
        results = SyncEngine(session, client).sync_user(1)

        assert results[item.id].added == 1
        assert session.scalars(select(Transaction.external_id)).all() == ["good"]
        assert session.get(LinkedItem, item.id).cursor == "c1"
