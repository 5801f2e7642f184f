from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from database import Base
from errors import ClassifierBackendError, FeedError, MessagingError
from feed import FeedAccount, FeedItem
from models import LinkedItem
from schemas import BudgetIn, CategoryChoice, FeedBatch, FeedTransaction
from services import BudgetService
from signing import seal_token


def _foreign_keys_on(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def enable_foreign_keys(engine: Engine) -> None:
    event.listen(engine, "connect", _foreign_keys_on)


def make_engine() -> Engine:
    engine = create_engine("sqlite:///:memory:")
    enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    return engine


def make_budget(session, user_id: int = 1, income_cents: int = 500000):
    return BudgetService(session, user_id).create(
        BudgetIn(
            name="Household",
            start_date=date(2025, 1, 1),
            end_date=date(2025, 12, 31),
            income_cents=income_cents,
        )
    )


def make_item(session, user_id: int = 1, item_id: str = "item-1") -> LinkedItem:
    item = LinkedItem(
        user_id=user_id,
        item_id=item_id,
        access_token=seal_token(f"access-{item_id}"),
        institution_name="First Bank",
    )
    session.add(item)
    session.commit()
    return item


def feed_txn(
    transaction_id: str,
    amount: str,
    merchant_name: Optional[str] = "Corner Cafe",
    name: str = "CORNER CAFE 123",
    on: date = date(2025, 3, 10),
    hints: Optional[list[str]] = None,
) -> FeedTransaction:
    return FeedTransaction(
        transaction_id=transaction_id,
        account_id="acc-1",
        amount=Decimal(amount),
        merchant_name=merchant_name,
        name=name,
        date=on,
        category_hints=hints or [],
    )


class FakeFeed:
    """Serves pre-built pages keyed by the cursor they answer."""

    def __init__(self, pages: Optional[dict[Optional[str], FeedBatch]] = None):
        self.pages = pages or {}
        self.fail_on: set[Optional[str]] = set()
        self.requested: list[Optional[str]] = []
        self.accounts: list[FeedAccount] = []
        self.revoked: list[str] = []
        self.balance_failures: set[str] = set()

    def sync_batch(self, access_token: str, cursor: Optional[str]) -> FeedBatch:
        self.requested.append(cursor)
        if cursor in self.fail_on:
            raise FeedError(f"page {cursor} unavailable")
        return self.pages[cursor]

    def create_link_token(self, user_id: int) -> str:
        return f"link-token-{user_id}"

    def exchange_public_token(self, public_token: str) -> tuple[str, str]:
        return f"access-{public_token}", f"item-{public_token}"

    def get_accounts(self, access_token: str) -> list[FeedAccount]:
        return list(self.accounts)

    def get_item(self, access_token: str) -> FeedItem:
        return FeedItem(item_id=access_token.replace("access-", "item-"), institution_id="ins_1")

    def get_institution_name(self, institution_id: str) -> Optional[str]:
        return "First Bank"

    def get_balances(self, access_token: str) -> list[FeedAccount]:
        if access_token in self.balance_failures:
            raise FeedError("balances unavailable")
        return list(self.accounts)

    def revoke(self, access_token: str) -> None:
        self.revoked.append(access_token)


class FakeBackend:
    def __init__(self, choice: Optional[CategoryChoice] = None, error: bool = False):
        self.choice = choice
        self.error = error
        self.prompts: list[str] = []

    def choose_category(
        self, system_prompt: str, user_prompt: str
    ) -> Optional[CategoryChoice]:
        self.prompts.append(user_prompt)
        if self.error:
            raise ClassifierBackendError("model unavailable")
        return self.choice


class FakeMessenger:
    def __init__(self) -> None:
        self.messages: dict[tuple[str, str], dict] = {}
        self.updates: list[tuple[str, str, str, list[dict]]] = []
        self.modals: list[tuple[str, dict]] = []
        self.fail_updates = False
        self.fail_posts = False
        self._counter = 0

    def post_message(self, channel: str, text: str, blocks: list[dict]) -> str:
        if self.fail_posts:
            raise MessagingError("post failed")
        self._counter += 1
        ts = f"1700000000.{self._counter:06d}"
        self.messages[(channel, ts)] = {"ts": ts, "text": text, "blocks": blocks}
        return ts

    def update_message(
        self, channel: str, ts: str, text: str, blocks: list[dict]
    ) -> None:
        if self.fail_updates:
            raise MessagingError("update failed")
        self.updates.append((channel, ts, text, blocks))
        self.messages[(channel, ts)] = {"ts": ts, "text": text, "blocks": blocks}

    def get_message(self, channel: str, ts: str) -> Optional[dict]:
        return self.messages.get((channel, ts))

    def open_modal(self, trigger_id: str, view: dict) -> None:
        self.modals.append((trigger_id, view))
