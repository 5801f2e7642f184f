"""External bank-feed client.

``FeedClient`` is the narrow surface the sync engine and link service need.
``PlaidFeedClient`` implements it on top of ``plaid-python``; tests provide
their own in-memory implementation.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol

from plaid.api import plaid_api
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.exceptions import ApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.institutions_get_by_id_request import InstitutionsGetByIdRequest
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.item_remove_request import ItemRemoveRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_sync_request import TransactionsSyncRequest

from config import Settings
from errors import FeedError
from schemas import FeedBatch, FeedTransaction

logger = logging.getLogger(__name__)

PLAID_ENV_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


@dataclass
class FeedAccount:
    account_id: str
    name: str
    official_name: Optional[str] = None
    type: Optional[str] = None
    subtype: Optional[str] = None
    mask: Optional[str] = None
    current_balance: Optional[Decimal] = None


@dataclass
class FeedItem:
    item_id: str
    institution_id: Optional[str] = None


class FeedClient(Protocol):
    def sync_batch(self, access_token: str, cursor: Optional[str]) -> FeedBatch: ...

    def create_link_token(self, user_id: int) -> str: ...

    def exchange_public_token(self, public_token: str) -> tuple[str, str]: ...

    def get_accounts(self, access_token: str) -> list[FeedAccount]: ...

    def get_item(self, access_token: str) -> FeedItem: ...

    def get_institution_name(self, institution_id: str) -> Optional[str]: ...

    def get_balances(self, access_token: str) -> list[FeedAccount]: ...

    def revoke(self, access_token: str) -> None: ...


def _category_hints(raw: dict[str, Any]) -> list[str]:
    hints: list[str] = []
    pfc = raw.get("personal_finance_category") or {}
    for key in ("primary", "detailed"):
        if pfc.get(key):
            hints.append(str(pfc[key]))
    for legacy in raw.get("category") or []:
        if legacy:
            hints.append(str(legacy))
    return hints


def normalize_transaction(raw: dict[str, Any]) -> FeedTransaction:
    return FeedTransaction(
        transaction_id=raw["transaction_id"],
        account_id=raw.get("account_id"),
        amount=Decimal(str(raw["amount"])),
        merchant_name=raw.get("merchant_name"),
        name=raw.get("name"),
        date=raw["date"],
        pending=bool(raw.get("pending")),
        category_hints=_category_hints(raw),
        category_id=raw.get("category_id"),
    )


def normalize_transactions(raws: list[dict[str, Any]]) -> list[FeedTransaction]:
    """Normalise a page of records, dropping the ones that do not parse."""
    records: list[FeedTransaction] = []
    for raw in raws:
        try:
            records.append(normalize_transaction(raw))
        except (KeyError, TypeError, ValueError, ArithmeticError):
            logger.exception(
                f"feed_record_malformed: external_id={raw.get('transaction_id')}"
            )
    return records


def _normalize_account(raw: dict[str, Any]) -> FeedAccount:
    balances = raw.get("balances") or {}
    current = balances.get("current")
    return FeedAccount(
        account_id=raw["account_id"],
        name=raw.get("name") or "Account",
        official_name=raw.get("official_name"),
        type=str(raw["type"]) if raw.get("type") is not None else None,
        subtype=str(raw["subtype"]) if raw.get("subtype") is not None else None,
        mask=raw.get("mask"),
        current_balance=Decimal(str(current)) if current is not None else None,
    )


class PlaidFeedClient:
    def __init__(self, client: plaid_api.PlaidApi, webhook_url: Optional[str] = None):
        self.client = client
        self.webhook_url = webhook_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlaidFeedClient":
        if settings.plaid_env not in PLAID_ENV_HOSTS:
            raise FeedError(f"Invalid PLAID_ENV: {settings.plaid_env}")
        configuration = Configuration(
            host=PLAID_ENV_HOSTS[settings.plaid_env],
            api_key={
                "clientId": settings.require("plaid_client_id"),
                "secret": settings.require("plaid_secret"),
            },
        )
        api_client = ApiClient(configuration)
        return cls(plaid_api.PlaidApi(api_client), settings.plaid_webhook_url)

    def _call(self, operation: str, fn, request):
        try:
            return fn(request).to_dict()
        except ApiException as exc:
            logger.warning(f"feed_call_failed: op={operation} status={exc.status} body={exc.body}")
            raise FeedError(f"Feed call {operation} failed") from exc

    def sync_batch(self, access_token: str, cursor: Optional[str]) -> FeedBatch:
        if cursor:
            request = TransactionsSyncRequest(access_token=access_token, cursor=cursor)
        else:
            request = TransactionsSyncRequest(access_token=access_token)
        data = self._call("transactions_sync", self.client.transactions_sync, request)
        batch = FeedBatch(
            added=normalize_transactions(data.get("added") or []),
            modified=normalize_transactions(data.get("modified") or []),
            removed=[
                r["transaction_id"]
                for r in data.get("removed") or []
                if r.get("transaction_id")
            ],
            next_cursor=data["next_cursor"],
            has_more=bool(data.get("has_more")),
        )
        logger.info(
            f"feed_batch: added={len(batch.added)} modified={len(batch.modified)} "
            f"removed={len(batch.removed)} has_more={batch.has_more}"
        )
        return batch

    def create_link_token(self, user_id: int) -> str:
        kwargs: dict[str, Any] = {
            "products": [Products("transactions")],
            "client_name": "Ledger",
            "country_codes": [CountryCode("US")],
            "language": "en",
            "user": LinkTokenCreateRequestUser(client_user_id=str(user_id)),
        }
        if self.webhook_url:
            kwargs["webhook"] = self.webhook_url
        data = self._call(
            "link_token_create",
            self.client.link_token_create,
            LinkTokenCreateRequest(**kwargs),
        )
        return data["link_token"]

    def exchange_public_token(self, public_token: str) -> tuple[str, str]:
        data = self._call(
            "item_public_token_exchange",
            self.client.item_public_token_exchange,
            ItemPublicTokenExchangeRequest(public_token=public_token),
        )
        return data["access_token"], data["item_id"]

    def get_accounts(self, access_token: str) -> list[FeedAccount]:
        data = self._call(
            "accounts_get",
            self.client.accounts_get,
            AccountsGetRequest(access_token=access_token),
        )
        return [_normalize_account(a) for a in data.get("accounts") or []]

    def get_item(self, access_token: str) -> FeedItem:
        data = self._call(
            "item_get", self.client.item_get, ItemGetRequest(access_token=access_token)
        )
        item = data["item"]
        return FeedItem(item_id=item["item_id"], institution_id=item.get("institution_id"))

    def get_institution_name(self, institution_id: str) -> Optional[str]:
        data = self._call(
            "institutions_get_by_id",
            self.client.institutions_get_by_id,
            InstitutionsGetByIdRequest(
                institution_id=institution_id, country_codes=[CountryCode("US")]
            ),
        )
        return (data.get("institution") or {}).get("name")

    def get_balances(self, access_token: str) -> list[FeedAccount]:
        # accounts_get already carries cached balances
        return self.get_accounts(access_token)

    def revoke(self, access_token: str) -> None:
        self._call(
            "item_remove",
            self.client.item_remove,
            ItemRemoveRequest(access_token=access_token),
        )
