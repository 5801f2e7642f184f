import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

import openai
from openai import OpenAI
from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import Session

from config import Settings
from errors import ClassifierBackendError
from models import BudgetCategory, CategoryType, Transaction
from schemas import CategoryChoice
from services import (
    BudgetService,
    CategoryService,
    TransactionService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

TRANSFER_HINTS = (
    "TRANSFER_IN",
    "TRANSFER_OUT",
    "LOAN_PAYMENTS",
    "CREDIT_CARD_PAYMENT",
    "PAYMENT",
)
TRANSFER_KEYWORDS = (
    "TRANSFER",
    "PAYMENT",
    "CREDIT CARD",
    "CARD PAYMENT",
    "AUTOPAY",
    "AUTO PAY",
    "PAYMENT TO",
    "TRANSFER TO",
    "TRANSFER FROM",
)
HISTORY_LIMIT = 5

SYSTEM_PROMPT = (
    "You are a financial transaction categorizer. Pick the single best budget "
    "category for the transaction, and a subcategory when the category lists any. "
    "Use null when nothing fits."
)

TransferDetector = Callable[[Optional[str], Optional[str], Sequence[str]], bool]


def keyword_transfer_detector(
    name: Optional[str], merchant_name: Optional[str], hints: Sequence[str]
) -> bool:
    """True when hints or the description look like money moving between accounts."""
    joined = " ".join(hints).upper()
    if any(h in joined for h in TRANSFER_HINTS):
        return True
    text = (name or merchant_name or "").upper()
    return any(k in text for k in TRANSFER_KEYWORDS)


@dataclass(frozen=True)
class Classification:
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.category_id is not None


UNRESOLVED = Classification()


class LLMBackend(Protocol):
    def choose_category(
        self, system_prompt: str, user_prompt: str
    ) -> Optional[CategoryChoice]: ...


class OpenAIBackend:
    """Structured-output completion returning a ``CategoryChoice``."""

    def __init__(self, client: OpenAI, model: str, temperature: float = 0.3):
        self.client = client
        self.model = model
        self.temperature = temperature

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIBackend":
        client = OpenAI(api_key=settings.require("openai_api_key"))
        return cls(client, settings.openai_model)

    def choose_category(
        self, system_prompt: str, user_prompt: str
    ) -> Optional[CategoryChoice]:
        try:
            response = self.client.chat.completions.parse(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=100,
                response_format=CategoryChoice,
            )
        except (openai.OpenAIError, ValidationError) as exc:
            raise ClassifierBackendError(f"Completion failed: {exc}") from exc
        return response.choices[0].message.parsed


def merchant_matches(merchant_name: Optional[str], expected: Optional[str]) -> bool:
    if not merchant_name or not expected:
        return False
    merchant = merchant_name.strip().lower()
    target = expected.strip().lower()
    if target in merchant:
        return True
    return Levenshtein.distance(merchant, target) <= 1


def _format_history(history: list[Transaction]) -> str:
    if not history:
        return "  (No history available)"
    lines = []
    for idx, txn in enumerate(history, start=1):
        names = ", ".join(a.category.name for a in txn.assignments) or "Uncategorized"
        lines.append(
            f"  - Transaction {idx}: ${txn.amount_cents / 100:.2f} on "
            f"{txn.date.isoformat()} -> Category: \"{names}\""
        )
    return "\n".join(lines)


def _format_categories(
    categories: list[BudgetCategory], merchant_name: Optional[str]
) -> tuple[str, Optional[BudgetCategory]]:
    priority: Optional[BudgetCategory] = None
    lines = []
    for cat in categories:
        note = ""
        if cat.category_type == CategoryType.excluded:
            note = " (for transfers/payments)"
        elif cat.expected_merchant_name:
            note = f" (expected merchant: \"{cat.expected_merchant_name}\")"
            if priority is None and merchant_matches(
                merchant_name, cat.expected_merchant_name
            ):
                priority = cat
        lines.append(f"  - ID: {cat.id}, Name: \"{cat.name}\"{note}")
        for sub in cat.subcategories:
            lines.append(f"      - Subcategory ID: {sub.id}, Name: \"{sub.name}\"")
    return "\n".join(lines), priority


def build_prompt(
    amount_cents: int,
    merchant_name: Optional[str],
    hints: Sequence[str],
    name: Optional[str],
    history: list[Transaction],
    categories: list[BudgetCategory],
) -> str:
    categories_text, priority = _format_categories(categories, merchant_name)
    priority_text = ""
    if priority is not None:
        priority_text = (
            f"\n\nIMPORTANT: Merchant \"{merchant_name}\" matches the expected merchant "
            f"\"{priority.expected_merchant_name}\" of category \"{priority.name}\" "
            f"(ID: {priority.id}). Prefer that category."
        )
    return (
        "Current transaction:\n"
        f"  - Amount: ${amount_cents / 100:.2f}\n"
        f"  - Merchant: \"{merchant_name or 'Unknown'}\"\n"
        f"  - Description: \"{name or ''}\"\n"
        f"  - Source categories: {json.dumps(list(hints)) if hints else 'null'}\n"
        f"Recent transactions from the same merchant (last {HISTORY_LIMIT}):\n"
        f"{_format_history(history)}\n"
        "Available budget categories:\n"
        f"{categories_text}{priority_text}\n\n"
        "Rules:\n"
        "1. Transfers between accounts and card payments go to the Excluded category.\n"
        "2. When a category lists subcategories, also return the best subcategory id.\n"
        "3. Return null ids when no category fits."
    )


def validate_choice(
    choice: Optional[CategoryChoice], categories: list[BudgetCategory]
) -> Classification:
    if choice is None or choice.category_id is None:
        return UNRESOLVED
    category = next((c for c in categories if c.id == choice.category_id), None)
    if category is None:
        logger.warning(f"classifier_unknown_category: category={choice.category_id}")
        return UNRESOLVED
    sub_ids = {s.id for s in category.subcategories}
    subcategory_id = choice.subcategory_id
    if subcategory_id is not None and subcategory_id not in sub_ids:
        logger.warning(
            f"classifier_foreign_subcategory: category={category.id} "
            f"subcategory={subcategory_id}"
        )
        subcategory_id = None
    if sub_ids and subcategory_id is None:
        return UNRESOLVED
    return Classification(category.id, subcategory_id)


class Classifier:
    def __init__(
        self,
        session: Session,
        backend: Optional[LLMBackend],
        user_id: Optional[int] = None,
        transfer_detector: TransferDetector = keyword_transfer_detector,
    ) -> None:
        self.session = session
        self.backend = backend
        self.user_id = user_id or get_current_user_id()
        self.transfer_detector = transfer_detector

    def classify(
        self,
        amount_cents: int,
        merchant_name: Optional[str],
        hints: Sequence[str],
        name: Optional[str],
        exclude_transaction_id: Optional[int] = None,
    ) -> Classification:
        if BudgetService(self.session, self.user_id).get_or_none() is None:
            return UNRESOLVED
        categories = CategoryService(self.session, self.user_id).candidates()
        if not categories:
            return UNRESOLVED

        if self.transfer_detector(name, merchant_name, hints):
            excluded = next(
                (c for c in categories if c.category_type == CategoryType.excluded), None
            )
            if excluded is not None:
                logger.info(f"classifier_transfer: merchant={merchant_name!r}")
                return Classification(excluded.id, None)

        if self.backend is None:
            return UNRESOLVED

        history = TransactionService(self.session, self.user_id).merchant_history(
            merchant_name, limit=HISTORY_LIMIT, exclude_id=exclude_transaction_id
        )
        prompt = build_prompt(amount_cents, merchant_name, hints, name, history, categories)
        try:
            choice = self.backend.choose_category(SYSTEM_PROMPT, prompt)
        except ClassifierBackendError:
            logger.exception(f"classifier_backend_failed: merchant={merchant_name!r}")
            return UNRESOLVED
        return validate_choice(choice, categories)

    def classify_transaction(self, txn: Transaction) -> Classification:
        hints = json.loads(txn.source_category) if txn.source_category else []
        return self.classify(
            txn.amount_cents,
            txn.merchant_name,
            hints,
            txn.name,
            exclude_transaction_id=txn.id,
        )
