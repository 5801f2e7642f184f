from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import CategoryType, MovementType


def to_cents(value: Decimal) -> int:
    return int((value * 100).quantize(Decimal("1")))


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    start_date: date
    end_date: date
    income_cents: int = Field(default=0, ge=0)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    category_type: CategoryType = CategoryType.variable
    allocated_cents: int = Field(default=0, ge=0)
    accumulated_cents: int = 0
    color: Optional[str] = Field(default=None, max_length=7)
    auto_move_surplus: bool = False
    surplus_target_category_id: Optional[int] = None
    auto_move_deficit: bool = False
    deficit_source_category_id: Optional[int] = None
    expected_merchant_name: Optional[str] = Field(default=None, max_length=255)
    hide_from_transaction_lists: bool = False


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    allocated_cents: Optional[int] = Field(default=None, ge=0)
    accumulated_cents: Optional[int] = None
    color: Optional[str] = Field(default=None, max_length=7)
    auto_move_surplus: Optional[bool] = None
    surplus_target_category_id: Optional[int] = None
    auto_move_deficit: Optional[bool] = None
    deficit_source_category_id: Optional[int] = None
    expected_merchant_name: Optional[str] = Field(default=None, max_length=255)
    hide_from_transaction_lists: Optional[bool] = None


class SubcategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    expected_cents: int = Field(default=0, ge=0)


class SplitIn(BaseModel):
    category_id: int
    subcategory_id: Optional[int] = None
    amount_cents: int


class CategoryAssignIn(BaseModel):
    category_id: int
    subcategory_id: Optional[int] = None


class SplitRequest(BaseModel):
    splits: list[SplitIn] = Field(..., min_length=1)


class SummaryRequest(BaseModel):
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    budget_id: Optional[int] = None


class MonthEndRequest(BaseModel):
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)


class MovementIn(BaseModel):
    variable_category_id: int
    savings_category_id: int
    movement_type: MovementType
    amount_cents: int = Field(..., gt=0)
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)


class PublicTokenIn(BaseModel):
    public_token: str = Field(..., min_length=1)


class AccountNameIn(BaseModel):
    custom_name: Optional[str] = Field(default=None, max_length=255)


class NotificationChannelIn(BaseModel):
    channel_id: str = Field(..., min_length=1, max_length=50)


class FeedTransaction(BaseModel):
    """One added/modified record from the external feed, normalised."""

    model_config = ConfigDict(extra="ignore")

    transaction_id: str
    account_id: Optional[str] = None
    amount: Decimal
    merchant_name: Optional[str] = None
    name: str
    date: date
    pending: bool = False
    category_hints: list[str] = Field(default_factory=list)
    category_id: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name_not_null(cls, value: Optional[str]) -> str:
        return value or ""

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class FeedBatch(BaseModel):
    added: list[FeedTransaction] = Field(default_factory=list)
    modified: list[FeedTransaction] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    next_cursor: str
    has_more: bool = False


class CategoryChoice(BaseModel):
    """Structured response contract for the language-model classifier."""

    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None


class WebhookIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    webhook_type: str
    webhook_code: Optional[str] = None
    item_id: Optional[str] = None


class SyncResultOut(BaseModel):
    added: int
    modified: int
    removed: int
    final_cursor: Optional[str]
    failed: int = 0
    categorized: int = 0


class ReconcileResultOut(BaseModel):
    variable_movements: int
    savings_snapshots: int
    fixed_updates: int
    deferred: int = 0
    failed: int = 0


class ModalResponse(BaseModel):
    response_action: Literal["errors", "update", "clear"]
    errors: Optional[dict[str, str]] = None
    view: Optional[dict] = None
