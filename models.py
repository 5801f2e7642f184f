from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CategoryType(str, Enum):
    variable = "variable"
    fixed = "fixed"
    savings = "savings"
    surplus = "surplus"
    excluded = "excluded"


SYSTEM_CATEGORY_TYPES = (CategoryType.surplus, CategoryType.excluded)


class MovementType(str, Enum):
    surplus = "surplus"
    deficit = "deficit"


class NotificationStatus(str, Enum):
    sent = "sent"
    resolved = "resolved"


class NotificationResolution(str, Enum):
    correct = "correct"
    recategorized = "recategorized"
    split = "split"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class LinkedItem(Base, TimestampMixin):
    __tablename__ = "linked_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    institution_id: Mapped[Optional[str]] = mapped_column(String(255))
    institution_name: Mapped[Optional[str]] = mapped_column(String(255))
    cursor: Mapped[Optional[str]] = mapped_column(Text)

    accounts: Mapped[list["LinkedAccount"]] = relationship(
        "LinkedAccount",
        back_populates="item",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class LinkedAccount(Base, TimestampMixin):
    __tablename__ = "linked_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        ForeignKey("linked_items.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    custom_name: Mapped[Optional[str]] = mapped_column(String(255))
    official_name: Mapped[Optional[str]] = mapped_column(String(500))
    type: Mapped[Optional[str]] = mapped_column(String(50))
    subtype: Mapped[Optional[str]] = mapped_column(String(50))
    mask: Mapped[Optional[str]] = mapped_column(String(10))

    item: Mapped["LinkedItem"] = relationship("LinkedItem", back_populates="accounts")

    __table_args__ = (
        UniqueConstraint("item_id", "account_id", name="uq_linked_account_item_account"),
    )

    @property
    def display_name(self) -> str:
        if self.custom_name and self.custom_name.strip():
            return self.custom_name
        return self.name


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="budget",
        cascade="all, delete-orphan",
        passive_deletes=True,
        foreign_keys="BudgetCategory.budget_id",
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category_type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False, default=CategoryType.variable
    )
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accumulated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    auto_move_surplus: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    surplus_target_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    auto_move_deficit: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    deficit_source_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    expected_merchant_name: Mapped[Optional[str]] = mapped_column(String(255))
    hide_from_transaction_lists: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    budget: Mapped["Budget"] = relationship(
        "Budget", back_populates="categories", foreign_keys=[budget_id]
    )
    subcategories: Mapped[list["Subcategory"]] = relationship(
        "Subcategory",
        back_populates="category",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Subcategory.id",
    )

    __table_args__ = (
        CheckConstraint("allocated_cents >= 0", name="ck_category_allocated_positive"),
        Index("ix_budget_categories_budget_type", "budget_id", "category_type"),
        Index(
            "uq_budget_system_category",
            "budget_id",
            "category_type",
            unique=True,
            sqlite_where=text("category_type IN ('surplus', 'excluded')"),
            postgresql_where=text("category_type IN ('surplus', 'excluded')"),
        ),
    )

    @property
    def is_system(self) -> bool:
        return self.category_type in SYSTEM_CATEGORY_TYPES


class Subcategory(Base, TimestampMixin):
    __tablename__ = "budget_subcategories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    expected_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    category: Mapped["BudgetCategory"] = relationship(
        "BudgetCategory", back_populates="subcategories"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("linked_items.id", ondelete="SET NULL")
    )
    account_id: Mapped[Optional[str]] = mapped_column(String(255))
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    # Feed sign convention: positive = money out, negative = money in.
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    source_category: Mapped[Optional[str]] = mapped_column(Text)
    source_category_id: Mapped[Optional[str]] = mapped_column(String(255))
    is_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    assignments: Mapped[list["CategoryAssignment"]] = relationship(
        "CategoryAssignment",
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CategoryAssignment.id",
    )
    notification: Mapped[Optional["TransactionNotification"]] = relationship(
        "TransactionNotification",
        back_populates="transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_merchant_date", "user_id", "merchant_name", "date"),
    )

    @property
    def display_name(self) -> str:
        return self.merchant_name or self.name or "Unknown"


class CategoryAssignment(Base, TimestampMixin):
    __tablename__ = "transaction_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    subcategory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_subcategories.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="assignments"
    )
    category: Mapped["BudgetCategory"] = relationship("BudgetCategory")
    subcategory: Mapped[Optional["Subcategory"]] = relationship("Subcategory")

    __table_args__ = (
        Index("ix_assignments_transaction", "transaction_id"),
        Index("ix_assignments_category", "category_id"),
    )


class FundMovement(Base):
    __tablename__ = "fund_movements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    from_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    to_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )
    variable_category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(
        SAEnum(MovementType), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_fund_movement_amount_positive"),
        Index(
            "ix_fund_movements_variable_period",
            "variable_category_id",
            "year",
            "month",
        ),
    )


class SavingsSnapshot(Base):
    __tablename__ = "savings_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    accumulated_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_savings_snapshot_period",
        ),
    )


class MonthlyCategorySummary(Base, TimestampMixin):
    __tablename__ = "monthly_category_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE")
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    accumulated_cents: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "budget_id",
            "category_id",
            "year",
            "month",
            name="uq_monthly_summary_period",
        ),
    )


class NotificationTarget(Base, TimestampMixin):
    __tablename__ = "notification_targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)


class TransactionNotification(Base, TimestampMixin):
    __tablename__ = "transaction_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)
    message_ts: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        SAEnum(NotificationStatus), nullable=False, default=NotificationStatus.sent
    )
    resolution: Mapped[Optional[NotificationResolution]] = mapped_column(
        SAEnum(NotificationResolution)
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="notification"
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[Optional[str]] = mapped_column(String(255))
    webhook_type: Mapped[str] = mapped_column(String(100), nullable=False)
    webhook_code: Mapped[Optional[str]] = mapped_column(String(100))
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
