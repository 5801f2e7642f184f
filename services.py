from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from errors import (
    AmountMismatch,
    ExternalServiceError,
    InvalidCategoryReference,
    InvalidSplitCount,
    NotFound,
    SystemCategoryProtected,
    ValidationFailure,
)
from feed import FeedClient
from models import (
    SYSTEM_CATEGORY_TYPES,
    Budget,
    BudgetCategory,
    CategoryAssignment,
    CategoryType,
    LinkedAccount,
    LinkedItem,
    MonthlyCategorySummary,
    Subcategory,
    Transaction,
)
from periods import Period, current_month, month_bounds
from schemas import (
    BudgetIn,
    CategoryIn,
    CategoryUpdate,
    FeedTransaction,
    SplitIn,
    SubcategoryIn,
    to_cents,
)
from signing import seal_token, unseal_token

logger = logging.getLogger(__name__)

SPLIT_TOLERANCE_CENTS = 1

SYSTEM_CATEGORIES = {
    CategoryType.surplus: {"name": "Surplus", "color": "#28a745"},
    CategoryType.excluded: {"name": "Excluded", "color": "#6c757d"},
}


def get_current_user_id() -> int:
    return get_settings().default_user_id


def format_cents(cents: int) -> str:
    return f"${abs(cents) / 100:,.2f}"


def format_signed_amount(cents: int) -> str:
    # Money in (negative) is shown with a plus sign, money out without one.
    if cents < 0:
        return f"+{format_cents(cents)}"
    return format_cents(cents)


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get_or_none(self) -> Optional[Budget]:
        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id, Budget.is_active.is_(True)
            )
        )
        if budget:
            self.ensure_system_categories(budget)
        return budget

    def require(self) -> Budget:
        budget = self.get_or_none()
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        existing = self.session.scalar(
            select(Budget).where(Budget.user_id == self.user_id)
        )
        if existing:
            raise ValidationFailure(
                "User already has a budget. Update it instead of creating another."
            )
        if data.start_date > data.end_date:
            raise ValidationFailure("Start date must be before end date")

        budget = Budget(
            user_id=self.user_id,
            name=data.name.strip(),
            start_date=data.start_date,
            end_date=data.end_date,
            income_cents=data.income_cents,
        )
        self.session.add(budget)
        self.session.flush()
        self.ensure_system_categories(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, data: BudgetIn) -> Budget:
        budget = self.require()
        if data.start_date > data.end_date:
            raise ValidationFailure("Start date must be before end date")
        budget.name = data.name.strip()
        budget.start_date = data.start_date
        budget.end_date = data.end_date
        budget.income_cents = data.income_cents
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def ensure_system_categories(self, budget: Budget) -> None:
        present = set(
            self.session.scalars(
                select(BudgetCategory.category_type).where(
                    BudgetCategory.budget_id == budget.id,
                    BudgetCategory.category_type.in_(SYSTEM_CATEGORY_TYPES),
                )
            ).all()
        )
        created = False
        for category_type, defaults in SYSTEM_CATEGORIES.items():
            if category_type in present:
                continue
            self.session.add(
                BudgetCategory(
                    budget_id=budget.id,
                    name=defaults["name"],
                    category_type=category_type,
                    allocated_cents=0,
                    accumulated_cents=0,
                    color=defaults["color"],
                )
            )
            created = True
        if created:
            self.session.flush()
            logger.info(f"system_categories_created: budget={budget.id}")


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.budgets = BudgetService(session, self.user_id)

    def list_all(self) -> list[BudgetCategory]:
        budget = self.budgets.get_or_none()
        if not budget:
            return []
        stmt = (
            select(BudgetCategory)
            .options(selectinload(BudgetCategory.subcategories))
            .where(BudgetCategory.budget_id == budget.id)
            .order_by(BudgetCategory.id)
        )
        return list(self.session.scalars(stmt).all())

    def candidates(self) -> list[BudgetCategory]:
        """Categories a transaction may be assigned to automatically."""
        return [
            c for c in self.list_all() if c.category_type != CategoryType.surplus
        ]

    def list_with_spending(
        self, year: int, month: int
    ) -> list[tuple[BudgetCategory, int]]:
        spent = SpendingStats(self.session, self.user_id).spent_by_category(
            month_bounds(year, month)
        )
        return [(c, spent.get(c.id, 0)) for c in self.list_all()]

    def get(self, category_id: int) -> BudgetCategory:
        budget = self.budgets.require()
        category = self.session.scalar(
            select(BudgetCategory)
            .options(selectinload(BudgetCategory.subcategories))
            .where(
                BudgetCategory.id == category_id,
                BudgetCategory.budget_id == budget.id,
            )
        )
        if not category:
            raise NotFound("Category not found")
        return category

    def by_type(self, category_type: CategoryType) -> Optional[BudgetCategory]:
        budget = self.budgets.get_or_none()
        if not budget:
            return None
        return self.session.scalar(
            select(BudgetCategory).where(
                BudgetCategory.budget_id == budget.id,
                BudgetCategory.category_type == category_type,
            )
        )

    def _check_linkage(self, budget: Budget, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        linked = self.session.scalar(
            select(BudgetCategory).where(
                BudgetCategory.id == category_id,
                BudgetCategory.budget_id == budget.id,
            )
        )
        if not linked:
            raise InvalidCategoryReference("Linked category not found")
        if linked.category_type != CategoryType.savings:
            raise InvalidCategoryReference("Linked category must be a savings category")

    def create(self, data: CategoryIn) -> BudgetCategory:
        budget = self.budgets.require()
        if data.category_type in SYSTEM_CATEGORY_TYPES:
            raise SystemCategoryProtected(
                "Cannot create system categories (Surplus, Excluded)"
            )
        self._check_linkage(budget, data.surplus_target_category_id)
        self._check_linkage(budget, data.deficit_source_category_id)

        category = BudgetCategory(
            budget_id=budget.id,
            name=data.name.strip(),
            category_type=data.category_type,
            allocated_cents=data.allocated_cents,
            accumulated_cents=data.accumulated_cents,
            color=data.color,
            auto_move_surplus=data.auto_move_surplus,
            surplus_target_category_id=data.surplus_target_category_id,
            auto_move_deficit=data.auto_move_deficit,
            deficit_source_category_id=data.deficit_source_category_id,
            expected_merchant_name=data.expected_merchant_name,
            hide_from_transaction_lists=data.hide_from_transaction_lists,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> BudgetCategory:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)

        if category.category_type == CategoryType.excluded:
            raise SystemCategoryProtected("Excluded category cannot be modified")
        if category.category_type == CategoryType.surplus and any(
            key != "color" for key in changes
        ):
            raise SystemCategoryProtected(
                "Surplus category can only have its color changed"
            )

        self._check_linkage(category.budget, changes.get("surplus_target_category_id"))
        self._check_linkage(category.budget, changes.get("deficit_source_category_id"))
        if changes.get("name") is not None:
            changes["name"] = changes["name"].strip()

        for key, value in changes.items():
            setattr(category, key, value)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if category.is_system:
            raise SystemCategoryProtected(
                "System categories (Surplus, Excluded) cannot be deleted"
            )
        self.session.execute(
            delete(CategoryAssignment).where(
                CategoryAssignment.category_id == category.id
            )
        )
        self.session.delete(category)
        self.session.commit()

    def add_subcategory(self, category_id: int, data: SubcategoryIn) -> Subcategory:
        category = self.get(category_id)
        if category.is_system:
            raise SystemCategoryProtected("System categories cannot have subcategories")
        sub = Subcategory(
            category_id=category.id,
            name=data.name.strip(),
            expected_cents=data.expected_cents,
        )
        self.session.add(sub)
        self.session.commit()
        self.session.refresh(sub)
        return sub

    def _subcategory(self, category_id: int, subcategory_id: int) -> Subcategory:
        category = self.get(category_id)
        sub = next((s for s in category.subcategories if s.id == subcategory_id), None)
        if not sub:
            raise NotFound("Subcategory not found")
        return sub

    def update_subcategory(
        self, category_id: int, subcategory_id: int, data: SubcategoryIn
    ) -> Subcategory:
        sub = self._subcategory(category_id, subcategory_id)
        sub.name = data.name.strip()
        sub.expected_cents = data.expected_cents
        self.session.commit()
        self.session.refresh(sub)
        return sub

    def delete_subcategory(self, category_id: int, subcategory_id: int) -> None:
        sub = self._subcategory(category_id, subcategory_id)
        self.session.execute(
            update(CategoryAssignment)
            .where(CategoryAssignment.subcategory_id == sub.id)
            .values(subcategory_id=None)
        )
        self.session.delete(sub)
        self.session.commit()

    def adjust_accumulated(
        self, category_id: int, delta_cents: int, *, floor_cents: Optional[int] = None
    ) -> bool:
        """Atomically add ``delta_cents`` to a category's running total.

        With ``floor_cents`` set the update only applies when the result stays
        at or above the floor; the return value says whether it applied.
        Does not commit.
        """
        stmt = (
            update(BudgetCategory)
            .where(BudgetCategory.id == category_id)
            .values(accumulated_cents=BudgetCategory.accumulated_cents + delta_cents)
            .execution_options(synchronize_session="fetch")
        )
        if floor_cents is not None:
            stmt = stmt.where(
                BudgetCategory.accumulated_cents + delta_cents >= floor_cents
            )
        result = self.session.execute(stmt)
        return result.rowcount == 1


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(selectinload(Transaction.assignments))
            .where(Transaction.id == transaction_id, Transaction.user_id == self.user_id)
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def get_by_external_id(self, external_id: str) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction).where(
                Transaction.external_id == external_id,
                Transaction.user_id == self.user_id,
            )
        )

    def exists_external(self, external_id: str) -> bool:
        # Uniqueness is global, so this checks across users as well.
        return (
            self.session.scalar(
                select(Transaction.id).where(Transaction.external_id == external_id)
            )
            is not None
        )

    def insert_from_feed(
        self, record: FeedTransaction, item: Optional[LinkedItem] = None
    ) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            item_id=item.id if item else None,
            account_id=record.account_id,
            external_id=record.transaction_id,
            amount_cents=record.amount_cents,
            merchant_name=record.merchant_name,
            name=record.name,
            date=record.date,
            source_category=json.dumps(record.category_hints)
            if record.category_hints
            else None,
            source_category_id=record.category_id,
            is_pending=record.pending,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def update_from_feed(self, txn: Transaction, record: FeedTransaction) -> Transaction:
        """Overwrite feed-owned fields in place.

        An amount change keeps the assignments summing to the new total: a
        single assignment follows the new amount, a split is dropped and the
        transaction goes back to unreviewed.
        """
        if record.amount_cents != txn.amount_cents:
            assignments = list(
                self.session.scalars(
                    select(CategoryAssignment).where(
                        CategoryAssignment.transaction_id == txn.id
                    )
                ).all()
            )
            if len(assignments) == 1:
                assignments[0].amount_cents = record.amount_cents
            elif assignments:
                self.session.execute(
                    delete(CategoryAssignment).where(
                        CategoryAssignment.transaction_id == txn.id
                    )
                )
                txn.is_reviewed = False
                logger.info(
                    f"split_dropped_on_amount_change: transaction={txn.id} "
                    f"old_cents={txn.amount_cents} new_cents={record.amount_cents}"
                )
            self.session.expire(txn, ["assignments"])
        txn.amount_cents = record.amount_cents
        txn.merchant_name = record.merchant_name
        txn.name = record.name
        txn.date = record.date
        txn.is_pending = record.pending
        txn.source_category = (
            json.dumps(record.category_hints) if record.category_hints else None
        )
        txn.source_category_id = record.category_id
        self.session.commit()
        return txn

    def delete_by_external_id(self, external_id: str) -> bool:
        txn = self.get_by_external_id(external_id)
        if not txn:
            return False
        self.session.execute(
            delete(CategoryAssignment).where(
                CategoryAssignment.transaction_id == txn.id
            )
        )
        self.session.delete(txn)
        self.session.commit()
        return True

    def mark_reviewed(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        if not txn.is_reviewed:
            txn.is_reviewed = True
            self.session.commit()
        return txn

    def list(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        reviewed: Optional[bool] = None,
        include_hidden: bool = False,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(
                selectinload(Transaction.assignments).joinedload(
                    CategoryAssignment.category
                ),
                selectinload(Transaction.assignments).joinedload(
                    CategoryAssignment.subcategory
                ),
            )
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if reviewed is not None:
            stmt = stmt.where(Transaction.is_reviewed.is_(reviewed))
        if not include_hidden:
            hidden = (
                select(CategoryAssignment.transaction_id)
                .join(BudgetCategory, CategoryAssignment.category_id == BudgetCategory.id)
                .where(
                    BudgetCategory.category_type == CategoryType.fixed,
                    BudgetCategory.hide_from_transaction_lists.is_(True),
                )
            )
            stmt = stmt.where(Transaction.id.not_in(hidden))
        stmt = stmt.limit(limit).offset(offset)
        return list(self.session.scalars(stmt).all())

    def merchant_history(
        self,
        merchant_name: Optional[str],
        *,
        limit: int = 5,
        exclude_id: Optional[int] = None,
    ) -> list[Transaction]:
        if not merchant_name:
            return []
        stmt = (
            select(Transaction)
            .options(
                selectinload(Transaction.assignments).joinedload(
                    CategoryAssignment.category
                )
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.merchant_name == merchant_name,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        if exclude_id is not None:
            stmt = stmt.where(Transaction.id != exclude_id)
        return list(self.session.scalars(stmt).all())


@dataclass(frozen=True)
class Split:
    category_id: int
    amount_cents: int
    subcategory_id: Optional[int] = None


class AssignmentManager:
    """Owns the rule that a transaction's splits add up to its amount."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _resolve_categories(
        self, splits: Iterable[Split]
    ) -> dict[int, BudgetCategory]:
        budget = BudgetService(self.session, self.user_id).require()
        ids = {s.category_id for s in splits}
        categories = {
            c.id: c
            for c in self.session.scalars(
                select(BudgetCategory)
                .options(selectinload(BudgetCategory.subcategories))
                .where(
                    BudgetCategory.id.in_(ids),
                    BudgetCategory.budget_id == budget.id,
                )
            ).all()
        }
        for split in splits:
            category = categories.get(split.category_id)
            if not category:
                raise InvalidCategoryReference(
                    f"Category {split.category_id} not found"
                )
            if split.subcategory_id is not None and split.subcategory_id not in {
                s.id for s in category.subcategories
            }:
                raise InvalidCategoryReference(
                    f"Subcategory {split.subcategory_id} does not belong to "
                    f"category {category.id}"
                )
        return categories

    def assign(
        self,
        transaction_id: int,
        splits: list[Split],
        *,
        is_manual: bool,
    ) -> list[CategoryAssignment]:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        if not splits:
            raise InvalidSplitCount("At least one split is required")
        total = sum(s.amount_cents for s in splits)
        if abs(total - txn.amount_cents) > SPLIT_TOLERANCE_CENTS:
            raise AmountMismatch(txn.amount_cents, total)
        self._resolve_categories(splits)

        try:
            self.session.execute(
                delete(CategoryAssignment).where(
                    CategoryAssignment.transaction_id == txn.id
                )
            )
            created = [
                CategoryAssignment(
                    transaction_id=txn.id,
                    category_id=s.category_id,
                    subcategory_id=s.subcategory_id,
                    amount_cents=s.amount_cents,
                    is_manual=is_manual,
                )
                for s in splits
            ]
            self.session.add_all(created)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.expire(txn, ["assignments"])
        logger.info(
            f"assignments_replaced: transaction={txn.id} splits={len(created)} "
            f"manual={is_manual}"
        )
        return created

    def assign_single(
        self,
        transaction_id: int,
        category_id: int,
        subcategory_id: Optional[int] = None,
        *,
        is_manual: bool,
    ) -> CategoryAssignment:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        [assignment] = self.assign(
            txn.id,
            [Split(category_id, txn.amount_cents, subcategory_id)],
            is_manual=is_manual,
        )
        return assignment

    def assign_from_input(
        self, transaction_id: int, splits: list[SplitIn], *, is_manual: bool = True
    ) -> list[CategoryAssignment]:
        return self.assign(
            transaction_id,
            [Split(s.category_id, s.amount_cents, s.subcategory_id) for s in splits],
            is_manual=is_manual,
        )

    def remove_category(self, transaction_id: int, category_id: int) -> None:
        txn = TransactionService(self.session, self.user_id).get(transaction_id)
        remaining = [a for a in txn.assignments if a.category_id != category_id]
        if len(remaining) == len(txn.assignments):
            raise NotFound("Category assignment not found")
        if remaining:
            total = sum(a.amount_cents for a in remaining)
            if abs(total - txn.amount_cents) > SPLIT_TOLERANCE_CENTS:
                raise AmountMismatch(txn.amount_cents, total)
        self.session.execute(
            delete(CategoryAssignment).where(
                CategoryAssignment.transaction_id == txn.id,
                CategoryAssignment.category_id == category_id,
            )
        )
        self.session.commit()
        self.session.expire(txn, ["assignments"])


@dataclass(frozen=True)
class CategoryStats:
    spent_cents: int
    allotted_cents: int

    @property
    def percentage(self) -> float:
        if self.allotted_cents <= 0:
            return 0.0
        return self.spent_cents / self.allotted_cents * 100


class SpendingStats:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _spent_stmt(self, period: Period):
        return (
            select(func.coalesce(func.sum(func.abs(CategoryAssignment.amount_cents)), 0))
            .join(Transaction, CategoryAssignment.transaction_id == Transaction.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
        )

    def spent_for_category(
        self,
        category_id: int,
        period: Period,
        subcategory_id: Optional[int] = None,
    ) -> int:
        stmt = self._spent_stmt(period).where(
            CategoryAssignment.category_id == category_id
        )
        if subcategory_id is not None:
            stmt = stmt.where(CategoryAssignment.subcategory_id == subcategory_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def spent_by_category(self, period: Period) -> dict[int, int]:
        stmt = (
            select(
                CategoryAssignment.category_id,
                func.coalesce(func.sum(func.abs(CategoryAssignment.amount_cents)), 0),
            )
            .join(Transaction, CategoryAssignment.transaction_id == Transaction.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(CategoryAssignment.category_id)
        )
        return {row[0]: int(row[1]) for row in self.session.execute(stmt).all()}

    def for_category(
        self,
        category: BudgetCategory,
        subcategory: Optional[Subcategory] = None,
        period: Optional[Period] = None,
    ) -> CategoryStats:
        period = period or current_month()
        if subcategory is not None:
            spent = self.spent_for_category(category.id, period, subcategory.id)
            return CategoryStats(spent, subcategory.expected_cents)
        spent = self.spent_for_category(category.id, period)
        return CategoryStats(spent, category.allocated_cents)


class SummaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _get_or_create(
        self, budget_id: Optional[int], category_id: int, year: int, month: int
    ) -> MonthlyCategorySummary:
        stmt = select(MonthlyCategorySummary).where(
            MonthlyCategorySummary.user_id == self.user_id,
            MonthlyCategorySummary.category_id == category_id,
            MonthlyCategorySummary.year == year,
            MonthlyCategorySummary.month == month,
        )
        if budget_id is None:
            stmt = stmt.where(MonthlyCategorySummary.budget_id.is_(None))
        else:
            stmt = stmt.where(MonthlyCategorySummary.budget_id == budget_id)
        summary = self.session.scalar(stmt)
        if not summary:
            summary = MonthlyCategorySummary(
                user_id=self.user_id,
                budget_id=budget_id,
                category_id=category_id,
                year=year,
                month=month,
                total_spent_cents=0,
                transaction_count=0,
            )
            self.session.add(summary)
            self.session.flush()
        return summary

    def generate(self, year: int, month: int) -> list[MonthlyCategorySummary]:
        budget = BudgetService(self.session, self.user_id).require()
        period = month_bounds(year, month)
        rows = self.session.execute(
            select(
                CategoryAssignment.category_id,
                func.coalesce(func.sum(CategoryAssignment.amount_cents), 0),
                func.count(func.distinct(CategoryAssignment.transaction_id)),
            )
            .join(Transaction, CategoryAssignment.transaction_id == Transaction.id)
            .join(BudgetCategory, CategoryAssignment.category_id == BudgetCategory.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
                BudgetCategory.budget_id == budget.id,
                BudgetCategory.category_type != CategoryType.excluded,
            )
            .group_by(CategoryAssignment.category_id)
        ).all()

        summaries = []
        for category_id, total, count in rows:
            summary = self._get_or_create(budget.id, category_id, year, month)
            summary.total_spent_cents = int(total)
            summary.transaction_count = int(count)
            summaries.append(summary)
        self.session.commit()
        logger.info(
            f"summaries_generated: user={self.user_id} period={year}-{month:02d} "
            f"rows={len(summaries)}"
        )
        return summaries

    def record_fixed_accumulation(
        self,
        budget_id: int,
        category_id: int,
        year: int,
        month: int,
        spent_cents: int,
        difference_cents: int,
    ) -> MonthlyCategorySummary:
        """Upsert the period's allocated-minus-spent figure. Does not commit."""
        summary = self._get_or_create(budget_id, category_id, year, month)
        summary.total_spent_cents = spent_cents
        summary.accumulated_cents = difference_cents
        summary.updated_at = datetime.utcnow()
        return summary

    def list(
        self,
        year: Optional[int] = None,
        month: Optional[int] = None,
        budget_id: Optional[int] = None,
    ) -> list[MonthlyCategorySummary]:
        stmt = select(MonthlyCategorySummary).where(
            MonthlyCategorySummary.user_id == self.user_id
        )
        if year:
            stmt = stmt.where(MonthlyCategorySummary.year == year)
        if month:
            stmt = stmt.where(MonthlyCategorySummary.month == month)
        if budget_id:
            stmt = stmt.where(MonthlyCategorySummary.budget_id == budget_id)
        stmt = stmt.order_by(
            MonthlyCategorySummary.year,
            MonthlyCategorySummary.month,
            MonthlyCategorySummary.category_id,
        )
        return list(self.session.scalars(stmt).all())


def load_transaction_with_categories(
    session: Session, transaction_id: int
) -> Optional[Transaction]:
    return session.scalar(
        select(Transaction)
        .options(
            selectinload(Transaction.assignments).joinedload(CategoryAssignment.category),
            selectinload(Transaction.assignments).joinedload(CategoryAssignment.subcategory),
        )
        .where(Transaction.id == transaction_id)
    )


ASSET_ACCOUNT_TYPES = {"depository", "investment"}
DEBT_ACCOUNT_TYPES = {"credit", "loan"}


@dataclass
class BalanceSnapshot:
    assets_cents: int
    debts_cents: int
    accounts: list[dict]
    failed_items: list[int]

    @property
    def net_cents(self) -> int:
        return self.assets_cents - self.debts_cents


class LinkService:
    """Linked item lifecycle: link, exchange, rename, unlink, balances."""

    def __init__(
        self, session: Session, feed: FeedClient, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.feed = feed
        self.user_id = user_id or get_current_user_id()

    def access_token(self, item: LinkedItem) -> str:
        return unseal_token(item.access_token)

    def list_items(self) -> list[LinkedItem]:
        stmt = (
            select(LinkedItem)
            .options(selectinload(LinkedItem.accounts))
            .where(LinkedItem.user_id == self.user_id)
            .order_by(LinkedItem.id)
        )
        return list(self.session.scalars(stmt).all())

    def get_item(self, item_pk: int) -> LinkedItem:
        item = self.session.scalar(
            select(LinkedItem).where(
                LinkedItem.id == item_pk, LinkedItem.user_id == self.user_id
            )
        )
        if not item:
            raise NotFound("Item not found")
        return item

    def create_link_token(self) -> str:
        return self.feed.create_link_token(self.user_id)

    def exchange(self, public_token: str) -> LinkedItem:
        access_token, external_item_id = self.feed.exchange_public_token(public_token)
        remote_item = self.feed.get_item(access_token)
        institution_name = None
        if remote_item.institution_id:
            try:
                institution_name = self.feed.get_institution_name(
                    remote_item.institution_id
                )
            except ExternalServiceError:
                logger.warning(
                    f"institution_lookup_failed: institution={remote_item.institution_id}"
                )
        accounts = self.feed.get_accounts(access_token)

        item = self.session.scalar(
            select(LinkedItem).where(LinkedItem.item_id == external_item_id)
        )
        if item and item.user_id != self.user_id:
            raise ValidationFailure("Item is linked to another user")
        if not item:
            item = LinkedItem(user_id=self.user_id, item_id=external_item_id)
            self.session.add(item)
        item.access_token = seal_token(access_token)
        item.institution_id = remote_item.institution_id
        item.institution_name = institution_name
        self.session.flush()

        existing = {a.account_id: a for a in item.accounts}
        for remote in accounts:
            account = existing.get(remote.account_id)
            if not account:
                account = LinkedAccount(item_id=item.id, account_id=remote.account_id)
                self.session.add(account)
            account.name = remote.name
            account.official_name = remote.official_name
            account.type = remote.type
            account.subtype = remote.subtype
            account.mask = remote.mask
        self.session.commit()
        self.session.refresh(item)
        logger.info(
            f"item_linked: user={self.user_id} item={item.id} accounts={len(accounts)}"
        )
        return item

    def rename_account(
        self, account_id: str, custom_name: Optional[str]
    ) -> LinkedAccount:
        account = self.session.scalar(
            select(LinkedAccount)
            .join(LinkedItem, LinkedAccount.item_id == LinkedItem.id)
            .where(
                LinkedAccount.account_id == account_id,
                LinkedItem.user_id == self.user_id,
            )
        )
        if not account:
            raise NotFound("Account not found")
        cleaned = (custom_name or "").strip()
        account.custom_name = cleaned or None
        self.session.commit()
        return account

    def unlink(self, item_pk: int, *, delete_transactions: bool = False) -> None:
        item = self.get_item(item_pk)
        try:
            self.feed.revoke(self.access_token(item))
        except (ExternalServiceError, ValidationFailure):
            logger.exception(f"item_revoke_failed: item={item.id}")

        if delete_transactions:
            txn_ids = select(Transaction.id).where(Transaction.item_id == item.id)
            self.session.execute(
                delete(CategoryAssignment).where(
                    CategoryAssignment.transaction_id.in_(txn_ids)
                )
            )
            self.session.execute(delete(Transaction).where(Transaction.item_id == item.id))
        else:
            self.session.execute(
                update(Transaction)
                .where(Transaction.item_id == item.id)
                .values(item_id=None)
            )
        self.session.delete(item)
        self.session.commit()
        logger.info(
            f"item_unlinked: user={self.user_id} item={item_pk} "
            f"deleted_transactions={delete_transactions}"
        )

    def balance_snapshot(self) -> BalanceSnapshot:
        snapshot = BalanceSnapshot(0, 0, [], [])
        for item in self.list_items():
            names = {a.account_id: a.display_name for a in item.accounts}
            try:
                balances = self.feed.get_balances(self.access_token(item))
            except (ExternalServiceError, ValidationFailure):
                logger.exception(f"balance_fetch_failed: item={item.id}")
                snapshot.failed_items.append(item.id)
                continue
            for account in balances:
                if account.current_balance is None:
                    continue
                cents = to_cents(account.current_balance)
                if account.type in ASSET_ACCOUNT_TYPES:
                    snapshot.assets_cents += cents
                    signed = cents
                elif account.type in DEBT_ACCOUNT_TYPES:
                    # Feed reports amounts owed as positive balances.
                    debt = max(cents, 0)
                    snapshot.debts_cents += debt
                    signed = -debt
                else:
                    continue
                snapshot.accounts.append(
                    {
                        "account_id": account.account_id,
                        "name": names.get(account.account_id, account.name),
                        "type": account.type,
                        "balance_cents": signed,
                        "institution_name": item.institution_name,
                    }
                )
        return snapshot
