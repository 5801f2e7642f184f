"""Month-end reconciliation.

Variable categories move their surplus into, or cover their deficit from, a
linked savings category. Without a usable link the user is asked in chat.
Savings categories get a snapshot of their running total and fixed
categories roll the month's allocated-minus-spent into theirs.

Re-running a period is safe: movements already recorded for a variable
category are not repeated, snapshots are updated in place and the fixed
running total only receives the change since the previous run.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import (
    InvalidCategoryReference,
    LedgerError,
    MessagingError,
    ValidationFailure,
)
from messaging import Messenger
from models import (
    Budget,
    BudgetCategory,
    CategoryType,
    FundMovement,
    MovementType,
    SavingsSnapshot,
)
from notifications import MAX_BUTTONS_PER_BLOCK, NotificationWorkflow
from periods import month_bounds
from schemas import ReconcileResultOut
from services import (
    SPLIT_TOLERANCE_CENTS,
    BudgetService,
    CategoryService,
    SpendingStats,
    SummaryService,
    format_cents,
    get_current_user_id,
)
from signing import load_metadata, sign_metadata

logger = logging.getLogger(__name__)

MOVEMENT_ACTION_PREFIX = "month_end_movement_"


@dataclass
class ReconcileResult:
    variable_movements: int = 0
    savings_snapshots: int = 0
    fixed_updates: int = 0
    deferred: int = 0
    failed: int = 0

    def to_out(self) -> ReconcileResultOut:
        return ReconcileResultOut(
            variable_movements=self.variable_movements,
            savings_snapshots=self.savings_snapshots,
            fixed_updates=self.fixed_updates,
            deferred=self.deferred,
            failed=self.failed,
        )


def build_movement_prompt(
    variable: BudgetCategory,
    movement_type: MovementType,
    amount_cents: int,
    year: int,
    month: int,
    options: list[BudgetCategory],
    user_id: int,
) -> tuple[str, list[dict]]:
    if movement_type == MovementType.surplus:
        headline = (
            f"*{variable.name}* finished {year}-{month:02d} with a "
            f"{format_cents(amount_cents)} surplus. "
            "Which savings category should get it?"
        )
    else:
        headline = (
            f"*{variable.name}* finished {year}-{month:02d} "
            f"{format_cents(amount_cents)} over budget. "
            "Which savings category should cover it?"
        )
    buttons = []
    for savings in sorted(options, key=lambda c: c.name.lower()):
        value = sign_metadata(
            {
                "u": user_id,
                "v": variable.id,
                "s": savings.id,
                "t": movement_type.value,
                "a": amount_cents,
                "y": year,
                "m": month,
            }
        )
        buttons.append(
            {
                "type": "button",
                "text": {"type": "plain_text", "text": savings.name},
                "value": value,
                "action_id": f"{MOVEMENT_ACTION_PREFIX}{savings.id}",
            }
        )
    blocks: list[dict] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": headline}}
    ]
    for start in range(0, len(buttons), MAX_BUTTONS_PER_BLOCK):
        chunk = buttons[start : start + MAX_BUTTONS_PER_BLOCK]
        blocks.append({"type": "actions", "elements": chunk})
    fallback = (
        f"{variable.name} {movement_type.value} {format_cents(amount_cents)} "
        f"for {year}-{month:02d}"
    )
    return fallback, blocks


class MonthEndReconciler:
    def __init__(
        self,
        session: Session,
        messenger: Optional[Messenger] = None,
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.messenger = messenger
        self.user_id = user_id or get_current_user_id()
        self.categories = CategoryService(session, self.user_id)

    def _movement_recorded(self, variable_id: int, year: int, month: int) -> bool:
        return (
            self.session.scalar(
                select(FundMovement.id).where(
                    FundMovement.variable_category_id == variable_id,
                    FundMovement.year == year,
                    FundMovement.month == month,
                )
            )
            is not None
        )

    def _linked_savings(
        self, budget: Budget, category_id: Optional[int]
    ) -> Optional[BudgetCategory]:
        if category_id is None:
            return None
        return self.session.scalar(
            select(BudgetCategory).where(
                BudgetCategory.id == category_id,
                BudgetCategory.budget_id == budget.id,
                BudgetCategory.category_type == CategoryType.savings,
            )
        )

    def _savings_categories(self, budget: Budget) -> list[BudgetCategory]:
        return list(
            self.session.scalars(
                select(BudgetCategory).where(
                    BudgetCategory.budget_id == budget.id,
                    BudgetCategory.category_type == CategoryType.savings,
                )
            ).all()
        )

    def _record_movement(
        self,
        budget: Budget,
        variable: BudgetCategory,
        savings: BudgetCategory,
        movement_type: MovementType,
        amount_cents: int,
        year: int,
        month: int,
    ) -> Optional[FundMovement]:
        """Apply one movement and its audit row in a single commit.

        Deficit draws only apply when the savings total covers the whole
        amount; ``None`` is returned otherwise.
        """
        if movement_type == MovementType.surplus:
            self.categories.adjust_accumulated(savings.id, amount_cents)
            from_id, to_id = variable.id, savings.id
        else:
            if not self.categories.adjust_accumulated(
                savings.id, -amount_cents, floor_cents=0
            ):
                self.session.rollback()
                return None
            from_id, to_id = savings.id, variable.id
        movement = FundMovement(
            user_id=self.user_id,
            budget_id=budget.id,
            from_category_id=from_id,
            to_category_id=to_id,
            variable_category_id=variable.id,
            amount_cents=amount_cents,
            movement_type=movement_type,
            year=year,
            month=month,
        )
        self.session.add(movement)
        self.session.commit()
        logger.info(
            f"fund_movement: type={movement_type.value} variable={variable.id} "
            f"savings={savings.id} amount_cents={amount_cents} period={year}-{month:02d}"
        )
        return movement

    def _prompt(
        self,
        variable: BudgetCategory,
        movement_type: MovementType,
        amount_cents: int,
        year: int,
        month: int,
        options: list[BudgetCategory],
    ) -> bool:
        if self.messenger is None or not options:
            return False
        workflow = NotificationWorkflow(self.session, self.messenger, self.user_id)
        channel = workflow.channel()
        if not channel:
            return False
        text, blocks = build_movement_prompt(
            variable, movement_type, amount_cents, year, month, options, self.user_id
        )
        try:
            self.messenger.post_message(channel, text, blocks)
        except MessagingError:
            logger.exception(f"movement_prompt_failed: variable={variable.id}")
            return False
        return True

    def _reconcile_variable(
        self,
        budget: Budget,
        category: BudgetCategory,
        spent_cents: int,
        year: int,
        month: int,
        result: ReconcileResult,
    ) -> None:
        difference = category.allocated_cents - spent_cents
        if abs(difference) <= SPLIT_TOLERANCE_CENTS:
            return
        if self._movement_recorded(category.id, year, month):
            logger.info(f"month_end_skip_recorded: variable={category.id}")
            return

        if difference > 0:
            target = (
                self._linked_savings(budget, category.surplus_target_category_id)
                if category.auto_move_surplus
                else None
            )
            if target is not None:
                self._record_movement(
                    budget, category, target, MovementType.surplus, difference, year, month
                )
                result.variable_movements += 1
            elif self._prompt(
                category,
                MovementType.surplus,
                difference,
                year,
                month,
                self._savings_categories(budget),
            ):
                result.deferred += 1
            return

        deficit = -difference
        source = (
            self._linked_savings(budget, category.deficit_source_category_id)
            if category.auto_move_deficit
            else None
        )
        if source is not None:
            if self._record_movement(
                budget, category, source, MovementType.deficit, deficit, year, month
            ):
                result.variable_movements += 1
                return
            logger.warning(
                f"month_end_insufficient_funds: variable={category.id} "
                f"source={source.id} deficit_cents={deficit}"
            )
        covering = [
            s for s in self._savings_categories(budget) if s.accumulated_cents >= deficit
        ]
        if self._prompt(category, MovementType.deficit, deficit, year, month, covering):
            result.deferred += 1

    def _snapshot_savings(
        self, budget: Budget, category: BudgetCategory, year: int, month: int
    ) -> None:
        self.session.refresh(category)
        snapshot = self.session.scalar(
            select(SavingsSnapshot).where(
                SavingsSnapshot.user_id == self.user_id,
                SavingsSnapshot.budget_id == budget.id,
                SavingsSnapshot.category_id == category.id,
                SavingsSnapshot.year == year,
                SavingsSnapshot.month == month,
            )
        )
        if snapshot is None:
            snapshot = SavingsSnapshot(
                user_id=self.user_id,
                budget_id=budget.id,
                category_id=category.id,
                year=year,
                month=month,
                accumulated_cents=category.accumulated_cents,
            )
            self.session.add(snapshot)
        else:
            snapshot.accumulated_cents = category.accumulated_cents
        self.session.commit()

    def _accumulate_fixed(
        self,
        budget: Budget,
        category: BudgetCategory,
        spent_cents: int,
        year: int,
        month: int,
    ) -> None:
        difference = category.allocated_cents - spent_cents
        summaries = SummaryService(self.session, self.user_id)
        summary = summaries._get_or_create(budget.id, category.id, year, month)
        previous = summary.accumulated_cents or 0
        summaries.record_fixed_accumulation(
            budget.id, category.id, year, month, spent_cents, difference
        )
        if difference != previous:
            self.categories.adjust_accumulated(category.id, difference - previous)
        self.session.commit()

    def reconcile(self, year: int, month: int) -> ReconcileResult:
        budget = BudgetService(self.session, self.user_id).require()
        period = month_bounds(year, month)
        spent = SpendingStats(self.session, self.user_id).spent_by_category(period)
        categories = self.categories.list_all()
        result = ReconcileResult()

        for category in categories:
            if category.category_type != CategoryType.variable:
                continue
            try:
                self._reconcile_variable(
                    budget, category, spent.get(category.id, 0), year, month, result
                )
            except Exception:
                self.session.rollback()
                result.failed += 1
                logger.exception(f"month_end_variable_failed: category={category.id}")

        for category in categories:
            if category.category_type != CategoryType.savings:
                continue
            try:
                self._snapshot_savings(budget, category, year, month)
                result.savings_snapshots += 1
            except Exception:
                self.session.rollback()
                result.failed += 1
                logger.exception(f"month_end_snapshot_failed: category={category.id}")

        for category in categories:
            if category.category_type != CategoryType.fixed:
                continue
            try:
                self._accumulate_fixed(
                    budget, category, spent.get(category.id, 0), year, month
                )
                result.fixed_updates += 1
            except Exception:
                self.session.rollback()
                result.failed += 1
                logger.exception(f"month_end_fixed_failed: category={category.id}")

        logger.info(
            f"month_end_complete: user={self.user_id} period={year}-{month:02d} "
            f"movements={result.variable_movements} snapshots={result.savings_snapshots} "
            f"fixed={result.fixed_updates} deferred={result.deferred} failed={result.failed}"
        )
        return result

    def apply_user_movement(
        self,
        variable_category_id: int,
        savings_category_id: int,
        movement_type: MovementType,
        amount_cents: int,
        year: int,
        month: int,
    ) -> FundMovement:
        if amount_cents <= 0:
            raise ValidationFailure("Movement amount must be greater than 0")
        budget = BudgetService(self.session, self.user_id).require()
        variable = self.categories.get(variable_category_id)
        if variable.category_type != CategoryType.variable:
            raise InvalidCategoryReference("Movements start from a variable category")
        savings = self._linked_savings(budget, savings_category_id)
        if savings is None:
            raise InvalidCategoryReference("Target must be a savings category")

        existing = self.session.scalar(
            select(FundMovement).where(
                FundMovement.variable_category_id == variable.id,
                FundMovement.year == year,
                FundMovement.month == month,
            )
        )
        if existing is not None:
            logger.info(f"movement_already_recorded: variable={variable.id}")
            return existing

        movement = self._record_movement(
            budget, variable, savings, movement_type, amount_cents, year, month
        )
        if movement is None:
            raise ValidationFailure(f"Insufficient funds in {savings.name}")
        return movement


def handle_movement_action(
    session: Session, messenger: Optional[Messenger], action: dict, payload: dict
) -> None:
    """Apply a savings choice clicked on a month-end prompt."""
    try:
        data = load_metadata(action.get("value") or "")
        reconciler = MonthEndReconciler(session, messenger, int(data["u"]))
        movement = reconciler.apply_user_movement(
            int(data["v"]),
            int(data["s"]),
            MovementType(data["t"]),
            int(data["a"]),
            int(data["y"]),
            int(data["m"]),
        )
    except (LedgerError, KeyError, ValueError):
        session.rollback()
        logger.exception("movement_action_failed")
        return

    message = payload.get("message")
    channel = (payload.get("channel") or {}).get("id") or (message or {}).get("channel")
    ts = (message or {}).get("ts")
    if not channel or not ts:
        return
    label = ((action.get("text") or {}).get("text")) or "savings"
    NotificationWorkflow(session, messenger, reconciler.user_id).edit_resolved(
        channel,
        ts,
        message,
        f"✓ *Moved {format_cents(movement.amount_cents)}* with {label}",
        f"✓ Moved {format_cents(movement.amount_cents)} with {label}",
    )


def reconcile_all(
    session: Session, messenger: Optional[Messenger], year: int, month: int
) -> int:
    user_ids = session.scalars(
        select(Budget.user_id).where(Budget.is_active.is_(True))
    ).all()
    done = 0
    for user_id in user_ids:
        try:
            MonthEndReconciler(session, messenger, user_id).reconcile(year, month)
            done += 1
        except LedgerError:
            session.rollback()
            logger.exception(f"month_end_user_failed: user={user_id}")
    return done
