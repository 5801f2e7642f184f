from datetime import date

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import InvalidCategoryReference, ValidationFailure
from fakes import FakeMessenger, feed_txn, make_budget, make_engine
from models import BudgetCategory, CategoryType, FundMovement, MovementType, SavingsSnapshot
from month_end import MOVEMENT_ACTION_PREFIX, MonthEndReconciler, handle_movement_action
from notifications import NotificationWorkflow
from schemas import CategoryIn
from services import AssignmentManager, CategoryService, SummaryService, TransactionService


def _spend(session: Session, external_id: str, amount: str, category_id: int) -> None:
    txn = TransactionService(session).insert_from_feed(
        feed_txn(external_id, amount, on=date(2025, 3, 15))
    )
    AssignmentManager(session).assign_single(txn.id, category_id, is_manual=True)


def _accumulated(session: Session, category_id: int) -> int:
    session.expire_all()
    return session.get(BudgetCategory, category_id).accumulated_cents


def test_surplus_moves_to_linked_savings_once() -> None:
    engine = make_engine()
    with Session(engine) as session:
        make_budget(session)
        categories = CategoryService(session)
        savings = categories.create(
            CategoryIn(
                name="Rainy Day",
                category_type=CategoryType.savings,
                accumulated_cents=100000,
            )
        )
        dining = categories.create(
            CategoryIn(
                name="Dining",
                allocated_cents=20000,
                auto_move_surplus=True,
                surplus_target_category_id=savings.id,
            )
        )
        _spend(session, "d1", "150.00", dining.id)

        result = MonthEndReconciler(session).reconcile(2025, 3)
        assert result.variable_movements == 1
        assert result.savings_snapshots == 1
        assert result.failed == 0
        assert _accumulated(session, savings.id) == 105000

        movement = session.scalar(select(FundMovement))
        assert movement.amount_cents == 5000
        assert movement.movement_type == MovementType.surplus
        assert (movement.from_category_id, movement.to_category_id) == (dining.id, savings.id)

        again = MonthEndReconciler(session).reconcile(2025, 3)
        assert again.variable_movements == 0
        assert _accumulated(session, savings.id) == 105000
        assert len(session.scalars(select(FundMovement)).all()) == 1
        snapshots = session.scalars(select(SavingsSnapshot)).all()
        assert [(s.year, s.month, s.accumulated_cents) for s in snapshots] == [
            (2025, 3, 105000)
        ]


def test_deficit_draws_from_linked_savings() -> None:
    engine = make_engine()
    with Session(engine) as session:
        make_budget(session)
        categories = CategoryService(session)
        savings = categories.create(
            CategoryIn(
                name="Buffer", category_type=CategoryType.savings, accumulated_cents=10000
            )
        )
        dining = categories.create(
            CategoryIn(
                name="Dining",
                allocated_cents=20000,
                auto_move_deficit=True,
                deficit_source_category_id=savings.id,
            )
        )
        _spend(session, "d1", "230.00", dining.id)

        result = MonthEndReconciler(session).reconcile(2025, 3)
        assert result.variable_movements == 1
        assert _accumulated(session, savings.id) == 7000
        movement = session.scalar(select(FundMovement))
        assert movement.movement_type == MovementType.deficit
        assert (movement.from_category_id, movement.to_category_id) == (savings.id, dining.id)


def test_insufficient_savings_is_not_overdrawn_and_user_is_asked() -> None:
    engine = make_engine()
    messenger = FakeMessenger()
    with Session(engine) as session:
        make_budget(session)
        NotificationWorkflow(session, messenger).set_channel("C1")
        categories = CategoryService(session)
        small = categories.create(
            CategoryIn(name="Small", category_type=CategoryType.savings, accumulated_cents=1000)
        )
        large = categories.create(
            CategoryIn(name="Large", category_type=CategoryType.savings, accumulated_cents=90000)
        )
        dining = categories.create(
            CategoryIn(
                name="Dining",
                allocated_cents=20000,
                auto_move_deficit=True,
                deficit_source_category_id=small.id,
            )
        )
        _spend(session, "d1", "230.00", dining.id)

        result = MonthEndReconciler(session, messenger).reconcile(2025, 3)
        assert result.variable_movements == 0
        assert result.deferred == 1
        assert _accumulated(session, small.id) == 1000
        assert session.scalars(select(FundMovement)).all() == []

        [((channel, _), message)] = list(messenger.messages.items())
        assert channel == "C1"
        buttons = [
            element
            for block in message["blocks"]
            if block["type"] == "actions"
            for element in block["elements"]
        ]
        assert [b["text"]["text"] for b in buttons] == ["Large"]
        assert buttons[0]["action_id"] == f"{MOVEMENT_ACTION_PREFIX}{large.id}"


def test_prompted_movement_applies_then_edits_message() -> None:
    engine = make_engine()
    messenger = FakeMessenger()
    with Session(engine) as session:
        make_budget(session)
        NotificationWorkflow(session, messenger).set_channel("C1")
        categories = CategoryService(session)
        savings = categories.create(
            CategoryIn(name="Trips", category_type=CategoryType.savings)
        )
        dining = categories.create(CategoryIn(name="Dining", allocated_cents=20000))
        _spend(session, "d1", "120.00", dining.id)

        result = MonthEndReconciler(session, messenger).reconcile(2025, 3)
        assert result.deferred == 1
        [(key, message)] = list(messenger.messages.items())
        button = message["blocks"][1]["elements"][0]
        payload = {
            "channel": {"id": key[0]},
            "message": message,
            "actions": [button],
        }

        handle_movement_action(session, messenger, button, payload)
        handle_movement_action(session, messenger, button, payload)

        assert _accumulated(session, savings.id) == 8000
        assert len(session.scalars(select(FundMovement)).all()) == 1
        channel, ts, text, blocks = messenger.updates[-1]
        assert (channel, ts) == key
        assert all(b["type"] != "actions" for b in blocks)
        assert "Moved $80.00" in text


def test_forged_movement_button_is_ignored() -> None:
    engine = make_engine()
    messenger = FakeMessenger()
    with Session(engine) as session:
        make_budget(session)
        savings = CategoryService(session).create(
            CategoryIn(name="Trips", category_type=CategoryType.savings)
        )
        action = {"action_id": f"{MOVEMENT_ACTION_PREFIX}{savings.id}", "value": "tampered"}
        handle_movement_action(
            session, messenger, action, {"channel": {"id": "C1"}, "message": {"ts": "1"}}
        )
        assert session.scalars(select(FundMovement)).all() == []
        assert messenger.updates == []


def test_apply_user_movement_validates_categories_and_funds() -> None:
    engine = make_engine()
    with Session(engine) as session:
        make_budget(session)
        categories = CategoryService(session)
        savings = categories.create(
            CategoryIn(name="Trips", category_type=CategoryType.savings, accumulated_cents=500)
        )
        dining = categories.create(CategoryIn(name="Dining", allocated_cents=20000))
        reconciler = MonthEndReconciler(session)

        with pytest.raises(InvalidCategoryReference):
            reconciler.apply_user_movement(
                savings.id, dining.id, MovementType.surplus, 100, 2025, 3
            )
        with pytest.raises(ValidationFailure):
            reconciler.apply_user_movement(
                dining.id, savings.id, MovementType.deficit, 1000, 2025, 3
            )
        assert _accumulated(session, savings.id) == 500

        movement = reconciler.apply_user_movement(
            dining.id, savings.id, MovementType.deficit, 500, 2025, 3
        )
        assert movement.amount_cents == 500
        assert _accumulated(session, savings.id) == 0


def test_fixed_category_accumulates_difference_without_double_counting() -> None:
    engine = make_engine()
    with Session(engine) as session:
        make_budget(session)
        rent = CategoryService(session).create(
            CategoryIn(name="Rent", category_type=CategoryType.fixed, allocated_cents=10000)
        )
        _spend(session, "r1", "80.00", rent.id)

        result = MonthEndReconciler(session).reconcile(2025, 3)
        assert result.fixed_updates == 1
        assert _accumulated(session, rent.id) == 2000

        MonthEndReconciler(session).reconcile(2025, 3)
        assert _accumulated(session, rent.id) == 2000

        _spend(session, "r2", "10.00", rent.id)
        MonthEndReconciler(session).reconcile(2025, 3)
        assert _accumulated(session, rent.id) == 1000
        [summary] = SummaryService(session).list(2025, 3)
        assert (summary.total_spent_cents, summary.accumulated_cents) == (9000, 1000)


def test_balanced_variable_category_needs_no_action() -> None:
    engine = make_engine()
    messenger = FakeMessenger()
    with Session(engine) as session:
        make_budget(session)
        NotificationWorkflow(session, messenger).set_channel("C1")
        categories = CategoryService(session)
        categories.create(CategoryIn(name="Trips", category_type=CategoryType.savings))
        dining = categories.create(CategoryIn(name="Dining", allocated_cents=20000))
        _spend(session, "d1", "199.99", dining.id)

        result = MonthEndReconciler(session, messenger).reconcile(2025, 3)
        assert (result.variable_movements, result.deferred) == (0, 0)
        assert messenger.messages == {}
