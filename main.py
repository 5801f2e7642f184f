import json
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Form,
    HTTPException,
    Query,
    Request,
)
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from classifier import LLMBackend, OpenAIBackend
from config import Settings, get_settings
from database import SessionLocal, session_scope
from errors import (
    ConfigurationError,
    ExternalServiceError,
    NotFound,
    ValidationFailure,
)
from feed import FeedClient, PlaidFeedClient
from messaging import Messenger, SlackMessenger
from models import BudgetCategory, LinkedItem, Transaction, WebhookEvent
from month_end import MOVEMENT_ACTION_PREFIX, MonthEndReconciler, handle_movement_action
from notifications import NotificationWorkflow, SplitCommitted, make_notifier
from scheduler import SchedulerManager
from schemas import (
    AccountNameIn,
    BudgetIn,
    CategoryAssignIn,
    CategoryIn,
    CategoryUpdate,
    MonthEndRequest,
    MovementIn,
    NotificationChannelIn,
    PublicTokenIn,
    SplitRequest,
    SubcategoryIn,
    SummaryRequest,
    WebhookIn,
)
from services import (
    AssignmentManager,
    BudgetService,
    CategoryService,
    LinkService,
    SpendingStats,
    SummaryService,
    TransactionService,
    get_current_user_id,
)
from sync import SyncEngine, process_webhook, record_webhook

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Ledger")


@dataclass
class AppContext:
    """External collaborators built once at startup."""

    feed: Optional[FeedClient] = None
    backend: Optional[LLMBackend] = None
    messenger: Optional[Messenger] = None
    session_factory: sessionmaker = SessionLocal

    def require_feed(self) -> FeedClient:
        if self.feed is None:
            raise ConfigurationError("Bank feed is not configured")
        return self.feed

    def sync_engine(self, session: Session) -> SyncEngine:
        return SyncEngine(
            session, self.require_feed(), self.backend, make_notifier(self.messenger)
        )


def build_context(settings: Settings) -> AppContext:
    context = AppContext()
    if settings.plaid_client_id or settings.plaid_secret:
        context.feed = PlaidFeedClient.from_settings(settings)
    else:
        logger.warning("integration_disabled: name=feed")
    if settings.openai_api_key:
        context.backend = OpenAIBackend.from_settings(settings)
    else:
        logger.warning("integration_disabled: name=classifier")
    if settings.slack_bot_token:
        context.messenger = SlackMessenger.from_settings(settings)
    else:
        logger.warning("integration_disabled: name=messaging")
    return context


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        context = build_context(get_settings())
        request.app.state.context = context
    return context


def current_user_id(request: Request) -> int:
    user_id = getattr(request.state, "user_id", None)
    return int(user_id) if user_id else get_current_user_id()


scheduler_manager: Optional[SchedulerManager] = None


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    settings = get_settings()
    context = build_context(settings)
    app.state.context = context
    if settings.scheduler_enabled:
        scheduler_manager = SchedulerManager(
            context.feed, context.backend, context.messenger
        )
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ExternalServiceError)
async def external_service_handler(request: Request, exc: ExternalServiceError):
    logger.warning(f"external_service_error: path={request.url.path} error={exc}")
    return JSONResponse(status_code=502, content={"detail": "Upstream service failed"})


@app.exception_handler(ConfigurationError)
async def configuration_handler(request: Request, exc: ConfigurationError):
    logger.error(f"configuration_error: path={request.url.path} error={exc}")
    return JSONResponse(status_code=503, content={"detail": "Service not configured"})


@app.exception_handler(Exception)
async def unhandled_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def budget_out(budget) -> dict:
    return {
        "id": budget.id,
        "name": budget.name,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat(),
        "income_cents": budget.income_cents,
        "is_active": budget.is_active,
    }


def category_out(category: BudgetCategory, spent_cents: Optional[int] = None) -> dict:
    data = {
        "id": category.id,
        "name": category.name,
        "category_type": category.category_type.value,
        "allocated_cents": category.allocated_cents,
        "accumulated_cents": category.accumulated_cents,
        "color": category.color,
        "auto_move_surplus": category.auto_move_surplus,
        "surplus_target_category_id": category.surplus_target_category_id,
        "auto_move_deficit": category.auto_move_deficit,
        "deficit_source_category_id": category.deficit_source_category_id,
        "expected_merchant_name": category.expected_merchant_name,
        "hide_from_transaction_lists": category.hide_from_transaction_lists,
        "subcategories": [
            {"id": s.id, "name": s.name, "expected_cents": s.expected_cents}
            for s in category.subcategories
        ],
    }
    if spent_cents is not None:
        data["spent_cents"] = spent_cents
    return data


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "external_id": txn.external_id,
        "date": txn.date.isoformat(),
        "name": txn.name,
        "merchant_name": txn.merchant_name,
        "amount_cents": txn.amount_cents,
        "account_id": txn.account_id,
        "is_pending": txn.is_pending,
        "is_reviewed": txn.is_reviewed,
        "assignments": [
            {
                "category_id": a.category_id,
                "category": a.category.name if a.category else None,
                "subcategory_id": a.subcategory_id,
                "subcategory": a.subcategory.name if a.subcategory else None,
                "amount_cents": a.amount_cents,
                "is_manual": a.is_manual,
            }
            for a in txn.assignments
        ],
    }


def item_out(item: LinkedItem) -> dict:
    return {
        "id": item.id,
        "item_id": item.item_id,
        "institution_id": item.institution_id,
        "institution_name": item.institution_name,
        "accounts": [
            {
                "account_id": a.account_id,
                "name": a.display_name,
                "official_name": a.official_name,
                "type": a.type,
                "subtype": a.subtype,
                "mask": a.mask,
            }
            for a in item.accounts
        ],
    }


# Budget & categories


@app.get("/api/budget")
def api_get_budget(
    db: Session = Depends(get_db), user_id: int = Depends(current_user_id)
):
    budget = BudgetService(db, user_id).get_or_none()
    if budget is None:
        raise NotFound("Budget not found")
    db.commit()
    return budget_out(budget)


@app.post("/api/budget", status_code=201)
def api_create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    budget = BudgetService(db, user_id).create(payload)
    return budget_out(budget)


@app.put("/api/budget")
def api_update_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return budget_out(BudgetService(db, user_id).update(payload))


@app.get("/api/budget/categories")
def api_list_categories(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    service = CategoryService(db, user_id)
    if year and month:
        return [category_out(c, spent) for c, spent in service.list_with_spending(year, month)]
    return [category_out(c) for c in service.list_all()]


@app.post("/api/budget/categories", status_code=201)
def api_create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return category_out(CategoryService(db, user_id).create(payload))


@app.patch("/api/budget/categories/{category_id}")
def api_update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    return category_out(CategoryService(db, user_id).update(category_id, payload))


@app.delete("/api/budget/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    CategoryService(db, user_id).delete(category_id)


@app.post("/api/budget/categories/{category_id}/subcategories", status_code=201)
def api_add_subcategory(
    category_id: int,
    payload: SubcategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    sub = CategoryService(db, user_id).add_subcategory(category_id, payload)
    return {"id": sub.id, "name": sub.name, "expected_cents": sub.expected_cents}


@app.put("/api/budget/categories/{category_id}/subcategories/{subcategory_id}")
def api_update_subcategory(
    category_id: int,
    subcategory_id: int,
    payload: SubcategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    sub = CategoryService(db, user_id).update_subcategory(
        category_id, subcategory_id, payload
    )
    return {"id": sub.id, "name": sub.name, "expected_cents": sub.expected_cents}


@app.delete(
    "/api/budget/categories/{category_id}/subcategories/{subcategory_id}",
    status_code=204,
)
def api_delete_subcategory(
    category_id: int,
    subcategory_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    CategoryService(db, user_id).delete_subcategory(category_id, subcategory_id)


@app.get("/api/budget/categories/{category_id}/stats")
def api_category_stats(
    category_id: int,
    subcategory_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    category = CategoryService(db, user_id).get(category_id)
    subcategory = None
    if subcategory_id is not None:
        subcategory = next(
            (s for s in category.subcategories if s.id == subcategory_id), None
        )
        if subcategory is None:
            raise NotFound("Subcategory not found")
    stats = SpendingStats(db, user_id).for_category(category, subcategory)
    return {
        "spent_cents": stats.spent_cents,
        "allotted_cents": stats.allotted_cents,
        "percentage": stats.percentage,
    }


# Transactions


@app.get("/api/transactions")
def api_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    reviewed: Optional[bool] = None,
    include_hidden: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    offset = (page - 1) * limit
    items = TransactionService(db, user_id).list(
        limit=limit + 1, offset=offset, reviewed=reviewed, include_hidden=include_hidden
    )
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [transaction_out(txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions/{transaction_id}/category")
def api_assign_category(
    transaction_id: int,
    payload: CategoryAssignIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    AssignmentManager(db, user_id).assign_single(
        transaction_id, payload.category_id, payload.subcategory_id, is_manual=True
    )
    txn = TransactionService(db, user_id).mark_reviewed(transaction_id)
    return transaction_out(txn)


@app.post("/api/transactions/{transaction_id}/split")
def api_split_transaction(
    transaction_id: int,
    payload: SplitRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    AssignmentManager(db, user_id).assign_from_input(
        transaction_id, payload.splits, is_manual=True
    )
    txn = TransactionService(db, user_id).mark_reviewed(transaction_id)
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}/categories/{category_id}")
def api_remove_category(
    transaction_id: int,
    category_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    AssignmentManager(db, user_id).remove_category(transaction_id, category_id)
    return transaction_out(TransactionService(db, user_id).get(transaction_id))


@app.post("/api/transactions/sync")
def api_sync_transactions(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    results = context.sync_engine(db).sync_user(user_id)
    return {
        "items": {
            str(item_pk): result.to_out().model_dump() for item_pk, result in results.items()
        }
    }


@app.post("/api/summaries/generate")
def api_generate_summaries(
    payload: SummaryRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    summaries = SummaryService(db, user_id).generate(payload.year, payload.month)
    return {"generated": len(summaries)}


@app.get("/api/summaries")
def api_list_summaries(
    year: Optional[int] = None,
    month: Optional[int] = None,
    budget_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    summaries = SummaryService(db, user_id).list(year, month, budget_id)
    return [
        {
            "category_id": s.category_id,
            "budget_id": s.budget_id,
            "year": s.year,
            "month": s.month,
            "total_spent_cents": s.total_spent_cents,
            "transaction_count": s.transaction_count,
            "accumulated_cents": s.accumulated_cents,
        }
        for s in summaries
    ]


# Month-end


@app.post("/api/month-end")
def api_month_end(
    payload: MonthEndRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    result = MonthEndReconciler(db, context.messenger, user_id).reconcile(
        payload.year, payload.month
    )
    return result.to_out().model_dump()


@app.post("/api/month-end/movements", status_code=201)
def api_apply_movement(
    payload: MovementIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    movement = MonthEndReconciler(db, None, user_id).apply_user_movement(
        payload.variable_category_id,
        payload.savings_category_id,
        payload.movement_type,
        payload.amount_cents,
        payload.year,
        payload.month,
    )
    return {
        "id": movement.id,
        "from_category_id": movement.from_category_id,
        "to_category_id": movement.to_category_id,
        "amount_cents": movement.amount_cents,
        "movement_type": movement.movement_type.value,
    }


# Linked items


@app.post("/api/plaid/link-token")
def api_link_token(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    token = LinkService(db, context.require_feed(), user_id).create_link_token()
    return {"link_token": token}


@app.post("/api/plaid/exchange", status_code=201)
def api_exchange_token(
    payload: PublicTokenIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    item = LinkService(db, context.require_feed(), user_id).exchange(
        payload.public_token
    )
    background_tasks.add_task(run_item_sync, context, item.id)
    return item_out(item)


@app.get("/api/plaid/accounts")
def api_list_accounts(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    items = LinkService(db, context.feed, user_id).list_items()
    return [item_out(item) for item in items]


@app.put("/api/plaid/accounts/{account_id}/name")
def api_rename_account(
    account_id: str,
    payload: AccountNameIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    account = LinkService(db, context.feed, user_id).rename_account(
        account_id, payload.custom_name
    )
    return {"account_id": account.account_id, "name": account.display_name}


@app.delete("/api/plaid/items/{item_pk}", status_code=204)
def api_unlink_item(
    item_pk: int,
    delete_transactions: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    LinkService(db, context.require_feed(), user_id).unlink(
        item_pk, delete_transactions=delete_transactions
    )


@app.get("/api/plaid/balances")
def api_balances(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    snapshot = LinkService(db, context.require_feed(), user_id).balance_snapshot()
    return {
        "assets_cents": snapshot.assets_cents,
        "debts_cents": snapshot.debts_cents,
        "net_cents": snapshot.net_cents,
        "accounts": snapshot.accounts,
        "failed_items": snapshot.failed_items,
    }


# Notifications


@app.put("/api/notifications/channel")
def api_set_channel(
    payload: NotificationChannelIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    context: AppContext = Depends(get_context),
):
    target = NotificationWorkflow(db, context.messenger, user_id).set_channel(
        payload.channel_id
    )
    return {"channel_id": target.channel_id}


# Webhooks


def run_item_sync(context: AppContext, item_pk: int) -> None:
    with session_scope(context.session_factory) as session:
        item = session.get(LinkedItem, item_pk)
        if item is None:
            return
        try:
            context.sync_engine(session).sync(item)
        except (ExternalServiceError, ConfigurationError):
            session.rollback()
            logger.exception(f"initial_sync_failed: item={item_pk}")


def run_webhook(context: AppContext, event_id: int) -> None:
    with session_scope(context.session_factory) as session:
        event = session.get(WebhookEvent, event_id)
        if event is None:
            return
        process_webhook(context.sync_engine(session), event)


def run_block_actions(context: AppContext, payload: dict) -> None:
    with session_scope(context.session_factory) as session:
        for action in payload.get("actions") or []:
            action_id = action.get("action_id") or ""
            if action_id.startswith(MOVEMENT_ACTION_PREFIX):
                handle_movement_action(session, context.messenger, action, payload)
            else:
                NotificationWorkflow(session, context.messenger).handle_block_action(
                    action, payload
                )


def run_split_announcement(context: AppContext, committed: SplitCommitted) -> None:
    with session_scope(context.session_factory) as session:
        NotificationWorkflow(
            session, context.messenger, committed.user_id
        ).announce_split(committed)


@app.post("/webhooks/plaid")
def plaid_webhook(
    payload: WebhookIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    event = record_webhook(db, payload)
    if context.feed is None:
        logger.warning(f"webhook_not_processed: event={event.id} reason=no_feed")
    else:
        background_tasks.add_task(run_webhook, context, event.id)
    return {"received": True}


@app.post("/webhooks/slack/interactive")
def slack_interactive(
    background_tasks: BackgroundTasks,
    payload: str = Form(...),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Invalid payload") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    kind = data.get("type")
    if kind == "view_submission":
        workflow = NotificationWorkflow(db, context.messenger)
        response, committed = workflow.handle_view_submission(data)
        if committed is not None:
            background_tasks.add_task(run_split_announcement, context, committed)
        return response.model_dump(exclude_none=True)
    if kind == "block_actions":
        background_tasks.add_task(run_block_actions, context, data)
    else:
        logger.info(f"interaction_ignored: type={kind}")
    return {}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
