"""Chat notifications for new transactions and the confirmation callbacks.

Every handler writes to the database first and edits the chat message
second. When the edit fails the buttons stay in place and the handlers are
safe to run again.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import LedgerError, MessagingError, NotFound, ValidationFailure
from messaging import Messenger
from models import (
    BudgetCategory,
    CategoryType,
    LinkedAccount,
    NotificationResolution,
    NotificationStatus,
    NotificationTarget,
    Subcategory,
    Transaction,
    TransactionNotification,
)
from periods import month_bounds
from schemas import ModalResponse, to_cents
from services import (
    AssignmentManager,
    CategoryService,
    CategoryStats,
    SpendingStats,
    Split,
    TransactionService,
    format_cents,
    format_signed_amount,
    get_current_user_id,
    load_transaction_with_categories,
)
from signing import load_metadata, sign_metadata

logger = logging.getLogger(__name__)

MAX_BUTTONS_PER_BLOCK = 5
PROGRESS_BAR_WIDTH = 20

CORRECT_ACTION = "transaction_correct"
CATEGORY_ACTION_PREFIX = "transaction_category_"
SPLIT_ACTION = "transaction_split"
NUM_SPLITS_CALLBACK = "num_splits_"
SPLIT_CALLBACK = "split_transaction_"

_OPTION_RE = re.compile(r"^cat_(\d+)(?:_sub_(\d+))?$")
_CATEGORY_VALUE_RE = re.compile(r"^category_(\d+)_(\d+)(?:_(\d+))?$")


class SplitFormError(ValidationFailure):
    """A split modal field failed validation."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


@dataclass(frozen=True)
class ButtonOption:
    label: str
    category_id: int
    subcategory_id: Optional[int] = None


@dataclass(frozen=True)
class SplitCommitted:
    transaction_id: int
    user_id: int
    channel_id: Optional[str]
    message_ts: Optional[str]


def category_label(category: BudgetCategory, subcategory: Optional[Subcategory] = None) -> str:
    if subcategory is not None:
        return f"{category.name} - {subcategory.name}"
    return category.name


def button_options(
    categories: list[BudgetCategory], current_category_id: Optional[int]
) -> list[ButtonOption]:
    options: list[ButtonOption] = []
    for cat in categories:
        if cat.category_type == CategoryType.surplus or cat.id == current_category_id:
            continue
        if cat.subcategories:
            for sub in cat.subcategories:
                options.append(ButtonOption(category_label(cat, sub), cat.id, sub.id))
        else:
            options.append(ButtonOption(cat.name, cat.id))
    return sorted(options, key=lambda o: o.label.lower())


def _button(text: str, value: str, action_id: str, style: Optional[str] = None) -> dict:
    button = {
        "type": "button",
        "text": {"type": "plain_text", "text": text},
        "value": value,
        "action_id": action_id,
    }
    if style:
        button["style"] = style
    return button


def category_button(transaction_id: int, option: ButtonOption) -> dict:
    suffix = f"{option.category_id}"
    if option.subcategory_id is not None:
        suffix += f"_{option.subcategory_id}"
    return _button(
        option.label,
        f"category_{transaction_id}_{suffix}",
        f"{CATEGORY_ACTION_PREFIX}{suffix}",
    )


def action_blocks(first: dict, buttons: list[dict]) -> list[dict]:
    blocks = []
    current = [first]
    for button in buttons:
        if len(current) == MAX_BUTTONS_PER_BLOCK:
            blocks.append({"type": "actions", "elements": current})
            current = []
        current.append(button)
    if current:
        blocks.append({"type": "actions", "elements": current})
    return blocks


def progress_lines(stats: CategoryStats) -> list[str]:
    pct = stats.percentage
    lines = [
        f"{format_cents(stats.spent_cents)} / {format_cents(stats.allotted_cents)} ({pct:.1f}%)"
    ]
    if pct <= 100:
        filled = round(pct / 100 * PROGRESS_BAR_WIDTH)
        bar = "█" * filled + "░" * (PROGRESS_BAR_WIDTH - filled)
        lines.append(f"[{bar}] {pct:.0f}%")
    else:
        lines.append("❌ Over budget")
    return lines


def build_transaction_message(
    txn: Transaction,
    label: str,
    stats: Optional[CategoryStats],
    options: list[ButtonOption],
    account_name: Optional[str] = None,
) -> tuple[str, list[dict]]:
    amount = format_signed_amount(txn.amount_cents)
    merchant = txn.display_name
    show_budget = stats is not None and stats.allotted_cents > 0

    pct_text = f" ({stats.percentage:.0f}%)" if show_budget else ""
    fallback = f"{merchant} • {amount} • {label}{pct_text}"

    lines = [label, merchant, amount]
    if account_name:
        lines.append(f"_{account_name}_")
    if show_budget:
        lines.extend(progress_lines(stats))

    blocks: list[dict] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}},
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"Transaction ID: {txn.id}"}],
        },
    ]
    correct = _button("✓ Correct", f"correct_{txn.id}", CORRECT_ACTION, "primary")
    blocks.extend(
        action_blocks(correct, [category_button(txn.id, o) for o in options])
    )
    blocks.append(
        {
            "type": "actions",
            "elements": [
                _button("✂️ Split", f"split_{txn.id}", SPLIT_ACTION, "danger")
            ],
        }
    )
    return fallback, blocks


def strip_actions(blocks: Optional[list[dict]]) -> list[dict]:
    return [b for b in blocks or [] if b.get("type") != "actions"]


def resolved_content(
    message: dict[str, Any], block_line: str, text_line: str
) -> tuple[str, list[dict]]:
    blocks = strip_actions(message.get("blocks"))
    blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": block_line}})
    return f"{message.get('text') or 'Transaction'}\n{text_line}", blocks


def _plain(text: str) -> dict:
    return {"type": "plain_text", "text": text}


def build_num_splits_modal(txn: Transaction, metadata: str) -> dict:
    return {
        "type": "modal",
        "callback_id": f"{NUM_SPLITS_CALLBACK}{txn.id}",
        "private_metadata": metadata,
        "title": _plain("Split Transaction"),
        "submit": _plain("Continue"),
        "close": _plain("Cancel"),
        "blocks": [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Transaction Amount:* {format_cents(txn.amount_cents)}\n\n"
                    "How many ways would you like to split this transaction?",
                },
            },
            {
                "type": "input",
                "block_id": "num_splits",
                "label": _plain("Number of Splits"),
                "element": {
                    "type": "plain_text_input",
                    "action_id": "num_splits_input",
                    "placeholder": _plain("e.g., 2, 3, 4..."),
                    "initial_value": "2",
                },
            },
        ],
    }


def split_select_options(categories: list[BudgetCategory]) -> list[dict]:
    options = []
    for cat in categories:
        if cat.category_type == CategoryType.surplus:
            continue
        if cat.subcategories:
            for sub in cat.subcategories:
                options.append(
                    {
                        "text": _plain(category_label(cat, sub)),
                        "value": f"cat_{cat.id}_sub_{sub.id}",
                    }
                )
        else:
            options.append({"text": _plain(cat.name), "value": f"cat_{cat.id}"})
    return options


def build_split_modal(
    txn: Transaction, num_splits: int, options: list[dict], metadata: str
) -> dict:
    blocks: list[dict] = []
    for i in range(1, num_splits + 1):
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*Split {i}*"}})
        blocks.append(
            {
                "type": "input",
                "block_id": f"split_{i}_category",
                "label": _plain("Category"),
                "element": {
                    "type": "static_select",
                    "action_id": "category",
                    "placeholder": _plain("Select category"),
                    "options": options,
                },
            }
        )
        if i == num_splits:
            blocks.append(
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": "_The rest of the money will be used for this split._",
                    },
                }
            )
        else:
            blocks.append(
                {
                    "type": "input",
                    "block_id": f"split_{i}_amount",
                    "label": _plain("Amount"),
                    "element": {
                        "type": "plain_text_input",
                        "action_id": "amount",
                        "placeholder": _plain("0.00"),
                    },
                }
            )
    return {
        "type": "modal",
        "callback_id": f"{SPLIT_CALLBACK}{txn.id}",
        "private_metadata": metadata,
        "title": _plain("Split Transaction"),
        "submit": _plain("Save Split"),
        "close": _plain("Cancel"),
        "blocks": blocks,
    }


def parse_split_count(values: dict) -> int:
    raw = ((values.get("num_splits") or {}).get("num_splits_input") or {}).get("value")
    try:
        count = int((raw or "2").strip())
    except ValueError:
        count = 0
    if count < 2:
        raise SplitFormError(
            "num_splits", "Please enter a number greater than or equal to 2"
        )
    return count


def _parse_amount(raw: str) -> int:
    try:
        value = Decimal(raw.strip().replace("$", "").replace(",", ""))
    except InvalidOperation:
        return 0
    if not value.is_finite():
        return 0
    return to_cents(value)


def parse_split_submission(
    values: dict, num_splits: int, amount_cents: int
) -> list[Split]:
    """Turn modal state into splits carrying the transaction's sign.

    The last split receives whatever the earlier ones leave over.
    """
    total = abs(amount_cents)
    sign = -1 if amount_cents < 0 else 1
    running = 0
    splits: list[Split] = []
    for i in range(1, num_splits + 1):
        selected = (
            (values.get(f"split_{i}_category") or {}).get("category") or {}
        ).get("selected_option")
        if not selected:
            raise SplitFormError(f"split_{i}_category", "Please select a category")
        match = _OPTION_RE.match(selected.get("value") or "")
        if not match:
            raise SplitFormError(f"split_{i}_category", "Please select a category")
        category_id = int(match.group(1))
        subcategory_id = int(match.group(2)) if match.group(2) else None

        if i == num_splits:
            remaining = total - running
            if remaining <= 0:
                raise SplitFormError(
                    f"split_{i - 1}_amount",
                    "Previous splits already use the full transaction amount",
                )
            splits.append(Split(category_id, sign * remaining, subcategory_id))
            break

        raw = ((values.get(f"split_{i}_amount") or {}).get("amount") or {}).get("value")
        if not raw or not raw.strip():
            raise SplitFormError(f"split_{i}_amount", "Please enter an amount")
        cents = _parse_amount(raw)
        if cents <= 0:
            raise SplitFormError(f"split_{i}_amount", "Amount must be greater than 0")
        running += cents
        if running >= total:
            raise SplitFormError(
                f"split_{i}_amount", "Split amounts exceed transaction total"
            )
        splits.append(Split(category_id, sign * cents, subcategory_id))
    return splits


def _errors(field: str, message: str) -> ModalResponse:
    return ModalResponse(response_action="errors", errors={field: message})


class NotificationWorkflow:
    def __init__(
        self,
        session: Session,
        messenger: Optional[Messenger],
        user_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.messenger = messenger
        self.user_id = user_id or get_current_user_id()

    def channel(self) -> Optional[str]:
        return self.session.scalar(
            select(NotificationTarget.channel_id).where(
                NotificationTarget.user_id == self.user_id
            )
        )

    def set_channel(self, channel_id: str) -> NotificationTarget:
        target = self.session.scalar(
            select(NotificationTarget).where(NotificationTarget.user_id == self.user_id)
        )
        if target is None:
            target = NotificationTarget(user_id=self.user_id, channel_id=channel_id)
            self.session.add(target)
        else:
            target.channel_id = channel_id
        self.session.commit()
        return target

    def _account_name(self, txn: Transaction) -> Optional[str]:
        if not txn.account_id or txn.item_id is None:
            return None
        account = self.session.scalar(
            select(LinkedAccount).where(
                LinkedAccount.item_id == txn.item_id,
                LinkedAccount.account_id == txn.account_id,
            )
        )
        return account.display_name if account else None

    def send_transaction_notification(
        self, txn: Transaction
    ) -> Optional[TransactionNotification]:
        if self.messenger is None:
            return None
        channel = self.channel()
        if not channel:
            logger.info(f"notify_skipped: user={self.user_id} reason=no_channel")
            return None
        txn = load_transaction_with_categories(self.session, txn.id)
        if txn is None or txn.user_id != self.user_id:
            raise NotFound("Transaction not found")

        label = "Uncategorized"
        stats: Optional[CategoryStats] = None
        current_id: Optional[int] = None
        if txn.assignments:
            first = txn.assignments[0]
            current_id = first.category_id
            label = category_label(first.category, first.subcategory)
            stats = SpendingStats(self.session, self.user_id).for_category(
                first.category,
                first.subcategory,
                month_bounds(txn.date.year, txn.date.month),
            )
        options = button_options(
            CategoryService(self.session, self.user_id).list_all(), current_id
        )
        text, blocks = build_transaction_message(
            txn, label, stats, options, self._account_name(txn)
        )
        ts = self.messenger.post_message(channel, text, blocks)

        notification = txn.notification or TransactionNotification(transaction_id=txn.id)
        notification.channel_id = channel
        notification.message_ts = ts
        notification.status = NotificationStatus.sent
        notification.resolution = None
        notification.resolved_at = None
        self.session.add(notification)
        self.session.commit()
        logger.info(f"notify_sent: transaction={txn.id} channel={channel}")
        return notification

    def _resolve(
        self, notification: TransactionNotification, resolution: NotificationResolution
    ) -> None:
        notification.status = NotificationStatus.resolved
        notification.resolution = resolution
        notification.resolved_at = datetime.utcnow()
        self.session.commit()

    def edit_resolved(
        self,
        channel: str,
        ts: str,
        message: Optional[dict[str, Any]],
        block_line: str,
        text_line: str,
    ) -> bool:
        if self.messenger is None:
            return False
        try:
            if message is None:
                message = self.messenger.get_message(channel, ts)
            if message is None:
                logger.warning(f"notify_edit_skipped: channel={channel} ts={ts} reason=missing")
                return False
            text, blocks = resolved_content(message, block_line, text_line)
            self.messenger.update_message(channel, ts, text, blocks)
        except MessagingError:
            logger.exception(f"notify_edit_failed: channel={channel} ts={ts}")
            return False
        return True

    @staticmethod
    def notification_for_message(
        session: Session, channel: str, ts: str
    ) -> Optional[TransactionNotification]:
        return session.scalar(
            select(TransactionNotification).where(
                TransactionNotification.channel_id == channel,
                TransactionNotification.message_ts == ts,
            )
        )

    def confirm(
        self, notification: TransactionNotification, message: Optional[dict] = None
    ) -> None:
        already = (
            notification.status == NotificationStatus.resolved
            and notification.resolution == NotificationResolution.correct
        )
        if not already:
            TransactionService(self.session, self.user_id).mark_reviewed(
                notification.transaction_id
            )
            self._resolve(notification, NotificationResolution.correct)
        self.edit_resolved(
            notification.channel_id,
            notification.message_ts,
            message,
            "✓ *Marked as correct*",
            "✓ Marked as correct",
        )

    def recategorize(
        self,
        notification: TransactionNotification,
        category_id: int,
        subcategory_id: Optional[int],
        label: str,
        message: Optional[dict] = None,
    ) -> None:
        AssignmentManager(self.session, self.user_id).assign_single(
            notification.transaction_id, category_id, subcategory_id, is_manual=True
        )
        TransactionService(self.session, self.user_id).mark_reviewed(
            notification.transaction_id
        )
        self._resolve(notification, NotificationResolution.recategorized)
        self.edit_resolved(
            notification.channel_id,
            notification.message_ts,
            message,
            f"✓ *Category updated to:* {label}",
            f"✓ Category updated to: {label}",
        )

    def open_split(
        self, notification: TransactionNotification, trigger_id: str
    ) -> None:
        if self.messenger is None:
            return
        txn = TransactionService(self.session, self.user_id).get(
            notification.transaction_id
        )
        metadata = sign_metadata(
            {
                "t": txn.id,
                "u": self.user_id,
                "c": notification.channel_id,
                "ts": notification.message_ts,
            }
        )
        self.messenger.open_modal(trigger_id, build_num_splits_modal(txn, metadata))

    def handle_block_action(self, action: dict, payload: dict) -> None:
        """Apply one button click from a transaction message."""
        message = payload.get("message")
        channel = (payload.get("channel") or {}).get("id") or (message or {}).get("channel")
        ts = (message or {}).get("ts")
        if not channel or not ts:
            logger.warning("notify_action_ignored: reason=no_message_ref")
            return
        notification = self.notification_for_message(self.session, channel, ts)
        if notification is None:
            logger.warning(f"notify_action_ignored: channel={channel} ts={ts} reason=unknown")
            return
        self.user_id = notification.transaction.user_id

        action_id = action.get("action_id") or ""
        value = action.get("value") or ""
        try:
            if action_id == CORRECT_ACTION:
                if value != f"correct_{notification.transaction_id}":
                    raise ValidationFailure("Button does not match message")
                self.confirm(notification, message)
            elif action_id.startswith(CATEGORY_ACTION_PREFIX):
                match = _CATEGORY_VALUE_RE.match(value)
                if not match or int(match.group(1)) != notification.transaction_id:
                    raise ValidationFailure("Button does not match message")
                label = ((action.get("text") or {}).get("text")) or "category"
                self.recategorize(
                    notification,
                    int(match.group(2)),
                    int(match.group(3)) if match.group(3) else None,
                    label,
                    message,
                )
            elif action_id == SPLIT_ACTION:
                if value != f"split_{notification.transaction_id}":
                    raise ValidationFailure("Button does not match message")
                self.open_split(notification, payload.get("trigger_id") or "")
            else:
                logger.info(f"notify_action_ignored: action={action_id}")
        except MessagingError:
            logger.exception(f"notify_action_remote_failed: action={action_id}")
        except LedgerError:
            self.session.rollback()
            logger.exception(
                f"notify_action_failed: action={action_id} "
                f"transaction={notification.transaction_id}"
            )

    def _load_split_context(self, view: dict) -> tuple[dict, Transaction]:
        metadata = load_metadata(view.get("private_metadata") or "")
        self.user_id = int(metadata["u"])
        txn = TransactionService(self.session, self.user_id).get(int(metadata["t"]))
        return metadata, txn

    def submit_split_count(self, view: dict) -> ModalResponse:
        try:
            metadata, txn = self._load_split_context(view)
        except (ValidationFailure, NotFound, KeyError, ValueError):
            logger.exception("split_count_rejected")
            return _errors("num_splits", "This transaction can no longer be split")
        try:
            count = parse_split_count((view.get("state") or {}).get("values") or {})
        except SplitFormError as exc:
            return _errors(exc.field, exc.message)
        metadata["n"] = count
        options = split_select_options(
            CategoryService(self.session, self.user_id).list_all()
        )
        modal = build_split_modal(txn, count, options, sign_metadata(metadata))
        return ModalResponse(response_action="update", view=modal)

    def submit_split(self, view: dict) -> tuple[ModalResponse, Optional[SplitCommitted]]:
        try:
            metadata, txn = self._load_split_context(view)
            count = int(metadata["n"])
        except (ValidationFailure, NotFound, KeyError, ValueError):
            logger.exception("split_rejected")
            return _errors("split_1_category", "This transaction can no longer be split"), None
        values = (view.get("state") or {}).get("values") or {}
        try:
            splits = parse_split_submission(values, count, txn.amount_cents)
            AssignmentManager(self.session, self.user_id).assign(
                txn.id, splits, is_manual=True
            )
        except SplitFormError as exc:
            return _errors(exc.field, exc.message), None
        except (ValidationFailure, NotFound) as exc:
            self.session.rollback()
            return _errors("split_1_category", str(exc)), None

        TransactionService(self.session, self.user_id).mark_reviewed(txn.id)
        notification = txn.notification
        if notification is not None:
            self._resolve(notification, NotificationResolution.split)
        logger.info(f"split_committed: transaction={txn.id} splits={len(splits)}")
        committed = SplitCommitted(txn.id, self.user_id, metadata.get("c"), metadata.get("ts"))
        return ModalResponse(response_action="clear"), committed

    def announce_split(self, committed: SplitCommitted) -> bool:
        """Replace the message buttons with the committed split summary."""
        if not committed.channel_id or not committed.message_ts:
            return False
        txn = load_transaction_with_categories(self.session, committed.transaction_id)
        if txn is None or txn.user_id != self.user_id:
            return False
        details = [
            f"• {category_label(a.category, a.subcategory)}: {format_cents(a.amount_cents)}"
            for a in txn.assignments
        ]
        summary = ", ".join(
            f"{category_label(a.category, a.subcategory)} ({format_cents(a.amount_cents)})"
            for a in txn.assignments
        )
        return self.edit_resolved(
            committed.channel_id,
            committed.message_ts,
            None,
            f"✓ *Transaction split into {len(details)} categories:*\n" + "\n".join(details),
            f"✓ Transaction split: {summary}",
        )

    def handle_view_submission(
        self, payload: dict
    ) -> tuple[ModalResponse, Optional[SplitCommitted]]:
        view = payload.get("view") or {}
        callback_id = view.get("callback_id") or ""
        if callback_id.startswith(NUM_SPLITS_CALLBACK):
            return self.submit_split_count(view), None
        if callback_id.startswith(SPLIT_CALLBACK):
            return self.submit_split(view)
        logger.info(f"view_submission_ignored: callback={callback_id}")
        return ModalResponse(response_action="clear"), None


def make_notifier(messenger: Optional[Messenger]):
    """Notifier callable for the sync engine."""

    def notify(session: Session, txn: Transaction) -> None:
        NotificationWorkflow(session, messenger, txn.user_id).send_transaction_notification(txn)

    return notify
