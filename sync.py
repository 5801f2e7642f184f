"""Feed synchronisation.

``SyncEngine.sync`` walks a linked item's cursor until the feed reports no
more pages. The cursor is committed after every page, so an interrupted run
resumes after the last page it finished. Record-level failures are logged and
skipped; they never stop the loop or hold back the cursor.
"""

import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from classifier import Classifier, LLMBackend, TransferDetector, keyword_transfer_detector
from feed import FeedClient
from models import LinkedItem, Transaction, WebhookEvent
from schemas import FeedTransaction, SyncResultOut, WebhookIn
from services import AssignmentManager, LinkService, TransactionService

logger = logging.getLogger(__name__)

TRANSACTION_WEBHOOK_CODES = {
    "SYNC_UPDATES_AVAILABLE",
    "DEFAULT_UPDATE",
    "INITIAL_UPDATE",
    "HISTORICAL_UPDATE",
}

Notifier = Callable[[Session, Transaction], None]


@dataclass
class SyncResult:
    added: int = 0
    modified: int = 0
    removed: int = 0
    final_cursor: Optional[str] = None
    failed: int = 0
    categorized: int = 0

    def to_out(self) -> SyncResultOut:
        return SyncResultOut(
            added=self.added,
            modified=self.modified,
            removed=self.removed,
            final_cursor=self.final_cursor,
            failed=self.failed,
            categorized=self.categorized,
        )


class SyncEngine:
    def __init__(
        self,
        session: Session,
        feed: FeedClient,
        backend: Optional[LLMBackend] = None,
        notifier: Optional[Notifier] = None,
        transfer_detector: TransferDetector = keyword_transfer_detector,
    ) -> None:
        self.session = session
        self.feed = feed
        self.backend = backend
        self.notifier = notifier
        self.transfer_detector = transfer_detector

    def sync(self, item: LinkedItem) -> SyncResult:
        access_token = LinkService(self.session, self.feed, item.user_id).access_token(item)
        result = SyncResult(final_cursor=item.cursor)
        has_more = True
        while has_more:
            batch = self.feed.sync_batch(access_token, item.cursor)
            for record in batch.added:
                if self._ingest(item, record, result):
                    result.added += 1
            for record in batch.modified:
                if self._apply_modified(item, record, result):
                    result.modified += 1
            for external_id in batch.removed:
                if self._remove(item, external_id, result):
                    result.removed += 1

            item.cursor = batch.next_cursor
            self.session.commit()
            result.final_cursor = batch.next_cursor
            has_more = batch.has_more
            logger.info(
                f"sync_batch: item={item.id} added={len(batch.added)} "
                f"modified={len(batch.modified)} removed={len(batch.removed)} "
                f"has_more={has_more}"
            )
        logger.info(
            f"sync_complete: item={item.id} added={result.added} modified={result.modified} "
            f"removed={result.removed} failed={result.failed}"
        )
        return result

    def _ingest(
        self, item: LinkedItem, record: FeedTransaction, result: SyncResult
    ) -> bool:
        txns = TransactionService(self.session, item.user_id)
        try:
            if txns.exists_external(record.transaction_id):
                logger.info(f"sync_skip_duplicate: external_id={record.transaction_id}")
                return False
            txn = txns.insert_from_feed(record, item)
        except Exception:
            self.session.rollback()
            result.failed += 1
            logger.exception(f"sync_insert_failed: external_id={record.transaction_id}")
            return False

        if self._categorize(item, txn):
            result.categorized += 1
        self._notify(txn)
        return True

    def _categorize(self, item: LinkedItem, txn: Transaction) -> bool:
        try:
            classifier = Classifier(
                self.session, self.backend, item.user_id, self.transfer_detector
            )
            outcome = classifier.classify_transaction(txn)
            if not outcome.resolved:
                return False
            AssignmentManager(self.session, item.user_id).assign_single(
                txn.id, outcome.category_id, outcome.subcategory_id, is_manual=False
            )
            return True
        except Exception:
            self.session.rollback()
            logger.exception(f"sync_categorize_failed: transaction={txn.id}")
            return False

    def _notify(self, txn: Transaction) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(self.session, txn)
        except Exception:
            self.session.rollback()
            logger.exception(f"sync_notify_failed: transaction={txn.id}")

    def _apply_modified(
        self, item: LinkedItem, record: FeedTransaction, result: SyncResult
    ) -> bool:
        txns = TransactionService(self.session, item.user_id)
        try:
            txn = txns.get_by_external_id(record.transaction_id)
        except Exception:
            self.session.rollback()
            result.failed += 1
            logger.exception(f"sync_lookup_failed: external_id={record.transaction_id}")
            return False
        if txn is None:
            # Modification arrived before its add.
            logger.info(f"sync_modified_as_added: external_id={record.transaction_id}")
            return self._ingest(item, record, result)
        try:
            txns.update_from_feed(txn, record)
        except Exception:
            self.session.rollback()
            result.failed += 1
            logger.exception(f"sync_update_failed: external_id={record.transaction_id}")
            return False
        return True

    def _remove(self, item: LinkedItem, external_id: str, result: SyncResult) -> bool:
        try:
            return TransactionService(self.session, item.user_id).delete_by_external_id(
                external_id
            )
        except Exception:
            self.session.rollback()
            result.failed += 1
            logger.exception(f"sync_remove_failed: external_id={external_id}")
            return False

    def sync_user(self, user_id: int) -> dict[int, SyncResult]:
        results: dict[int, SyncResult] = {}
        items = self.session.scalars(
            select(LinkedItem).where(LinkedItem.user_id == user_id).order_by(LinkedItem.id)
        ).all()
        for item in items:
            try:
                results[item.id] = self.sync(item)
            except Exception:
                self.session.rollback()
                logger.exception(f"sync_item_failed: item={item.id}")
        return results

    def sync_all(self) -> int:
        items = self.session.scalars(select(LinkedItem).order_by(LinkedItem.id)).all()
        synced = 0
        for item in items:
            try:
                self.sync(item)
                synced += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"sync_item_failed: item={item.id}")
        return synced


def record_webhook(session: Session, payload: WebhookIn) -> WebhookEvent:
    event = WebhookEvent(
        item_id=payload.item_id,
        webhook_type=payload.webhook_type,
        webhook_code=payload.webhook_code,
        payload=json.dumps(payload.model_dump(mode="json")),
    )
    session.add(event)
    session.commit()
    return event


def process_webhook(engine: SyncEngine, event: WebhookEvent) -> Optional[SyncResult]:
    """Run the sync a feed webhook asks for and mark the audit row."""
    session = engine.session
    if event.webhook_type != "TRANSACTIONS" or (
        event.webhook_code and event.webhook_code not in TRANSACTION_WEBHOOK_CODES
    ):
        logger.info(
            f"webhook_ignored: type={event.webhook_type} code={event.webhook_code}"
        )
        event.processed = True
        session.commit()
        return None

    item = session.scalar(select(LinkedItem).where(LinkedItem.item_id == event.item_id))
    if item is None:
        logger.warning(f"webhook_unknown_item: item={event.item_id}")
        event.error_message = "Linked item not found"
        event.processed = True
        session.commit()
        return None

    try:
        result = engine.sync(item)
    except Exception as exc:
        session.rollback()
        logger.exception(f"webhook_sync_failed: item={item.id}")
        event.error_message = str(exc)
        event.processed = True
        session.commit()
        return None
    event.processed = True
    session.commit()
    return result
