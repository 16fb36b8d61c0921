# sync.py

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError as SchemaError
from sqlalchemy.exc import SQLAlchemyError

import schemas
from ledger import EXPENSES, SETTLEMENTS, Document, LedgerError, RemoteLedger, Subscription, WriteAck
from store import MissingParentError, RecordStore

load_dotenv()

logger = logging.getLogger(__name__)

# Seconds to wait before the single retry of a failed remote write
SYNC_RETRY_DELAY = float(os.getenv("SYNC_RETRY_DELAY", "1.0"))


@dataclass
class SyncReport:
    group_id: int
    applied: int = 0
    skipped: int = 0
    # Children whose group is not stored locally yet
    orphaned: int = 0
    migrated: int = 0
    failed: bool = False

    def add(self, other: "SyncReport") -> "SyncReport":
        self.applied += other.applied
        self.skipped += other.skipped
        self.orphaned += other.orphaned
        self.migrated += other.migrated
        self.failed = self.failed or other.failed
        return self


class Synchronizer:
    def __init__(self, store: RecordStore, ledger: RemoteLedger, retry_delay: float = SYNC_RETRY_DELAY):
        self.store = store
        self.ledger = ledger
        self.retry_delay = retry_delay
        self._listeners: Dict[int, List[Subscription]] = {}
        self._lock = threading.Lock()

    # --- Parsing ---
    def _parse(self, cls: Type[BaseModel], doc: Document, group_id: int, kind: str):
        try:
            record = cls.model_validate(doc)
        except SchemaError as e:
            logger.warning("Skipping malformed %s in group %s: %s", kind, group_id, e.errors()[0]["msg"])
            return None
        if record.id <= 0:
            logger.warning("Skipping %s with invalid id %s in group %s", kind, record.id, group_id)
            return None
        if record.group_id != group_id:
            logger.warning(
                "Skipping %s %s with mismatched group id: %s vs %s", kind, record.id, record.group_id, group_id
            )
            return None
        return record

    def _apply(self, group_id: int, docs: List[Document], cls, upsert, kind: str) -> SyncReport:
        report = SyncReport(group_id)
        for doc in docs:
            record = self._parse(cls, doc, group_id, kind)
            if record is None:
                report.skipped += 1
                continue
            try:
                upsert(record)
            except MissingParentError as e:
                # The next pass picks it up once the group has arrived
                logger.warning("%s", e)
                report.orphaned += 1
            except SQLAlchemyError:
                logger.exception("Error saving %s %s of group %s", kind, record.id, group_id)
                report.failed = True
            else:
                report.applied += 1
        return report

    def apply_expenses(self, group_id: int, docs: List[Document]) -> SyncReport:
        return self._apply(group_id, docs, schemas.ExpenseRecord, self.store.upsert_expense, "expense")

    def apply_settlements(self, group_id: int, docs: List[Document]) -> SyncReport:
        return self._apply(group_id, docs, schemas.SettlementRecord, self.store.upsert_settlement, "settlement")

    # --- Pulls ---
    def pull_group(self, group_id: int) -> SyncReport:
        report = SyncReport(group_id)
        try:
            doc = self.ledger.get_group(group_id)
        except LedgerError as e:
            logger.warning("Could not fetch group %s: %s", group_id, e)
            report.failed = True
            return report
        if doc is None:
            logger.debug("Group %s has no remote document", group_id)
            return report
        try:
            group = schemas.GroupRecord.model_validate({"id": group_id, **doc})
        except SchemaError as e:
            logger.warning("Skipping malformed group %s: %s", group_id, e.errors()[0]["msg"])
            report.skipped += 1
            return report
        if group.id != group_id:
            logger.warning("Skipping group document %s stored under %s", group.id, group_id)
            report.skipped += 1
            return report
        try:
            self.store.upsert_group(group)
        except SQLAlchemyError:
            logger.exception("Error saving group %s", group_id)
            report.failed = True
        else:
            report.applied += 1
        return report

    def pull_expenses(self, group_id: int) -> SyncReport:
        try:
            docs = self.ledger.get_all(group_id, EXPENSES)
        except LedgerError as e:
            logger.warning("Could not fetch expenses of group %s: %s", group_id, e)
            return SyncReport(group_id, failed=True)
        logger.debug("Retrieved %d expenses for group %s", len(docs), group_id)
        return self.apply_expenses(group_id, docs)

    def pull_settlements(self, group_id: int) -> SyncReport:
        try:
            docs = self.ledger.get_all(group_id, SETTLEMENTS)
        except LedgerError as e:
            logger.warning("Could not fetch settlements of group %s: %s", group_id, e)
            return SyncReport(group_id, failed=True)
        logger.debug("Retrieved %d settlements for group %s", len(docs), group_id)
        return self.apply_settlements(group_id, docs)

    def migrate_legacy_expenses(self, group_id: int) -> SyncReport:
        """Copy expenses only found in the old flat location into the group.

        ``migrated`` counts the copies; a second run finds nothing to do.
        """
        report = SyncReport(group_id)
        try:
            legacy = self.ledger.legacy_expenses(group_id)
            if not legacy:
                return report
            scoped_ids = {doc.get("id") for doc in self.ledger.get_all(group_id, EXPENSES)}
        except LedgerError as e:
            logger.warning("Could not check legacy expenses of group %s: %s", group_id, e)
            report.failed = True
            return report

        for doc in legacy:
            expense = self._parse(schemas.ExpenseRecord, doc, group_id, "legacy expense")
            if expense is None or expense.id in scoped_ids:
                continue
            ack = self._write(
                lambda: self.ledger.set(group_id, EXPENSES, expense.id, expense.model_dump(by_alias=True), merge=False),
                f"Migrating expense {expense.id}",
            )
            if ack is None:
                report.failed = True
                continue
            report.migrated += 1
            logger.info("Migrated expense %s to group %s", expense.id, group_id)
            try:
                self.store.upsert_expense(expense)
            except MissingParentError as e:
                logger.warning("%s", e)
                report.orphaned += 1
            except SQLAlchemyError:
                # The remote copy is in place; the next pull stores it locally
                logger.exception("Could not store migrated expense %s of group %s", expense.id, group_id)
                report.failed = True
        return report

    def sync_group(self, group_id: int) -> SyncReport:
        """Bring the local copy of one group up to date with the ledger."""
        report = self.pull_group(group_id)
        report.add(self.pull_expenses(group_id))
        report.add(self.migrate_legacy_expenses(group_id))
        report.add(self.pull_settlements(group_id))
        logger.info(
            "Synced group %s: %d applied, %d skipped, %d orphaned, %d migrated",
            group_id, report.applied, report.skipped, report.orphaned, report.migrated,
        )
        return report

    def sync_member_groups(self, member_id: str) -> List[SyncReport]:
        return [self.sync_group(group.id) for group in self.store.list_groups(member=member_id)]

    # --- Live listeners ---
    def watch(self, group_id: int, on_change: Optional[Callable[[int], None]] = None) -> bool:
        """Keep the group's records flowing into the store as they change remotely.

        ``on_change`` runs on the ledger's listener thread after a snapshot
        has been applied.
        """
        self.unwatch(group_id)

        def listener(apply):
            def on_snapshot(docs):
                report = apply(group_id, docs)
                logger.debug("Applied %d live updates for group %s", report.applied, group_id)
                if on_change is not None and report.applied:
                    on_change(group_id)
            return on_snapshot

        subscriptions = []
        try:
            subscriptions.append(self.ledger.subscribe(group_id, EXPENSES, listener(self.apply_expenses)))
            subscriptions.append(self.ledger.subscribe(group_id, SETTLEMENTS, listener(self.apply_settlements)))
        except LedgerError as e:
            logger.warning("Could not listen to group %s: %s", group_id, e)
            for subscription in subscriptions:
                subscription.cancel()
            return False

        with self._lock:
            # Another watch() for the same group may have landed meanwhile
            previous = self._listeners.pop(group_id, [])
            self._listeners[group_id] = subscriptions
        for subscription in previous:
            subscription.cancel()
        logger.info("Real-time sync established for group %s", group_id)
        return True

    def unwatch(self, group_id: int) -> bool:
        with self._lock:
            subscriptions = self._listeners.pop(group_id, [])
        for subscription in subscriptions:
            subscription.cancel()
        if subscriptions:
            logger.debug("Removed listeners for group %s", group_id)
        return bool(subscriptions)

    def unwatch_all(self) -> None:
        with self._lock:
            group_ids = list(self._listeners)
        for group_id in group_ids:
            self.unwatch(group_id)

    def watched_groups(self) -> List[int]:
        with self._lock:
            return sorted(self._listeners)

    # --- Remote writes ---
    def _write(self, action: Callable[[], WriteAck], what: str) -> Optional[WriteAck]:
        try:
            return action()
        except LedgerError as e:
            logger.warning("%s failed, retrying in %ss: %s", what, self.retry_delay, e)
        time.sleep(self.retry_delay)
        try:
            return action()
        except LedgerError as e:
            logger.warning("%s failed after retry, the ledger will be behind: %s", what, e)
            return None

    def push_group(self, group: schemas.GroupRecord) -> Optional[WriteAck]:
        return self._write(
            lambda: self.ledger.set_group(group.id, group.model_dump(by_alias=True), merge=False),
            f"Saving group {group.id}",
        )

    def remove_group(self, group_id: int) -> Optional[WriteAck]:
        self.unwatch(group_id)
        return self._write(lambda: self.ledger.delete_group(group_id), f"Deleting group {group_id}")

    def push_expense(self, expense: schemas.ExpenseRecord) -> Optional[WriteAck]:
        # Full replacement: a merge would keep shares of members no longer in paidFor
        return self._write(
            lambda: self.ledger.set(expense.group_id, EXPENSES, expense.id, expense.model_dump(by_alias=True), merge=False),
            f"Saving expense {expense.id}",
        )

    def remove_expense(self, group_id: int, expense_id: int) -> Optional[WriteAck]:
        return self._write(
            lambda: self.ledger.delete(group_id, EXPENSES, expense_id),
            f"Deleting expense {expense_id}",
        )

    def push_settlement(self, settlement: schemas.SettlementRecord) -> Optional[WriteAck]:
        return self._write(
            lambda: self.ledger.set(
                settlement.group_id, SETTLEMENTS, settlement.id, settlement.model_dump(by_alias=True), merge=False
            ),
            f"Saving settlement {settlement.id}",
        )
