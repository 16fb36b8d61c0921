# store.py
# Each call opens its own session and returns detached pydantic records.

import logging
import threading
from typing import Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

import models, schemas

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseModel)

ChangeCallback = Callable[[int], None]


class MissingParentError(Exception):
    """A child record arrived before its group exists locally."""

    def __init__(self, kind: str, record_id: int, group_id: int):
        super().__init__(f"{kind} {record_id} references group {group_id}, which is not stored locally")
        self.kind = kind
        self.record_id = record_id
        self.group_id = group_id


def _to_record(cls: Type[R], row) -> R:
    values = {name: getattr(row, name) for name in cls.model_fields}
    return cls(**values)


class RecordStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._watchers: Dict[int, List[ChangeCallback]] = {}
        self._lock = threading.Lock()

    # --- Change notification ---
    def subscribe(self, group_id: int, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback(group_id)`` after every committed change to the group."""
        with self._lock:
            self._watchers.setdefault(group_id, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._watchers.get(group_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._watchers.pop(group_id, None)

        return unsubscribe

    def _notify(self, group_id: int) -> None:
        with self._lock:
            callbacks = list(self._watchers.get(group_id, []))
        for callback in callbacks:
            try:
                callback(group_id)
            except Exception:
                logger.exception("Change callback failed for group %s", group_id)

    # --- Shared write paths ---
    def _insert(self, model, record: BaseModel, group_id: Optional[int] = None) -> int:
        values = record.model_dump(exclude={"id"} if not record.id else None)
        with self._session_factory() as db:
            row = model(**values)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if group_id is not None and not self.has_group(group_id):
                    raise MissingParentError(model.__name__, record.id, group_id)
                raise
            new_id = row.id
        self._notify(group_id if group_id is not None else new_id)
        return new_id

    def _upsert(self, model, record: BaseModel, group_id: int) -> None:
        # Last write wins: the row is replaced wholesale by the incoming record.
        # A concurrent insert of the same id shows up as an IntegrityError and
        # the second attempt merges onto the row that won.
        for attempt in range(2):
            with self._session_factory() as db:
                db.merge(model(**record.model_dump()))
                try:
                    db.commit()
                    break
                except IntegrityError:
                    db.rollback()
                    if model is not models.Group and not self.has_group(group_id):
                        raise MissingParentError(model.__name__, record.id, group_id)
                    if attempt:
                        raise
        self._notify(group_id)

    def _update(self, model, record: BaseModel, group_id: int) -> bool:
        with self._session_factory() as db:
            if db.get(model, record.id) is None:
                return False
            db.merge(model(**record.model_dump()))
            db.commit()
        self._notify(group_id)
        return True

    # --- Groups ---
    def insert_group(self, group: schemas.GroupRecord) -> int:
        return self._insert(models.Group, group)

    def upsert_group(self, group: schemas.GroupRecord) -> None:
        self._upsert(models.Group, group, group.id)

    def update_group(self, group: schemas.GroupRecord) -> bool:
        return self._update(models.Group, group, group.id)

    def delete_group(self, group_id: int) -> bool:
        with self._session_factory() as db:
            row = db.get(models.Group, group_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        self._notify(group_id)
        return True

    def get_group(self, group_id: int) -> Optional[schemas.GroupRecord]:
        with self._session_factory() as db:
            row = db.get(models.Group, group_id)
            return _to_record(schemas.GroupRecord, row) if row else None

    def has_group(self, group_id: int) -> bool:
        with self._session_factory() as db:
            return db.get(models.Group, group_id) is not None

    def list_groups(self, member: Optional[str] = None) -> List[schemas.GroupRecord]:
        with self._session_factory() as db:
            rows = db.scalars(select(models.Group).order_by(models.Group.created_at.desc())).all()
            groups = [_to_record(schemas.GroupRecord, row) for row in rows]
        # Members live in a JSON column, filtered here to stay dialect independent
        if member is not None:
            groups = [g for g in groups if member in g.members]
        return groups

    # --- Expenses ---
    def insert_expense(self, expense: schemas.ExpenseRecord) -> int:
        return self._insert(models.Expense, expense, expense.group_id)

    def upsert_expense(self, expense: schemas.ExpenseRecord) -> None:
        self._upsert(models.Expense, expense, expense.group_id)

    def update_expense(self, expense: schemas.ExpenseRecord) -> bool:
        return self._update(models.Expense, expense, expense.group_id)

    def delete_expense(self, expense_id: int) -> bool:
        with self._session_factory() as db:
            row = db.get(models.Expense, expense_id)
            if row is None:
                return False
            group_id = row.group_id
            db.delete(row)
            db.commit()
        self._notify(group_id)
        return True

    def get_expense(self, expense_id: int) -> Optional[schemas.ExpenseRecord]:
        with self._session_factory() as db:
            row = db.get(models.Expense, expense_id)
            return _to_record(schemas.ExpenseRecord, row) if row else None

    def expenses_for_group(self, group_id: int) -> List[schemas.ExpenseRecord]:
        stmt = (
            select(models.Expense)
            .where(models.Expense.group_id == group_id)
            .order_by(models.Expense.created_at.desc(), models.Expense.id.desc())
        )
        with self._session_factory() as db:
            return [_to_record(schemas.ExpenseRecord, row) for row in db.scalars(stmt)]

    # --- Settlements ---
    def insert_settlement(self, settlement: schemas.SettlementRecord) -> int:
        return self._insert(models.Settlement, settlement, settlement.group_id)

    def upsert_settlement(self, settlement: schemas.SettlementRecord) -> None:
        self._upsert(models.Settlement, settlement, settlement.group_id)

    def get_settlement(self, settlement_id: int) -> Optional[schemas.SettlementRecord]:
        with self._session_factory() as db:
            row = db.get(models.Settlement, settlement_id)
            return _to_record(schemas.SettlementRecord, row) if row else None

    def settlements_for_group(self, group_id: int) -> List[schemas.SettlementRecord]:
        stmt = (
            select(models.Settlement)
            .where(models.Settlement.group_id == group_id)
            .order_by(models.Settlement.created_at.desc(), models.Settlement.id.desc())
        )
        with self._session_factory() as db:
            return [_to_record(schemas.SettlementRecord, row) for row in db.scalars(stmt)]
