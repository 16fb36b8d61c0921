# services.py
# Operations validate, write locally, then push. They return an OperationState.

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

import schemas
from splits import (
    SplitMode,
    ValidationError,
    ZERO,
    compute_shares,
    parse_amount,
    shares_match_total,
    shares_to_floats,
)
from store import MissingParentError, RecordStore
from sync import Synchronizer

logger = logging.getLogger(__name__)


class RecordNotFound(LookupError):
    pass


class OperationStatus(str, Enum):
    IDLE = "IDLE"
    LOADING = "LOADING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STORE = "store"
    INTERNAL = "internal"


@dataclass(frozen=True)
class OperationState:
    status: OperationStatus
    record_id: Optional[int] = None
    message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def terminal(self) -> bool:
        return self.status in (OperationStatus.SUCCESS, OperationStatus.ERROR)

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.SUCCESS


IDLE = OperationState(OperationStatus.IDLE)
LOADING = OperationState(OperationStatus.LOADING)


class StateSlot:
    """Current state of one user flow (e.g. the add-expense form).

    A finished state is handed out once by :meth:`consume`, after which the
    slot is idle again and the flow can be retried or left.
    """

    def __init__(self):
        self._state = IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> OperationState:
        return self._state

    def run(self, operation: Callable[[], OperationState]) -> OperationState:
        with self._lock:
            self._state = LOADING
        try:
            result = operation()
        except Exception as e:
            # Never leave the flow stuck in LOADING
            logger.exception("Operation failed unexpectedly")
            result = OperationState(OperationStatus.ERROR, message=str(e) or type(e).__name__,
                                    error_kind=ErrorKind.INTERNAL)
        with self._lock:
            self._state = result
        return result

    def consume(self) -> Optional[OperationState]:
        with self._lock:
            if not self._state.terminal:
                return None
            state, self._state = self._state, IDLE
            return state

    def reset(self) -> None:
        with self._lock:
            self._state = IDLE


def now_ms() -> int:
    return int(time.time() * 1000)


def _require(value: Optional[str], message: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(message)
    return value.strip()


def _positive_amount(raw, what: str):
    amount = parse_amount(raw)
    if amount is None or amount <= ZERO:
        raise ValidationError(f"{what} must be a positive number.")
    return amount


class LedgerService:
    def __init__(self, store: RecordStore, synchronizer: Synchronizer, clock: Callable[[], int] = now_ms):
        self.store = store
        self.synchronizer = synchronizer
        self.clock = clock

    # --- Plumbing ---
    def _perform(self, what: str, action: Callable[[], int]) -> OperationState:
        try:
            record_id = action()
        except ValidationError as e:
            logger.info("Rejected %s: %s", what, e)
            return OperationState(OperationStatus.ERROR, message=str(e), error_kind=ErrorKind.VALIDATION)
        except RecordNotFound as e:
            return OperationState(OperationStatus.ERROR, message=str(e), error_kind=ErrorKind.NOT_FOUND)
        except (SQLAlchemyError, MissingParentError) as e:
            logger.exception("Could not %s", what)
            return OperationState(OperationStatus.ERROR, message=f"Could not {what}: {e}", error_kind=ErrorKind.STORE)
        return OperationState(OperationStatus.SUCCESS, record_id=record_id)

    def _require_group(self, group_id: int) -> schemas.GroupRecord:
        group = self.store.get_group(group_id)
        if group is None:
            raise RecordNotFound(f"Group {group_id} not found")
        return group

    def _confirm(self, ack, group_id: int) -> None:
        # Re-read only once the ledger has confirmed the write
        if ack is not None:
            self.synchronizer.sync_group(group_id)

    # --- Groups ---
    def create_group(self, name: str, created_by: str, description: str = "",
                     members: Sequence[str] = ()) -> OperationState:
        def action():
            group_name = _require(name, "Group name is required.")
            creator = _require(created_by, "A group needs a creator.")
            member_ids = [creator] + [m.strip() for m in members if m and m.strip()]
            group = schemas.GroupRecord(
                name=group_name,
                description=(description or "").strip(),
                created_at=self.clock(),
                created_by=creator,
                members=list(dict.fromkeys(member_ids)),
            )
            group_id = self.store.insert_group(group)
            self.synchronizer.push_group(group.model_copy(update={"id": group_id}))
            return group_id

        return self._perform("create group", action)

    def import_group(self, shared: schemas.GroupRecord) -> OperationState:
        """Store a copy of a group shared from another device under a fresh id.

        Only the group itself travels; its expenses and settlements stay behind.
        """
        def action():
            name = _require(shared.name, "Group name is required.")
            creator = _require(shared.created_by, "A group needs a creator.")
            members = [m.strip() for m in [creator] + list(shared.members) if m and m.strip()]
            group = shared.model_copy(update={
                "id": 0,
                "name": name,
                "created_by": creator,
                "created_at": shared.created_at or self.clock(),
                "members": list(dict.fromkeys(members)),
            })
            group_id = self.store.insert_group(group)
            logger.info("Imported group %r as %s", name, group_id)
            self.synchronizer.push_group(group.model_copy(update={"id": group_id}))
            return group_id

        return self._perform("import group", action)

    def update_group(self, group_id: int, name: Optional[str] = None,
                     description: Optional[str] = None) -> OperationState:
        def action():
            group = self._require_group(group_id)
            changes = {}
            if name is not None:
                changes["name"] = _require(name, "Group name is required.")
            if description is not None:
                changes["description"] = description.strip()
            return self._save_group(group.model_copy(update=changes))

        return self._perform("update group", action)

    def add_member(self, group_id: int, member_id: str) -> OperationState:
        def action():
            group = self._require_group(group_id)
            member = _require(member_id, "Member id is required.")
            if member in group.members:
                return group.id
            return self._save_group(group.model_copy(update={"members": group.members + [member]}))

        return self._perform("add member", action)

    def remove_member(self, group_id: int, member_id: str) -> OperationState:
        def action():
            group = self._require_group(group_id)
            if member_id == group.created_by:
                raise ValidationError("The group creator cannot be removed.")
            if member_id not in group.members:
                raise RecordNotFound(f"{member_id} is not a member of group {group_id}")
            members = [m for m in group.members if m != member_id]
            return self._save_group(group.model_copy(update={"members": members}))

        return self._perform("remove member", action)

    def _save_group(self, group: schemas.GroupRecord) -> int:
        self.store.update_group(group)
        self.synchronizer.push_group(group)
        return group.id

    def delete_group(self, group_id: int) -> OperationState:
        def action():
            if not self.store.delete_group(group_id):
                raise RecordNotFound(f"Group {group_id} not found")
            self.synchronizer.remove_group(group_id)
            return group_id

        return self._perform("delete group", action)

    # --- Expenses ---
    def _build_expense(
        self,
        group: schemas.GroupRecord,
        description: str,
        amount,
        paid_by: str,
        mode: SplitMode,
        participants: Optional[Sequence[str]],
        custom_input: Optional[Mapping[str, str]],
    ) -> schemas.ExpenseRecord:
        text = _require(description, "Description is required.")
        total = _positive_amount(amount, "Amount")
        if paid_by not in group.members:
            raise ValidationError(f"Payer {paid_by!r} is not a member of the group.")

        chosen: List[str] = list(dict.fromkeys(participants)) if participants else list(group.members)
        outsiders = [m for m in chosen if m not in group.members]
        if outsiders:
            raise ValidationError(f"Not members of the group: {', '.join(outsiders)}")

        shares = compute_shares(chosen, total, mode, custom_input)
        if any(share < ZERO for share in shares.values()):
            raise ValidationError("Shares cannot be negative.")
        if mode == SplitMode.CUSTOM and not shares_match_total(shares, total):
            split_total = sum(shares.values(), ZERO)
            raise ValidationError(f"Split amounts add up to {split_total}, expected {total}.")

        return schemas.ExpenseRecord(
            group_id=group.id,
            description=text,
            amount=float(total),
            paid_by=paid_by,
            paid_for=shares_to_floats(shares),
            created_at=self.clock(),
        )

    def add_expense(
        self,
        group_id: int,
        description: str,
        amount,
        paid_by: str,
        mode: SplitMode = SplitMode.EQUAL,
        participants: Optional[Sequence[str]] = None,
        custom_input: Optional[Mapping[str, str]] = None,
    ) -> OperationState:
        def action():
            group = self._require_group(group_id)
            expense = self._build_expense(group, description, amount, paid_by, mode, participants, custom_input)
            expense = expense.model_copy(update={"id": self.store.insert_expense(expense)})
            logger.info("Added expense %s to group %s, amount %s", expense.id, group_id, expense.amount)
            self._confirm(self.synchronizer.push_expense(expense), group_id)
            return expense.id

        return self._perform("add expense", action)

    def update_expense(
        self,
        expense_id: int,
        description: str,
        amount,
        paid_by: str,
        mode: SplitMode = SplitMode.EQUAL,
        participants: Optional[Sequence[str]] = None,
        custom_input: Optional[Mapping[str, str]] = None,
    ) -> OperationState:
        def action():
            existing = self.store.get_expense(expense_id)
            if existing is None:
                raise RecordNotFound(f"Expense {expense_id} not found")
            group = self._require_group(existing.group_id)
            rebuilt = self._build_expense(group, description, amount, paid_by, mode, participants, custom_input)
            # Identity, group and creation time survive an edit
            expense = rebuilt.model_copy(update={"id": existing.id, "created_at": existing.created_at})
            if not self.store.update_expense(expense):
                raise RecordNotFound(f"Expense {expense_id} not found")
            self._confirm(self.synchronizer.push_expense(expense), expense.group_id)
            return expense.id

        return self._perform("update expense", action)

    def delete_expense(self, expense_id: int) -> OperationState:
        def action():
            existing = self.store.get_expense(expense_id)
            if existing is None or not self.store.delete_expense(expense_id):
                raise RecordNotFound(f"Expense {expense_id} not found")
            self.synchronizer.remove_expense(existing.group_id, expense_id)
            return expense_id

        return self._perform("delete expense", action)

    # --- Settlements ---
    def record_settlement(self, group_id: int, from_user_id: str, to_user_id: str,
                          amount, description: str = "") -> OperationState:
        def action():
            group = self._require_group(group_id)
            payer = _require(from_user_id, "Who paid is required.")
            receiver = _require(to_user_id, "Who received is required.")
            if payer == receiver:
                raise ValidationError("A settlement needs two different members.")
            for member in (payer, receiver):
                if member not in group.members:
                    raise ValidationError(f"{member!r} is not a member of the group.")
            value = _positive_amount(amount, "Settlement amount")

            settlement = schemas.SettlementRecord(
                group_id=group_id,
                from_user_id=payer,
                to_user_id=receiver,
                amount=float(value),
                description=(description or "").strip(),
                created_at=self.clock(),
            )
            settlement = settlement.model_copy(update={"id": self.store.insert_settlement(settlement)})
            logger.info("Recorded settlement %s: %s -> %s, %s", settlement.id, payer, receiver, value)
            self._confirm(self.synchronizer.push_settlement(settlement), group_id)
            return settlement.id

        return self._perform("record settlement", action)
