# balances.py
# balances[a][b] is what a owes b.

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

import schemas
from splits import ZERO, to_decimal
from store import RecordStore
from sync import Synchronizer

logger = logging.getLogger(__name__)

Matrix = Dict[str, Dict[str, Decimal]]


@dataclass(frozen=True)
class BalanceResult:
    """Either a matrix, or the reason there is none."""
    group_id: int
    ok: bool
    balances: Matrix = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def success(cls, group_id: int, balances: Matrix) -> "BalanceResult":
        return cls(group_id=group_id, ok=True, balances=balances)

    @classmethod
    def failure(cls, group_id: int, error: str) -> "BalanceResult":
        return cls(group_id=group_id, ok=False, error=error)

    def owes(self, debtor: str, creditor: str) -> Decimal:
        return self.balances.get(debtor, {}).get(creditor, ZERO)

    def as_floats(self) -> Dict[str, Dict[str, float]]:
        return {a: {b: float(x) for b, x in row.items()} for a, row in self.balances.items()}


def _valid_party(member_id: str, members) -> bool:
    return bool(member_id and member_id.strip()) and member_id in members


def _usable(amount: Decimal) -> bool:
    return amount.is_finite() and amount > 0


def net_balances(
    members: Sequence[str],
    expenses: Iterable[schemas.ExpenseRecord],
    settlements: Iterable[schemas.SettlementRecord],
) -> Matrix:
    members = list(dict.fromkeys(members))
    member_set = set(members)
    matrix: Matrix = {a: {b: ZERO for b in members if b != a} for a in members}

    for expense in expenses:
        payer = expense.paid_by
        if not _valid_party(payer, member_set) or not expense.paid_for:
            continue
        for member_id, share in expense.paid_for.items():
            amount = to_decimal(share)
            if not _valid_party(member_id, member_set) or not _usable(amount):
                continue
            if member_id == payer:
                continue
            matrix[member_id][payer] += amount
            matrix[payer][member_id] -= amount

    for settlement in settlements:
        payer, receiver = settlement.from_user_id, settlement.to_user_id
        amount = to_decimal(settlement.amount)
        if not (_valid_party(payer, member_set) and _valid_party(receiver, member_set)):
            continue
        if payer == receiver or not _usable(amount):
            continue
        matrix[payer][receiver] -= amount
        matrix[receiver][payer] += amount

    # Netting: one direction per pair, never negative
    for i, a in enumerate(members):
        for b in members[i + 1:]:
            owed, owed_back = matrix[a][b], matrix[b][a]
            if owed > 0 and owed_back > 0:
                if owed > owed_back:
                    matrix[a][b], matrix[b][a] = owed - owed_back, ZERO
                else:
                    matrix[b][a], matrix[a][b] = owed_back - owed, ZERO
            # The two entries mirror each other; the negative one is the creditor's side
            if matrix[a][b] < 0:
                matrix[a][b] = ZERO
            if matrix[b][a] < 0:
                matrix[b][a] = ZERO
    return matrix


def compute_balances(store: RecordStore, group_id: int, members: Optional[Sequence[str]] = None) -> BalanceResult:
    """Compute the matrix from the store's current snapshot of the group.

    ``members`` defaults to the stored group's member list.
    """
    try:
        if members is None:
            group = store.get_group(group_id)
            if group is None:
                return BalanceResult.failure(group_id, f"Group {group_id} is not stored locally")
            members = group.members
        expenses = store.expenses_for_group(group_id)
        settlements = store.settlements_for_group(group_id)
        balances = net_balances(members, expenses, settlements)
    except (SQLAlchemyError, ArithmeticError) as e:
        logger.exception("Balance computation failed for group %s", group_id)
        return BalanceResult.failure(group_id, str(e) or type(e).__name__)
    return BalanceResult.success(group_id, balances)


class BalanceRefresher:
    """Keeps the latest balance matrix per group, recomputed on demand.

    Blocking sync and store reads run in worker threads. A refresh that is
    cancelled, or superseded by a newer one for the same group, publishes
    nothing.
    """

    def __init__(
        self,
        synchronizer: Synchronizer,
        on_update: Optional[Callable[[BalanceResult], None]] = None,
    ):
        self.synchronizer = synchronizer
        self.store = synchronizer.store
        self.on_update = on_update
        self._results: Dict[int, BalanceResult] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._untrack: Dict[int, Callable[[], None]] = {}

    def latest(self, group_id: int) -> Optional[BalanceResult]:
        return self._results.get(group_id)

    def invalidate(self, group_id: int) -> None:
        self._results.pop(group_id, None)

    async def refresh(
        self, group_id: int, members: Optional[Sequence[str]] = None, sync: bool = True
    ) -> Optional[BalanceResult]:
        try:
            if sync:
                await asyncio.to_thread(self.synchronizer.sync_group, group_id)
            result = await asyncio.to_thread(compute_balances, self.store, group_id, members)
        except asyncio.CancelledError:
            logger.debug("Balance refresh for group %s cancelled", group_id)
            raise
        except Exception:
            logger.exception("Balance refresh for group %s failed", group_id)
            return None

        if result.ok:
            self._results[group_id] = result
            if self.on_update is not None:
                self.on_update(result)
        else:
            logger.warning("Keeping previous balances for group %s: %s", group_id, result.error)
        return result

    def request_refresh(
        self, group_id: int, members: Optional[Sequence[str]] = None, sync: bool = True
    ) -> asyncio.Task:
        """Start a refresh, cancelling one already running for the group."""
        previous = self._tasks.get(group_id)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.get_running_loop().create_task(self.refresh(group_id, members, sync))
        self._tasks[group_id] = task

        def forget(done: asyncio.Task):
            if self._tasks.get(group_id) is done:
                del self._tasks[group_id]

        task.add_done_callback(forget)
        return task

    def track(self, group_id: int, members: Optional[Sequence[str]] = None) -> None:
        """Recompute whenever the store reports a change to the group.

        Store callbacks may fire on listener threads, so they hop back onto
        the running loop before touching any state.
        """
        loop = asyncio.get_running_loop()

        def on_store_change(changed_group_id: int):
            if not loop.is_closed():
                loop.call_soon_threadsafe(self.request_refresh, changed_group_id, members, False)

        self.untrack(group_id)
        self._untrack[group_id] = self.store.subscribe(group_id, on_store_change)

    def untrack(self, group_id: int) -> None:
        unsubscribe = self._untrack.pop(group_id, None)
        if unsubscribe is not None:
            unsubscribe()

    async def close(self) -> None:
        for group_id in list(self._untrack):
            self.untrack(group_id)
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
