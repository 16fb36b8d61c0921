# main.py

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, status

import models, schemas
from activity import build_activity_feed
from balances import BalanceRefresher, compute_balances
from database import SessionLocal, engine
from directory import MemberDirectory, TTLCache
from ledger import RemoteLedger, open_ledger
from services import ErrorKind, LedgerService, OperationState
from splits import detect_split_mode
from store import RecordStore
from sync import Synchronizer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create all database tables on startup
models.Base.metadata.create_all(bind=engine)

_store = RecordStore(SessionLocal)
_ledger = open_ledger()
_directory = MemberDirectory(_ledger, TTLCache())
# One synchronizer owns every live listener; the refresher keeps watched groups' balances current
_synchronizer = Synchronizer(_store, _ledger)
_refresher = BalanceRefresher(_synchronizer)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down: stopping %d group listeners", len(_synchronizer.watched_groups()))
    _synchronizer.unwatch_all()
    await _refresher.close()


app = FastAPI(title="BestSplit API", lifespan=lifespan)


# --- Dependencies ---
def get_store() -> RecordStore:
    return _store


def get_ledger() -> RemoteLedger:
    return _ledger


def get_directory() -> MemberDirectory:
    return _directory


def get_synchronizer() -> Synchronizer:
    return _synchronizer


def get_refresher() -> BalanceRefresher:
    return _refresher


def get_service(store: RecordStore = Depends(get_store),
                synchronizer: Synchronizer = Depends(get_synchronizer)) -> LedgerService:
    return LedgerService(store, synchronizer)


_ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def _check(state: OperationState) -> int:
    if not state.ok:
        code = _ERROR_STATUS.get(state.error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        raise HTTPException(status_code=code, detail=state.message)
    return state.record_id


def _group_or_404(store: RecordStore, group_id: int) -> schemas.GroupRecord:
    group = store.get_group(group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


@app.get("/")
def read_root():
    return {"message": "Welcome to the BestSplit API"}


# --- Group Endpoints ---
@app.post("/groups/", response_model=schemas.GroupRecord, status_code=status.HTTP_201_CREATED)
def create_group(group: schemas.GroupCreate, service: LedgerService = Depends(get_service)):
    group_id = _check(service.create_group(group.name, group.created_by, group.description, group.members))
    return service.store.get_group(group_id)


@app.get("/groups", response_model=List[schemas.GroupRecord])
def list_groups(member: Optional[str] = None, store: RecordStore = Depends(get_store)):
    return store.list_groups(member=member)


@app.get("/groups/{group_id}", response_model=schemas.GroupRecord)
def get_group(group_id: int, store: RecordStore = Depends(get_store)):
    return _group_or_404(store, group_id)


@app.patch("/groups/{group_id}", response_model=schemas.GroupRecord)
def update_group(group_id: int, changes: schemas.GroupUpdate, service: LedgerService = Depends(get_service)):
    _check(service.update_group(group_id, changes.name, changes.description))
    return service.store.get_group(group_id)


@app.post("/groups/{group_id}/members/", response_model=schemas.GroupRecord)
def add_member(group_id: int, body: schemas.MemberAdd, service: LedgerService = Depends(get_service)):
    _check(service.add_member(group_id, body.member_id))
    return service.store.get_group(group_id)


@app.delete("/groups/{group_id}/members/{member_id}", response_model=schemas.GroupRecord)
def remove_member(group_id: int, member_id: str, service: LedgerService = Depends(get_service)):
    _check(service.remove_member(group_id, member_id))
    return service.store.get_group(group_id)


@app.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_group(group_id: int, service: LedgerService = Depends(get_service),
                 refresher: BalanceRefresher = Depends(get_refresher)):
    _check(service.delete_group(group_id))
    refresher.untrack(group_id)
    refresher.invalidate(group_id)


@app.get("/groups/{group_id}/export", response_model=schemas.GroupRecord)
def export_group(group_id: int, store: RecordStore = Depends(get_store)):
    """The group as JSON, ready to be imported on another device."""
    return _group_or_404(store, group_id)


@app.post("/groups/import", response_model=schemas.GroupRecord, status_code=status.HTTP_201_CREATED)
def import_group(shared: schemas.GroupRecord, service: LedgerService = Depends(get_service)):
    group_id = _check(service.import_group(shared))
    return service.store.get_group(group_id)


# --- Expense Endpoints ---
@app.post("/groups/{group_id}/expenses/", response_model=schemas.ExpenseRecord, status_code=status.HTTP_201_CREATED)
def create_expense(group_id: int, expense: schemas.ExpenseCreate, service: LedgerService = Depends(get_service)):
    expense_id = _check(service.add_expense(
        group_id,
        expense.description,
        expense.amount,
        expense.paid_by,
        mode=expense.split_mode,
        participants=expense.participants,
        custom_input=expense.custom_shares,
    ))
    return service.store.get_expense(expense_id)


@app.get("/groups/{group_id}/expenses/", response_model=List[schemas.ExpenseRecord])
def list_expenses(group_id: int, store: RecordStore = Depends(get_store)):
    _group_or_404(store, group_id)
    return store.expenses_for_group(group_id)


@app.get("/groups/{group_id}/expenses/{expense_id}", response_model=schemas.ExpenseDetail)
def get_expense(group_id: int, expense_id: int, store: RecordStore = Depends(get_store)):
    group = _group_or_404(store, group_id)
    expense = store.get_expense(expense_id)
    if expense is None or expense.group_id != group_id:
        raise HTTPException(status_code=404, detail="Expense not found")
    split_mode = detect_split_mode(group.members, expense.amount, expense.paid_for)
    return schemas.ExpenseDetail(**expense.model_dump(), split_mode=split_mode)


@app.put("/groups/{group_id}/expenses/{expense_id}", response_model=schemas.ExpenseRecord)
def update_expense(group_id: int, expense_id: int, expense: schemas.ExpenseUpdate,
                   service: LedgerService = Depends(get_service)):
    existing = service.store.get_expense(expense_id)
    if existing is None or existing.group_id != group_id:
        raise HTTPException(status_code=404, detail="Expense not found")
    _check(service.update_expense(
        expense_id,
        expense.description,
        expense.amount,
        expense.paid_by,
        mode=expense.split_mode,
        participants=expense.participants,
        custom_input=expense.custom_shares,
    ))
    return service.store.get_expense(expense_id)


@app.delete("/groups/{group_id}/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_expense(group_id: int, expense_id: int, service: LedgerService = Depends(get_service)):
    existing = service.store.get_expense(expense_id)
    if existing is None or existing.group_id != group_id:
        raise HTTPException(status_code=404, detail="Expense not found")
    _check(service.delete_expense(expense_id))


# --- Settlement Endpoints ---
@app.post("/groups/{group_id}/settlements/", response_model=schemas.SettlementRecord,
          status_code=status.HTTP_201_CREATED)
def create_settlement(group_id: int, settlement: schemas.SettlementCreate,
                      service: LedgerService = Depends(get_service)):
    settlement_id = _check(service.record_settlement(
        group_id,
        settlement.from_user_id,
        settlement.to_user_id,
        settlement.amount,
        settlement.description,
    ))
    return service.store.get_settlement(settlement_id)


@app.get("/groups/{group_id}/settlements/", response_model=List[schemas.SettlementRecord])
def list_settlements(group_id: int, store: RecordStore = Depends(get_store)):
    _group_or_404(store, group_id)
    return store.settlements_for_group(group_id)


# --- Balances, Sync and Activity ---
@app.get("/groups/{group_id}/balances/", response_model=schemas.BalanceResponse)
def get_group_balances(group_id: int, store: RecordStore = Depends(get_store)):
    """
    Returns the pairwise matrix for a group: balances[a][b] is what a owes b.
    Only one direction of each pair is ever non-zero.
    """
    group = _group_or_404(store, group_id)
    result = compute_balances(store, group_id, group.members)
    if not result.ok:
        raise HTTPException(status_code=500, detail=f"Balance computation failed: {result.error}")
    return schemas.BalanceResponse(group_id=group_id, ok=True, balances=result.as_floats())


@app.post("/groups/{group_id}/watch/", status_code=status.HTTP_204_NO_CONTENT)
async def watch_group(group_id: int, store: RecordStore = Depends(get_store),
                      synchronizer: Synchronizer = Depends(get_synchronizer),
                      refresher: BalanceRefresher = Depends(get_refresher)):
    """Listen to the group's remote changes and keep its balances recomputed."""
    _group_or_404(store, group_id)
    if not await asyncio.to_thread(synchronizer.watch, group_id):
        raise HTTPException(status_code=503, detail="Could not listen to the remote ledger")
    refresher.track(group_id)
    refresher.request_refresh(group_id, sync=False)


@app.delete("/groups/{group_id}/watch/", status_code=status.HTTP_204_NO_CONTENT)
async def unwatch_group(group_id: int, synchronizer: Synchronizer = Depends(get_synchronizer),
                        refresher: BalanceRefresher = Depends(get_refresher)):
    synchronizer.unwatch(group_id)
    refresher.untrack(group_id)


@app.get("/groups/{group_id}/balances/latest", response_model=schemas.BalanceResponse)
def get_latest_balances(group_id: int, refresher: BalanceRefresher = Depends(get_refresher)):
    """The last matrix computed for a watched group, without recomputing."""
    result = refresher.latest(group_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No balances computed for this group yet")
    return schemas.BalanceResponse(group_id=group_id, ok=True, balances=result.as_floats())


@app.post("/groups/{group_id}/sync/", response_model=schemas.SyncReportResponse)
def sync_group(group_id: int, synchronizer: Synchronizer = Depends(get_synchronizer)):
    """Pull the group from the remote ledger into the local store."""
    report = synchronizer.sync_group(group_id)
    return schemas.SyncReportResponse(**asdict(report))


@app.get("/users/{user_id}/activity/", response_model=List[schemas.ActivityEntry])
def get_activity(user_id: str, store: RecordStore = Depends(get_store),
                 directory: MemberDirectory = Depends(get_directory)):
    return build_activity_feed(store, directory, user_id)


# --- Friends ---
@app.get("/users/{user_id}/friends/", response_model=List[schemas.UserProfile])
def list_friends(user_id: str, directory: MemberDirectory = Depends(get_directory)):
    return directory.friends(user_id)


@app.post("/users/{user_id}/friends/", response_model=schemas.UserProfile, status_code=status.HTTP_201_CREATED)
def add_friend(user_id: str, body: schemas.FriendAdd, directory: MemberDirectory = Depends(get_directory)):
    friend = directory.add_friend(user_id, body.email)
    if friend is None:
        raise HTTPException(status_code=400, detail=f"Could not add {body.email} as a friend")
    return friend
