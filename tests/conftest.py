import os

# Keep module-level engines and ledgers away from real files and Firebase
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LEDGER_BACKEND", "memory")

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, make_engine
from ledger import LedgerError, MemoryLedger
from services import LedgerService
from store import RecordStore
from sync import Synchronizer

import schemas


class FlakyLedger(MemoryLedger):
    """Fails the first ``failures`` record writes, then behaves."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def set(self, group_id, collection, record_id, data, merge=True):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise LedgerError("deadline exceeded")
        return super().set(group_id, collection, record_id, data, merge)


class FakeClock:
    """Millisecond clock that moves forward one second per reading."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1000
        return self.now


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """SQLite on disk, one connection per thread, for tests that write from several threads."""
    engine = make_engine(f"sqlite:///{tmp_path / 'bestsplit.db'}",
                         connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return RecordStore(sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine))


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def synchronizer(store, ledger):
    return Synchronizer(store, ledger, retry_delay=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(store, synchronizer, clock):
    return LedgerService(store, synchronizer, clock=clock)


@pytest.fixture
def group(store):
    """A stored group of three, not yet pushed to the ledger."""
    record = schemas.GroupRecord(
        name="Trip",
        created_at=1_700_000_000_000,
        created_by="alice",
        members=["alice", "bob", "carol"],
    )
    group_id = store.insert_group(record)
    return store.get_group(group_id)


def expense_doc(expense_id, group_id, paid_by, paid_for, amount=None, created_at=1_700_000_000_000, **extra):
    """A ledger document in the camelCase wire shape."""
    doc = {
        "id": expense_id,
        "groupId": group_id,
        "description": f"Expense {expense_id}",
        "amount": amount if amount is not None else sum(paid_for.values()),
        "paidBy": paid_by,
        "paidFor": paid_for,
        "createdAt": created_at,
    }
    doc.update(extra)
    return doc


def settlement_doc(settlement_id, group_id, from_user, to_user, amount, created_at=1_700_000_000_000):
    return {
        "id": settlement_id,
        "groupId": group_id,
        "fromUserId": from_user,
        "toUserId": to_user,
        "amount": amount,
        "description": "",
        "createdAt": created_at,
    }
