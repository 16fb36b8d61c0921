from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

import models
import schemas
from store import MissingParentError, RecordStore


def _sessions(*sessions):
    """A session factory handing out the given sessions in order."""
    contexts = []
    for db in sessions:
        context = MagicMock()
        context.__enter__.return_value = db
        context.__exit__.return_value = False
        contexts.append(context)
    return MagicMock(side_effect=contexts)


def _duplicate_id():
    return IntegrityError("INSERT INTO expenses", {}, Exception("UNIQUE constraint failed: expenses.id"))


def _expense():
    return schemas.ExpenseRecord(
        id=11,
        group_id=1,
        description="taxi",
        amount=12.0,
        paid_by="alice",
        paid_for={"alice": 6.0, "bob": 6.0},
        created_at=1_700_000_000_000,
    )


def test_duplicate_insert_race_is_retried_as_a_merge():
    first, lookup, second = MagicMock(), MagicMock(), MagicMock()
    first.commit.side_effect = _duplicate_id()
    lookup.get.return_value = models.Group(id=1, name="Trip")
    store = RecordStore(_sessions(first, lookup, second))
    changes = []
    store.subscribe(1, changes.append)

    store.upsert_expense(_expense())

    first.rollback.assert_called_once()
    lookup.get.assert_called_once_with(models.Group, 1)
    merged = second.merge.call_args.args[0]
    assert isinstance(merged, models.Expense)
    assert merged.id == 11
    second.commit.assert_called_once()
    assert changes == [1]


def test_duplicate_insert_failing_twice_is_raised():
    first, lookup, second, lookup_again = MagicMock(), MagicMock(), MagicMock(), MagicMock()
    first.commit.side_effect = _duplicate_id()
    second.commit.side_effect = _duplicate_id()
    store = RecordStore(_sessions(first, lookup, second, lookup_again))
    changes = []
    store.subscribe(1, changes.append)

    with pytest.raises(IntegrityError):
        store.upsert_expense(_expense())

    second.rollback.assert_called_once()
    assert changes == []


def test_integrity_error_without_the_group_is_a_missing_parent():
    first, lookup = MagicMock(), MagicMock()
    first.commit.side_effect = _duplicate_id()
    lookup.get.return_value = None
    factory = _sessions(first, lookup)
    store = RecordStore(factory)

    with pytest.raises(MissingParentError) as raised:
        store.upsert_expense(_expense())

    assert raised.value.group_id == 1
    assert raised.value.record_id == 11
    assert factory.call_count == 2


def test_upsert_replaces_an_existing_row(store, group):
    expense = _expense().model_copy(update={"group_id": group.id})
    store.upsert_expense(expense)

    store.upsert_expense(expense.model_copy(update={"amount": 20.0, "paid_for": {"bob": 20.0}}))

    (stored,) = store.expenses_for_group(group.id)
    assert stored.amount == 20.0
    assert stored.paid_for == {"bob": 20.0}
