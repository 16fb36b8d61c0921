# activity.py

import logging
from typing import Iterator, List, Optional

import schemas
from directory import YOU, MemberDirectory
from splits import ZERO, to_decimal
from store import RecordStore

logger = logging.getLogger(__name__)


def _entry_for(
    expense: schemas.ExpenseRecord,
    group: schemas.GroupRecord,
    current_user: str,
    directory: MemberDirectory,
) -> Optional[schemas.ActivityEntry]:
    if expense.paid_by == current_user:
        kind = schemas.ActivityType.YOUR_PAYMENT
        # What the others owe back
        amount = to_decimal(expense.amount) - to_decimal(expense.paid_for.get(current_user, 0.0))
    elif current_user in expense.paid_for:
        kind = schemas.ActivityType.EXPENSE
        amount = to_decimal(expense.paid_for[current_user])
    else:
        return None

    if amount <= ZERO:
        return None

    participants = []
    for member_id in expense.paid_for:
        if member_id == current_user:
            participants.append(YOU)
            continue
        profile = directory.get_profile(member_id)
        if profile is not None:
            participants.append(profile.name)

    return schemas.ActivityEntry(
        expense_id=expense.id,
        group_id=group.id,
        group_name=group.name,
        title=expense.description,
        amount=float(amount),
        date=expense.created_at,
        participants=participants,
        type=kind,
        payer_name=directory.display_name(expense.paid_by, current_user),
    )


class ActivityFeed:
    """Iterable feed, newest first. Each iteration rebuilds it from the store."""

    def __init__(self, store: RecordStore, directory: MemberDirectory, current_user: str):
        self.store = store
        self.directory = directory
        self.current_user = current_user

    def __iter__(self) -> Iterator[schemas.ActivityEntry]:
        return iter(self.build())

    def build(self) -> List[schemas.ActivityEntry]:
        entries = []
        for group in self.store.list_groups(member=self.current_user):
            for expense in self.store.expenses_for_group(group.id):
                entry = _entry_for(expense, group, self.current_user, self.directory)
                if entry is not None:
                    entries.append(entry)
        entries.sort(key=lambda e: (e.date, e.expense_id), reverse=True)
        logger.debug("Built %d activity entries for %s", len(entries), self.current_user)
        return entries


def build_activity_feed(store: RecordStore, directory: MemberDirectory, current_user: str) -> List[schemas.ActivityEntry]:
    return ActivityFeed(store, directory, current_user).build()
