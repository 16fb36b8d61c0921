# schemas.py

from decimal import Decimal
from enum import Enum
from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Union

from splits import SplitMode


# Record Schemas
# These mirror the documents kept in the remote ledger, camelCase on the wire.
class Record(BaseModel):
    class Config:
        populate_by_name = True
        from_attributes = True


class GroupRecord(Record):
    id: int = 0
    name: str = ""
    description: str = ""
    created_at: int = Field(0, alias="createdAt")
    created_by: str = Field("", alias="createdBy")
    members: List[str] = []


class ExpenseRecord(Record):
    id: int = 0
    group_id: int = Field(0, alias="groupId")
    description: str = ""
    amount: float = 0.0
    paid_by: str = Field("", alias="paidBy")
    paid_for: Dict[str, float] = Field(default_factory=dict, alias="paidFor")
    created_at: int = Field(0, alias="createdAt")


class SettlementRecord(Record):
    id: int = 0
    group_id: int = Field(0, alias="groupId")
    from_user_id: str = Field("", alias="fromUserId")
    to_user_id: str = Field("", alias="toUserId")
    amount: float = 0.0
    description: str = ""
    created_at: int = Field(0, alias="createdAt")


class UserProfile(Record):
    id: str = ""
    name: str = ""
    email: str = ""


# Friend Schemas
class FriendAdd(BaseModel):
    email: str


# Group Schemas
class GroupCreate(BaseModel):
    name: str
    description: str = ""
    created_by: str
    members: List[str] = []


class GroupUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class MemberAdd(BaseModel):
    member_id: str


# Expense Schemas
class ExpenseCreate(BaseModel):
    description: str
    amount: Decimal
    paid_by: str
    split_mode: SplitMode = SplitMode.EQUAL
    # Empty means every group member takes part
    participants: List[str] = []
    # Raw text per member, only read for CUSTOM splits
    custom_shares: Dict[str, Union[str, float]] = {}


class ExpenseUpdate(ExpenseCreate):
    pass


class ExpenseDetail(ExpenseRecord):
    """An expense along with the split mode an edit form should start from."""
    split_mode: SplitMode = Field(SplitMode.EQUAL, alias="splitMode")


# Settlement Schemas
class SettlementCreate(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: Decimal
    description: str = ""


# Balance Schemas
class BalanceResponse(BaseModel):
    """The pairwise matrix: balances[a][b] is what a owes b."""
    group_id: int
    ok: bool
    balances: Dict[str, Dict[str, float]] = {}
    error: Optional[str] = None


class SyncReportResponse(BaseModel):
    group_id: int
    applied: int
    skipped: int
    orphaned: int
    migrated: int
    failed: bool


# Activity Schemas
class ActivityType(str, Enum):
    EXPENSE = "EXPENSE"
    YOUR_PAYMENT = "YOUR_PAYMENT"


class ActivityEntry(BaseModel):
    """One line of a member's feed across all of their groups."""
    expense_id: int
    group_id: int
    group_name: str
    title: str
    amount: float
    date: int
    participants: List[str] = []
    type: ActivityType
    payer_name: str
