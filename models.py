# models.py

from sqlalchemy import BigInteger, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship, Mapped, mapped_column
from typing import Dict, List
from database import Base

# SQLite only autoincrements INTEGER primary keys
RecordId = BigInteger().with_variant(Integer, "sqlite")


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(RecordId, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    # Member identities are opaque strings owned by the identity provider
    members: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Children are removed by the database (ON DELETE CASCADE)
    expenses: Mapped[List["Expense"]] = relationship(
        back_populates="group", cascade="all, delete-orphan", passive_deletes=True
    )
    settlements: Mapped[List["Settlement"]] = relationship(
        back_populates="group", cascade="all, delete-orphan", passive_deletes=True
    )


class Expense(Base):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(RecordId, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id", ondelete="CASCADE"), index=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    paid_by: Mapped[str] = mapped_column(String(128), nullable=False)
    # member id -> owed share
    paid_for: Mapped[Dict[str, float]] = mapped_column(JSON, default=dict)
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)

    group: Mapped["Group"] = relationship(back_populates="expenses")


class Settlement(Base):
    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(RecordId, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id", ondelete="CASCADE"), index=True)
    from_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    to_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[int] = mapped_column(BigInteger, index=True)

    group: Mapped["Group"] = relationship(back_populates="settlements")
