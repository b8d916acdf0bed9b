"""Workload tables used by the test suite.

They live on their own declarative base, like an application's tables would,
and are captured by installing them on a ChangeCaptureEngine.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import DateTime, Integer, Numeric, PickleType, String, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class WorkloadBase(DeclarativeBase):
    """Declarative base for test workload tables."""


class Account(WorkloadBase):
    """A minimal account row: integer key, integer balance."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False)
    owner: Mapped[str | None] = mapped_column(String(100), nullable=True)


class LedgerEntry(WorkloadBase):
    """A row with exact numeric, temporal and UUID values."""

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    booked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    memo: Mapped[str | None] = mapped_column(String(200), nullable=True)


class Opaque:
    """A value with no JSON representation."""

    def __init__(self, token: str) -> None:
        self.token = token

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Opaque) and other.token == self.token


class Attachment(WorkloadBase):
    """A row whose payload column stores arbitrary pickled objects."""

    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payload: Mapped[Any] = mapped_column(PickleType, nullable=True)
