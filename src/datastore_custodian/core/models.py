"""SQLAlchemy ORM models for tables the custodian owns.

Models:
- ChangeLogEntry   - IMMUTABLE change log row (audit.change_log)
- BootstrapMarker  - completion evidence for persistent bootstrap steps

IMPORTANT: ChangeLogEntry is written ONLY by ChangeLogStore.append(), on the
connection of the transaction that performed the captured mutation. Never
update or delete its rows from application code; retention is external.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from datastore_custodian.database import AUDIT_SCHEMA, Base

# JSONB on PostgreSQL, JSON elsewhere. SQL NULL (not JSON null) for absent images.
_Document = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_SequenceId = BigInteger().with_variant(Integer(), "sqlite")


class ChangeLogEntry(Base):
    """One captured row mutation.

    Attributes:
        id: Monotonic sequence id assigned by the store.
        table_name: Name of the mutated table.
        operation: insert | update | delete.
        old_data: Row image before the mutation (update, delete).
        new_data: Row image after the mutation (insert, update).
        changed_by: Identity of the executing principal.
        changed_at: Transaction timestamp (UTC).
    """

    __tablename__ = "change_log"
    __table_args__ = (
        Index("idx_change_log_table_time", "table_name", "changed_at"),
        {"schema": AUDIT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(_SequenceId, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Name of the mutated table",
    )
    operation: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="insert | update | delete",
    )
    old_data: Mapped[dict[str, Any] | None] = mapped_column(
        _Document,
        nullable=True,
        comment="Row image before the mutation. NULL for inserts.",
    )
    new_data: Mapped[dict[str, Any] | None] = mapped_column(
        _Document,
        nullable=True,
        comment="Row image after the mutation. NULL for deletes.",
    )
    changed_by: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Identity of the executing principal",
    )
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Transaction timestamp, UTC",
    )


class BootstrapMarker(Base):
    """Evidence that a persistent bootstrap step completed against this store.

    Lives in the default schema because it must exist before the managed
    schemas are created.
    """

    __tablename__ = "custodian_bootstrap_steps"

    idempotency_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
