"""Change record schema.

Every captured row mutation becomes one immutable ChangeRecord. The record
carries the row image before and after the mutation as JSON documents, so a
table's history can be re-derived without the table itself.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ChangeOperation(str, enum.Enum):
    """Kind of row mutation captured by a ChangeRecord."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


RowDocument = dict[str, Any]


class ChangeRecord(BaseModel):
    """Immutable record of exactly one row mutation.

    Image invariants per operation:
    - insert: old_state is None, new_state is present
    - update: both present
    - delete: old_state is present, new_state is None

    Attributes:
        sequence_id: Monotonic id assigned by the store on append. None only
            for a record that has not been appended yet.
        table_name: Name of the mutated table.
        operation: The mutation kind.
        old_state: Row image before the mutation.
        new_state: Row image after the mutation.
        actor: Identity of the principal that executed the mutation.
        timestamp: Transaction timestamp (always UTC-aware).
    """

    model_config = ConfigDict(frozen=True)

    sequence_id: int | None = Field(default=None, description="Monotonic id assigned on append")
    table_name: str = Field(..., min_length=1, description="Name of the mutated table")
    operation: ChangeOperation = Field(..., description="insert | update | delete")
    old_state: RowDocument | None = Field(default=None, description="Row image before the mutation")
    new_state: RowDocument | None = Field(default=None, description="Row image after the mutation")
    actor: str = Field(..., min_length=1, description="Identity of the executing principal")
    timestamp: datetime = Field(..., description="Transaction timestamp (UTC)")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        # Naive values come back from dialects without zone support; they are stored as UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @model_validator(mode="after")
    def _check_images(self) -> ChangeRecord:
        match self.operation:
            case ChangeOperation.INSERT:
                valid = self.old_state is None and self.new_state is not None
            case ChangeOperation.UPDATE:
                valid = self.old_state is not None and self.new_state is not None
            case ChangeOperation.DELETE:
                valid = self.old_state is not None and self.new_state is None
        if not valid:
            raise ValueError(
                f"{self.operation.value} record has old_state="
                f"{'set' if self.old_state is not None else 'None'}, new_state="
                f"{'set' if self.new_state is not None else 'None'}"
            )
        return self
