"""Change Log Store - append-only persistence of ChangeRecord.

The store has exactly one write operation, append(), which executes on the
connection of the transaction that performed the captured mutation. There is
no separate commit: the record becomes durable when that transaction commits
and disappears with it on rollback. No update or delete operation exists;
retention and pruning are the business of an external policy.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime

from sqlalchemy import Connection, and_, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datastore_custodian.change_capture.records import ChangeOperation, ChangeRecord
from datastore_custodian.core.models import ChangeLogEntry
from datastore_custodian.observability import get_logger

logger = get_logger(__name__)

_CHANGE_LOG = ChangeLogEntry.__table__

DEFAULT_BATCH_SIZE = 500


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_record(entry: ChangeLogEntry) -> ChangeRecord:
    return ChangeRecord(
        sequence_id=entry.id,
        table_name=entry.table_name,
        operation=ChangeOperation(entry.operation),
        old_state=entry.old_data,
        new_state=entry.new_data,
        actor=entry.changed_by,
        timestamp=entry.changed_at,
    )


class ChangeLogStore:
    """Append-only store for ChangeRecord, indexed by (table_name, changed_at).

    Args:
        session_factory: Factory for read sessions used by query() and count().
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def append(self, connection: Connection, record: ChangeRecord) -> ChangeRecord:
        """Append a record on the caller's transaction connection.

        This is the ONLY write operation of the store. It is synchronous
        because it runs inside the ORM flush of the mutating transaction.

        Args:
            connection: The connection of the transaction that performed the
                mutation.
            record: The record to append. Must not carry a sequence_id yet.

        Returns:
            The record with its assigned sequence_id.

        Raises:
            ValueError: If the record was already appended.
        """
        if record.sequence_id is not None:
            raise ValueError(f"ChangeRecord {record.sequence_id} is already appended")

        result = connection.execute(
            insert(_CHANGE_LOG).values(
                table_name=record.table_name,
                operation=record.operation.value,
                old_data=record.old_state,
                new_data=record.new_state,
                changed_by=record.actor,
                changed_at=record.timestamp,
            )
        )
        sequence_id = result.inserted_primary_key[0]

        logger.debug(
            "Change record appended",
            sequence_id=sequence_id,
            table_name=record.table_name,
            operation=record.operation.value,
        )
        return record.model_copy(update={"sequence_id": sequence_id})

    async def query(
        self,
        table_name: str,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> AsyncIterator[ChangeRecord]:
        """Iterate the records of a table within [start, end], oldest first.

        Records are fetched lazily in keyset-paginated batches ordered by
        (changed_at, sequence_id). Iteration is bounded by the highest
        sequence_id committed when it starts, so it always terminates even
        while writers keep appending.

        Args:
            table_name: Table whose records to return.
            start: Inclusive lower bound, or None for unbounded.
            end: Inclusive upper bound, or None for unbounded.
            batch_size: Rows fetched per round trip.

        Yields:
            ChangeRecord instances ascending by timestamp.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")

        async with self._session_factory() as session:
            ceiling = (await session.execute(select(func.max(ChangeLogEntry.id)))).scalar()
            if ceiling is None:
                return

            base = select(ChangeLogEntry).where(
                ChangeLogEntry.table_name == table_name,
                ChangeLogEntry.id <= ceiling,
            )
            if start is not None:
                base = base.where(ChangeLogEntry.changed_at >= _as_utc(start))
            if end is not None:
                base = base.where(ChangeLogEntry.changed_at <= _as_utc(end))

            cursor: tuple[datetime, int] | None = None
            while True:
                stmt = base
                if cursor is not None:
                    last_at, last_id = cursor
                    stmt = stmt.where(
                        or_(
                            ChangeLogEntry.changed_at > last_at,
                            and_(ChangeLogEntry.changed_at == last_at, ChangeLogEntry.id > last_id),
                        )
                    )
                stmt = stmt.order_by(ChangeLogEntry.changed_at.asc(), ChangeLogEntry.id.asc())
                entries = list((await session.scalars(stmt.limit(batch_size))).all())

                for entry in entries:
                    yield _to_record(entry)

                if len(entries) < batch_size:
                    return
                cursor = (entries[-1].changed_at, entries[-1].id)
                session.expunge_all()

    async def count(self, table_name: str | None = None) -> int:
        """Return the number of stored records, optionally for one table.

        Args:
            table_name: Restrict the count to this table.

        Returns:
            Number of records.
        """
        stmt = select(func.count()).select_from(ChangeLogEntry)
        if table_name is not None:
            stmt = stmt.where(ChangeLogEntry.table_name == table_name)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())
