"""Change Capture Engine - synchronous, table-agnostic row mutation capture.

install(Model) attaches SQLAlchemy mapper flush listeners to an ORM class.
The listeners run in-line inside the unit-of-work flush, on the very
connection executing the INSERT/UPDATE/DELETE, and append one ChangeRecord
per mutated row through ChangeLogStore.append(). The record therefore
commits and rolls back together with the mutation; a listener failure
(e.g. CaptureSerializationError) aborts the flush and the whole transaction.

Row images are read back from the table by primary key, so they reflect what
the database actually holds (server defaults included), not the Python
object's view of it:

- insert: new image read after the INSERT
- update: old image read by the persisted identity before the UPDATE,
  new image read after it; no record when nothing changed
- delete: old image read before the DELETE

Only mutations flowing through the ORM unit of work are visible to mapper
events, so every other write path to a captured table is rejected with
UncapturedMutationError:

- ORM bulk statements (session.execute(update(Model)...)), by a
  do_orm_execute listener on the engine's own Session class
- Core DML and raw SQL on any connection of the guarded engine, by a
  before_cursor_execute listener that admits writes to captured tables only
  while a capturing session is flushing
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Connection, Table, event, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine.interfaces import DBAPICursor, ExecutionContext
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import Mapper, ORMExecuteState, Session, object_session

from datastore_custodian.change_capture.records import ChangeOperation, ChangeRecord, RowDocument
from datastore_custodian.change_capture.serialization import snapshot_row
from datastore_custodian.change_capture.store import ChangeLogStore
from datastore_custodian.core.interfaces import Clock
from datastore_custodian.core.models import ChangeLogEntry
from datastore_custodian.errors import UncapturedMutationError
from datastore_custodian.observability import get_logger

logger = get_logger(__name__)

# Session.info key overriding the actor for every mutation in that session.
ACTOR_INFO_KEY = "actor"

_STAMP_INFO_KEY = "datastore_custodian.transaction_stamp"

_current_actor: ContextVar[str | None] = ContextVar("datastore_custodian_actor", default=None)

# Old row images read before UPDATE/DELETE, keyed by InstanceState. Set only
# while a capturing session flushes; discarded when the flush ends.
_flush_images: ContextVar[dict[Any, RowDocument] | None] = ContextVar(
    "datastore_custodian_flush_images", default=None
)

# Target table of INSERT / UPDATE / DELETE / REPLACE / MERGE statements.
_DML_TARGET = re.compile(
    r"\b(?:INSERT(?:\s+OR\s+\w+)?\s+INTO|REPLACE\s+INTO|MERGE\s+INTO|UPDATE(?:\s+OR\s+\w+)?|DELETE\s+FROM)"
    r"\s+(?:ONLY\s+)?((?:\"[^\"]+\"|[\w$]+)(?:\.(?:\"[^\"]+\"|[\w$]+))*)",
    re.IGNORECASE,
)


def _dml_targets(statement: str) -> set[str]:
    """Return the lower-cased unqualified table names a SQL statement writes to."""
    if statement.lstrip()[:6].upper() == "SELECT":
        return set()
    return {
        match.group(1).rsplit(".", 1)[-1].strip('"').lower()
        for match in _DML_TARGET.finditer(statement)
    }


class _FlushScopedSession(Session):
    """Session whose flushes are the only admitted writers of captured tables."""

    def flush(self, objects: Sequence[Any] | None = None) -> None:
        token = _flush_images.set({})
        try:
            super().flush(objects)
        finally:
            _flush_images.reset(token)


@contextmanager
def acting_as(actor: str) -> Iterator[None]:
    """Attribute mutations flushed inside the block to ``actor``.

    Args:
        actor: Identity recorded as the change record's actor.
    """
    token = _current_actor.set(actor)
    try:
        yield
    finally:
        _current_actor.reset(token)


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(UTC)


class CaptureHandle:
    """Handle returned by ChangeCaptureEngine.install()."""

    def __init__(self, engine: ChangeCaptureEngine, mapper: Mapper[Any]) -> None:
        self._engine = engine
        self.mapper = mapper

    @property
    def table_name(self) -> str:
        return self.mapper.local_table.name

    @property
    def installed(self) -> bool:
        return self._engine.is_installed(self.mapper.class_)

    def uninstall(self) -> None:
        """Detach the capture listeners. Idempotent."""
        self._engine._uninstall(self)


class ChangeCaptureEngine:
    """Installs capture hooks on ORM models and emits ChangeRecords.

    Args:
        store: The change log store records are appended to.
        clock: Source of transaction timestamps.
        default_actor: Actor used when neither the session nor acting_as()
            names one.
    """

    def __init__(
        self,
        store: ChangeLogStore,
        clock: Clock = utc_now,
        default_actor: str = "system",
    ) -> None:
        self._store = store
        self._clock = clock
        self._default_actor = default_actor
        self._handles: dict[Mapper[Any], CaptureHandle] = {}
        self._guarded: list[AsyncEngine] = []

        # Sessions created through this class (see create_session_factory) are
        # the only writers of captured tables, and are guarded against bulk
        # statements on captured models.
        self.session_class: type[Session] = type("CapturingSession", (_FlushScopedSession,), {})
        event.listen(self.session_class, "do_orm_execute", self._reject_bulk_mutation)

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    def install(self, model: type) -> CaptureHandle:
        """Register an ORM model for change capture.

        Installing a model that is already captured returns the existing
        handle; hooks are never attached twice.

        Args:
            model: A mapped ORM class with a primary key.

        Returns:
            A CaptureHandle whose uninstall() detaches the hooks.

        Raises:
            ValueError: If the class is not mapped to a single table, or is
                the change log itself.
        """
        try:
            mapper: Mapper[Any] = sa_inspect(model)
        except NoInspectionAvailable:
            raise ValueError(f"{model!r} is not a mapped ORM class") from None

        existing = self._handles.get(mapper)
        if existing is not None:
            return existing

        if not isinstance(mapper.local_table, Table):
            raise ValueError(f"{model.__name__} is not mapped to a single table")
        if mapper.local_table is ChangeLogEntry.__table__:
            raise ValueError("The change log cannot capture itself")

        for identifier, listener in self._listeners():
            event.listen(mapper, identifier, listener)

        handle = CaptureHandle(self, mapper)
        self._handles[mapper] = handle
        logger.info("Change capture installed", table_name=handle.table_name)
        return handle

    def is_installed(self, model: type) -> bool:
        try:
            return sa_inspect(model) in self._handles
        except NoInspectionAvailable:
            return False

    @property
    def installed_tables(self) -> list[str]:
        return sorted(handle.table_name for handle in self._handles.values())

    def guard(self, engine: AsyncEngine) -> None:
        """Reject writes to captured tables that bypass the unit of work.

        Every statement executed on the engine's connections is inspected;
        INSERT, UPDATE, DELETE, REPLACE or MERGE targeting a captured table
        raises UncapturedMutationError unless a capturing session is flushing.
        Idempotent.

        Args:
            engine: Engine of the observed store.
        """
        if any(known is engine for known in self._guarded):
            return
        event.listen(engine.sync_engine, "before_cursor_execute", self._reject_uncaptured_dml)
        self._guarded.append(engine)

    def uninstall_all(self) -> None:
        """Detach every installed hook and engine guard. Called on shutdown."""
        for handle in list(self._handles.values()):
            handle.uninstall()
        for engine in self._guarded:
            event.remove(engine.sync_engine, "before_cursor_execute", self._reject_uncaptured_dml)
        self._guarded.clear()

    def _uninstall(self, handle: CaptureHandle) -> None:
        if self._handles.get(handle.mapper) is not handle:
            return
        for identifier, listener in self._listeners():
            event.remove(handle.mapper, identifier, listener)
        del self._handles[handle.mapper]
        logger.info("Change capture uninstalled", table_name=handle.table_name)

    def _listeners(self) -> Sequence[tuple[str, Callable[..., None]]]:
        return (
            ("after_insert", self._after_insert),
            ("before_update", self._before_update),
            ("after_update", self._after_update),
            ("before_delete", self._before_delete),
            ("after_delete", self._after_delete),
        )

    # ------------------------------------------------------------------
    # Mapper flush listeners
    # ------------------------------------------------------------------

    def _after_insert(self, mapper: Mapper[Any], connection: Connection, target: Any) -> None:
        new_image = self._read_image(connection, mapper, mapper.primary_key_from_instance(target))
        self._emit(connection, mapper, target, ChangeOperation.INSERT, None, new_image)

    def _before_update(self, mapper: Mapper[Any], connection: Connection, target: Any) -> None:
        session = object_session(target)
        if session is not None and not session.is_modified(target, include_collections=False):
            return
        state = sa_inspect(target)
        self._pending_images(mapper)[state] = self._read_image(connection, mapper, state.identity)

    def _after_update(self, mapper: Mapper[Any], connection: Connection, target: Any) -> None:
        old_image = self._pending_images(mapper).pop(sa_inspect(target), None)
        if old_image is None:
            return
        new_image = self._read_image(connection, mapper, mapper.primary_key_from_instance(target))
        if new_image == old_image:
            return
        self._emit(connection, mapper, target, ChangeOperation.UPDATE, old_image, new_image)

    def _before_delete(self, mapper: Mapper[Any], connection: Connection, target: Any) -> None:
        state = sa_inspect(target)
        self._pending_images(mapper)[state] = self._read_image(connection, mapper, state.identity)

    def _after_delete(self, mapper: Mapper[Any], connection: Connection, target: Any) -> None:
        old_image = self._pending_images(mapper).pop(sa_inspect(target))
        self._emit(connection, mapper, target, ChangeOperation.DELETE, old_image, None)

    def _pending_images(self, mapper: Mapper[Any]) -> dict[Any, RowDocument]:
        images = _flush_images.get()
        if images is None:
            # Flushed by a session that is not a capturing session.
            raise UncapturedMutationError(mapper.local_table.name)
        return images

    # ------------------------------------------------------------------
    # Record construction
    # ------------------------------------------------------------------

    def _read_image(
        self,
        connection: Connection,
        mapper: Mapper[Any],
        key_values: Sequence[Any] | None,
    ) -> RowDocument:
        table = mapper.local_table
        if key_values is None:
            raise ValueError(f"Row of {table.name} has no persisted identity")
        criteria = [
            column == value for column, value in zip(mapper.primary_key, key_values, strict=True)
        ]
        row = connection.execute(select(table).where(*criteria)).mappings().one()
        return snapshot_row(table, {column.name: row[column] for column in table.columns})

    def _emit(
        self,
        connection: Connection,
        mapper: Mapper[Any],
        target: Any,
        operation: ChangeOperation,
        old_image: RowDocument | None,
        new_image: RowDocument | None,
    ) -> None:
        session = object_session(target)
        record = ChangeRecord(
            table_name=mapper.local_table.name,
            operation=operation,
            old_state=old_image,
            new_state=new_image,
            actor=self._resolve_actor(session),
            timestamp=self._transaction_stamp(session),
        )
        self._store.append(connection, record)

    def _resolve_actor(self, session: Session | None) -> str:
        if session is not None and session.info.get(ACTOR_INFO_KEY):
            return str(session.info[ACTOR_INFO_KEY])
        return _current_actor.get() or self._default_actor

    def _transaction_stamp(self, session: Session | None) -> datetime:
        # One timestamp per transaction, like the database's transaction clock.
        if session is None:
            return self._clock().astimezone(UTC)
        transaction = session.get_transaction()
        cached = session.info.get(_STAMP_INFO_KEY)
        if cached is not None and cached[0] is transaction:
            return cached[1]
        stamp = self._clock().astimezone(UTC)
        session.info[_STAMP_INFO_KEY] = (transaction, stamp)
        return stamp

    # ------------------------------------------------------------------
    # Session guard
    # ------------------------------------------------------------------

    def _reject_bulk_mutation(self, orm_execute_state: ORMExecuteState) -> None:
        if not (
            orm_execute_state.is_insert
            or orm_execute_state.is_update
            or orm_execute_state.is_delete
        ):
            return
        for mapper in orm_execute_state.all_mappers:
            if mapper in self._handles:
                raise UncapturedMutationError(mapper.local_table.name)

    def _reject_uncaptured_dml(
        self,
        conn: Connection,
        cursor: DBAPICursor,
        statement: str,
        parameters: Any,
        context: ExecutionContext | None,
        executemany: bool,
    ) -> None:
        if _flush_images.get() is not None or not self._handles:
            return
        captured = {handle.table_name.lower() for handle in self._handles.values()}
        targets = _dml_targets(statement) & captured
        if targets:
            raise UncapturedMutationError(min(targets))
