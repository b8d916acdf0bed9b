"""Dialect adapters implementing StorageBackend.

- PostgresBackend - extensions from pg_extension, CREATE SCHEMA IF NOT EXISTS
- SQLiteBackend   - compile options as capabilities, no schemas

backend_for() picks the adapter from an engine's dialect name.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.schema import CreateSchema

from datastore_custodian.core.interfaces import StorageBackend
from datastore_custodian.observability import get_logger

logger = get_logger(__name__)


class CapabilityUnavailableError(RuntimeError):
    """Raised when a required capability cannot be made available."""


class PostgresBackend:
    """StorageBackend for PostgreSQL.

    Capabilities are extensions. The extension's shared library must already
    be installed in the server image; this adapter only runs CREATE EXTENSION.
    """

    name = "postgresql"
    supports_schemas = True

    async def ensure_capability(self, conn: AsyncConnection, name: str) -> None:
        quoted = conn.dialect.identifier_preparer.quote(name)
        await conn.execute(text(f"CREATE EXTENSION IF NOT EXISTS {quoted}"))
        logger.info("Extension ensured", extension=name)

    async def count_capabilities(self, conn: AsyncConnection) -> int:
        result = await conn.execute(text("SELECT count(*) FROM pg_extension"))
        return int(result.scalar_one())

    async def create_schema(self, conn: AsyncConnection, name: str) -> None:
        await conn.execute(CreateSchema(name, if_not_exists=True))
        logger.info("Schema ensured", schema=name)


class SQLiteBackend:
    """StorageBackend for SQLite.

    SQLite cannot load capabilities at runtime from SQL, so a capability is a
    compile option that must already be present. Schemas are not supported;
    custodian tables are translated onto the main database.
    """

    name = "sqlite"
    supports_schemas = False

    async def ensure_capability(self, conn: AsyncConnection, name: str) -> None:
        result = await conn.execute(
            text("SELECT sqlite_compileoption_used(:name)"), {"name": name}
        )
        if not result.scalar_one():
            raise CapabilityUnavailableError(f"SQLite was not compiled with {name}")
        logger.info("Compile option present", option=name)

    async def count_capabilities(self, conn: AsyncConnection) -> int:
        result = await conn.execute(text("SELECT count(*) FROM pragma_compile_options"))
        return int(result.scalar_one())

    async def create_schema(self, conn: AsyncConnection, name: str) -> None:
        logger.debug("Schemas unsupported by dialect, skipping", schema=name, dialect=self.name)


_BACKENDS: dict[str, type] = {
    "postgresql": PostgresBackend,
    "sqlite": SQLiteBackend,
}


def backend_for(engine: AsyncEngine) -> StorageBackend:
    """Return the StorageBackend matching an engine's dialect.

    Args:
        engine: The engine of the observed store.

    Returns:
        A StorageBackend instance.

    Raises:
        ValueError: If the dialect has no adapter.
    """
    dialect = engine.dialect.name
    try:
        backend_cls = _BACKENDS[dialect]
    except KeyError:
        raise ValueError(f"Unsupported dialect '{dialect}'") from None
    return backend_cls()
