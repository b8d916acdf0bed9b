"""Abstract interfaces (Protocol classes) for datastore-custodian.

Components depend on these contracts, never on concrete dialect adapters,
so they can be tested with fakes.

Protocols and aliases defined:
- Clock
- JobAction
- StorageBackend
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncConnection

# Returns the current time as a timezone-aware datetime.
Clock = Callable[[], datetime]

# A scheduled action: a coroutine function, or a plain callable run in a worker thread.
JobAction = Callable[[], Awaitable[Any] | Any]


class StorageBackend(Protocol):
    """Dialect-specific DDL and introspection used by bootstrap and health."""

    name: str
    supports_schemas: bool

    async def ensure_capability(self, conn: AsyncConnection, name: str) -> None:
        """Make a storage capability available, or raise if it cannot be.

        Args:
            conn: Connection inside the bootstrap transaction.
            name: Capability name (extension, compile option, ...).
        """
        ...

    async def count_capabilities(self, conn: AsyncConnection) -> int:
        """Return the number of installed capabilities.

        Must be read-only.

        Args:
            conn: An open connection.

        Returns:
            Installed capability count.
        """
        ...

    async def create_schema(self, conn: AsyncConnection, name: str) -> None:
        """Create a schema if it does not exist.

        Args:
            conn: Connection inside the bootstrap transaction.
            name: Schema name.
        """
        ...
