"""Test fixtures for datastore-custodian.

Provides:
- fixed_clock: A mutable clock that tests advance explicitly
- settings: Settings pointing at a fresh SQLite database under tmp_path
- context: A CustodianContext bootstrapped with the workload tables captured
- mock_backend: A StorageBackend mock with configurable capability count
- pg_connection: An AsyncConnection mock speaking the PostgreSQL dialect
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.dialects import postgresql

from datastore_custodian.context import CustodianContext, create_context
from datastore_custodian.settings import Settings
from tests.workload import Account, Attachment, LedgerEntry

WORKLOAD_MODELS: list[type] = [Account, LedgerEntry, Attachment]


class FixedClock:
    """Clock returning a settable instant.

    Attributes:
        now: The instant returned by every call.
    """

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward by a timedelta given as keyword arguments."""
        self.now = self.now + timedelta(**kwargs)
        return self.now


def sqlite_url(path: Path) -> str:
    """Return an aiosqlite URL for a database file."""
    return f"sqlite+aiosqlite:///{path}"


def make_settings(tmp_path: Path, **overrides: object) -> Settings:
    """Build Settings for a SQLite store under tmp_path.

    Capabilities, schemas and maintenance jobs default to empty because
    SQLite has no extensions, no schemas and no VACUUM ANALYZE.

    Args:
        tmp_path: Per-test temporary directory.
        overrides: Settings fields to override.

    Returns:
        A Settings instance.
    """
    values: dict[str, object] = {
        "database_url": sqlite_url(tmp_path / "custodian.db"),
        "required_capabilities": [],
        "managed_schemas": [],
        "jobs": [],
        "runtime_dirs": [tmp_path / "wal_archive"],
        "scheduler_enabled": False,
        "log_json": False,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def fixed_clock() -> FixedClock:
    """Return a clock fixed at 2024-01-15 01:59:30 UTC (a Monday).

    Returns:
        A FixedClock tests can advance.
    """
    return FixedClock(datetime(2024, 1, 15, 1, 59, 30, tzinfo=UTC))


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Return Settings for a fresh SQLite store.

    Args:
        tmp_path: Per-test temporary directory.

    Returns:
        Settings with no capabilities, schemas or jobs.
    """
    return make_settings(tmp_path)


@pytest_asyncio.fixture()
async def context(settings: Settings, fixed_clock: FixedClock) -> AsyncGenerator[CustodianContext, None]:
    """Create and bootstrap a context capturing the workload tables.

    Args:
        settings: Injected Settings fixture.
        fixed_clock: Injected clock shared by every component.

    Yields:
        A bootstrapped CustodianContext. Closed after the test.
    """
    ctx = create_context(settings, clock=fixed_clock)
    await ctx.bootstrap(WORKLOAD_MODELS)
    yield ctx
    await ctx.close()


@pytest.fixture()
def mock_backend() -> MagicMock:
    """Create a StorageBackend mock reporting five installed capabilities.

    Returns:
        MagicMock with async count_capabilities, ensure_capability and create_schema.
    """
    backend = MagicMock()
    backend.name = "mock"
    backend.supports_schemas = True
    backend.count_capabilities = AsyncMock(return_value=5)
    backend.ensure_capability = AsyncMock(return_value=None)
    backend.create_schema = AsyncMock(return_value=None)
    return backend


@pytest.fixture()
def pg_connection() -> MagicMock:
    """Create an AsyncConnection mock with the PostgreSQL dialect.

    execute() records each statement; its result answers scalar_one() with 3.

    Returns:
        MagicMock with a real postgresql dialect and an async execute.
    """
    conn = MagicMock()
    conn.dialect = postgresql.dialect()
    result = MagicMock()
    result.scalar_one.return_value = 3
    conn.execute = AsyncMock(return_value=result)
    return conn
