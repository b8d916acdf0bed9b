"""Tests for the Health Monitor.

A real SQLite store covers the healthy path; engine and backend mocks
cover each failure reason, including timeouts.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from datastore_custodian.adapters.backends import SQLiteBackend
from datastore_custodian.context import create_context
from datastore_custodian.errors import HealthFailure
from datastore_custodian.health import HealthMonitor
from tests.conftest import make_settings


def make_engine(conn: MagicMock | None = None, connect_error: BaseException | None = None) -> MagicMock:
    """Create an AsyncEngine mock whose connect() yields ``conn`` or raises."""
    engine = MagicMock()

    @asynccontextmanager
    async def connect():
        if connect_error is not None:
            raise connect_error
        yield conn

    engine.connect = connect
    return engine


def make_connection(select_result: int = 1, execute_error: BaseException | None = None) -> MagicMock:
    """Create an AsyncConnection mock answering SELECT 1."""
    conn = MagicMock()
    result = MagicMock()
    result.scalar_one.return_value = select_result
    conn.execute = AsyncMock(return_value=result, side_effect=execute_error)
    return conn


class TestHealthyStore:
    """Probe against a real SQLite database."""

    @pytest.mark.asyncio()
    async def test_reachable_store_with_capabilities_is_healthy(self, tmp_path: Path) -> None:
        context = create_context(make_settings(tmp_path))
        try:
            status = await context.health.probe()
        finally:
            await context.close()

        assert status.healthy
        assert status.reachable and status.query_ok
        assert status.capability_count >= 1
        assert status.reason is None

    @pytest.mark.asyncio()
    async def test_concurrent_probes_are_independent(self, context) -> None:
        statuses = await asyncio.gather(*(context.health.probe() for _ in range(5)))
        assert all(status.healthy for status in statuses)

    @pytest.mark.asyncio()
    async def test_probe_does_not_write(self, context) -> None:
        before = await context.change_log.count()
        await context.health.probe()
        assert await context.change_log.count() == before


class TestUnhealthyStore:
    """Each failed check maps to its reason."""

    @pytest.mark.asyncio()
    async def test_unreachable(self, mock_backend) -> None:
        error = OperationalError("connect", {}, ConnectionRefusedError("refused"))
        monitor = HealthMonitor(make_engine(connect_error=error), mock_backend)

        status = await monitor.probe()

        assert not status.healthy
        assert status.reason is HealthFailure.UNREACHABLE
        assert not status.reachable
        assert not status.query_ok

    @pytest.mark.asyncio()
    async def test_unreachable_os_error(self, mock_backend) -> None:
        monitor = HealthMonitor(make_engine(connect_error=ConnectionRefusedError("refused")), mock_backend)

        status = await monitor.probe()

        assert status.reason is HealthFailure.UNREACHABLE

    @pytest.mark.asyncio()
    async def test_query_failed(self, mock_backend) -> None:
        conn = make_connection(execute_error=OperationalError("SELECT 1", {}, Exception("boom")))
        monitor = HealthMonitor(make_engine(conn), mock_backend)

        status = await monitor.probe()

        assert status.reason is HealthFailure.QUERY_FAILED
        assert status.reachable
        assert not status.query_ok
        mock_backend.count_capabilities.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_unexpected_select_result(self, mock_backend) -> None:
        monitor = HealthMonitor(make_engine(make_connection(select_result=0)), mock_backend)

        status = await monitor.probe()

        assert status.reason is HealthFailure.QUERY_FAILED

    @pytest.mark.asyncio()
    async def test_too_few_capabilities(self, mock_backend) -> None:
        mock_backend.count_capabilities.return_value = 0
        monitor = HealthMonitor(make_engine(make_connection()), mock_backend, min_capabilities=1)

        status = await monitor.probe()

        assert status.reason is HealthFailure.CAPABILITIES_TOO_LOW
        assert status.reachable and status.query_ok
        assert status.capability_count == 0

    @pytest.mark.asyncio()
    async def test_minimum_is_inclusive(self, mock_backend) -> None:
        mock_backend.count_capabilities.return_value = 3
        monitor = HealthMonitor(make_engine(make_connection()), mock_backend, min_capabilities=3)

        assert (await monitor.probe()).healthy

    @pytest.mark.asyncio()
    async def test_timeout_reports_interrupted_stage(self, mock_backend) -> None:
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        conn = make_connection()
        conn.execute = AsyncMock(side_effect=hang)
        monitor = HealthMonitor(make_engine(conn), mock_backend, timeout_seconds=0.05)

        status = await monitor.probe()

        assert status.reason is HealthFailure.QUERY_FAILED
        assert "timed out" in status.detail

    @pytest.mark.asyncio()
    async def test_timeout_while_connecting_is_unreachable(self, mock_backend) -> None:
        engine = MagicMock()

        @asynccontextmanager
        async def connect():
            await asyncio.sleep(10)
            yield MagicMock()

        engine.connect = connect
        monitor = HealthMonitor(engine, mock_backend, timeout_seconds=0.05)

        status = await monitor.probe()

        assert status.reason is HealthFailure.UNREACHABLE
        assert not status.reachable


class TestSQLiteBackend:
    """Capability introspection on SQLite."""

    @pytest.mark.asyncio()
    async def test_counts_compile_options(self, context) -> None:
        async with context.engine.connect() as conn:
            assert await SQLiteBackend().count_capabilities(conn) > 0
