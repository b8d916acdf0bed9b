"""Tests for API endpoints (router layer).

Requests go through httpx's ASGITransport against an app whose state holds
a bootstrapped SQLite context. The lifespan is exercised separately.

Tests verify:
- HTTP status codes, including error mapping (404, 422, 503)
- Response schema shapes
- Job registry operations through the API
- Change log queries
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from datastore_custodian.errors import BootstrapStepError, HealthFailure
from datastore_custodian.health import HealthStatus
from datastore_custodian.main import create_app
from datastore_custodian.settings import JobDefinition
from tests.conftest import make_settings
from tests.workload import Account


@pytest.fixture()
def app(context) -> FastAPI:
    """Create the application bound to the test context (lifespan not run)."""
    application = create_app(context.settings)
    application.state.context = context
    return application


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an httpx AsyncClient over ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


class TestHealthEndpoints:
    """GET /health/live and /health/ready."""

    @pytest.mark.asyncio()
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json() == {"status": "alive", "service": "datastore-custodian"}

    @pytest.mark.asyncio()
    async def test_readiness_healthy(self, client: AsyncClient) -> None:
        response = await client.get("/health/ready")
        body = response.json()
        assert response.status_code == 200
        assert body["healthy"] is True
        assert body["reason"] is None
        assert body["capability_count"] >= 1

    @pytest.mark.asyncio()
    async def test_readiness_unhealthy_returns_503(self, client: AsyncClient, context, monkeypatch) -> None:
        async def failing_probe() -> HealthStatus:
            return HealthStatus(
                reachable=False,
                query_ok=False,
                reason=HealthFailure.UNREACHABLE,
                detail="connection refused",
            )

        monkeypatch.setattr(context.health, "probe", failing_probe)

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "unreachable"


class TestJobEndpoints:
    """Job registry through /api/v1/jobs."""

    @pytest.mark.asyncio()
    async def test_register_list_disable_delete(self, client: AsyncClient) -> None:
        response = await client.put(
            "/api/v1/jobs/vacuum-analyze",
            json={"schedule": "0 2 * * *", "command": "VACUUM"},
        )
        assert response.status_code == 200
        assert response.json()["last_status"] == "pending"

        listed = (await client.get("/api/v1/jobs")).json()
        assert [job["name"] for job in listed] == ["vacuum-analyze"]
        assert listed[0]["schedule"] == "0 2 * * *"
        assert listed[0]["command"] == "VACUUM"
        assert listed[0]["enabled"] is True

        patched = await client.patch("/api/v1/jobs/vacuum-analyze", json={"enabled": False})
        assert patched.status_code == 200
        assert patched.json()["enabled"] is False

        deleted = await client.delete("/api/v1/jobs/vacuum-analyze")
        assert deleted.status_code == 204
        assert (await client.get("/api/v1/jobs")).json() == []

    @pytest.mark.asyncio()
    async def test_put_replaces_existing_job(self, client: AsyncClient) -> None:
        await client.put("/api/v1/jobs/stats", json={"schedule": "0 */6 * * *", "command": "ANALYZE"})
        await client.put("/api/v1/jobs/stats", json={"schedule": "@hourly", "command": "ANALYZE"})

        listed = (await client.get("/api/v1/jobs")).json()
        assert len(listed) == 1
        assert listed[0]["schedule"] == "@hourly"

    @pytest.mark.asyncio()
    async def test_invalid_schedule_returns_422(self, client: AsyncClient) -> None:
        response = await client.put(
            "/api/v1/jobs/broken",
            json={"schedule": "every tuesday", "command": "ANALYZE"},
        )
        assert response.status_code == 422
        assert "every tuesday" in response.json()["detail"]

    @pytest.mark.asyncio()
    async def test_unknown_job_returns_404(self, client: AsyncClient) -> None:
        assert (await client.patch("/api/v1/jobs/missing", json={"enabled": True})).status_code == 404
        assert (await client.delete("/api/v1/jobs/missing")).status_code == 404


class TestChangeLogEndpoint:
    """GET /api/v1/change-log."""

    @pytest.mark.asyncio()
    async def test_returns_records_in_persisted_shape(self, client: AsyncClient, context) -> None:
        async with context.session_factory() as session:
            account = Account(id=1, balance=100)
            session.add(account)
            await session.commit()
            account.balance = 150
            await session.commit()

        response = await client.get("/api/v1/change-log", params={"table_name": "accounts"})

        assert response.status_code == 200
        inserted, updated = response.json()
        assert inserted["operation"] == "insert"
        assert inserted["old_data"] is None
        assert inserted["new_data"] == {"id": 1, "balance": 100, "owner": None}
        assert updated["operation"] == "update"
        assert updated["changed_by"] == "system"
        assert inserted["id"] < updated["id"]

    @pytest.mark.asyncio()
    async def test_limit_caps_the_result(self, client: AsyncClient, context) -> None:
        async with context.session_factory() as session:
            session.add_all([Account(id=i, balance=0) for i in range(1, 6)])
            await session.commit()

        response = await client.get("/api/v1/change-log", params={"table_name": "accounts", "limit": 2})

        assert [record["new_data"]["id"] for record in response.json()] == [1, 2]

    @pytest.mark.asyncio()
    async def test_table_name_is_required(self, client: AsyncClient) -> None:
        assert (await client.get("/api/v1/change-log")).status_code == 422


class TestLifespan:
    """Startup runs the bootstrap; shutdown closes the context."""

    @pytest.mark.asyncio()
    async def test_lifespan_bootstraps_and_starts_scheduler(self, tmp_path: Path) -> None:
        settings = make_settings(
            tmp_path,
            scheduler_enabled=True,
            jobs=[JobDefinition(name="vacuum", schedule="0 2 * * *", command="VACUUM")],
        )
        app = create_app(settings)

        async with app.router.lifespan_context(app):
            context = app.state.context
            assert context.scheduler.is_running
            assert [job.name for job in context.scheduler.list_jobs()] == ["vacuum"]

        assert not context.scheduler.is_running

    @pytest.mark.asyncio()
    async def test_failed_bootstrap_aborts_startup(self, tmp_path: Path) -> None:
        settings = make_settings(tmp_path, required_capabilities=["NO_SUCH_COMPILE_OPTION"])
        app = create_app(settings)

        with pytest.raises(BootstrapStepError) as exc_info:
            async with app.router.lifespan_context(app):
                pass

        assert exc_info.value.idempotency_key == "01-storage-capabilities"
