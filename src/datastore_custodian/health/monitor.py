"""Health Monitor - read-only readiness probe of the observed store.

probe() runs three checks in order under one overall timeout:

1. a connection can be opened            (otherwise ``unreachable``)
2. ``SELECT 1`` returns 1                (otherwise ``query_failed``)
3. installed capabilities >= minimum     (otherwise ``capabilities_too_low``)

A timeout is reported as the failure of the check it interrupted. The probe
never writes and never raises for a failed check; the outcome is carried by
the returned HealthStatus. Concurrent probes are independent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from datastore_custodian.core.interfaces import StorageBackend
from datastore_custodian.errors import HealthFailure, HealthProbeError
from datastore_custodian.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Result of one readiness probe. Never persisted.

    Attributes:
        reachable: A connection could be opened.
        query_ok: A trivial query succeeded.
        capability_count: Installed capabilities, or None if not reached.
        reason: The failed check, or None when healthy.
        detail: Human-readable failure detail.
    """

    reachable: bool
    query_ok: bool
    capability_count: int | None = None
    reason: HealthFailure | None = None
    detail: str | None = None

    @property
    def healthy(self) -> bool:
        return self.reason is None


class HealthMonitor:
    """Readiness probe for one store.

    Args:
        engine: Engine of the observed store.
        backend: Dialect adapter used to count capabilities.
        min_capabilities: Minimum installed capability count.
        timeout_seconds: Upper bound for a whole probe.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        backend: StorageBackend,
        min_capabilities: int = 1,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._engine = engine
        self._backend = backend
        self._min_capabilities = min_capabilities
        self._timeout_seconds = timeout_seconds

    async def probe(self) -> HealthStatus:
        """Run the readiness checks.

        Returns:
            HealthStatus describing the first failed check, or a healthy one.
        """
        stage = HealthFailure.UNREACHABLE
        reachable = False
        query_ok = False
        capability_count: int | None = None

        try:
            async with asyncio.timeout(self._timeout_seconds):
                async with self._engine.connect() as conn:
                    reachable = True
                    stage = HealthFailure.QUERY_FAILED
                    if (await conn.execute(text("SELECT 1"))).scalar_one() != 1:
                        raise HealthProbeError(stage, "SELECT 1 returned an unexpected value")
                    capability_count = await self._backend.count_capabilities(conn)
                    query_ok = True

                    stage = HealthFailure.CAPABILITIES_TOO_LOW
                    if capability_count < self._min_capabilities:
                        raise HealthProbeError(
                            stage,
                            f"{capability_count} capabilities installed, "
                            f"{self._min_capabilities} required",
                        )
        except HealthProbeError as exc:
            return self._failed(exc.reason, exc.detail, reachable, query_ok, capability_count)
        except TimeoutError:
            detail = f"Probe timed out after {self._timeout_seconds}s"
            return self._failed(stage, detail, reachable, query_ok, capability_count)
        except (SQLAlchemyError, OSError) as exc:
            return self._failed(stage, str(exc), reachable, query_ok, capability_count)

        return HealthStatus(reachable=True, query_ok=True, capability_count=capability_count)

    def _failed(
        self,
        reason: HealthFailure,
        detail: str,
        reachable: bool,
        query_ok: bool,
        capability_count: int | None,
    ) -> HealthStatus:
        logger.warning("Readiness probe failed", reason=reason.value, detail=detail)
        return HealthStatus(
            reachable=reachable,
            query_ok=query_ok,
            capability_count=capability_count,
            reason=reason,
            detail=detail,
        )
