"""Service context: the explicit lifecycle object holding every component.

One CustodianContext owns one engine and everything built on it. The API,
the CLI and tests all create a context, run the bootstrap against it, and
close it on shutdown. Nothing is module-global.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from datastore_custodian.adapters.backends import backend_for
from datastore_custodian.bootstrap import BootstrapReport, BootstrapSequencer, build_default_steps
from datastore_custodian.change_capture import ChangeCaptureEngine, ChangeLogStore
from datastore_custodian.change_capture.engine import utc_now
from datastore_custodian.core.interfaces import Clock, StorageBackend
from datastore_custodian.database import create_engine_from_settings, create_session_factory
from datastore_custodian.health import HealthMonitor
from datastore_custodian.observability import get_logger
from datastore_custodian.scheduler import JobScheduler
from datastore_custodian.settings import Settings

logger = get_logger(__name__)


@dataclass
class CustodianContext:
    """All components of a running custodian.

    Attributes:
        settings: Service settings.
        engine: Engine of the observed store.
        session_factory: The only sessions admitted to write captured tables.
        backend: Dialect adapter.
        change_log: Change log store.
        capture: Change capture engine.
        scheduler: Job scheduler.
        health: Readiness probe.
        clock: Clock shared by every component.
    """

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    backend: StorageBackend
    change_log: ChangeLogStore
    capture: ChangeCaptureEngine
    scheduler: JobScheduler
    health: HealthMonitor
    clock: Clock = utc_now

    async def bootstrap(self, models: list[type] | None = None) -> BootstrapReport:
        """Run the default bootstrap sequence.

        Args:
            models: ORM classes to capture; defaults to settings.captured_models.

        Returns:
            Report of executed and skipped steps.

        Raises:
            BootstrapStepError: If a step fails.
        """
        sequencer = BootstrapSequencer(
            self.engine,
            build_default_steps(self, models),
            clock=self.clock,
        )
        return await sequencer.run()

    async def close(self) -> None:
        """Stop the scheduler, detach capture hooks and dispose the engine."""
        await self.scheduler.stop()
        self.capture.uninstall_all()
        await self.engine.dispose()
        logger.info("Custodian context closed", service=self.settings.service_name)


def create_context(settings: Settings, clock: Clock | None = None) -> CustodianContext:
    """Build a CustodianContext from settings.

    Args:
        settings: Service settings.
        clock: Clock for capture timestamps, scheduler ticks and bootstrap
            markers. Defaults to the UTC wall clock.

    Returns:
        A context whose components are constructed but not yet bootstrapped.
    """
    clock = clock or utc_now
    engine = create_engine_from_settings(settings)
    backend = backend_for(engine)
    default_actor = settings.default_actor or engine.url.username or "system"

    read_factory = create_session_factory(engine)
    change_log = ChangeLogStore(read_factory)
    capture = ChangeCaptureEngine(change_log, clock=clock, default_actor=default_actor)
    capture.guard(engine)

    return CustodianContext(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine, capture.session_class),
        backend=backend,
        change_log=change_log,
        capture=capture,
        scheduler=JobScheduler(timezone=settings.scheduler_timezone, clock=clock),
        health=HealthMonitor(
            engine,
            backend,
            min_capabilities=settings.health_min_capabilities,
            timeout_seconds=settings.health_timeout_seconds,
        ),
        clock=clock,
    )
