"""Job Scheduler - tick-driven dispatch of recurring maintenance actions.

A single cooperative loop wakes at every minute boundary of the injected
clock and evaluates one tick: each enabled job whose cron expression matches
that minute is dispatched as its own asyncio task. Jobs never wait on each
other; a failing action only marks its own job failed.

Delivery is at-most-once and best effort. A tick is evaluated at most once,
ticks missed while the loop was not running are not backfilled, and an
overrunning action is never cancelled by the next tick (set skip_if_running
to prevent overlapping runs of the same job).
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncEngine

from datastore_custodian.change_capture.engine import utc_now
from datastore_custodian.core.interfaces import Clock, JobAction
from datastore_custodian.errors import JobActionError, JobNotFoundError
from datastore_custodian.observability import get_logger
from datastore_custodian.scheduler.cron import CronSchedule, floor_to_minute

logger = get_logger(__name__)


class JobStatus(str, enum.Enum):
    """Outcome of a job's most recent run."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(eq=False)
class ScheduledJob:
    """A registered recurring job.

    Attributes:
        name: Unique job name.
        schedule: Parsed cron expression.
        action: Callable invoked on matching ticks.
        enabled: Whether the job fires at all.
        skip_if_running: Skip ticks while a previous run is in flight.
        command: SQL text for jobs created from a command, for display.
        last_run_at: Tick of the most recent completed run, set on completion
            whether the run succeeded or failed.
        last_status: Outcome of the most recent completed run.
        last_error: Error message of the most recent failed run.
        running: Number of runs currently in flight.
    """

    name: str
    schedule: CronSchedule
    action: JobAction
    enabled: bool = True
    skip_if_running: bool = False
    command: str | None = None
    last_run_at: datetime | None = None
    last_status: JobStatus = JobStatus.PENDING
    last_error: str | None = None
    running: int = field(default=0, repr=False)

    @property
    def schedule_expression(self) -> str:
        return self.schedule.expression


class SqlCommand:
    """Job action executing one SQL statement on an AUTOCOMMIT connection.

    Maintenance statements such as VACUUM or REINDEX CONCURRENTLY cannot run
    inside a transaction block. The statement is sent to the driver as is,
    without bind parameter parsing.

    Args:
        engine: Engine of the maintained store.
        statement: The SQL statement.
    """

    def __init__(self, engine: AsyncEngine, statement: str) -> None:
        self._engine = engine
        self.statement = statement.strip().rstrip(";")

    async def __call__(self) -> None:
        async with self._engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await conn.exec_driver_sql(self.statement)

    def __repr__(self) -> str:
        return f"SqlCommand({self.statement!r})"


def _is_async_callable(action: JobAction) -> bool:
    return inspect.iscoroutinefunction(action) or inspect.iscoroutinefunction(
        getattr(action, "__call__", None)
    )


class JobScheduler:
    """Registry of ScheduledJob plus the tick loop that fires them.

    Args:
        timezone: IANA timezone cron expressions are matched in.
        clock: Source of the current time. Tests inject a fixed clock.
    """

    # Pause before the loop reads a failing clock again.
    error_retry_seconds: float = 60.0

    def __init__(self, timezone: str = "UTC", clock: Clock = utc_now) -> None:
        self._timezone = timezone
        self._clock = clock
        self._jobs: dict[str, ScheduledJob] = {}
        self._in_flight: set[asyncio.Task[None]] = set()
        self._last_tick: datetime | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def schedule(
        self,
        name: str,
        expression: str,
        action: JobAction,
        *,
        enabled: bool = True,
        skip_if_running: bool = False,
        command: str | None = None,
    ) -> ScheduledJob:
        """Register a job, atomically replacing any job with the same name.

        Runs of a replaced definition that are already in flight finish
        normally but no longer update the registry.

        Args:
            name: Unique job name.
            expression: Five-field cron expression.
            action: Coroutine function or plain callable.
            enabled: Whether the job fires on matching ticks.
            skip_if_running: Skip ticks while a previous run is in flight.
            command: SQL text of the action, for display.

        Returns:
            The live ScheduledJob.

        Raises:
            InvalidScheduleError: If the expression does not parse.
            ValueError: If the name is empty.
        """
        if not name.strip():
            raise ValueError("Job name must not be empty")

        job = ScheduledJob(
            name=name,
            schedule=CronSchedule(expression, self._timezone),
            action=action,
            enabled=enabled,
            skip_if_running=skip_if_running,
            command=command,
        )
        replaced = name in self._jobs
        self._jobs[name] = job

        logger.info("Job scheduled", job=name, schedule=job.schedule_expression, replaced=replaced)
        return job

    def unschedule(self, name: str) -> None:
        """Remove a job.

        Raises:
            JobNotFoundError: If no job has this name.
        """
        try:
            del self._jobs[name]
        except KeyError:
            raise JobNotFoundError(name) from None
        logger.info("Job unscheduled", job=name)

    def get(self, name: str) -> ScheduledJob:
        """Return a job by name.

        Raises:
            JobNotFoundError: If no job has this name.
        """
        try:
            return self._jobs[name]
        except KeyError:
            raise JobNotFoundError(name) from None

    def list_jobs(self) -> list[ScheduledJob]:
        """Return all registered jobs sorted by name."""
        return sorted(self._jobs.values(), key=lambda job: job.name)

    def set_enabled(self, name: str, enabled: bool) -> ScheduledJob:
        """Enable or disable a job without replacing it."""
        job = self.get(name)
        job.enabled = enabled
        logger.info("Job enabled flag changed", job=name, enabled=enabled)
        return job

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def tick(self, at: datetime | None = None) -> list[asyncio.Task[None]]:
        """Evaluate one tick and dispatch every matching job.

        Args:
            at: Time of the tick; defaults to the clock. Truncated to the
                minute. A tick not later than the previous one is ignored.

        Returns:
            The tasks dispatched for this tick.
        """
        moment = floor_to_minute(at if at is not None else self._clock())
        if self._last_tick is not None and moment <= self._last_tick:
            logger.debug("Tick already evaluated, skipping", tick=moment.isoformat())
            return []
        self._last_tick = moment

        dispatched: list[asyncio.Task[None]] = []
        for job in list(self._jobs.values()):
            if not job.enabled or not job.schedule.matches(moment):
                continue
            if job.skip_if_running and job.running:
                logger.info("Job still running, tick skipped", job=job.name, tick=moment.isoformat())
                continue

            job.running += 1
            task = asyncio.create_task(self._run(job, moment), name=f"job:{job.name}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            dispatched.append(task)

        if dispatched:
            logger.info(
                "Tick dispatched jobs",
                tick=moment.isoformat(),
                jobs=[task.get_name() for task in dispatched],
            )
        return dispatched

    async def _run(self, job: ScheduledJob, moment: datetime) -> None:
        started = time.monotonic()
        try:
            if _is_async_callable(job.action):
                await job.action()
            else:
                result = await asyncio.to_thread(job.action)
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:
            error = JobActionError(job.name, exc)
            job.last_status = JobStatus.FAILED
            job.last_error = str(error)
            logger.warning(
                "Scheduled job failed",
                job=job.name,
                tick=moment.isoformat(),
                error=str(error),
            )
        else:
            job.last_status = JobStatus.SUCCESS
            job.last_error = None
            logger.info(
                "Scheduled job succeeded",
                job=job.name,
                tick=moment.isoformat(),
                duration_ms=round((time.monotonic() - started) * 1000, 1),
            )
        finally:
            job.running -= 1
            if job.last_run_at is None or moment > job.last_run_at:
                job.last_run_at = moment

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start the tick loop on the running event loop. Idempotent."""
        if self.is_running:
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._tick_loop(), name="scheduler-tick-loop")

    async def _tick_loop(self) -> None:
        logger.info("Scheduler started", jobs=len(self._jobs), timezone=self._timezone)
        while not self._stopping.is_set():
            next_tick: datetime | None
            try:
                now = self._clock()
                next_tick = floor_to_minute(now) + timedelta(minutes=1)
                delay = max((next_tick - now).total_seconds(), 0.0)
            except Exception:
                logger.exception(
                    "Scheduler clock failed, retrying", retry_seconds=self.error_retry_seconds
                )
                next_tick = None
                delay = self.error_retry_seconds

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                if next_tick is None:
                    continue
                try:
                    await self.tick(next_tick)
                except Exception:
                    logger.exception("Scheduler tick failed", tick=next_tick.isoformat())
        logger.info("Scheduler stopped")

    async def drain(self) -> None:
        """Wait until every in-flight job run has completed."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def stop(self, wait_for_jobs: bool = True) -> None:
        """Stop the tick loop.

        Args:
            wait_for_jobs: Also wait for in-flight runs to complete. Runs are
                never cancelled.
        """
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if wait_for_jobs:
            await self.drain()
