"""Bootstrap Sequencer - ordered, idempotent, fail-fast initialization.

Steps run one at a time in ascending order_index. A persistent step writes
a completion marker to custodian_bootstrap_steps after it succeeds; on the
next start an existing marker is taken as evidence of prior initialization
and the step is skipped. The first failing step aborts the sequence with
BootstrapStepError: no later step runs, no marker is written for the failed
step, and nothing is retried.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncEngine

from datastore_custodian.bootstrap.steps import BootstrapStep
from datastore_custodian.change_capture.engine import utc_now
from datastore_custodian.core.interfaces import Clock
from datastore_custodian.core.models import BootstrapMarker
from datastore_custodian.errors import BootstrapStepError
from datastore_custodian.observability import get_logger

logger = get_logger(__name__)

_MARKERS = BootstrapMarker.__table__


@dataclass
class BootstrapReport:
    """Keys of the steps a run executed and skipped, in order."""

    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class BootstrapSequencer:
    """Runs BootstrapStep instances in order against one store.

    Args:
        engine: Engine of the store holding the completion markers.
        steps: Steps to run, in any order.
        clock: Source of marker timestamps.

    Raises:
        ValueError: If two steps share an order_index or idempotency_key.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        steps: Sequence[BootstrapStep],
        clock: Clock = utc_now,
    ) -> None:
        indexes = [step.order_index for step in steps]
        keys = [step.idempotency_key for step in steps]
        if len(set(indexes)) != len(indexes):
            raise ValueError("Bootstrap steps must have unique order indexes")
        if len(set(keys)) != len(keys):
            raise ValueError("Bootstrap steps must have unique idempotency keys")

        self._engine = engine
        self._steps = sorted(steps, key=lambda step: step.order_index)
        self._clock = clock

    @property
    def steps(self) -> list[BootstrapStep]:
        return list(self._steps)

    async def completed_keys(self) -> set[str]:
        """Return the keys of persistent steps with a completion marker."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_MARKERS.create, checkfirst=True)
            result = await conn.execute(select(_MARKERS.c.idempotency_key))
            return set(result.scalars())

    async def run(self) -> BootstrapReport:
        """Run every step that is not already complete.

        Returns:
            A report of executed and skipped step keys.

        Raises:
            BootstrapStepError: On the first failing step. Fatal to startup.
        """
        completed = await self.completed_keys()
        report = BootstrapReport()

        logger.info("Bootstrap started", steps=len(self._steps), completed=len(completed))
        for step in self._steps:
            if step.persistent and step.idempotency_key in completed:
                logger.info("Bootstrap step already complete", step=step.idempotency_key)
                report.skipped.append(step.idempotency_key)
                continue

            logger.info(
                "Running bootstrap step",
                step=step.idempotency_key,
                order_index=step.order_index,
                description=step.description,
            )
            try:
                await step.action()
                if step.persistent:
                    await self._mark_complete(step)
            except Exception as exc:
                error = BootstrapStepError(step.idempotency_key, step.order_index, exc)
                logger.critical("Bootstrap aborted", step=step.idempotency_key, error=str(error))
                raise error from exc

            report.executed.append(step.idempotency_key)

        logger.info("Bootstrap complete", executed=report.executed, skipped=report.skipped)
        return report

    async def _mark_complete(self, step: BootstrapStep) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(_MARKERS).values(
                    idempotency_key=step.idempotency_key,
                    order_index=step.order_index,
                    completed_at=self._clock(),
                )
            )
