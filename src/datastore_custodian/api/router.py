"""API router for datastore-custodian.

Routes are thin: every operation delegates to a component of the
CustodianContext stored on app.state.context.

Endpoints:
- GET     /health/live              - Liveness (process is serving)
- GET     /health/ready             - Readiness probe (200 healthy, 503 otherwise)
- GET     /api/v1/jobs              - List registered jobs
- PUT     /api/v1/jobs/{name}       - Register or replace a SQL job
- PATCH   /api/v1/jobs/{name}       - Enable or disable a job
- DELETE  /api/v1/jobs/{name}       - Unschedule a job
- GET     /api/v1/change-log        - Query change records of one table
"""

from contextlib import aclosing
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status

from datastore_custodian.api.schemas import (
    ChangeRecordResponse,
    JobRegisterRequest,
    JobUpdateRequest,
    LivenessResponse,
    ReadinessResponse,
    ScheduledJobResponse,
)
from datastore_custodian.change_capture.records import ChangeRecord
from datastore_custodian.context import CustodianContext
from datastore_custodian.observability import get_logger
from datastore_custodian.scheduler import ScheduledJob, SqlCommand

logger = get_logger(__name__)

health_router = APIRouter(prefix="/health", tags=["health"])
router = APIRouter(tags=["custodian"])


def get_context(request: Request) -> CustodianContext:
    """Return the CustodianContext created by the application lifespan."""
    return request.app.state.context


ContextDep = Annotated[CustodianContext, Depends(get_context)]


def _job_response(job: ScheduledJob) -> ScheduledJobResponse:
    return ScheduledJobResponse(
        name=job.name,
        schedule=job.schedule_expression,
        command=job.command,
        enabled=job.enabled,
        skip_if_running=job.skip_if_running,
        last_run_at=job.last_run_at,
        last_status=job.last_status.value,
        last_error=job.last_error,
        running=job.running,
    )


def _record_response(record: ChangeRecord) -> ChangeRecordResponse:
    return ChangeRecordResponse(
        id=record.sequence_id,
        table_name=record.table_name,
        operation=record.operation.value,
        old_data=record.old_state,
        new_data=record.new_state,
        changed_by=record.actor,
        changed_at=record.timestamp,
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@health_router.get("/live", response_model=LivenessResponse)
async def liveness(context: ContextDep) -> LivenessResponse:
    """Report that the process is serving requests."""
    return LivenessResponse(service=context.settings.service_name)


@health_router.get(
    "/ready",
    response_model=ReadinessResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessResponse}},
)
async def readiness(context: ContextDep, response: Response) -> ReadinessResponse:
    """Run the readiness probe against the store.

    Args:
        context: Injected service context.
        response: Used to set 503 when a check fails.

    Returns:
        ReadinessResponse with the probe outcome.
    """
    health = await context.health.probe()
    if not health.healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(
        healthy=health.healthy,
        reachable=health.reachable,
        query_ok=health.query_ok,
        capability_count=health.capability_count,
        reason=health.reason.value if health.reason else None,
        detail=health.detail,
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@router.get("/jobs", response_model=list[ScheduledJobResponse])
async def list_jobs(context: ContextDep) -> list[ScheduledJobResponse]:
    """List all registered jobs, sorted by name."""
    return [_job_response(job) for job in context.scheduler.list_jobs()]


@router.put("/jobs/{name}", response_model=ScheduledJobResponse)
async def register_job(
    name: str,
    request: JobRegisterRequest,
    context: ContextDep,
) -> ScheduledJobResponse:
    """Register a SQL job, replacing any job with the same name.

    Args:
        name: Unique job name.
        request: Schedule, SQL command and flags.
        context: Injected service context.

    Returns:
        The registered job.

    Raises:
        InvalidScheduleError: Mapped to 422 when the schedule does not parse.
    """
    job = context.scheduler.schedule(
        name,
        request.schedule,
        SqlCommand(context.engine, request.command),
        enabled=request.enabled,
        skip_if_running=request.skip_if_running,
        command=request.command,
    )
    return _job_response(job)


@router.patch("/jobs/{name}", response_model=ScheduledJobResponse)
async def update_job(
    name: str,
    request: JobUpdateRequest,
    context: ContextDep,
) -> ScheduledJobResponse:
    """Enable or disable a job. Unknown names map to 404."""
    return _job_response(context.scheduler.set_enabled(name, request.enabled))


@router.delete("/jobs/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def unschedule_job(name: str, context: ContextDep) -> None:
    """Remove a job. Unknown names map to 404."""
    context.scheduler.unschedule(name)


# ---------------------------------------------------------------------------
# Change log
# ---------------------------------------------------------------------------


@router.get("/change-log", response_model=list[ChangeRecordResponse])
async def query_change_log(
    context: ContextDep,
    table_name: str = Query(description="Table whose changes to return"),
    start_time: datetime | None = Query(default=None, description="Start of time range (UTC)"),
    end_time: datetime | None = Query(default=None, description="End of time range (UTC)"),
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum records returned"),
) -> list[ChangeRecordResponse]:
    """Return the oldest ``limit`` change records of a table within a time range.

    The change log is append-only; no endpoint modifies it.

    Args:
        context: Injected service context.
        table_name: Table filter.
        start_time: Inclusive lower bound.
        end_time: Inclusive upper bound.
        limit: Maximum number of records.

    Returns:
        Records ascending by timestamp.
    """
    records: list[ChangeRecordResponse] = []
    stream = context.change_log.query(table_name, start_time, end_time, batch_size=limit)
    async with aclosing(stream):
        async for record in stream:
            records.append(_record_response(record))
            if len(records) >= limit:
                break
    logger.debug("Change log queried", table_name=table_name, returned=len(records))
    return records
