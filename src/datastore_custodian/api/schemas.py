"""Pydantic request and response schemas for the custodian API.

Resources:
- Health - liveness and readiness probe results
- ScheduledJob - job registry listing and registration
- ChangeRecord - change log query results
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Health schemas
# ---------------------------------------------------------------------------


class LivenessResponse(BaseModel):
    """Response schema for the liveness probe."""

    status: str = Field(default="alive", description="Always 'alive' while the process serves")
    service: str = Field(description="Service name")


class ReadinessResponse(BaseModel):
    """Response schema for the readiness probe."""

    healthy: bool = Field(description="True when every readiness check passed")
    reachable: bool = Field(description="A connection to the store could be opened")
    query_ok: bool = Field(description="A trivial query succeeded")
    capability_count: int | None = Field(description="Installed storage capabilities")
    reason: str | None = Field(
        description="Failed check: unreachable | query_failed | capabilities_too_low",
    )
    detail: str | None = Field(description="Failure detail")


# ---------------------------------------------------------------------------
# ScheduledJob schemas
# ---------------------------------------------------------------------------


class JobRegisterRequest(BaseModel):
    """Request body for registering (or replacing) a SQL maintenance job."""

    schedule: str = Field(description="Five-field cron expression or @-macro", min_length=1)
    command: str = Field(
        description="Single SQL statement, executed on an AUTOCOMMIT connection",
        min_length=1,
    )
    enabled: bool = Field(default=True, description="Whether the job fires on matching ticks")
    skip_if_running: bool = Field(
        default=False,
        description="Skip a tick while a previous run is still in flight",
    )


class JobUpdateRequest(BaseModel):
    """Request body for enabling or disabling a job."""

    enabled: bool = Field(description="New enabled flag")


class ScheduledJobResponse(BaseModel):
    """Response schema for a registered job."""

    name: str = Field(description="Unique job name")
    schedule: str = Field(description="Cron expression")
    command: str | None = Field(description="SQL text for SQL jobs, null for code actions")
    enabled: bool = Field(description="Whether the job fires")
    skip_if_running: bool = Field(description="Overlap policy")
    last_run_at: datetime | None = Field(description="Tick of the most recent completed run (UTC)")
    last_status: str = Field(description="pending | success | failed")
    last_error: str | None = Field(description="Error of the most recent failed run")
    running: int = Field(description="Runs currently in flight")


# ---------------------------------------------------------------------------
# ChangeRecord schemas
# ---------------------------------------------------------------------------


class ChangeRecordResponse(BaseModel):
    """Response schema for a captured change, in its persisted shape."""

    id: int = Field(description="Monotonic sequence id")
    table_name: str = Field(description="Mutated table")
    operation: str = Field(description="insert | update | delete")
    old_data: dict[str, Any] | None = Field(description="Row image before the mutation")
    new_data: dict[str, Any] | None = Field(description="Row image after the mutation")
    changed_by: str = Field(description="Executing principal")
    changed_at: datetime = Field(description="Transaction timestamp (UTC)")
