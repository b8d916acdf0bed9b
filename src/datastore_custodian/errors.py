"""Error taxonomy for datastore-custodian.

Every failure the custodian raises derives from CustodianError. The
propagation policy differs per family:

- Capture errors are synchronous and in-band: they abort the writer's flush
  so the mutation and its change record roll back together.
- Job errors are isolated to a single job's last_status.
- Bootstrap errors are fatal to startup and are never retried automatically.
- Health errors are reported in the probe result only.
"""

from __future__ import annotations

import enum


class CustodianError(Exception):
    """Base error for all datastore-custodian failures."""


class NotFoundError(CustodianError):
    """Raised when a named resource does not exist.

    Attributes:
        resource: Resource type name, e.g. ``ScheduledJob``.
        resource_id: Identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: str) -> None:
        """Initialize NotFoundError.

        Args:
            resource: Resource type name.
            resource_id: Identifier that was looked up.
        """
        super().__init__(f"{resource} '{resource_id}' not found")
        self.resource = resource
        self.resource_id = resource_id


# ---------------------------------------------------------------------------
# Change capture
# ---------------------------------------------------------------------------


class CaptureError(CustodianError):
    """Base error for change capture failures."""


class CaptureSerializationError(CaptureError):
    """Raised when a row image cannot be snapshotted into a change record.

    Attributes:
        table_name: Table whose row could not be serialized.
        column: Offending column name, when known.
    """

    def __init__(self, table_name: str, column: str | None, reason: str) -> None:
        """Initialize CaptureSerializationError.

        Args:
            table_name: Table whose row could not be serialized.
            column: Offending column name, or None if not attributable.
            reason: Underlying serializer message.
        """
        where = f"{table_name}.{column}" if column else table_name
        super().__init__(f"Cannot capture row of {where}: {reason}")
        self.table_name = table_name
        self.column = column


class UncapturedMutationError(CaptureError):
    """Raised when a write to a captured table bypasses the unit of work.

    Bulk ORM statements, Core DML and raw SQL against a captured table skip
    per-row capture, so they are rejected instead of silently leaving gaps in
    the change log.
    """

    def __init__(self, table_name: str) -> None:
        """Initialize UncapturedMutationError.

        Args:
            table_name: Captured table targeted by the statement.
        """
        super().__init__(
            f"Writes outside the ORM unit of work are not captured; mutate '{table_name}' through "
            "the unit of work instead"
        )
        self.table_name = table_name


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class InvalidScheduleError(CustodianError):
    """Raised when a schedule expression cannot be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"Invalid schedule expression '{expression}': {reason}")
        self.expression = expression


class JobNotFoundError(NotFoundError):
    """Raised when a job name is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(resource="ScheduledJob", resource_id=name)


class JobActionError(CustodianError):
    """Wraps an exception raised by a scheduled job's action.

    Never propagates out of the scheduler; it is logged and recorded on the
    job's last_error.
    """

    def __init__(self, job_name: str, cause: BaseException) -> None:
        super().__init__(f"Job '{job_name}' failed: {type(cause).__name__}: {cause}")
        self.job_name = job_name
        self.cause = cause


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


class BootstrapStepError(CustodianError):
    """Raised when a bootstrap step fails. Fatal to startup.

    Attributes:
        idempotency_key: Key of the failed step.
        order_index: Position of the failed step.
    """

    def __init__(self, idempotency_key: str, order_index: int, cause: BaseException) -> None:
        super().__init__(
            f"Bootstrap step {order_index} '{idempotency_key}' failed: "
            f"{type(cause).__name__}: {cause}"
        )
        self.idempotency_key = idempotency_key
        self.order_index = order_index
        self.cause = cause


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthFailure(str, enum.Enum):
    """Which readiness check failed."""

    UNREACHABLE = "unreachable"
    QUERY_FAILED = "query_failed"
    CAPABILITIES_TOO_LOW = "capabilities_too_low"


class HealthProbeError(CustodianError):
    """A readiness check failed. Reported by the probe, never raised out of it."""

    def __init__(self, reason: HealthFailure, detail: str) -> None:
        super().__init__(f"{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail
