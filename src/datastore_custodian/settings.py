"""Service settings for datastore-custodian.

Settings use the CUSTODIAN_ environment prefix and cover:
- Primary database connection and pool sizing
- Change capture (captured models, default actor)
- Bootstrap (runtime directories, storage capabilities, managed schemas)
- Job scheduler (job definitions, timezone)
- Readiness probe (timeout, minimum capability count)
- Logging

List and nested values are read from the environment as JSON, e.g.
``CUSTODIAN_MANAGED_SCHEMAS='["audit", "staging"]'``.
"""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class JobDefinition(BaseModel):
    """A maintenance job registered at bootstrap as a SQL command."""

    name: str = Field(description="Unique job name")
    schedule: str = Field(description="Five-field cron expression")
    command: str = Field(description="Single SQL statement executed on an AUTOCOMMIT connection")
    enabled: bool = Field(default=True, description="Whether the job fires on matching ticks")
    skip_if_running: bool = Field(
        default=False,
        description="Skip a tick while a previous run of the same job is still in flight",
    )


DEFAULT_JOBS: list[JobDefinition] = [
    JobDefinition(name="vacuum-analyze", schedule="0 2 * * *", command="VACUUM ANALYZE"),
    JobDefinition(
        name="reindex-concurrent",
        schedule="0 3 * * 0",
        command="REINDEX DATABASE CONCURRENTLY postgres",
    ),
    JobDefinition(name="update-statistics", schedule="0 */6 * * *", command="ANALYZE"),
]


class Settings(BaseSettings):
    """Settings for datastore-custodian.

    Environment variable prefix: CUSTODIAN_
    """

    service_name: str = "datastore-custodian"

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------

    database_url: str = Field(
        default="postgresql+asyncpg://postgres@localhost:5432/postgres",
        description="SQLAlchemy async URL of the observed store. "
        "sqlite+aiosqlite URLs are supported for local runs and tests.",
    )
    db_pool_size: int = Field(
        default=5,
        description="Connection pool size. Ignored for SQLite.",
    )
    db_max_overflow: int = Field(
        default=2,
        description="Max overflow connections above db_pool_size. Ignored for SQLite.",
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Seconds to wait for a pooled connection before raising.",
    )

    # -------------------------------------------------------------------------
    # Change capture
    # -------------------------------------------------------------------------

    captured_models: list[str] = Field(
        default_factory=list,
        description="ORM classes to capture, as 'package.module:ClassName' paths.",
    )
    default_actor: str | None = Field(
        default=None,
        description="Actor recorded when no session or context actor is set. "
        "Falls back to the database user of database_url.",
    )

    # -------------------------------------------------------------------------
    # Bootstrap
    # -------------------------------------------------------------------------

    runtime_dirs: list[Path] = Field(
        default_factory=list,
        description="Directories that must exist before the store accepts work "
        "(e.g. a WAL archive directory).",
    )
    runtime_dir_owner: str | None = Field(
        default=None,
        description="User (and group of the same name) that must own runtime_dirs.",
    )
    required_capabilities: list[str] = Field(
        default_factory=lambda: ["pg_stat_statements", "pgcrypto", "uuid-ossp", "pg_trgm"],
        description="Storage capabilities ensured at bootstrap. PostgreSQL extension "
        "names, or SQLite compile options.",
    )
    managed_schemas: list[str] = Field(
        default_factory=lambda: ["reconciliation", "audit", "staging", "archive"],
        description="Schemas created at bootstrap. Ignored by dialects without schemas.",
    )

    # -------------------------------------------------------------------------
    # Job scheduler
    # -------------------------------------------------------------------------

    scheduler_enabled: bool = Field(
        default=True,
        description="Start the tick loop with the service.",
    )
    scheduler_timezone: str = Field(
        default="UTC",
        description="IANA timezone in which cron expressions are matched.",
    )
    jobs: list[JobDefinition] = Field(
        default_factory=lambda: [job.model_copy() for job in DEFAULT_JOBS],
        description="Maintenance jobs registered at bootstrap.",
    )

    # -------------------------------------------------------------------------
    # Readiness probe
    # -------------------------------------------------------------------------

    health_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for a single readiness probe.",
    )
    health_min_capabilities: int = Field(
        default=1,
        description="Minimum installed capability count for the store to be ready.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_json: bool = Field(default=True, description="Emit JSON log lines.")

    model_config = SettingsConfigDict(env_prefix="CUSTODIAN_")
