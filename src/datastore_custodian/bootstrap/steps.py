"""Bootstrap steps and the default step list.

Step keys carry a sortable numeric prefix. Steps 00-03 change the store and
are persistent: once their completion marker exists they are skipped. Steps
04-05 populate this process (capture hooks, the job registry) and run on
every start; both are idempotent.
"""

from __future__ import annotations

import asyncio
import importlib
import shutil
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import MetaData

from datastore_custodian.database import Base
from datastore_custodian.observability import get_logger
from datastore_custodian.scheduler.scheduler import SqlCommand

if TYPE_CHECKING:
    from datastore_custodian.context import CustodianContext

logger = get_logger(__name__)

StepAction = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class BootstrapStep:
    """One ordered, idempotent initialization step.

    Attributes:
        order_index: Position in the sequence; unique, ascending.
        idempotency_key: Unique key, also the marker's primary key.
        action: Coroutine function performing the step.
        persistent: Record a completion marker and skip the step once it exists.
        description: Human-readable summary for logs.
    """

    order_index: int
    idempotency_key: str
    action: StepAction
    persistent: bool = True
    description: str = ""


def resolve_model(path: str) -> type:
    """Import an ORM class from a ``package.module:ClassName`` path.

    Args:
        path: Import path of the class.

    Returns:
        The class object.

    Raises:
        ValueError: If the path is malformed or names no attribute.
        ImportError: If the module cannot be imported.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Model path '{path}' must look like 'package.module:ClassName'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attribute)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attribute}'") from None


def build_default_steps(
    context: CustodianContext,
    models: Sequence[type] | None = None,
) -> list[BootstrapStep]:
    """Return the standard bootstrap sequence for a context.

    Args:
        context: The service context whose store, capture engine and
            scheduler are initialized.
        models: ORM classes to capture. Defaults to resolving
            settings.captured_models when the steps run.

    Returns:
        Steps 00 through 05.
    """
    settings = context.settings
    resolved: list[type] | None = list(models) if models is not None else None

    def captured_models() -> list[type]:
        nonlocal resolved
        if resolved is None:
            resolved = [resolve_model(path) for path in settings.captured_models]
        return resolved

    async def create_runtime_directories() -> None:
        def _create() -> None:
            for directory in settings.runtime_dirs:
                directory.mkdir(parents=True, exist_ok=True)
                if settings.runtime_dir_owner:
                    owner = settings.runtime_dir_owner
                    shutil.chown(directory, user=owner, group=owner)
                logger.info("Runtime directory ready", path=str(directory))

        await asyncio.to_thread(_create)

    async def ensure_capabilities() -> None:
        async with context.engine.begin() as conn:
            for name in settings.required_capabilities:
                await context.backend.ensure_capability(conn, name)

    async def create_schemas() -> None:
        if not context.backend.supports_schemas:
            logger.info("Dialect has no schemas, skipping", dialect=context.backend.name)
            return
        async with context.engine.begin() as conn:
            for name in settings.managed_schemas:
                await context.backend.create_schema(conn, name)

    async def create_base_tables() -> None:
        metadatas: list[MetaData] = [Base.metadata]
        for model in captured_models():
            metadata = model.metadata
            if all(metadata is not known for known in metadatas):
                metadatas.append(metadata)
        async with context.engine.begin() as conn:
            for metadata in metadatas:
                await conn.run_sync(metadata.create_all)
        logger.info("Base tables ensured", tables=sum(len(m.tables) for m in metadatas))

    async def install_capture_hooks() -> None:
        for model in captured_models():
            context.capture.install(model)

    async def register_jobs() -> None:
        for job in settings.jobs:
            context.scheduler.schedule(
                job.name,
                job.schedule,
                SqlCommand(context.engine, job.command),
                enabled=job.enabled,
                skip_if_running=job.skip_if_running,
                command=job.command,
            )

    return [
        BootstrapStep(
            0,
            "00-runtime-directories",
            create_runtime_directories,
            description="Create runtime directories and set their owner",
        ),
        BootstrapStep(
            1,
            "01-storage-capabilities",
            ensure_capabilities,
            description="Ensure required storage capabilities",
        ),
        BootstrapStep(2, "02-schemas", create_schemas, description="Create managed schemas"),
        BootstrapStep(
            3,
            "03-base-tables",
            create_base_tables,
            description="Create the change log and captured tables",
        ),
        BootstrapStep(
            4,
            "04-capture-hooks",
            install_capture_hooks,
            persistent=False,
            description="Install change capture on captured models",
        ),
        BootstrapStep(
            5,
            "05-scheduled-jobs",
            register_jobs,
            persistent=False,
            description="Register maintenance jobs",
        ),
    ]
