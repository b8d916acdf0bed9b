"""Command line interface for datastore-custodian.

Commands:
    custodian bootstrap     Run the bootstrap sequence once and exit
    custodian probe         Run the readiness probe; exit 0 when healthy, 1 otherwise
    custodian serve         Run the HTTP service with the scheduler

Settings are read from CUSTODIAN_* environment variables; --database-url
overrides CUSTODIAN_DATABASE_URL.
"""

import asyncio
import json
import sys

import click
import uvicorn

from datastore_custodian.context import create_context
from datastore_custodian.errors import BootstrapStepError
from datastore_custodian.health import HealthStatus
from datastore_custodian.main import create_app
from datastore_custodian.observability import configure_logging, get_logger
from datastore_custodian.settings import Settings

logger = get_logger(__name__)


def _load_settings(database_url: str | None) -> Settings:
    settings = Settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    configure_logging(settings.log_level, settings.log_json)
    return settings


@click.group()
@click.option("--database-url", default=None, help="Override CUSTODIAN_DATABASE_URL")
@click.pass_context
def main(ctx, database_url):
    """Keep a data store auditable and self-maintaining."""
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url


@main.command("bootstrap")
@click.pass_context
def bootstrap(ctx):
    """
    Run the bootstrap sequence and exit.

    Steps already recorded as complete are skipped. Exits 1 when a step fails.
    """
    settings = _load_settings(ctx.obj["database_url"])

    async def _run():
        context = create_context(settings)
        try:
            return await context.bootstrap()
        finally:
            await context.close()

    try:
        report = asyncio.run(_run())
    except BootstrapStepError as e:
        click.echo(f"Bootstrap failed: {e}", err=True)
        sys.exit(1)

    for key in report.executed:
        click.echo(f"executed  {key}")
    for key in report.skipped:
        click.echo(f"skipped   {key}")


@main.command("probe")
@click.option("--json", "as_json", is_flag=True, help="Print the probe result as JSON")
@click.pass_context
def probe(ctx, as_json):
    """
    Run the readiness probe.

    Exits 0 when the store is reachable, answers queries and has enough
    capabilities installed; exits 1 otherwise. Suitable as a container
    HEALTHCHECK command.
    """
    settings = _load_settings(ctx.obj["database_url"])

    async def _run() -> HealthStatus:
        context = create_context(settings)
        try:
            return await context.health.probe()
        finally:
            await context.engine.dispose()

    health = asyncio.run(_run())
    if as_json:
        click.echo(
            json.dumps(
                {
                    "healthy": health.healthy,
                    "reachable": health.reachable,
                    "query_ok": health.query_ok,
                    "capability_count": health.capability_count,
                    "reason": health.reason.value if health.reason else None,
                    "detail": health.detail,
                }
            )
        )
    elif health.healthy:
        click.echo("Health check passed")
    else:
        click.echo(f"Health check failed: {health.reason.value}: {health.detail}", err=True)

    sys.exit(0 if health.healthy else 1)


@main.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port")
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API, the bootstrap and the job scheduler."""
    settings = _load_settings(ctx.obj["database_url"])
    logger.info("Serving custodian API", host=host, port=port)
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
