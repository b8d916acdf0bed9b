"""datastore-custodian service entry point.

Initializes the FastAPI application with:
- The custodian context (engine, change capture, scheduler, health monitor)
- The bootstrap sequence, run once before requests are accepted
- The scheduler tick loop
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from datastore_custodian.api.router import health_router, router
from datastore_custodian.context import create_context
from datastore_custodian.errors import InvalidScheduleError, NotFoundError
from datastore_custodian.observability import configure_logging, get_logger
from datastore_custodian.settings import Settings

logger = get_logger(__name__)

VERSION = "0.1.0"


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Service settings. Read from the environment when omitted.

    Returns:
        The application. Its lifespan owns the custodian context.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage application startup and shutdown lifecycle.

        Builds the context and runs the bootstrap on startup; a failed
        bootstrap step aborts startup. Stops the scheduler and disposes the
        engine on shutdown.

        Args:
            app: The FastAPI application instance.

        Yields:
            None
        """
        configure_logging(settings.log_level, settings.log_json)
        logger.info("Starting custodian", service=settings.service_name, version=VERSION)

        context = create_context(settings)
        try:
            report = await context.bootstrap()
        except Exception:
            await context.close()
            raise

        if settings.scheduler_enabled:
            context.scheduler.start()

        app.state.context = context
        logger.info(
            "Custodian startup complete",
            executed=report.executed,
            skipped=report.skipped,
            jobs=len(context.scheduler.list_jobs()),
        )

        yield

        logger.info("Shutting down custodian")
        await context.close()
        logger.info("Custodian shutdown complete")

    app = FastAPI(title=settings.service_name, version=VERSION, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(router, prefix="/api/v1")

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(InvalidScheduleError)
    async def handle_invalid_schedule(request: Request, exc: InvalidScheduleError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    return app
