# main.py
# Description: FastAPI application exposing the job monitor read API and running the background scheduler.
#
# Imports
from contextlib import asynccontextmanager
#
# 3rd-party imports
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
#
# Local imports
from job_monitor import __version__
from job_monitor.app.api.v1.endpoints.job_monitor import router as job_monitor_router
from job_monitor.app.core.config import get_settings
from job_monitor.app.core.Logging.log_setup import configure_logging
from job_monitor.app.core.Metrics.metrics_manager import get_metrics_registry
from job_monitor.app.services.job_monitor_scheduler import start_job_monitor_scheduler, stop_job_monitor_scheduler

API_V1_PREFIX = "/api/v1"

configure_logging()

#######################################################################################################################
#
# Lifecycle
#

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the sync/analysis scheduler for the lifetime of the app."""
    settings = get_settings()
    logger.info(f"Job monitor API starting (environment={settings.ENVIRONMENT})")
    scheduler_started = False
    if app.state.run_scheduler:
        try:
            await start_job_monitor_scheduler()
            scheduler_started = True
        except Exception as e:
            logger.error(f"Failed to start job monitor scheduler: {e}")
    try:
        yield
    finally:
        if scheduler_started:
            await stop_job_monitor_scheduler()
        logger.info("Job monitor API stopped")


def create_app(run_scheduler: bool = True) -> FastAPI:
    application = FastAPI(
        title="Job Monitor API",
        version=__version__,
        description="Command and queued-job telemetry: live correlation state, durable run metrics and health.",
        lifespan=lifespan,
    )
    application.state.run_scheduler = run_scheduler
    application.include_router(job_monitor_router, prefix=API_V1_PREFIX)

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        detail = "Internal server error" if get_settings().is_production else str(exc)
        return JSONResponse(status_code=500, content={"status": "error", "message": detail})

    @application.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return PlainTextResponse(get_metrics_registry().export_prometheus_format(), media_type="text/plain; version=0.0.4")

    return application


app = create_app()

#
# End of main.py
#######################################################################################################################
