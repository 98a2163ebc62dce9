import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from fleetctl.core.config import get_settings
from fleetctl.core.logging import setup_logging
from fleetctl.core.database import create_db_and_tables, engine
from fleetctl.core.errors import FleetError
from fleetctl.services import RunnerService, SchedulerService, HistoryService
from fleetctl.routers import jobs

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages the application lifecycle.

    On Startup:
    - Creates database tables if missing.
    - Fails runs orphaned by a previous process.
    - Applies history retention.
    - Starts the schedule poller.

    On Shutdown:
    - Stops polling and waits for running jobs to finish.
    """
    logger.info(f"{settings.APP_NAME} starting up...")
    create_db_and_tables()

    with Session(engine) as session:
        RunnerService(session).cleanup_started_jobs()
        HistoryService(session).apply_retention_policies()

    if settings.SCHEDULER_ENABLED:
        SchedulerService.start()
    else:
        logger.info("Scheduler disabled by configuration")
    logger.info(f"{settings.APP_NAME} started successfully.")

    yield

    logger.info(f"{settings.APP_NAME} shutting down...")
    await SchedulerService.shutdown(settings.SCHEDULER_SHUTDOWN_TIMEOUT)


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "kind": exc.kind})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catches unhandled exceptions and returns a clean error response."""
    logger.exception("Unhandled exception")
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(jobs.router)
