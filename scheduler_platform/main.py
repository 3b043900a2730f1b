from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scheduler_platform.adr.runs import get_orchestration_runner, recover_interrupted_runs
from scheduler_platform.api.router import api_router
from scheduler_platform.config import get_settings
from scheduler_platform.core.database import AsyncSessionLocal
from scheduler_platform.core.errors import (
    ConcurrencyConflict,
    InvalidStatusTransition,
    NotFoundError,
    OrchestrationAlreadyRunning,
    ScheduleConfigurationError,
    SchedulerPlatformError,
)
from scheduler_platform.core.logging import get_logger, setup_logging
from scheduler_platform.core.scheduler import start_scheduler, stop_scheduler

logger = get_logger(__name__)

settings = get_settings()

# Most specific class wins; anything else in the taxonomy is a 400
ERROR_STATUS_CODES: dict[type[SchedulerPlatformError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ScheduleConfigurationError: status.HTTP_400_BAD_REQUEST,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    OrchestrationAlreadyRunning: status.HTTP_409_CONFLICT,
    InvalidStatusTransition: status.HTTP_409_CONFLICT,
}


def status_code_for(error: SchedulerPlatformError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    async with AsyncSessionLocal() as db:
        await recover_interrupted_runs(db)
        await db.commit()
    await start_scheduler()
    yield
    # Shutdown
    await get_orchestration_runner().shutdown()
    await stop_scheduler()


app = FastAPI(
    title="Scheduler Platform",
    description="Cron job scheduling and ADR invoice retrieval orchestration",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.service_base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SchedulerPlatformError)
async def platform_error_handler(request: Request, exc: SchedulerPlatformError) -> JSONResponse:
    """Map engine errors onto HTTP status codes."""
    status_code = status_code_for(exc)
    logger.bind(path=request.url.path, tag=exc.tag, status_code=status_code, error=str(exc)).warning(
        "request_rejected"
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": exc.tag})


# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers."""
    return {"status": "healthy"}
