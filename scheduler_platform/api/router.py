from fastapi import APIRouter

from scheduler_platform.api.adr import router as adr_router
from scheduler_platform.api.job_executions import router as job_executions_router
from scheduler_platform.api.schedules import router as schedules_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(schedules_router, prefix="/api", tags=["schedules"])
api_router.include_router(job_executions_router, prefix="/api", tags=["job-executions"])
api_router.include_router(adr_router, prefix="/api", tags=["adr"])
