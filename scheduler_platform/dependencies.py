from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from scheduler_platform.adr.runs import OrchestrationRunner, get_orchestration_runner
from scheduler_platform.config import AppConfig, Settings, get_config, get_settings
from scheduler_platform.core.database import get_db
from scheduler_platform.core.scheduler import get_engine
from scheduler_platform.services.scheduler_engine import SchedulerEngine

DEFAULT_USER = "system"

# Type aliases for dependency injection
DBSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Config = Annotated[AppConfig, Depends(get_config)]


async def get_current_user(x_user: str | None = Header(default=None, alias="X-User")) -> str:
    """Acting user from the X-User header; identity is established upstream."""
    if x_user is None or not x_user.strip():
        return DEFAULT_USER
    return x_user.strip()[:200]


def get_scheduler_engine() -> SchedulerEngine:
    return get_engine()


def get_runner() -> OrchestrationRunner:
    return get_orchestration_runner()


CurrentUser = Annotated[str, Depends(get_current_user)]
Engine = Annotated[SchedulerEngine, Depends(get_scheduler_engine)]
Runner = Annotated[OrchestrationRunner, Depends(get_runner)]
