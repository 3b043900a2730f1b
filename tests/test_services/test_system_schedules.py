"""Tests for platform system schedules."""

from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from scheduler_platform.config import AdrConfig, Settings
from scheduler_platform.models import JobType, Schedule
from scheduler_platform.services.system_schedules import ADR_SCHEDULE_NAME, ensure_system_schedules

pytestmark = pytest.mark.asyncio

T0 = datetime(2026, 1, 10, 2, 0)


@pytest.fixture
def app_config():
    settings = Settings(service_base_url="http://svc.test/", service_api_key="svc-key")
    return SimpleNamespace(settings=settings, adr=AdrConfig({}, settings))


class TestEnsureSystemSchedules:
    """Tests for ensure_system_schedules."""

    async def test_creates_adr_schedule(self, db_session, app_config):
        """Should create the ADR orchestration schedule armed from its cron."""
        schedule = await ensure_system_schedules(db_session, app_config, now=T0)

        assert schedule.name == ADR_SCHEDULE_NAME
        assert schedule.is_system is True
        assert schedule.job_type == JobType.API_CALL
        assert schedule.next_run_time == datetime(2026, 1, 10, 6, 0)
        assert schedule.job_configuration["url"] == "http://svc.test/api/adr/orchestrate/run-background"
        assert schedule.job_configuration["auth_type"] == "ApiKey"
        assert schedule.job_configuration["api_key"] == "svc-key"

    async def test_idempotent_and_keeps_retiming(self, db_session, app_config):
        """Should keep a single schedule and leave a changed cron alone."""
        first = await ensure_system_schedules(db_session, app_config, now=T0)
        first.cron_expression = "0 30 7 * * ?"
        await db_session.flush()

        second = await ensure_system_schedules(db_session, app_config, now=T0)

        assert second.id == first.id
        assert second.cron_expression == "0 30 7 * * ?"
        count = await db_session.scalar(select(func.count()).select_from(Schedule))
        assert count == 1
