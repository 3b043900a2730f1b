"""
Pytest configuration and fixtures for Scheduler Platform tests.

Provides:
- Async test database with SQLite
- Scheduler engine and ADR orchestrator wired to fakes
- Test client for API testing
- Factory fixtures for creating test data
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from datetime import date, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from scheduler_platform.adr.account_sync import AccountRecord, BaseAccountSource
from scheduler_platform.adr.api_client import AdrApiClient
from scheduler_platform.adr.credentials import AdrApiCredentialVerifier
from scheduler_platform.adr.orchestrator import AdrOrchestrator
from scheduler_platform.adr.runs import OrchestrationRunner
from scheduler_platform.config import AdrConfig, SchedulerConfig, Settings, get_settings
from scheduler_platform.core.database import get_db
from scheduler_platform.core.retry import RetryConfig
from scheduler_platform.dependencies import get_runner, get_scheduler_engine
from scheduler_platform.main import app
from scheduler_platform.models import (
    AdrAccount,
    AdrJob,
    AdrJobStatus,
    Base,
    JobExecution,
    JobParameter,
    JobStatus,
    JobType,
    Schedule,
)
from scheduler_platform.services.data_source import AuxiliaryDataSource
from scheduler_platform.services.notifications import BaseNotifier
from scheduler_platform.services.scheduler_engine import SchedulerEngine

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADR_API_URL = "http://adr.test/api"


# Override settings for testing
class TestSettings(Settings):
    database_url: str = TEST_DATABASE_URL
    debug: bool = True
    scheduler_enabled: bool = False
    service_base_url: str = "http://localhost:8000"
    notification_webhook_url: str = ""
    auxiliary_connection_string: str = ""
    adr_api_base_url: str = ADR_API_URL
    adr_api_key: str = "test-key"


@pytest_asyncio.fixture
async def db_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the engine, the orchestrator and the tests."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fakes
# ============================================================================


class FakeClock:
    """Settable clock returning naive UTC datetimes."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime | date) -> None:
        if not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day, 6, 0)
        self.now = value

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeNotifier(BaseNotifier):
    """Records notifications instead of sending them."""

    def __init__(self) -> None:
        self.executions: list[dict[str, Any]] = []
        self.summaries: list[dict[str, Any]] = []

    async def send_job_execution_notification(
        self,
        success: bool,
        execution: JobExecution,
        schedule_name: str | None = None,
    ) -> None:
        self.executions.append(
            {
                "success": success,
                "execution_id": execution.id,
                "status": execution.status,
                "schedule_name": schedule_name,
            }
        )

    async def send_orchestration_summary(self, summary: dict[str, Any]) -> None:
        self.summaries.append(summary)


class FakeDataSource(AuxiliaryDataSource):
    """In-memory auxiliary data source keyed by routine name."""

    def __init__(self) -> None:
        self.scalars: dict[str, Any] = {}
        self.rows: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.delay = 0.0

    async def fetch_scalar(self, connection_string: str, routine: str) -> Any:
        self.calls.append((connection_string, routine))
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self.scalars[routine]
        if isinstance(value, Exception):
            raise value
        return value

    async def fetch_rows(self, connection_string: str, routine: str) -> list[dict[str, Any]]:
        self.calls.append((connection_string, routine))
        return self.rows.get(routine, [])


class FakeAccountSource(BaseAccountSource):
    """Account source returning a fixed record list, optionally gated."""

    def __init__(self) -> None:
        self.records: list[AccountRecord] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.error: Exception | None = None

    async def fetch_accounts(self) -> list[AccountRecord]:
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.records)


class AdrApiStub:
    """Document retrieval API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, tuple[int, Any]] = {
            "login": (200, {"StatusId": 12, "StatusDescription": "Login Attempt Succeeded", "IndexId": 500}),
            "download": (200, {"StatusId": 1, "StatusDescription": "Inserted", "IndexId": 501}),
            "status": (200, {"StatusId": 11, "StatusDescription": "Complete", "IndexId": 501}),
        }

    def handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        endpoint = request.url.path.rsplit("/", 1)[-1]
        self.requests.append((endpoint, payload))

        if endpoint == "GetRequestStatus":
            key = "status"
        elif payload["ADRRequestTypeId"] == 1:
            key = "login"
        else:
            key = "download"
        status_code, body = self.responses[key]
        return httpx.Response(status_code, json=body)

    def client(self, config: AdrConfig) -> AdrApiClient:
        return AdrApiClient(
            config,
            transport=httpx.MockTransport(self.handle),
            retry=RetryConfig(max_attempts=1),
        )

    def sent(self, endpoint: str, request_type: int | None = None) -> list[dict[str, Any]]:
        return [
            payload
            for name, payload in self.requests
            if name == endpoint
            and (request_type is None or payload.get("ADRRequestTypeId") == request_type)
        ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 10, 2, 0))


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def data_source() -> FakeDataSource:
    return FakeDataSource()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig({"max_concurrent_jobs": 5, "default_timeout_seconds": 30}, TestSettings())


@pytest_asyncio.fixture
async def engine_factory(session_maker, scheduler_config, data_source, notifier, clock):
    """Factory for scheduler engines; every engine is shut down after the test."""
    engines: list[SchedulerEngine] = []

    def _create_engine(executors: dict | None = None, **kwargs: Any) -> SchedulerEngine:
        engine = SchedulerEngine(
            session_maker,
            config=kwargs.pop("config", scheduler_config),
            data_source=data_source,
            notifier=notifier,
            executors=executors,
            default_connection_string=kwargs.pop("default_connection_string", "sqlite+aiosqlite://"),
            clock=clock,
        )
        engines.append(engine)
        return engine

    yield _create_engine

    for engine in engines:
        await engine.shutdown()


@pytest_asyncio.fixture
async def engine(engine_factory) -> SchedulerEngine:
    return engine_factory()


@pytest.fixture
def adr_config() -> AdrConfig:
    return AdrConfig({}, TestSettings())


@pytest.fixture
def adr_api() -> AdrApiStub:
    return AdrApiStub()


@pytest.fixture
def account_source() -> FakeAccountSource:
    return FakeAccountSource()


@pytest.fixture
def orchestrator(session_maker, adr_config, adr_api, account_source, clock) -> AdrOrchestrator:
    client = adr_api.client(adr_config)
    return AdrOrchestrator(
        session_maker,
        adr_config,
        api_client=client,
        verifier=AdrApiCredentialVerifier(client),
        account_source=account_source,
        clock=clock,
    )


@pytest_asyncio.fixture
async def runner(orchestrator, session_maker, notifier, clock) -> AsyncGenerator[OrchestrationRunner, None]:
    runner = OrchestrationRunner(orchestrator, session_maker, notifier=notifier, clock=clock)
    yield runner
    await runner.shutdown()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, engine, runner) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database, engine and runner overrides."""

    async def override_get_db():
        yield db_session

    def override_get_settings():
        return TestSettings()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = override_get_settings
    app.dependency_overrides[get_scheduler_engine] = lambda: engine
    app.dependency_overrides[get_runner] = lambda: runner

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def schedule_factory(db_session: AsyncSession):
    """Factory for creating test schedules (committed, so engine sessions see them)."""

    async def _create_schedule(
        name: str = "Nightly export",
        job_type: JobType = JobType.API_CALL,
        cron_expression: str = "0 0 2 * * ?",
        job_configuration: dict | None = None,
        next_run_time: datetime | None = None,
        parameters: list[JobParameter] | None = None,
        **fields: Any,
    ) -> Schedule:
        if job_configuration is None:
            job_configuration = {"url": "http://jobs.test/run", "method": "POST"}

        schedule = Schedule(
            name=name,
            job_type=job_type,
            cron_expression=cron_expression,
            time_zone=fields.pop("time_zone", "UTC"),
            job_configuration=job_configuration,
            is_enabled=fields.pop("is_enabled", True),
            is_system=fields.pop("is_system", False),
            is_deleted=fields.pop("is_deleted", False),
            max_retries=fields.pop("max_retries", 3),
            retry_delay_minutes=fields.pop("retry_delay_minutes", 5),
            retry_attempt=fields.pop("retry_attempt", 0),
            next_run_time=next_run_time,
            parameters=parameters or [],
            **fields,
        )
        db_session.add(schedule)
        await db_session.commit()
        return schedule

    return _create_schedule


@pytest_asyncio.fixture
async def execution_factory(db_session: AsyncSession):
    """Factory for creating test job executions."""

    async def _create_execution(
        schedule: Schedule,
        status: JobStatus = JobStatus.COMPLETED,
        start_time: datetime | None = None,
        **fields: Any,
    ) -> JobExecution:
        start_time = start_time or datetime(2026, 1, 10, 2, 0)
        execution = JobExecution(
            schedule_id=schedule.id,
            start_time=start_time,
            end_time=None if status == JobStatus.RUNNING else start_time + timedelta(seconds=3),
            status=status,
            retry_count=fields.pop("retry_count", 0),
            triggered_by=fields.pop("triggered_by", "Scheduler"),
            **fields,
        )
        db_session.add(execution)
        await db_session.commit()
        return execution

    return _create_execution


@pytest_asyncio.fixture
async def adr_account_factory(db_session: AsyncSession):
    """Factory for creating ADR accounts with a ready billing window."""

    async def _create_account(
        external_account_id: int = 1001,
        credential_id: int = 77,
        next_range_start: date = date(2026, 1, 31),
        window_days_after: int = 4,
        **fields: Any,
    ) -> AdrAccount:
        account = AdrAccount(
            external_account_id=external_account_id,
            account_number=fields.pop("account_number", f"ACC-{external_account_id}"),
            vendor_code=fields.pop("vendor_code", "ACME-POWER"),
            client_id=fields.pop("client_id", 12),
            credential_id=credential_id,
            period_type=fields.pop("period_type", "Monthly"),
            period_days=fields.pop("period_days", 30),
            median_days=fields.pop("median_days", 30.0),
            invoice_count=fields.pop("invoice_count", 4),
            last_invoice_date=fields.pop("last_invoice_date", next_range_start - timedelta(days=30)),
            expected_next_date=next_range_start,
            expected_range_start=next_range_start,
            expected_range_end=next_range_start + timedelta(days=window_days_after),
            next_run_date=next_range_start,
            next_range_start=next_range_start,
            next_range_end=next_range_start + timedelta(days=window_days_after),
            next_run_status=fields.pop("next_run_status", "Upcoming"),
            historical_billing_status=fields.pop("historical_billing_status", "Upcoming"),
            is_manually_overridden=fields.pop("is_manually_overridden", False),
            is_active=fields.pop("is_active", True),
            is_deleted=False,
            **fields,
        )
        db_session.add(account)
        await db_session.commit()
        return account

    return _create_account


@pytest_asyncio.fixture
async def adr_job_factory(db_session: AsyncSession):
    """Factory for creating ADR jobs on an account's current window."""

    async def _create_job(
        account: AdrAccount,
        status: AdrJobStatus = AdrJobStatus.PENDING,
        **fields: Any,
    ) -> AdrJob:
        job = AdrJob(
            adr_account_id=account.id,
            credential_id=fields.pop("credential_id", account.credential_id),
            vendor_code=account.vendor_code,
            account_number=account.account_number,
            period_type=account.period_type,
            billing_period_start=fields.pop("billing_period_start", account.next_range_start),
            billing_period_end=fields.pop("billing_period_end", account.next_range_end),
            next_run_date=account.next_run_date,
            next_range_start=fields.pop("next_range_start", account.next_range_start),
            next_range_end=fields.pop("next_range_end", account.next_range_end),
            status=status,
            is_missing=False,
            retry_count=fields.pop("retry_count", 0),
            is_deleted=False,
            **fields,
        )
        db_session.add(job)
        await db_session.commit()
        return job

    return _create_job
