"""Auxiliary data source used for dynamic parameters and ADR account sync."""

from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from scheduler_platform.core.logging import get_logger
from scheduler_platform.jobs.sql import build_routine_call

logger = get_logger(__name__)


class AuxiliaryDataSource(ABC):
    """Runs named routines against a database identified by connection string."""

    @abstractmethod
    async def fetch_scalar(self, connection_string: str, routine: str) -> Any:
        """Run a routine and return the first column of the first row (or None)."""
        pass

    @abstractmethod
    async def fetch_rows(self, connection_string: str, routine: str) -> list[dict[str, Any]]:
        """Run a routine and return every row as a column -> value dict."""
        pass


class SqlAuxiliaryDataSource(AuxiliaryDataSource):
    """SQLAlchemy-backed data source with one engine per connection string.

    Connection strings are SQLAlchemy async URLs, e.g.
    ``mssql+aioodbc://...`` or ``postgresql+asyncpg://...``.
    """

    def __init__(self) -> None:
        self._engines: dict[str, AsyncEngine] = {}

    def _engine(self, connection_string: str) -> AsyncEngine:
        engine = self._engines.get(connection_string)
        if engine is None:
            engine = create_async_engine(connection_string, pool_pre_ping=True)
            self._engines[connection_string] = engine
        return engine

    async def fetch_scalar(self, connection_string: str, routine: str) -> Any:
        engine = self._engine(connection_string)
        statement = build_routine_call(engine.dialect.name, routine, [], mode="Scalar")
        async with engine.connect() as conn:
            result = await conn.execute(statement)
            return result.scalar()

    async def fetch_rows(self, connection_string: str, routine: str) -> list[dict[str, Any]]:
        engine = self._engine(connection_string)
        statement = build_routine_call(engine.dialect.name, routine, [], mode="Rows")
        async with engine.connect() as conn:
            result = await conn.execute(statement)
            return [dict(row) for row in result.mappings().all()]

    async def dispose(self) -> None:
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()
