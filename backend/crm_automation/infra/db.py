import logging
from typing import Any, AsyncGenerator

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.exc import TimeoutError as PoolTimeout
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from crm_automation.settings import settings

# Defined ahead of Base so model modules can import both without a cycle.
UUID_TYPE = sa.Uuid(as_uuid=True)

Base = declarative_base()

import crm_automation.infra.models  # noqa: F401,E402

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith(("postgresql://", "postgresql+")):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout_seconds,
            connect_args={"options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}"},
        )
    return options


def _watch_pool_timeouts(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def _on_error(context):  # noqa: ANN001
        error = context.original_exception or context.sqlalchemy_exception
        if isinstance(error, PoolTimeout):
            logger.warning("db_pool_timeout", extra={"extra": {"statement": context.statement}})


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Build the engine on first use so tests can swap ``DATABASE_URL`` first."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))
        _watch_pool_timeouts(_engine)
        _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
