import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from crm_automation.domain.automations.locks import LeadLockRegistry
from crm_automation.infra.db import Base, get_db_session
from crm_automation.infra.messaging import NoopMessagingAdapter
from crm_automation.infra.notifications import NoopNotificationPusher
from crm_automation.main import app
from crm_automation.services import AppServices
from crm_automation.settings import settings

DEFAULT_COMPANY_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_COMPANY_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    tracked = (
        "testing",
        "app_env",
        "metrics_enabled",
        "metrics_token",
        "automation_default_timezone",
        "automation_retry_max_attempts",
        "automation_retry_base_backoff_seconds",
        "automation_failure_rate_threshold",
        "automation_min_executions_for_failure_check",
        "automation_recent_activity_limit",
        "automation_tick_concurrency",
    )
    original = {name: getattr(settings, name) for name in tracked}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    # one StaticPool connection cannot host concurrent transactions
    settings.automation_tick_concurrency = 1
    yield


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def lock_registry():
    return LeadLockRegistry()


@pytest.fixture()
def app_services(lock_registry):
    return AppServices(
        messaging=NoopMessagingAdapter(),
        notifications=NoopNotificationPusher(),
        metrics=getattr(app.state, "metrics", None) or _metrics_client(),
        locks=lock_registry,
        provider_timeout_seconds=2.0,
    )


def _metrics_client():
    from crm_automation.infra.metrics import metrics

    return metrics


@pytest.fixture()
def client(async_session_maker, app_services):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_services = getattr(app.state, "services", None)
    app.state.db_session_factory = async_session_maker
    app.state.services = app_services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = original_services
