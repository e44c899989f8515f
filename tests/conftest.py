import os
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

# Settings are cached on first import; pin the test environment before that.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_JWT_SECRET"] = "test-admin-jwt-secret"
os.environ["ADMIN_API_KEY"] = "test-admin-api-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paystack"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_stripe"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["NOWPAYMENTS_API_KEY"] = "test-nowpayments-key"
os.environ["NOWPAYMENTS_IPN_SECRET"] = "test-ipn-secret"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.pop("COMMUNICATIONS_SERVICE_URL", None)

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Optional overrides such as TEST_DATABASE_URL
env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=False)

from libs.auth.dependencies import create_admin_token
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.db.base import Base
from libs.db.session import get_async_db
from services.payments_service.app.main import app
from services.payments_service.providers.nowpayments import get_nowpayments_client
from services.payments_service.providers.paystack import get_paystack_client
from services.payments_service.providers.tron import get_tron_client

get_settings.cache_clear()
settings = get_settings()


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    A fresh database per test: a SQLite file under tmp_path, or
    TEST_DATABASE_URL when pointed at PostgreSQL.
    """
    url = os.environ.get("TEST_DATABASE_URL") or (
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}"
    )
    engine = create_async_engine(url, future=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def admin_user() -> AuthUser:
    return AuthUser(sub="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def admin_headers() -> dict:
    token = create_admin_token("admin-1", "admin@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def paystack_mock() -> MagicMock:
    client = MagicMock()
    client.verify_transaction = AsyncMock()
    client.initialize_transaction = AsyncMock()
    return client


@pytest.fixture
def tron_mock() -> MagicMock:
    client = MagicMock()
    client.verify_trc20_transfer = AsyncMock()
    return client


@pytest.fixture
def nowpayments_mock() -> MagicMock:
    client = MagicMock()
    client.get_currencies = AsyncMock(return_value=[])
    client.is_currency_supported = AsyncMock(return_value=True)
    client.create_payment = AsyncMock()
    return client


@pytest_asyncio.fixture
async def client(
    session_factory, paystack_mock, tron_mock, nowpayments_mock
) -> AsyncGenerator[AsyncClient, None]:
    """
    AsyncClient against the app. Each request gets its own session on the
    per-test database; provider clients are mocks.
    """

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _get_db
    app.dependency_overrides[get_paystack_client] = lambda: paystack_mock
    app.dependency_overrides[get_tron_client] = lambda: tron_mock
    app.dependency_overrides[get_nowpayments_client] = lambda: nowpayments_mock

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
