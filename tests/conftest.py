import os

# Settings are read at import time; required values must exist first
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("AUTH_BASE_URL", "http://auth.test")
os.environ.setdefault("AUTH_API_KEY", "anon-test-key")
os.environ.setdefault("INTERNAL_ADMIN_KEY", "test-internal")
os.environ.setdefault("TELEMETRY_ENABLED", "false")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Import Base + all models so metadata is complete
from app.models import Base
from app.core.config import Settings
from app.core.db import build_session_factory
from app.core.services import Services
from app.main import create_app

from tests.fakes import INTERNAL_KEY, WEBHOOK_SECRET, FakeIdentityProvider, FakePaymentGateway
from tests.fixtures_seed import buyer_token, listing_id  # noqa: F401


def _test_db_url() -> str:
    return os.getenv("DATABASE_URL_TEST", "sqlite+aiosqlite://")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        telemetry_enabled=False,
        internal_admin_key=INTERNAL_KEY,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        auth_base_url="http://auth.test",
        auth_api_key="anon-test-key",
    )


@pytest_asyncio.fixture
async def async_engine():
    url = _test_db_url()
    kwargs = {}
    if url.startswith("sqlite"):
        # one shared in-memory database for every session in the test
        kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    engine = create_async_engine(url, **kwargs)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return build_session_factory(async_engine)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def services(session_factory, gateway, identity) -> Services:
    return Services(session_factory=session_factory, payments=gateway, identity=identity)


@pytest_asyncio.fixture
async def client(settings, services):
    """HTTP client against an app wired to the test database and fakes."""
    app = create_app(settings=settings, services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
