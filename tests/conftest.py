"""Shared test fixtures — async SQLite in-memory DB, fake clock, test client."""

import os
import tempfile
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime
from decimal import Decimal

from cryptography.fernet import Fernet

# Settings are read at import time, so configure them first
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REALTIME_LOG_DIR", tempfile.mkdtemp(prefix="realtime-logs-"))

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

# Import all models so metadata is populated
import controlplane.models  # noqa: F401, E402
from controlplane.core.clock import FrozenClock  # noqa: E402
from controlplane.core.database import get_session  # noqa: E402
from controlplane.core.runtime import reset_runtime  # noqa: E402
from controlplane.core.security import Role, create_jwt  # noqa: E402
from controlplane.main import app  # noqa: E402
from controlplane.models.provider import ModelSpec, ProviderCreate  # noqa: E402
from controlplane.services import provider_registry  # noqa: E402
from controlplane.services.usage_ledger import UsageLedger  # noqa: E402


@pytest.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture(autouse=True)
def fresh_runtime():
    """Every test gets its own broker, registry, ledger and router."""
    reset_runtime()
    yield
    reset_runtime()


@pytest.fixture
async def client(session) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session override."""

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 15, 12, 0, 0))


@pytest.fixture
def ledger(clock) -> UsageLedger:
    return UsageLedger(clock=clock)


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


def auth_headers(
    tenant_id: uuid.UUID, role: str = Role.USER, user_id: uuid.UUID | None = None
) -> dict:
    token = create_jwt(str(user_id or uuid.uuid4()), str(tenant_id), role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
def make_provider(session):
    """Factory: register a provider with one or more models."""

    async def _make(
        name: str = "primary",
        kind: str = "openai",
        models: list[str] | None = None,
        default_model: str | None = None,
        fallback_provider_id: uuid.UUID | None = None,
        input_cost: str = "0.01",
        output_cost: str = "0.03",
    ):
        model_ids = models or [f"{name}-model"]
        return await provider_registry.create_provider(
            session,
            ProviderCreate(
                name=name,
                kind=kind,
                endpoint=f"https://{name}.example.com/v1",
                api_key=f"sk-{name}",
                models=[
                    ModelSpec(
                        model_id=m,
                        display_name=m.upper(),
                        input_cost_per_1k=Decimal(input_cost),
                        output_cost_per_1k=Decimal(output_cost),
                    )
                    for m in model_ids
                ],
                default_model=default_model or model_ids[0],
                fallback_provider_id=fallback_provider_id,
            ),
        )

    return _make
