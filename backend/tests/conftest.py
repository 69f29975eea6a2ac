"""Shared test infrastructure for the Stazama test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- session_factory: file-backed SQLite session factory for multi-session tests
- make_profile: factory for Profile + role rows, returning a Caller
- make_request: factory for InspectionRequest rows
- hub / cache: isolated realtime hub and cache instances
- api_client: httpx client bound to the FastAPI app with get_db overridden
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from stazama.infra.database import Base, get_db

import stazama.domain.models  # noqa: F401

from stazama.domain.enums import UserRole
from stazama.domain.models import InspectionRequest
from stazama.services.auth_service import create_profile
from stazama.services.cache_service import CacheService, cache_service
from stazama.services.monitoring import monitoring
from stazama.services.permissions import Caller
from stazama.services.rate_limiter import limiter
from stazama.services.realtime_hub import RealtimeHub, realtime_hub
from stazama.services.request_state_machine import generate_tracking_id


# ---------------------------------------------------------------------------
# Process-wide singletons
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_singletons():
    """Start and end every test with empty singletons."""
    cache_service.clear()
    cache_service.reset_stats()
    realtime_hub.clear()
    monitoring.reset()
    limiter.reset()
    yield
    cache_service.clear()
    cache_service.reset_stats()
    realtime_hub.clear()
    monitoring.reset()


@pytest.fixture
def hub():
    return RealtimeHub()


@pytest.fixture
def cache():
    return CacheService(default_ttl_ms=60_000, max_size=100)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a temporary SQLite file.

    Used where several sessions must see each other's commits (backend
    clients, API routes).
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'stazama-test.db'}",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Profile factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_profile(session_factory):
    """Factory that creates a Profile with a role and returns its Caller.

    Usage:
        admin = await make_profile(UserRole.ADMIN)
    """
    counter = {"n": 0}

    async def _factory(
        role: UserRole = UserRole.USER,
        full_name: str = "Test User",
        email: str | None = None,
        password: str = "secret123",
    ) -> Caller:
        counter["n"] += 1
        email = email or f"{role.value}{counter['n']}@test.com"
        async with session_factory() as session:
            profile = await create_profile(session, email, password, full_name, role=role)
        return Caller(user_id=profile.id, role=role)

    return _factory


# ---------------------------------------------------------------------------
# Inspection request factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_request(session_factory):
    """Factory that inserts an InspectionRequest row directly and returns its id.

    ``age_minutes`` back-dates ``created_at`` so ordering is deterministic.

    Usage:
        request_id = await make_request(status="assigned", assigned_agent_id=agent.user_id)
    """
    async def _factory(age_minutes: int = 0, **fields) -> str:
        defaults = {
            "tracking_id": generate_tracking_id(),
            "customer_name": "Jane Banda",
            "whatsapp": "+265991234567",
            "store_name": "Game Stores",
            "store_location": "Area 3, Lilongwe",
            "product_details": "Samsung 55 inch television, check the screen",
            "service_tier": "inspection",
            "service_fee": 7000,
            "status": "pending",
            "created_at": datetime.now(timezone.utc) - timedelta(minutes=age_minutes),
        }
        defaults.update(fields)
        row = InspectionRequest(**defaults)
        async with session_factory() as session:
            session.add(row)
            await session.commit()
            return row.id

    return _factory


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
async def api_client(session_factory):
    """httpx client against the app, with every route using the test database."""
    from stazama.app.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
