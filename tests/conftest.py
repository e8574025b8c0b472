"""
Test configuration: in-memory SQLite (aiosqlite) for store, service and API
tests. Pure evaluation tests need none of these fixtures.
"""
import os

os.environ.setdefault("AUTH_ENABLED", "false")
os.environ.setdefault("KAFKA_ENABLED", "false")

from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from compliance_engine.core.config import Settings
from compliance_engine.models import compliance_state  # noqa: F401  registers tables on Base
from compliance_engine.models.database import Base, get_db
from compliance_engine.models.entity_facts import BusinessEntity, FactsBase
from compliance_engine.services.calculation_service import CalculationService, get_calculation_service
from compliance_engine.services.rule_catalog import RuleCatalog

# 2026-07-15 11:30 IST
START = datetime(2026, 7, 15, 6, 0, tzinfo=timezone.utc)
TODAY = date(2026, 7, 15)


class SteppingClock:
    """Deterministic clock; every reading is one second after the previous one."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.current = start - step
        self.step = step

    def __call__(self) -> datetime:
        self.current += self.step
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current += delta


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(FactsBase.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(auth_enabled=False, kafka_enabled=False, _env_file=None)


@pytest.fixture
def service(session_factory, settings, clock) -> CalculationService:
    return CalculationService(session_factory, catalog=RuleCatalog(), settings=settings, clock=clock)


@pytest_asyncio.fixture
async def entity(session_factory) -> BusinessEntity:
    """A GST-registered private limited company with 25 employees in Maharashtra."""
    async with session_factory() as session:
        row = BusinessEntity(
            id=1,
            name="Acme Widgets Pvt Ltd",
            entity_type="Private Limited",
            incorporation_date=date(2020, 4, 10),
            annual_turnover=30000000,
            employee_count=25,
            state="Maharashtra",
            gstin="27AAACA1234A1Z5",
            is_active=True,
        )
        session.add(row)
        await session.commit()
        return row


@pytest_asyncio.fixture
async def client(session_factory, service) -> AsyncGenerator[AsyncClient, None]:
    from compliance_engine.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_calculation_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
