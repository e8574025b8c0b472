"""
Async SQLAlchemy engine + session factory.

The engine is created lazily so importing models never needs a live
database; tests swap the factory through FastAPI dependency overrides.
"""
from __future__ import annotations

from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from compliance_engine.core.config import get_settings


class Base(DeclarativeBase):
    """Tables owned (and migrated) by the engine."""
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_pre_ping=True,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency."""
    async with get_session_factory()() as session:
        yield session


# ── Migrations ──

def sync_database_url(url: str) -> str:
    """Alembic runs on psycopg2: postgresql+asyncpg://… → postgresql://…"""
    return (
        url
        .replace("postgresql+asyncpg://", "postgresql://")
        .replace("postgresql+psycopg2://", "postgresql://")
    )


def include_in_migrations(obj, name, type_, reflected, compare_to) -> bool:
    """Alembic include_object hook: platform fact tables share the database but are never ours to drop."""
    if type_ == "table" and reflected and compare_to is None:
        return name in Base.metadata.tables
    return True
