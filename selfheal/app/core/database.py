"""Database engine and session factory construction."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from selfheal.app.core.config import Settings


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""
    pass


def create_engine(settings: Settings) -> AsyncEngine:
    """Build the async engine for the state store from settings."""
    engine_kwargs = {"echo": settings.debug}

    if "postgresql" in settings.database_url:
        engine_kwargs.update({
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
        })
    elif ":memory:" in settings.database_url:
        # A single shared connection, otherwise every session sees an empty database
        engine_kwargs.update({
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        })

    return create_async_engine(settings.database_url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
