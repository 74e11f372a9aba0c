"""Database connection and session management with async SQLAlchemy."""

from typing import AsyncGenerator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from paygate.config import Settings


# Base class for all models
class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def build_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    options = {"echo": settings.ENVIRONMENT == "development", "pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10)
    return create_async_engine(settings.DATABASE_URL, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory shared by the request path and the settlement engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields database sessions.

    Usage in FastAPI routes:
        @router.get("/")
        async def route(db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
