"""
Async SQLAlchemy session factory.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings


def build_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    url = url or settings.DATABASE_URL
    options = {"echo": settings.APP_ENV == "development" and settings.LOG_LEVEL.upper() == "DEBUG"}
    if not url.startswith("sqlite"):
        options.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    options.update(kwargs)
    return create_async_engine(url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def fresh_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Engine and factory bound to the running loop; for Celery tasks that call asyncio.run."""
    task_engine = build_engine()
    try:
        yield build_session_factory(task_engine)
    finally:
        await task_engine.dispose()


engine = build_engine()

async_session = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields an async DB session; commits on success."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
