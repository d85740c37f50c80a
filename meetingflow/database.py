"""
Database connection for MeetingFlow.

Provides:
- engine: AsyncEngine connected to PostgreSQL
- AsyncSessionLocal: session factory used by services and the worker
- get_db(): FastAPI dependency yielding a session
"""
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from meetingflow.config import settings


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield a database session for the duration of a request."""
    async with AsyncSessionLocal() as session:
        yield session
