# app/db/session.py
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


def _engine_kwargs(url: str) -> dict:
    # SQLite (local runs, tests) has no server-side pool to size
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10, "pool_recycle": 1800}


engine = create_async_engine(settings.async_db_uri, **_engine_kwargs(settings.async_db_uri))

# Ledger rows stay readable after commit (responses and notifications use them)
AsyncSessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


class Base(DeclarativeBase):
    pass


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per webhook/admin request."""
    async with AsyncSessionLocal() as session:
        yield session
