# app/db/base.py
"""
Model registry: importing this module puts every table on Base.metadata,
which Alembic autogenerate and create_all both rely on.
"""
from app.db.models.account import Account, Plan  # noqa: F401
from app.db.models.settlement import Settlement  # noqa: F401
from app.db.session import engine, Base


async def init_db() -> None:
    """Create any missing tables (local SQLite runs; production uses Alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
