#!/usr/bin/env python3
"""
Database initialization for local SQLite runs: creates the tables and,
optionally, a demo account to dial in with.
"""

import asyncio
import os
import sys
from decimal import Decimal
from pathlib import Path

# Add the app directory to the path
sys.path.insert(0, str(Path(__file__).parent))

# Must be set before app.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./data/teld.db")

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

DEMO_PHONE = os.getenv("DEMO_PHONE", "+15551234567")
DEMO_EMAIL = os.getenv("DEMO_EMAIL", "demo@example.com")


async def init_database() -> bool:
    """Create all tables"""
    from app.db.base import init_db
    from app.db.session import AsyncSessionLocal

    Path("data").mkdir(exist_ok=True)

    try:
        await init_db()
        async with AsyncSessionLocal() as session:
            await session.execute(sa.text("SELECT 1"))
    except SQLAlchemyError as e:
        print(f"❌ Database initialization failed: {e}")
        return False

    print("✅ Database tables created successfully!")
    return True


async def create_sample_data() -> None:
    """Create a demo account with a daily plan and a small wallet"""
    from app.core.errors import AccountConflict
    from app.crud.account import create_account
    from app.db.session import AsyncSessionLocal

    async with AsyncSessionLocal() as session:
        try:
            account = await create_account(
                session,
                phone=DEMO_PHONE,
                email=DEMO_EMAIL,
                amount=Decimal("5.00"),
                plan_name="DAILY_2",
            )
        except AccountConflict:
            print("📊 Demo account already exists, skipping creation")
            return

    print(f"✅ Demo account created: phone={account.phone} pin={account.pin}")


if __name__ == "__main__":
    print("🚀 Teld Database Initialization")
    print("=" * 50)

    if not asyncio.run(init_database()):
        sys.exit(1)

    if "--with-demo" in sys.argv:
        asyncio.run(create_sample_data())

    print("\n🎉 Database initialization complete!")
    print("\nNext steps:")
    print("1. Point your Twilio number's voice webhook at <PUBLIC_BASE_URL>/twilio/voice")
    print("2. Run: uvicorn app.main:app --reload")
    print("3. Test: curl http://localhost:8000/healthz")
