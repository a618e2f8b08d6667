"""Initialize database schema for the roster portal.

Creates the account, role, and cohort tables. Existing tables are left
untouched. Run this before starting the API server.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from portal.db import engine
from portal.models import Base
from portal.config import settings


async def init_database():
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url.split('@')[-1]}")
    print("Creating tables...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created missing tables")

    await engine.dispose()

    print("\n✅ Database initialization complete!")
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    try:
        await init_database()
    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
