"""Database utility functions."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from pricewatch.models import Base


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health(engine: AsyncEngine) -> dict:
    """Check if database is accessible and responsive.

    Returns:
        dict with 'healthy' boolean and optional 'error' message
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
