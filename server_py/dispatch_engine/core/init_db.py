from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from typing import Optional
from dispatch_engine.core.config import settings
from dispatch_engine.core.database import Base

# Import models so they are registered on the metadata before create_all
from dispatch_engine.models import order  # noqa: F401
from dispatch_engine.models import message  # noqa: F401
from dispatch_engine.models import presence  # noqa: F401
from dispatch_engine.models import dispatch_offer  # noqa: F401

async def init_db(engine: Optional[AsyncEngine] = None):
    """Create all tables. Uses a temporary engine unless one is given."""
    owns_engine = engine is None
    # Make sure the directory for the default SQLite file exists
    if settings.DATABASE_URL.startswith("sqlite"):
        settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    if owns_engine:
        engine = create_async_engine(settings.DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if owns_engine:
        await engine.dispose()
