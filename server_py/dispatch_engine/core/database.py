from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from dispatch_engine.core.config import settings

# Base class for all models
Base = declarative_base()

# Async engine shared by the request handlers and the background dispatcher
engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# Session factory
AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns round-trip through SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
