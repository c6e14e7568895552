"""Database engine, session factory, and declarative base.

The onboarding service owns a single table (``onboarding_sessions``) in the
public schema.  Services receive ``async_session`` by injection so tests can
hand them a factory bound to a throwaway engine instead.
"""

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from onboarding.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
