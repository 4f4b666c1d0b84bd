"""
Campus Whisper – Async SQLAlchemy engine, session, and declarative base.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

# ── Engine ──
def engine_options(url: str) -> dict:
    options = {"echo": settings.DEBUG, "future": True}
    if url.startswith("postgresql"):
        # asyncpg behind PgBouncer (transaction mode): no prepared statement cache.
        options["connect_args"] = {"statement_cache_size": 0}
    elif url.startswith("sqlite"):
        # Sweeper and request handlers write from separate connections.
        options["connect_args"] = {"timeout": 30}
    return options


engine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

# ── Session factory ──
async_session = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Declarative base ──
class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ── Dependencies for FastAPI routes ──
async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async database session, auto-closed on exit."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """Session factory for long-lived handlers (WebSocket, sweeper) that open
    one short session per unit of work instead of holding one open."""
    return async_session


async def create_tables(bind=None) -> None:
    """Create every table registered on ``Base.metadata``."""
    import app.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
