"""
Portfolio Analytics — Async SQLAlchemy database setup.

Production runs on Postgres (asyncpg); local development and the test suite
run on SQLite (aiosqlite).  The differences between the two are kept here:
pool tuning only applies to Postgres, and SQLite connections switch foreign
keys on so the tracking tables cascade the same way on both.
"""

from sqlalchemy import MetaData, event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from api.config import settings

# Stable constraint names so Postgres and SQLite schemas line up
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def engine_options(url: str) -> dict:
    """Keyword arguments for ``create_async_engine`` on the given URL."""
    if is_sqlite(url):
        return {"echo": False}
    return {
        "echo": False,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,                          # survives DB restarts / sleep
        "pool_recycle": settings.db_pool_recycle_seconds,
    }


engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
async_session_factory = async_session  # used by the retention job outside requests


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on."""
    if "sqlite" not in type(dbapi_connection).__module__:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency — one session per request, closed afterwards."""
    async with async_session() as session:
        yield session


async def init_db() -> None:
    """Register every model and create missing tables."""
    import api.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
