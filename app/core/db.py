from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings


def to_async_url(database_url: str) -> str:
    """Plain postgresql:// URLs go through asyncpg; anything else is used as given.

    asyncpg does not accept psycopg params like sslmode/channel_binding, so they are
    dropped; SSL is enabled via connect_args instead.
    """
    url = make_url(database_url)
    if url.drivername != "postgresql":
        return database_url
    url = url.set(drivername="postgresql+asyncpg").difference_update_query(["sslmode", "channel_binding"])
    return url.render_as_string(hide_password=False)


async_database_url = to_async_url(settings.database_url)


def _engine_kwargs(url: str) -> dict[str, Any]:
    """SQLite (tests, local dev) gets the driver defaults; Postgres gets a sized pool."""
    if url.startswith("sqlite"):
        return {}
    kwargs: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
    }
    if settings.database_ssl:
        kwargs["connect_args"] = {"ssl": True}
    return kwargs


engine = create_async_engine(
    async_database_url,
    echo=settings.env == "development",
    **_engine_kwargs(async_database_url),
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
