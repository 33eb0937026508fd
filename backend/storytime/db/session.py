from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def create_engine_and_sessionmaker(
    database_url: str,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    connect_args: dict[str, Any] = {}
    if database_url.startswith("sqlite"):
        # Bulk generation writes from several sessions at once.
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SECONDS
    engine = create_async_engine(
        database_url,
        pool_pre_ping=True,
        connect_args=connect_args,
    )
    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    return engine, session_maker
