from sqlalchemy.ext.asyncio import AsyncEngine

from storytime.db import models  # noqa: F401
from storytime.db.base import Base


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
