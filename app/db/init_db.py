import asyncio
import logging

from app.db.base import Base
from app.db.session import engine
import app.models  # noqa: F401  registers mapped tables

logger = logging.getLogger(__name__)


async def init_db() -> None:
    """
    Create the pipeline journal tables if they do not exist yet.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Pipeline journal tables ready")


if __name__ == "__main__":
    asyncio.run(init_db())
