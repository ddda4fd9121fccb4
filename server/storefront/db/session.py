from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.core.config import get_settings
from storefront.core.logging import get_logger
from storefront.db.base import Base
from storefront import models  # noqa: F401


settings = get_settings()
engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
logger = get_logger(__name__)


async def init_models() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def lifespan(app: object) -> AsyncIterator[None]:  # noqa: ARG001
    await init_models()
    logger.info("database.ready")
    yield
    await engine.dispose()


async def get_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped session; uncommitted work is rolled back when the handler raises."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
