"""
Database engine and sessions for the report ingestion service.

One asyncpg-backed SQLAlchemy engine is shared by the API routes, the
scheduler and every dataset worker. Each worker task opens its own session
from ``async_session``, so the pool must cover the workers that can run at
once (four dataset pairs per account, each up to MAX_CONCURRENT_REPORTS).
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def connect_args(config: Settings) -> dict:
    """asyncpg connect arguments. Alembic's engine uses the same ones."""
    args = {"timeout": config.database_connect_timeout}
    if config.database_ssl:
        # Managed Postgres proxies present self-signed certs
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        args["ssl"] = ctx
    return args


engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
    connect_args=connect_args(settings),
)

# Rows returned by UPDATE ... RETURNING stay readable after the worker commits
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Request-scoped session for the operator API; commits on success."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """
    Create the dataset registry, target and performance tables if missing.
    Alembic owns the schema in production; this lets a fresh dev database
    start ingesting without running migrations first.
    """
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Schema ready: {', '.join(sorted(Base.metadata.tables))}")


async def dispose_engine() -> None:
    """Close pooled connections once the scheduler has drained."""
    await engine.dispose()


async def check_db_connection() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
