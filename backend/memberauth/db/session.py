# backend/memberauth/db/session.py
"""
Engine and session lifecycle for the account store.

The engine is created by the app lifespan rather than at import time, so
tests (and tooling importing the models) never open a connection.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Literal

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from memberauth.core.config import settings
from memberauth.db.base_class import Base
from memberauth.exceptions import ConfigurationError, StorageUnavailable

logger = logging.getLogger(__name__)

engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def init_engine(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the engine and session factory once; later calls return the existing factory."""
    global engine, SessionLocal

    if SessionLocal is not None:
        return SessionLocal

    database_url = database_url or settings.DATABASE_URL
    if not database_url:
        raise ConfigurationError("DATABASE_URL is not set.")

    url = make_url(database_url)
    engine_kwargs: dict = {"echo": settings.DB_ECHO}
    # SQLite connections are local files; pinging them only adds a round trip.
    if url.get_backend_name() != "sqlite":
        engine_kwargs["pool_pre_ping"] = True

    engine = create_async_engine(url, **engine_kwargs)
    SessionLocal = async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
        class_=AsyncSession,
    )
    logger.info(f"Account store engine configured for {url.render_as_string(hide_password=True)}")
    return SessionLocal


async def dispose_engine() -> None:
    global engine, SessionLocal
    if engine is None:
        return
    await engine.dispose()
    engine = None
    SessionLocal = None
    logger.info("Account store engine disposed.")


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, rolled back if the request fails."""
    if SessionLocal is None:
        raise RuntimeError("Database session factory is not initialized. Ensure the app lifespan has run.")
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def lifespan_db_manager(_app_instance, event_type: Literal["startup", "shutdown"]) -> None:
    if event_type == "shutdown":
        await dispose_engine()
        return

    init_engine()
    try:
        async with engine.begin() as connection:
            await connection.execute(text("SELECT 1"))
            if settings.DB_CREATE_TABLES:
                await connection.run_sync(Base.metadata.create_all)
                logger.info("Account store tables ensured (DB_CREATE_TABLES=true).")
    except SQLAlchemyError as e:
        logger.error(f"Account store unreachable on startup: {e}")
        await dispose_engine()
        raise StorageUnavailable("Account store unreachable on startup.") from e
