"""
Ecosystem — Async Database Engine & Session Scope

The engine is chosen from configuration on first use:

* ``CLOUD_SQL_USE_UNIX_SOCKET`` with an instance connection name connects
  through ``cloud-sql-python-connector`` using IAM authentication;
* otherwise ``DATABASE_URL`` is used as given (a bare ``postgresql://``
  scheme is upgraded to asyncpg, ``sqlite+aiosqlite`` runs without a queue
  pool).

Importing the ORM models never opens a pool.  Every unit of work, whether it
comes from a request (``get_db``), the operations CLI or the health check,
goes through ``session_scope`` so that commit / rollback is decided in one
place.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncGenerator, AsyncIterator

import structlog
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from ecosystem.config import Settings, get_settings

logger = structlog.get_logger("ecosystem.database")


class Base(DeclarativeBase):
    """Declarative base shared by every table in ``ecosystem.models``."""


# JSONB on PostgreSQL, plain JSON everywhere else.
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ------------------------------------------------------------------ #
# Engine construction
# ------------------------------------------------------------------ #

def _pool_kwargs(settings: Settings, url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": 30,
        "pool_recycle": settings.DB_POOL_RECYCLE_SECONDS,
        "pool_pre_ping": True,
    }


def _build_cloud_sql_engine(settings: Settings) -> AsyncEngine:
    from google.cloud.sql.connector import Connector

    connector = Connector()

    async def _connect():
        return await connector.connect_async(
            settings.CLOUD_SQL_INSTANCE_CONNECTION,
            "asyncpg",
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            db=settings.DB_NAME,
            enable_iam_auth=True,
        )

    url = "postgresql+asyncpg://"
    engine = create_async_engine(
        url,
        async_creator=_connect,
        echo=settings.LOG_LEVEL == "DEBUG",
        **_pool_kwargs(settings, url),
    )
    logger.info(
        "database_engine_created",
        strategy="cloud_sql_connector",
        instance=settings.CLOUD_SQL_INSTANCE_CONNECTION,
    )
    return engine


def _build_url_engine(settings: Settings) -> AsyncEngine:
    url = settings.DATABASE_URL
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(
        url,
        echo=settings.LOG_LEVEL == "DEBUG",
        **_pool_kwargs(settings, url),
    )
    logger.info(
        "database_engine_created",
        strategy="url",
        dialect=engine.dialect.name,
    )
    return engine


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    settings = get_settings()
    if settings.CLOUD_SQL_USE_UNIX_SOCKET and settings.CLOUD_SQL_INSTANCE_CONNECTION:
        return _build_cloud_sql_engine(settings)
    return _build_url_engine(settings)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def dispose_engine() -> None:
    """Close the pool and forget the cached engine and session factory."""
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        logger.info("database_pool_closed")
    get_session_factory.cache_clear()
    get_engine.cache_clear()


# ------------------------------------------------------------------ #
# Units of work
# ------------------------------------------------------------------ #

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Commit when the block exits cleanly, roll back when it raises."""
    async with (factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with session_scope() as session:
        yield session
