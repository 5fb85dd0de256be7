# backend/app/api/dependencies.py
"""
API Dependencies

Reusable FastAPI dependencies plus the process-wide resources behind them:
the SQLAlchemy engine/session factory and the Redis pool (module globals,
created and closed by the `lifespan` handler in `main.py`), and the certified
API client and poll registry (stored on `app.state`).

Background pollers open their own sessions through `get_session_factory()`,
since a request-scoped session is closed once the response is sent.
"""
from typing import AsyncGenerator, Optional

import redis.asyncio as redis
import structlog
from fastapi import Request
from redis.asyncio.connection import BlockingConnectionPool
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError
from redis.retry import Retry
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.services.certified_api import CertifiedApiClient
from app.services.poll_registry import GenerationPollRegistry

logger = structlog.get_logger(__name__)

# --- Globals for Lifespan Management ---
db_engine = None
async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
redis_pool: Optional[BlockingConnectionPool] = None


# --- Lifespan Functions (called from main.py) ---

def create_db_engine_and_session_maker(db_url: str):
    global db_engine, async_session_factory
    if db_engine is not None:   # idempotent guard
        return

    kwargs = dict(pool_pre_ping=True)

    if db_url.startswith("sqlite"):
        # No pool_size / max_overflow for SQLite
        kwargs.update(
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        kwargs.update(pool_size=10, max_overflow=5)

    db_engine = create_async_engine(db_url, **kwargs)
    async_session_factory = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
    logger.info("db.engine.created", dialect=db_engine.dialect.name)


def create_redis_pool(redis_url: str):
    """Creates the Redis connection pool (str I/O for the JSON poll snapshots)."""
    global redis_pool
    redis_pool = BlockingConnectionPool.from_url(
        redis_url,
        decode_responses=True,
        max_connections=50,
        timeout=10,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    scheme = "rediss" if redis_url.startswith("rediss://") else "redis"
    logger.info("redis.pool.created", scheme=scheme, max_connections=50)


async def close_db_engine():
    global db_engine, async_session_factory
    if db_engine:
        await db_engine.dispose()
        logger.info("db.engine.disposed")
    db_engine = None
    async_session_factory = None


async def close_redis_pool():
    global redis_pool
    if redis_pool:
        await redis_pool.disconnect()
        logger.info("redis.pool.disconnected")
    redis_pool = None


# --- FastAPI Dependencies ---

async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """A new `AsyncSession` per request."""
    if not async_session_factory:
        logger.error("Database session factory is not initialized.")
        raise RuntimeError("Database session factory is not initialized.")
    async with async_session_factory() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if not async_session_factory:
        logger.error("Database session factory is not initialized.")
        raise RuntimeError("Database session factory is not initialized.")
    return async_session_factory


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Redis client from the pool with retry/backoff and health checks.
    None when no pool was configured; callers then skip the lease and status cache.
    """
    if not redis_pool:
        logger.debug("redis.pool.missing")
        return None

    client_name = f"certquiz-backend:{settings.APP_ENVIRONMENT}"
    return redis.Redis(
        connection_pool=redis_pool,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
        health_check_interval=30,
        client_name=client_name,
    )


def get_certified_client(request: Request) -> CertifiedApiClient:
    client = getattr(request.app.state, "certified_client", None)
    if client is None:
        raise RuntimeError("Certified API client is not initialized.")
    return client


def get_poll_registry(request: Request) -> GenerationPollRegistry:
    registry = getattr(request.app.state, "poll_registry", None)
    if registry is None:
        raise RuntimeError("Poll registry is not initialized.")
    return registry
