"""
Main FastAPI Application
"""
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api import dependencies as deps
from app.api.endpoints import config, quiz
from app.core.config import settings
from app.core.logging_config import configure_logging
from app.models.db import Base
from app.services.certified_api import CertifiedApiClient
from app.services.poll_registry import GenerationPollRegistry

try:
    from opentelemetry import trace as _otel_trace
except ImportError:
    _otel_trace = None

_LOCAL_ENVS = {"local", "dev", "development"}


# --- Lifespan Helpers ---

async def _init_db(logger: Any, env: str) -> None:
    """Create the engine and, when configured, the schema."""
    db_url = settings.DATABASE_URL
    if not db_url:
        user = os.getenv("DATABASE_USER", "postgres")
        pwd = os.getenv("DATABASE_PASSWORD", "postgres")
        host = os.getenv("DATABASE_HOST", "localhost")
        port = os.getenv("DATABASE_PORT", "5432")
        name = os.getenv("DATABASE_DB_NAME", "certquiz")
        db_url = f"postgresql+asyncpg://{user}:{pwd}@{host}:{port}/{name}"

    try:
        deps.create_db_engine_and_session_maker(db_url)
        if settings.database.create_schema and deps.db_engine is not None:
            async with deps.db_engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema ensured")
        logger.info("Database engine initialized", db_url=db_url if env in _LOCAL_ENVS else "hidden")
    except (SQLAlchemyError, OSError) as e:
        logger.error("Failed to initialize database", error=str(e), exc_info=True)
        if env not in _LOCAL_ENVS:
            raise


def _init_redis(logger: Any, env: str) -> None:
    """Initialize Redis connection pool."""
    redis_url = settings.REDIS_URL
    try:
        deps.create_redis_pool(redis_url)
        logger.info("Redis pool initialized", redis_url=redis_url if env in _LOCAL_ENVS else "hidden")
    except (RedisError, ValueError) as e:
        logger.error("Failed to initialize Redis pool", error=str(e), exc_info=True)
        if env not in _LOCAL_ENVS:
            raise


async def _shutdown_resources(app: FastAPI, logger: Any) -> None:
    """Teardown resources gracefully."""
    logger.info("--- Application Shutting Down ---")

    registry = getattr(app.state, "poll_registry", None)
    if registry is not None:
        await registry.shutdown()

    client = getattr(app.state, "certified_client", None)
    if client is not None:
        await client.aclose()
        logger.info("Certified API client closed")

    try:
        await deps.close_db_engine()
    except SQLAlchemyError as e:
        logger.warning("Database engine close failed", error=str(e), exc_info=True)

    try:
        await deps.close_redis_pool()
    except RedisError as e:
        logger.warning("Redis pool close failed", error=str(e), exc_info=True)

    logger.info("--- Shutdown complete ---")


# --- Lifespan Management ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages the application's startup and shutdown events.
    """
    logger = structlog.get_logger(__name__)
    env = (settings.APP_ENVIRONMENT or "local").lower()
    logger.info("--- Application Starting Up ---", env=env)

    await _init_db(logger, env)
    _init_redis(logger, env)
    app.state.certified_client = CertifiedApiClient.from_settings()
    app.state.poll_registry = GenerationPollRegistry()

    try:
        yield
    finally:
        await _shutdown_resources(app, logger)


# --- Application Initialization and Middleware ---

configure_logging()
app = FastAPI(
    title="CertQuiz Backend",
    description="Certified skill quiz sessions: question generation, answers and submission.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors.origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Adds a unique trace_id to each request for observability."""
    structlog.contextvars.clear_contextvars()
    trace_id = str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(trace_id=trace_id)
    start_time = time.perf_counter()
    logger = structlog.get_logger(__name__)
    logger.info("request_started", method=request.method, path=request.url.path)

    response = await call_next(request)

    process_time = time.perf_counter() - start_time
    response.headers["X-Trace-ID"] = trace_id
    if _otel_trace:
        sp = _otel_trace.get_current_span()
        sc = sp.get_span_context() if sp else None
        if sc and sc.trace_id and sc.span_id:
            response.headers["traceparent"] = f"00-{sc.trace_id:032x}-{sc.span_id:016x}-01"
            structlog.contextvars.bind_contextvars(otel_trace_id=f"{sc.trace_id:032x}")
    logger.info("request_finished", status_code=response.status_code, duration_ms=int(process_time * 1000))
    return response

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catches and logs any unhandled exceptions."""
    logger = structlog.get_logger(__name__)
    trace_id = structlog.contextvars.get_contextvars().get("trace_id", "not_found")

    logger.exception("unhandled_exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "An unexpected internal error occurred.",
            "errorCode": "INTERNAL_SERVER_ERROR",
            "traceId": trace_id,
        },
    )

# --- Root and Health/Readiness Endpoints ---

@app.get("/", include_in_schema=False)
async def root():
    return RedirectResponse(url="/docs")

# Health: always 200, no DB/Redis dependency
@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}

# Readiness: 503 when a configured dependency is down
@app.get("/readiness", include_in_schema=False)
async def readiness():
    if deps.db_engine is not None:
        try:
            async with deps.db_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError):
            return JSONResponse({"status": "unready", "reason": "db"}, status_code=503)

    client = await deps.get_redis_client()
    if client is not None:
        try:
            await client.ping()
        except (RedisError, OSError):
            return JSONResponse({"status": "unready", "reason": "redis"}, status_code=503)

    return JSONResponse({"status": "ready"})


# --- API Routers ---

API_PREFIX = settings.project.api_prefix

app.include_router(config.router, prefix=API_PREFIX)
app.include_router(quiz.router, prefix=API_PREFIX)
