"""Database configuration and connection management"""

import asyncio
from typing import Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import sessionmaker
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.asyncio import Redis, ConnectionPool
from lab_platform.core.config import settings

# Import Base from models so every table is registered on the same metadata
from lab_platform.models import Base

# SQL async engine
sql_engine: Optional[AsyncEngine] = None
async_session_factory: Optional[sessionmaker] = None

# MongoDB client (event sink)
mongo_client: Optional[AsyncIOMotorClient] = None
mongo_db: Optional[AsyncIOMotorDatabase] = None

# Redis client (reservation lock backend)
redis_client: Optional[Redis] = None
redis_pool: Optional[ConnectionPool] = None


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases"""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.DEBUG)
    return create_async_engine(
        database_url,
        echo=settings.DEBUG,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=30,  # Timeout for getting connection from pool
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,  # Verify connections before using
    )


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(database_url: Optional[str] = None, create_tables: bool = True) -> None:
    """Initialize the SQL engine and session factory"""
    global sql_engine, async_session_factory

    sql_engine = create_engine_for_url(database_url or settings.DATABASE_URL)
    async_session_factory = create_session_factory(sql_engine)

    if create_tables:
        async with sql_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close SQL engine and cleanup connections"""
    global sql_engine, async_session_factory
    if sql_engine:
        await sql_engine.dispose()
        sql_engine = None
        async_session_factory = None


def get_session_factory() -> sessionmaker:
    if async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return async_session_factory


async def check_db_connection() -> bool:
    """
    Check if the SQL database is reachable.
    Used for health checks.
    """
    if sql_engine is None:
        return False

    try:
        async with sql_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


# ============================================================================
# MongoDB Configuration
# ============================================================================

async def init_mongodb() -> None:
    """Initialize MongoDB async client when MONGODB_URL is configured"""
    global mongo_client, mongo_db

    if not settings.MONGODB_URL:
        return

    mongo_client = AsyncIOMotorClient(
        settings.MONGODB_URL,
        maxPoolSize=50,  # Maximum connections in pool
        minPoolSize=1,  # Minimum connections in pool
        maxIdleTimeMS=45000,  # Close idle connections after 45 seconds
        serverSelectionTimeoutMS=5000,  # Timeout for server selection
    )

    mongo_db = mongo_client[settings.MONGODB_DATABASE]


async def close_mongodb() -> None:
    """Close MongoDB client and cleanup connections"""
    global mongo_client, mongo_db
    if mongo_client:
        mongo_client.close()
        mongo_client = None
        mongo_db = None


def get_mongodb() -> Optional[AsyncIOMotorDatabase]:
    """MongoDB database for the event sink, or None when not configured"""
    return mongo_db


async def check_mongodb_connection() -> bool:
    """
    Check if MongoDB connection is healthy.
    Used for health checks.
    """
    if mongo_client is None:
        return False

    try:
        await mongo_client.admin.command('ping')
        return True
    except Exception:
        return False


# ============================================================================
# Redis Configuration
# ============================================================================

def get_redis_url() -> str:
    """Construct Redis connection URL"""
    if settings.REDIS_PASSWORD:
        return (
            f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:"
            f"{settings.REDIS_PORT}/{settings.REDIS_DB}"
        )
    return f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"


async def init_redis() -> None:
    """Initialize Redis async client with connection pooling and retry logic"""
    global redis_client, redis_pool

    redis_pool = ConnectionPool.from_url(
        get_redis_url(),
        max_connections=50,  # Maximum connections in pool
        decode_responses=True,  # Automatically decode responses to strings
        socket_connect_timeout=5,  # Connection timeout
        socket_keepalive=True,  # Enable TCP keepalive
        retry_on_timeout=True,  # Retry on timeout
        health_check_interval=30,  # Health check every 30 seconds
    )

    redis_client = Redis(connection_pool=redis_pool)

    max_retries = 3
    retry_delay = 1  # seconds

    for attempt in range(max_retries):
        try:
            await redis_client.ping()
            break
        except Exception as e:
            if attempt == max_retries - 1:
                raise RuntimeError(f"Failed to connect to Redis after {max_retries} attempts: {e}")
            await asyncio.sleep(retry_delay * (attempt + 1))


async def close_redis() -> None:
    """Close Redis client and cleanup connections"""
    global redis_client, redis_pool
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None


def get_redis() -> Redis:
    """Get Redis client instance"""
    if redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


async def check_redis_connection() -> bool:
    """
    Check if Redis connection is healthy.
    Used for health checks.
    """
    if redis_client is None:
        return False

    try:
        await redis_client.ping()
        return True
    except Exception:
        return False
