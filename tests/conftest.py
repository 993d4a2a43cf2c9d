"""Shared test fixtures for all tests"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from lab_platform.core.database import create_session_factory
from lab_platform.models import Base, ContainerModel, ContainerStatus, QuotaModel
from lab_platform.services.container_runtime import SimulatedRuntime
from lab_platform.services.event_sink import RecordingEventSink
from lab_platform.services.platform import build_platform


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """
    Create test database engine.

    A file-backed SQLite database so every session sees the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'lab_platform.db'}",
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create test database session"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def event_sink():
    return RecordingEventSink()


@pytest.fixture
def runtime():
    """Simulated runtime whose instances get an address on the first poll"""
    return SimulatedRuntime(polls_until_ready=1)


@pytest.fixture
def platform(session_factory, runtime, event_sink):
    """Service graph with short timeouts and no retry backoff"""
    return build_platform(
        session_factory,
        runtime=runtime,
        event_sink=event_sink,
        lock_retry_interval=0.01,
        lock_timeout=2.0,
        readiness_timeout=1.0,
        readiness_poll_interval=0.01,
        max_attempts=3,
        retry_backoff=0,
        worker_concurrency=2,
        worker_poll_interval=0.01,
        wait_timeout=10.0,
        wait_poll_interval=0.01
    )


@pytest.fixture
def make_quota(session_factory):
    """Insert a quota row"""
    async def _make_quota(**kwargs) -> QuotaModel:
        async with session_factory() as session:
            quota = QuotaModel(**kwargs)
            session.add(quota)
            await session.commit()
            return quota
    return _make_quota


@pytest.fixture
def make_container(session_factory):
    """Insert a container row directly, bypassing admission"""
    counter = {"n": 0}

    async def _make_container(status: ContainerStatus = ContainerStatus.CREATING, **kwargs) -> ContainerModel:
        counter["n"] += 1
        values = {
            "name": f"lab-test{counter['n']:02d}",
            "user_id": 1,
            "image": "ubuntu:24.04",
            "cpu": 1,
            "memory_mb": 1024,
            "disk_mb": 10240,
            "status": status,
            "meta": {},
        }
        values.update(kwargs)
        async with session_factory() as session:
            container = ContainerModel(**values)
            session.add(container)
            await session.commit()
            return container
    return _make_container
