"""Fixtures for API integration tests"""

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from lab_platform.main import create_app


@pytest_asyncio.fixture
async def client(platform):
    """
    HTTP client bound to an app that uses the test platform.

    ASGITransport does not run the lifespan, so the worker pool is started
    and stopped here.
    """
    app = create_app(platform=platform, run_workers=False)
    await platform.workers.start()
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        await platform.workers.stop()
