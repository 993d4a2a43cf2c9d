"""Common API dependencies"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from lab_platform.services.platform import LabPlatform


def get_platform(request: Request) -> LabPlatform:
    """
    Service graph attached to the application at startup.

    Usage in FastAPI:
        @router.get("/items")
        async def get_items(platform: LabPlatform = Depends(get_platform)):
            ...
    """
    platform = getattr(request.app.state, "platform", None)
    if platform is None:
        raise RuntimeError("Lab platform not initialized")
    return platform


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session from the platform's factory, committed when the request succeeds"""
    platform = get_platform(request)
    async with platform.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
