"""FastAPI dependencies shared by the API routes."""

from typing import Callable

from fastapi import Request

from genmedia.core.config import Settings
from genmedia.services.job_queue import JobQueue
from genmedia.uow import UnitOfWork


def get_settings(request: Request) -> Settings:
    """Get the settings instance the application was started with.

    Returns:
        Settings stored on app.state by the app factory
    """
    return request.app.state.settings


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.generations.list_recent(limit=10)
    """
    return request.app.state.uow_factory


def get_job_queue(request: Request) -> JobQueue:
    """Get the generation job queue from app state."""
    return request.app.state.job_queue
