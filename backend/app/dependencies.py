"""FastAPI dependencies resolving the services built at startup (see main.lifespan)."""

import asyncio

from fastapi import Depends, HTTPException, Request, status

from app.config import Settings
from app.errors import StorageError, StoragePermissionError
from app.middleware import AuthenticatedUser, get_current_user
from app.services.clip_ingest import ClipIngestService
from app.services.job_tracker import JobTracker
from app.services.storage import StorageService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_tracker(request: Request) -> JobTracker:
    return request.app.state.tracker


def get_ingest(request: Request) -> ClipIngestService:
    return request.app.state.ingest


def storage_http_error(e: StorageError) -> HTTPException:
    if isinstance(e, StoragePermissionError):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": str(e), "requireReauth": True},
        )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


async def get_folder_id(
    user: AuthenticatedUser = Depends(get_current_user),
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """The signed-in user's content folder, created on first use."""
    try:
        return await asyncio.to_thread(
            storage.get_or_create_folder, settings.storage.folder_name, user.identity
        )
    except StorageError as e:
        raise storage_http_error(e)
