"""
Gallery endpoints: daily clips, their thumbnails and finished compilations
in the user's folder, plus recording/upload of a day's clip.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from app.config import Settings
from app.dependencies import get_app_settings, get_folder_id, get_ingest, get_storage, storage_http_error
from app.errors import IngestError, StorageError
from app.models import ClipListItem, ClipListResponse, ClipUploadResponse, CompilationListResponse
from app.services.clip_catalog import daily_date, thumbnail_name
from app.services.clip_ingest import ClipIngestService, IngestedClip
from app.services.ffmpeg_utils import encoder_available
from app.services.gallery import list_compilations, list_daily_clips
from app.services.storage import StorageService


clips_router = APIRouter()
compilations_router = APIRouter()
thumbnails_router = APIRouter()

THUMBNAIL_CACHE_CONTROL = "public, max-age=86400"


@clips_router.get("", response_model=ClipListResponse)
async def list_clips(
    folder_id: str = Depends(get_folder_id),
    storage: StorageService = Depends(get_storage),
):
    try:
        files = await asyncio.to_thread(storage.list_files, folder_id)
    except StorageError as e:
        raise storage_http_error(e)
    return ClipListResponse(clips=list_daily_clips(files), folder_id=folder_id)


def _require_encoder(request: Request) -> None:
    if not encoder_available(request.app.state.ffmpeg_path):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="FFmpeg is not available on the server",
        )


def _uploaded(clip: IngestedClip) -> ClipUploadResponse:
    return ClipUploadResponse(
        file=ClipListItem(
            id=clip.file.id,
            name=clip.file.name,
            date=clip.date,
            type=clip.kind,
            created_at=clip.file.created_at or datetime.now(timezone.utc),
            size=clip.file.size,
            thumbnail_id=clip.thumbnail.id if clip.thumbnail else None,
        )
    )


@clips_router.post("", response_model=ClipUploadResponse)
async def record_clip(
    request: Request,
    video: UploadFile = File(...),
    file_name: Optional[str] = Form(None, alias="fileName"),
    folder_id: str = Depends(get_folder_id),
    ingest: ClipIngestService = Depends(get_ingest),
):
    """Store a browser recording (webm) as the day's mp4 clip plus thumbnail."""
    _require_encoder(request)
    data = await video.read()
    try:
        clip = await ingest.ingest_recording(folder_id, data, file_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IngestError as e:
        raise HTTPException(status_code=500, detail=f"Failed to process file: {e}")
    except StorageError as e:
        raise storage_http_error(e)
    return _uploaded(clip)


@clips_router.post("/upload-trim", response_model=ClipUploadResponse)
async def upload_clip(
    request: Request,
    video: UploadFile = File(...),
    date: str = Form(...),
    start_time: float = Form(0.0, alias="startTime"),
    folder_id: str = Depends(get_folder_id),
    ingest: ClipIngestService = Depends(get_ingest),
):
    """
    Store an uploaded file as the clip for ``date``.

    Videos are cut to one second from ``startTime``; photos are kept as-is.
    """
    _require_encoder(request)
    data = await video.read()
    try:
        clip = await ingest.ingest_upload(folder_id, data, video.content_type, date, start_time)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IngestError as e:
        raise HTTPException(status_code=500, detail=f"Failed to process file: {e}")
    except StorageError as e:
        raise storage_http_error(e)
    return _uploaded(clip)


@clips_router.get("/{file_id:path}/video")
async def stream_clip(
    file_id: str,
    folder_id: str = Depends(get_folder_id),
    storage: StorageService = Depends(get_storage),
):
    if not storage.is_in_folder(file_id, folder_id):
        raise HTTPException(status_code=404, detail="Clip not found")
    try:
        chunks = await asyncio.to_thread(storage.open_stream, file_id)
    except StorageError as e:
        raise storage_http_error(e)
    return StreamingResponse(chunks, media_type=storage.guess_content_type(file_id))


@clips_router.delete("/{file_id:path}")
async def delete_clip(
    file_id: str,
    folder_id: str = Depends(get_folder_id),
    storage: StorageService = Depends(get_storage),
):
    """Delete a daily clip and, if present, its thumbnail."""
    if not storage.is_in_folder(file_id, folder_id):
        raise HTTPException(status_code=404, detail="Clip not found")

    date = daily_date(file_id[len(folder_id):])
    try:
        await asyncio.to_thread(storage.delete_file, file_id)
        if date:
            thumb_id = folder_id + thumbnail_name(date)
            try:
                await asyncio.to_thread(storage.delete_file, thumb_id)
            except StorageError as thumb_err:
                print(f"⚠️ Could not delete thumbnail {thumb_id}: {thumb_err}", flush=True)
    except StorageError as e:
        raise storage_http_error(e)
    return {"success": True}


@compilations_router.get("", response_model=CompilationListResponse)
async def get_compilations(
    folder_id: str = Depends(get_folder_id),
    storage: StorageService = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
):
    try:
        files = await asyncio.to_thread(storage.list_files, folder_id)
    except StorageError as e:
        raise storage_http_error(e)
    return CompilationListResponse(
        compilations=list_compilations(files, settings.compilation.output_prefix)
    )


@compilations_router.delete("/{file_id:path}")
async def delete_compilation(
    file_id: str,
    folder_id: str = Depends(get_folder_id),
    storage: StorageService = Depends(get_storage),
):
    if not storage.is_in_folder(file_id, folder_id):
        raise HTTPException(status_code=404, detail="Compilation not found")
    try:
        await asyncio.to_thread(storage.delete_file, file_id)
    except StorageError as e:
        raise storage_http_error(e)
    print(f"[DELETE-COMPILATION] deleted {file_id}", flush=True)
    return {"success": True}


@compilations_router.get("/{file_id:path}")
async def download_compilation(
    file_id: str,
    folder_id: str = Depends(get_folder_id),
    storage: StorageService = Depends(get_storage),
):
    """Stream a finished compilation as an mp4 attachment."""
    if not storage.is_in_folder(file_id, folder_id):
        raise HTTPException(status_code=404, detail="Compilation not found")
    try:
        chunks = await asyncio.to_thread(storage.open_stream, file_id)
    except StorageError as e:
        raise storage_http_error(e)

    name = file_id[len(folder_id):]
    return StreamingResponse(
        chunks,
        media_type="video/mp4",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


@thumbnails_router.get("/{file_id:path}")
async def get_thumbnail(
    file_id: str,
    folder_id: str = Depends(get_folder_id),
    storage: StorageService = Depends(get_storage),
):
    if not storage.is_in_folder(file_id, folder_id):
        raise HTTPException(status_code=404, detail="Thumbnail not found")
    try:
        chunks = await asyncio.to_thread(storage.open_stream, file_id)
    except StorageError as e:
        raise storage_http_error(e)
    return StreamingResponse(
        chunks,
        media_type="image/jpeg",
        headers={"Cache-Control": THUMBNAIL_CACHE_CONTROL},
    )
