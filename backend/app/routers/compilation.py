"""
Compilation endpoints.

POST starts a background compilation and returns at once; the client polls
GET /status until the job is complete or failed, then DELETEs it.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from app.dependencies import get_folder_id, get_tracker
from app.errors import AlreadyRunningError
from app.middleware import AuthenticatedUser, get_current_user
from app.models import CompileRequestBody, CompileStartResponse, CompileStatusResponse
from app.services.ffmpeg_utils import encoder_available
from app.services.job_tracker import JobTracker


router = APIRouter()


@router.post("", response_model=CompileStartResponse)
async def start_compilation(
    body: CompileRequestBody,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    folder_id: str = Depends(get_folder_id),
    tracker: JobTracker = Depends(get_tracker),
):
    """
    Start compiling the user's daily clips.

    Returns 409 with the running job id if one is already in progress.
    """
    print(f"[COMPILE] User: {user.name or 'Unknown'} ({user.identity}) starting compilation...", flush=True)

    if not encoder_available(request.app.state.ffmpeg_path):
        raise HTTPException(
            status_code=503,
            detail="FFmpeg is not available. Install ffmpeg or set FFMPEG_PATH.",
        )

    try:
        compilation_request = body.to_request()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if compilation_request.music_track:
        print(f"[COMPILE] Music data received: {len(compilation_request.music_track)} bytes", flush=True)

    try:
        job = tracker.start_compilation(user.identity, folder_id, compilation_request)
    except AlreadyRunningError as e:
        return JSONResponse(
            status_code=409,
            content=CompileStartResponse(
                success=False,
                status="already_compiling",
                message=str(e),
                job_id=e.job_id,
            ).model_dump(),
        )

    return CompileStartResponse(
        success=True,
        status="started",
        message="Compilation started",
        job_id=job.id,
    )


@router.get("/status", response_model=CompileStatusResponse)
async def get_compilation_status(
    user: AuthenticatedUser = Depends(get_current_user),
    tracker: JobTracker = Depends(get_tracker),
):
    job = tracker.get_status(user.identity)
    if job is None:
        return CompileStatusResponse.idle()
    return CompileStatusResponse.from_job(job)


@router.delete("/status")
async def clear_compilation_status(
    user: AuthenticatedUser = Depends(get_current_user),
    tracker: JobTracker = Depends(get_tracker),
):
    tracker.clear_status(user.identity)
    return {"success": True}
