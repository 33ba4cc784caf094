from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional

from app.config import Settings, get_settings
from app.services.clip_catalog import ClipCatalogBuilder
from app.services.clip_ingest import ClipIngestService
from app.services.compiler import CompilationEngine
from app.services.ffmpeg_utils import encoder_available, resolve_encoder_path, resolve_ffprobe_path
from app.services.job_tracker import JobTracker
from app.services.media_normalizer import MediaNormalizer
from app.services.storage import StorageService
from app.routers import clips, compilation


def build_tracker(
    settings: Settings,
    storage: StorageService,
    ffmpeg_path: str,
    ffprobe_path: Optional[str] = None,
) -> JobTracker:
    """Wire the compilation pipeline: catalog + normalizer -> engine -> tracker."""
    catalog = ClipCatalogBuilder(storage, min_clips=settings.min_clips)
    normalizer = MediaNormalizer(ffmpeg_path, settings.ffmpeg, ffprobe_path)
    engine = CompilationEngine(storage, catalog, normalizer, settings)
    return JobTracker(engine)


def create_app(settings: Optional[Settings] = None, storage: Optional[StorageService] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        app_storage = storage
        if app_storage is None:
            app_storage = StorageService(settings)
            app.state.storage_ready = app_storage.ensure_bucket()
        else:
            app.state.storage_ready = True

        # Resolved once; every run reuses it.
        ffmpeg_path = resolve_encoder_path(settings.ffmpeg.binary_path)
        ffprobe_path = resolve_ffprobe_path(ffmpeg_path, settings.ffmpeg.ffprobe_path)
        print(f"🎞️ Using ffmpeg: {ffmpeg_path} (min clips: {settings.min_clips})", flush=True)
        if ffprobe_path is None:
            print("⚠️ ffprobe not found; reading stream info from ffmpeg -i", flush=True)

        app.state.storage = app_storage
        app.state.ffmpeg_path = ffmpeg_path
        app.state.tracker = build_tracker(settings, app_storage, ffmpeg_path, ffprobe_path)
        app.state.ingest = ClipIngestService(
            app_storage, ffmpeg_path, settings.ffmpeg, settings.temp_dir, ffprobe_path
        )

        yield

        print("👋 Shutting down...", flush=True)
        await app.state.tracker.shutdown()

    app = FastAPI(
        title="365 Moments",
        description="One second a day, compiled into a yearly highlight reel",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    origins = [o.strip() for o in (settings.app.cors_origins or "").split(",") if o.strip()]
    if not origins:
        origins = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Wildcard + credentials is not valid CORS.
    allow_credentials = True
    if "*" in origins:
        origins = ["*"]
        allow_credentials = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(compilation.router, prefix="/api/compile", tags=["Compile"])
    app.include_router(clips.clips_router, prefix="/api/clips", tags=["Clips"])
    app.include_router(clips.compilations_router, prefix="/api/compilations", tags=["Compilations"])
    app.include_router(clips.thumbnails_router, prefix="/api/thumbnails", tags=["Clips"])

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "services": {
                "storage_ready": bool(getattr(app.state, "storage_ready", False)),
                "ffmpeg_available": encoder_available(getattr(app.state, "ffmpeg_path", "ffmpeg")),
                "min_clips": settings.min_clips,
                "environment": settings.app.environment,
            },
        }

    return app


app = create_app()
