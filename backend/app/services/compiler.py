"""
Compilation engine.

One run:
1. Build the catalog (before anything touches the disk)
2. Allocate a fresh workspace
3. Download every item, in date order
4. Normalize every item into a 1s segment, dropping the raw file
5. Persist the music track, if any
6. Concatenate segments (stream copy; music looped under the video)
7. Upload the result into the same folder
8. Destroy the workspace, whatever happened
"""

import asyncio
import os
import traceback as tb
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from app.config import Settings
from app.errors import (
    ConcatenationError,
    DownloadError,
    StorageError,
    StoragePermissionError,
    UploadError,
)
from app.models import (
    CompilationRequest,
    CompilationResult,
    CompilationStage,
    MediaItem,
    MediaKind,
    ProgressEvent,
)
from app.services.clip_catalog import ClipCatalogBuilder
from app.services.ffmpeg_utils import FFmpegError, run_ffmpeg
from app.services.media_normalizer import MediaNormalizer
from app.services.storage import StorageService
from app.services.workspace import Workspace


ProgressSink = Callable[[ProgressEvent], None]


def format_for_display(iso_date: str) -> str:
    """2024-03-05 -> 05-03-2024"""
    return "-".join(reversed(iso_date.split("-")))


def generation_timestamp(now: Optional[datetime] = None) -> str:
    """UTC time as 2024-03-05T10-20-30 (safe in file names)."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")


def build_output_name(prefix: str, request: CompilationRequest, now: Optional[datetime] = None) -> str:
    timestamp = generation_timestamp(now)
    if request.has_range:
        return (
            f"{prefix}_{format_for_display(request.start_date)}"
            f"_to_{format_for_display(request.end_date)}_{timestamp}.mp4"
        )
    return f"{prefix}-compilation_{timestamp}.mp4"


def write_concat_file(paths: Sequence[Path], list_path: Path) -> Path:
    with open(list_path, "w", encoding="utf-8") as f:
        for p in paths:
            # concat demuxer expects `file '...path...'`
            escaped = str(p).replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")
    return list_path


class CompilationEngine:
    """Turns a folder of daily clips into one uploaded highlight reel."""

    def __init__(
        self,
        storage: StorageService,
        catalog: ClipCatalogBuilder,
        normalizer: MediaNormalizer,
        settings: Settings,
    ):
        self.storage = storage
        self.catalog = catalog
        self.normalizer = normalizer
        self.settings = settings
        self.ffmpeg_path = normalizer.ffmpeg_path

    def concat_command(self, list_path: Path, output_path: Path, music_path: Optional[Path] = None) -> List[str]:
        cmd = [
            self.ffmpeg_path,
            "-v", "error",
            "-f", "concat",
            "-safe", "0",
            "-i", str(list_path),
        ]
        if music_path is None:
            # Segments share encode parameters, so no re-encode is needed.
            cmd += [
                "-map", "0:v:0",
                "-map", "0:a:0",
                "-c", "copy",
            ]
        else:
            # Music replaces the per-segment audio, looped; the video decides the length.
            cmd += [
                "-stream_loop", "-1",
                "-i", str(music_path),
                "-map", "0:v:0",
                "-map", "1:a:0",
                "-c:v", "copy",
                "-c:a", self.settings.ffmpeg.audio_codec,
                "-b:a", self.settings.ffmpeg.music_audio_bitrate,
                "-shortest",
            ]
        cmd += ["-movflags", "+faststart", "-y", str(output_path)]
        return cmd

    async def compile(
        self,
        folder_id: str,
        request: CompilationRequest,
        progress: Optional[ProgressSink] = None,
    ) -> CompilationResult:
        """
        Run one compilation end to end.

        Raises:
            CompilationError subclasses, or StoragePermissionError
        """
        stage = CompilationStage.IDLE

        def emit(new_stage: CompilationStage, message: str, current: int = 0, total: int = 0) -> None:
            nonlocal stage
            stage = new_stage
            print(f"🎬 [{new_stage.value}] {message}", flush=True)
            if progress is not None:
                progress(ProgressEvent(stage=new_stage, message=message, current=current, total=total))

        emit(CompilationStage.FETCHING, "Fetching clips...")
        items = await self.catalog.build(folder_id, request.start_date, request.end_date)
        total = len(items)
        emit(CompilationStage.FETCHING, f"Found {total} clips", 0, total)

        output_name = build_output_name(self.settings.compilation.output_prefix, request)

        os.makedirs(self.settings.temp_dir, exist_ok=True)
        workspace = Workspace(self.settings.temp_dir).create()
        try:
            raw_files: List[Path] = []
            for i, item in enumerate(items, start=1):
                emit(CompilationStage.DOWNLOADING, f"Downloading {i}/{total}...", i, total)
                raw_files.append(await self._download(item, workspace, i))

            segments: List[Path] = []
            for i, (item, raw) in enumerate(zip(items, raw_files), start=1):
                if item.kind == MediaKind.IMAGE:
                    msg = f"Converting image {i}/{total} to video..."
                else:
                    msg = f"Normalizing clip {i}/{total}..."
                emit(CompilationStage.NORMALIZING, msg, i, total)
                segment = await self.normalizer.normalize(item, raw, workspace.path)
                raw.unlink(missing_ok=True)
                segments.append(segment)

            music_path: Optional[Path] = None
            if request.music_track:
                emit(CompilationStage.CONCATENATING, "Processing music...")
                music_path = workspace.file("music.mp3")
                music_path.write_bytes(request.music_track)
                print(f"🎵 Music saved ({len(request.music_track)} bytes)", flush=True)

            emit(CompilationStage.CONCATENATING, "Compiling video...", total, total)
            output_path = workspace.file(output_name)
            await self._concatenate(segments, output_path, music_path, workspace)

            emit(CompilationStage.UPLOADING, "Uploading to storage...")
            uploaded = await self._upload(folder_id, output_name, output_path)

            emit(CompilationStage.DONE, "Done!", total, total)
            return CompilationResult(file_id=uploaded.id, file_name=output_name, clip_count=total)
        except Exception as e:
            print(f"❌ Compilation failed during {stage.value}: {e}", flush=True)
            emit(CompilationStage.FAILED, "Failed")
            raise
        finally:
            workspace.destroy()

    async def _download(self, item: MediaItem, workspace: Workspace, index: int) -> Path:
        target = workspace.file(f"{index:04d}-{item.date}.{item.extension}")
        try:
            await asyncio.to_thread(self.storage.download_file, item.remote_id, str(target))
        except StoragePermissionError:
            raise
        except (StorageError, OSError) as e:
            raise DownloadError(f"Failed to download clip for {item.date}: {e}", date=item.date) from e
        if not target.exists():
            raise DownloadError(f"Download of {item.name} produced no file", date=item.date)
        return target

    async def _concatenate(
        self,
        segments: Sequence[Path],
        output_path: Path,
        music_path: Optional[Path],
        workspace: Workspace,
    ) -> None:
        list_path = write_concat_file(segments, workspace.file("filelist.txt"))
        cmd = self.concat_command(list_path, output_path, music_path)
        try:
            await asyncio.to_thread(
                run_ffmpeg,
                cmd,
                ffmpeg_path=self.ffmpeg_path,
                timeout=self.settings.ffmpeg.concat_timeout_seconds,
                threads=self.settings.ffmpeg.threads,
            )
        except FFmpegError as e:
            if e.stderr:
                print(f"--- FFmpeg stderr (concat) ---\n{e.stderr}\n--- end ffmpeg stderr ---", flush=True)
            raise ConcatenationError(f"Failed to compile video: {e}") from e
        except OSError as e:
            raise ConcatenationError(f"Failed to compile video: {e}") from e

        if not output_path.exists() or os.path.getsize(output_path) == 0:
            raise ConcatenationError("Compilation produced an empty file")

    async def _upload(self, folder_id: str, name: str, path: Path):
        try:
            return await asyncio.to_thread(
                self.storage.upload_file, folder_id, name, str(path), "video/mp4"
            )
        except StoragePermissionError:
            raise
        except (StorageError, OSError) as e:
            tb.print_exc()
            raise UploadError(f"Failed to upload compilation: {e}") from e
