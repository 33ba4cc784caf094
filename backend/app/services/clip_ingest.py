"""
Clip ingest: one day's recording or upload -> stored daily clip + thumbnail.

Daily clips land in the user's folder as ``YYYY-MM-DD.mp4`` (or the
original ``.jpg``/``.png`` for photos) with a ``YYYY-MM-DD.thumb.jpg``
preview next to them, which is exactly what the catalog and the gallery
read back.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import date as date_cls
from pathlib import Path
from typing import List, Optional

from app.config import FFmpegConfig
from app.errors import IngestError
from app.models import MediaKind, RemoteFile, validate_iso_date
from app.services.clip_catalog import thumbnail_name
from app.services.ffmpeg_utils import FFmpegError, inspect_media, run_ffmpeg
from app.services.storage import StorageService
from app.services.workspace import Workspace


RECORDING_THUMB_FILTER = "scale=320:-1"
PHOTO_THUMB_FILTER = "scale=160:90:force_original_aspect_ratio=decrease,pad=160:90:(ow-iw)/2:(oh-ih)/2"


@dataclass
class IngestedClip:
    date: str
    kind: MediaKind
    file: RemoteFile
    thumbnail: Optional[RemoteFile] = None


class ClipIngestService:
    """Turns browser recordings and uploads into daily clips in a user's folder."""

    def __init__(
        self,
        storage: StorageService,
        ffmpeg_path: str,
        config: Optional[FFmpegConfig] = None,
        temp_dir: str = "./temp_storage",
        ffprobe_path: Optional[str] = None,
    ):
        self.storage = storage
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.config = config or FFmpegConfig()
        self.temp_dir = temp_dir

    # Commands

    def _encode_args(self) -> List[str]:
        c = self.config
        return [
            "-c:v", c.video_codec,
            "-preset", c.preset,
            "-crf", str(c.crf),
            "-c:a", c.audio_codec,
            "-b:a", c.segment_audio_bitrate,
            "-movflags", "+faststart",
        ]

    def convert_command(self, source_path: str, output_path: str) -> List[str]:
        """Browser recording (webm) -> mp4."""
        return [self.ffmpeg_path, "-v", "error", "-i", source_path, *self._encode_args(), "-y", output_path]

    def trim_command(self, source_path: str, output_path: str, start: float, *, has_audio: bool = True) -> List[str]:
        """Cut one segment-length window starting at ``start`` seconds."""
        end = start + self.config.segment_seconds
        cmd = [
            self.ffmpeg_path,
            "-v", "error",
            "-i", source_path,
            "-vf", f"trim=start={start:g}:end={end:g},setpts=PTS-STARTPTS",
        ]
        if has_audio:
            cmd += ["-af", f"atrim=start={start:g}:end={end:g},asetpts=PTS-STARTPTS"]
        cmd += [*self._encode_args(), "-y", output_path]
        return cmd

    def thumbnail_command(self, source_path: str, output_path: str) -> List[str]:
        return [
            self.ffmpeg_path,
            "-v", "error",
            "-i", source_path,
            "-ss", "0",
            "-vframes", "1",
            "-vf", RECORDING_THUMB_FILTER,
            "-q:v", "2",
            "-y", output_path,
        ]

    def image_thumbnail_command(self, source_path: str, output_path: str) -> List[str]:
        return [
            self.ffmpeg_path,
            "-v", "error",
            "-i", source_path,
            "-vf", PHOTO_THUMB_FILTER,
            "-y", output_path,
        ]

    # Helpers

    async def _encode(self, cmd: List[str], what: str) -> None:
        try:
            await asyncio.to_thread(
                run_ffmpeg,
                cmd,
                ffmpeg_path=self.ffmpeg_path,
                timeout=self.config.ingest_timeout_seconds,
                threads=self.config.threads,
            )
        except FFmpegError as e:
            if e.stderr:
                print(f"--- FFmpeg stderr ({what}) ---\n{e.stderr}\n--- end ffmpeg stderr ---", flush=True)
            if e.timed_out:
                raise IngestError(f"{what} timed out after {self.config.ingest_timeout_seconds}s") from e
            raise IngestError(str(e)) from e

        output = Path(cmd[-1])
        if not output.exists() or output.stat().st_size == 0:
            raise IngestError(f"{what} produced no output")

    async def _thumbnail(self, cmd: List[str]) -> Optional[Path]:
        """Thumbnails are optional; a failed one is logged and skipped."""
        try:
            await self._encode(cmd, "thumbnail")
        except IngestError as e:
            print(f"⚠️ Thumbnail generation failed: {e}", flush=True)
            return None
        return Path(cmd[-1])

    async def _store(self, folder_id: str, name: str, path: Path, content_type: str) -> RemoteFile:
        return await asyncio.to_thread(self.storage.upload_file, folder_id, name, str(path), content_type)

    async def _store_thumbnail(self, folder_id: str, day: str, path: Optional[Path]) -> Optional[RemoteFile]:
        if path is None:
            return None
        return await self._store(folder_id, thumbnail_name(day), path, "image/jpeg")

    def _workspace(self) -> Workspace:
        return Workspace(self.temp_dir, name=f"upload-{uuid.uuid4()}")

    # Operations

    async def ingest_recording(
        self,
        folder_id: str,
        data: bytes,
        file_name: Optional[str] = None,
        today: Optional[date_cls] = None,
    ) -> IngestedClip:
        """
        Store today's (or ``file_name``'s) browser recording as an mp4.

        ``file_name`` defaults to ``<today>.webm``; the day is the part
        before the first dot.

        Raises:
            ValueError: the name does not start with a YYYY-MM-DD date
            IngestError: conversion failed
            StorageError: upload failed
        """
        if not data:
            raise ValueError("Uploaded file is empty")
        file_name = file_name or f"{(today or date_cls.today()).isoformat()}.webm"
        day = validate_iso_date(Path(file_name).name.split(".", 1)[0])
        if not day:
            raise ValueError(f"Invalid file name '{file_name}'")

        with self._workspace() as ws:
            source = ws.file("recording.webm")
            source.write_bytes(data)
            output = ws.file(f"{day}.mp4")

            print(f"🎥 Converting recording for {day} ({len(data)} bytes)", flush=True)
            await self._encode(self.convert_command(str(source), str(output)), "conversion")
            thumb = await self._thumbnail(self.thumbnail_command(str(output), str(ws.file(thumbnail_name(day)))))

            stored = await self._store(folder_id, output.name, output, "video/mp4")
            thumb_file = await self._store_thumbnail(folder_id, day, thumb)

        print(f"✅ Stored clip {stored.id}", flush=True)
        return IngestedClip(date=day, kind=MediaKind.VIDEO, file=stored, thumbnail=thumb_file)

    async def ingest_upload(
        self,
        folder_id: str,
        data: bytes,
        content_type: Optional[str],
        target_date: Optional[str],
        start_time: float = 0.0,
    ) -> IngestedClip:
        """
        Store an uploaded file as the clip for ``target_date``.

        Photos are kept as they are (jpg/png). Videos are cut to one
        segment starting at ``start_time`` and re-encoded to mp4.

        Raises:
            ValueError: missing/invalid date, negative start time, empty file
            IngestError: trimming failed
            StorageError: upload failed
        """
        day = validate_iso_date(target_date)
        if not day:
            raise ValueError("date is required (YYYY-MM-DD)")
        if start_time < 0:
            raise ValueError("startTime must not be negative")
        if not data:
            raise ValueError("Uploaded file is empty")

        content_type = (content_type or "").lower()
        with self._workspace() as ws:
            if content_type.startswith("image/"):
                ext = ".png" if "png" in content_type else ".jpg"
                source = ws.file(f"{day}{ext}")
                source.write_bytes(data)

                print(f"🖼️ Storing photo for {day}", flush=True)
                thumb = await self._thumbnail(
                    self.image_thumbnail_command(str(source), str(ws.file(thumbnail_name(day))))
                )
                stored = await self._store(
                    folder_id, source.name, source, self.storage.guess_content_type(source.name)
                )
                kind = MediaKind.IMAGE
            else:
                source = ws.file("upload")
                source.write_bytes(data)
                output = ws.file(f"{day}.mp4")

                try:
                    info = await asyncio.to_thread(
                        inspect_media,
                        str(source),
                        ffmpeg_path=self.ffmpeg_path,
                        ffprobe_path=self.ffprobe_path,
                        timeout=self.config.ingest_timeout_seconds,
                    )
                except FFmpegError as e:
                    raise IngestError(str(e)) from e

                print(f"✂️ Trimming upload for {day} at {start_time:g}s", flush=True)
                await self._encode(
                    self.trim_command(str(source), str(output), start_time, has_audio=info.has_audio),
                    "trim",
                )
                thumb = await self._thumbnail(self.thumbnail_command(str(output), str(ws.file(thumbnail_name(day)))))
                stored = await self._store(folder_id, output.name, output, "video/mp4")
                kind = MediaKind.VIDEO

            thumb_file = await self._store_thumbnail(folder_id, day, thumb)

        print(f"✅ Stored clip {stored.id}", flush=True)
        return IngestedClip(date=day, kind=kind, file=stored, thumbnail=thumb_file)
