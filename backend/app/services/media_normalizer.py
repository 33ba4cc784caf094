"""
Media normalizer: one day's video or photo -> one uniform segment.

Every segment comes out with identical stream parameters (codec, profile,
resolution, SAR, pixel format, frame rate, time base, audio layout) so the
compiler can join them with the concat demuxer and ``-c copy``.
"""

import asyncio
import os
from pathlib import Path
from typing import List, Optional

from app.config import FFmpegConfig
from app.errors import NormalizationError
from app.models import MediaItem, MediaKind
from app.services.ffmpeg_utils import FFmpegError, inspect_media, run_ffmpeg


# mp4 track time base shared by every segment
VIDEO_TIMESCALE = "15360"


class MediaNormalizer:
    """Re-encodes inputs to fixed-length 1920x1080/30fps H.264+AAC segments."""

    def __init__(
        self,
        ffmpeg_path: str,
        config: Optional[FFmpegConfig] = None,
        ffprobe_path: Optional[str] = None,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.config = config or FFmpegConfig()

    @property
    def seconds(self) -> str:
        return f"{self.config.segment_seconds:g}"

    def _silent_audio_input(self) -> List[str]:
        return [
            "-f", "lavfi",
            "-t", self.seconds,
            "-i", f"anullsrc=channel_layout=stereo:sample_rate={self.config.audio_sample_rate}",
        ]

    def video_filter(self, *, pad_short: bool) -> str:
        c = self.config
        chain = [
            f"scale={c.width}:{c.height}:force_original_aspect_ratio=decrease",
            f"pad={c.width}:{c.height}:(ow-iw)/2:(oh-ih)/2:black",
            "setsar=1",
            f"fps={c.fps}",
        ]
        if pad_short:
            # Clips shorter than a segment hold their last frame.
            chain.append(f"tpad=stop_mode=clone:stop_duration={self.seconds}")
        chain.append(f"format={c.pixel_format}")
        return ",".join(chain)

    def encode_args(self, output_path: str, *, audio_map: str, pad_short: bool) -> List[str]:
        """Output half of the command; identical for every segment kind."""
        c = self.config
        return [
            "-map", "0:v:0",
            "-map", audio_map,
            "-t", self.seconds,
            "-vf", self.video_filter(pad_short=pad_short),
            "-af", "apad",
            "-c:v", c.video_codec,
            "-preset", c.preset,
            "-crf", str(c.crf),
            "-pix_fmt", c.pixel_format,
            "-r", str(c.fps),
            "-video_track_timescale", VIDEO_TIMESCALE,
            "-c:a", c.audio_codec,
            "-b:a", c.segment_audio_bitrate,
            "-ar", str(c.audio_sample_rate),
            "-ac", "2",
            "-movflags", "+faststart",
            "-y",
            output_path,
        ]

    def image_command(self, source_path: str, output_path: str) -> List[str]:
        return [
            self.ffmpeg_path,
            "-v", "error",
            "-loop", "1",
            "-framerate", str(self.config.fps),
            "-t", self.seconds,
            "-i", source_path,
            *self._silent_audio_input(),
            *self.encode_args(output_path, audio_map="1:a:0", pad_short=False),
        ]

    def video_command(self, source_path: str, output_path: str, *, source_has_audio: bool) -> List[str]:
        cmd = [self.ffmpeg_path, "-v", "error", "-i", source_path]
        if source_has_audio:
            audio_map = "0:a:0"
        else:
            cmd += self._silent_audio_input()
            audio_map = "1:a:0"
        cmd += self.encode_args(output_path, audio_map=audio_map, pad_short=True)
        return cmd

    def segment_path(self, item: MediaItem, workspace_dir: Path) -> Path:
        return Path(workspace_dir) / f"{item.date}-norm.mp4"

    async def normalize(self, item: MediaItem, source_path: Path, workspace_dir: Path) -> Path:
        """
        Normalize one downloaded item into a segment inside the workspace.

        Raises:
            NormalizationError: ffmpeg failed, timed out, or wrote nothing
        """
        output_path = self.segment_path(item, workspace_dir)
        timeout = self.config.normalize_timeout_seconds

        try:
            if item.kind == MediaKind.IMAGE:
                cmd = self.image_command(str(source_path), str(output_path))
                print(f"🖼️ Converting image to {self.seconds}s video: {item.name}", flush=True)
            else:
                info = await asyncio.to_thread(
                    inspect_media,
                    str(source_path),
                    ffmpeg_path=self.ffmpeg_path,
                    ffprobe_path=self.ffprobe_path,
                    timeout=timeout,
                )
                if info.duration is not None:
                    print(f"🎞️ Normalizing {item.name} (original duration {info.duration:.2f}s)", flush=True)
                cmd = self.video_command(
                    str(source_path), str(output_path), source_has_audio=info.has_audio
                )

            await asyncio.to_thread(
                run_ffmpeg,
                cmd,
                ffmpeg_path=self.ffmpeg_path,
                timeout=timeout,
                threads=self.config.threads,
            )
        except FFmpegError as e:
            if e.stderr:
                print(f"--- FFmpeg stderr ({item.date}) ---\n{e.stderr}\n--- end ffmpeg stderr ---", flush=True)
            reason = f"timed out after {timeout}s" if e.timed_out else str(e)
            raise NormalizationError(item.date, reason) from e

        if not output_path.exists() or os.path.getsize(output_path) == 0:
            raise NormalizationError(item.date, "ffmpeg produced no output")

        return output_path
