"""
End-to-end runs against the installed ffmpeg.

Inputs are synthesized with lavfi so no media fixtures are needed. Skipped
where ffmpeg (with libx264) is not installed.
"""

import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path

from app.config import FFmpegConfig, Settings
from app.models import MediaItem, MediaKind
from app.services.compiler import CompilationEngine, write_concat_file
from app.services.ffmpeg_utils import inspect_media, resolve_encoder_path, resolve_ffprobe_path, run_ffmpeg
from app.services.media_normalizer import MediaNormalizer


def _has_libx264() -> bool:
    ffmpeg = shutil.which("ffmpeg")
    if not ffmpeg:
        return False
    proc = subprocess.run([ffmpeg, "-hide_banner", "-encoders"], capture_output=True, text=True, check=False)
    return "libx264" in proc.stdout


@unittest.skipUnless(shutil.which("ffmpeg"), "ffmpeg not installed")
@unittest.skipUnless(_has_libx264(), "ffmpeg built without libx264")
class TestRealFFmpeg(unittest.IsolatedAsyncioTestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls._tmp = tempfile.TemporaryDirectory()
        cls.root = Path(cls._tmp.name)
        cls.ffmpeg = resolve_encoder_path()
        cls.ffprobe = resolve_ffprobe_path(cls.ffmpeg)

        cls.sources = {
            "2024-01-01": cls.root / "2024-01-01.mp4",
            "2024-01-02": cls.root / "2024-01-02.mp4",
            "2024-01-03": cls.root / "2024-01-03.png",
            "2024-01-04": cls.root / "2024-01-04.jpg",
        }
        cls.music = cls.root / "music.m4a"

        lavfi = [cls.ffmpeg, "-v", "error", "-f", "lavfi"]
        # 3s, 640x480@25 with a tone
        run_ffmpeg([
            *lavfi, "-i", "testsrc=size=640x480:rate=25:duration=3",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=3",
            "-c:v", "libx264", "-pix_fmt", "yuv420p", "-c:a", "aac", "-shortest",
            "-y", str(cls.sources["2024-01-01"]),
        ], ffmpeg_path=cls.ffmpeg, timeout=60)
        # 0.5s, portrait, no audio
        run_ffmpeg([
            *lavfi, "-i", "testsrc2=size=360x640:rate=24:duration=0.5",
            "-c:v", "libx264", "-pix_fmt", "yuv420p", "-an",
            "-y", str(cls.sources["2024-01-02"]),
        ], ffmpeg_path=cls.ffmpeg, timeout=60)
        run_ffmpeg([
            *lavfi, "-i", "testsrc=size=800x600", "-frames:v", "1", "-y", str(cls.sources["2024-01-03"]),
        ], ffmpeg_path=cls.ffmpeg, timeout=60)
        run_ffmpeg([
            *lavfi, "-i", "testsrc2=size=1280x720", "-frames:v", "1", "-y", str(cls.sources["2024-01-04"]),
        ], ffmpeg_path=cls.ffmpeg, timeout=60)
        run_ffmpeg([
            *lavfi, "-i", "sine=frequency=220:duration=1.5", "-c:a", "aac", "-y", str(cls.music),
        ], ffmpeg_path=cls.ffmpeg, timeout=60)

    @classmethod
    def tearDownClass(cls) -> None:
        cls._tmp.cleanup()

    def setUp(self) -> None:
        self._ws = tempfile.TemporaryDirectory()
        self.workspace = Path(self._ws.name)
        self.normalizer = MediaNormalizer(self.ffmpeg, FFmpegConfig(), self.ffprobe)
        self.engine = CompilationEngine(None, None, self.normalizer, Settings())

    def tearDown(self) -> None:
        self._ws.cleanup()

    def inspect(self, path: Path):
        return inspect_media(str(path), ffmpeg_path=self.ffmpeg, ffprobe_path=self.ffprobe)

    async def normalize_all(self) -> list:
        segments = []
        for day, source in sorted(self.sources.items()):
            item = MediaItem(date=day, kind=MediaKind.from_filename(source.name), remote_id=source.name, name=source.name)
            segments.append(await self.normalizer.normalize(item, source, self.workspace))
        return segments

    def concat(self, segments: list, music=None) -> Path:
        output = self.workspace / ("with-music.mp4" if music else "plain.mp4")
        list_path = write_concat_file(segments, self.workspace / "filelist.txt")
        run_ffmpeg(self.engine.concat_command(list_path, output, music), ffmpeg_path=self.ffmpeg, timeout=120)
        return output

    async def test_every_segment_is_uniform(self) -> None:
        segments = await self.normalize_all()

        for segment in segments:
            with self.subTest(segment=segment.name):
                info = self.inspect(segment)
                self.assertAlmostEqual(info.duration, 1.0, delta=0.1)
                self.assertEqual((info.width, info.height), (1920, 1080))
                self.assertAlmostEqual(info.fps, 30.0, delta=0.01)
                self.assertTrue(info.has_audio)

    async def test_segments_concatenate_to_one_second_each(self) -> None:
        segments = await self.normalize_all()

        info = self.inspect(self.concat(segments))

        self.assertAlmostEqual(info.duration, float(len(segments)), delta=0.25)
        self.assertEqual((info.width, info.height), (1920, 1080))
        self.assertTrue(info.has_audio)

    async def test_short_music_loops_until_video_ends(self) -> None:
        segments = await self.normalize_all()

        info = self.inspect(self.concat(segments, music=self.music))

        # 1.5s of music under 4s of video: looped, and cut where the video ends
        self.assertAlmostEqual(info.duration, float(len(segments)), delta=0.25)
        self.assertTrue(info.has_audio)


if __name__ == "__main__":
    unittest.main()
