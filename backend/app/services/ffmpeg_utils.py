import json
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence
import os


FFMPEG_NAMES = {"ffmpeg", "ffmpeg.exe"}


@dataclass
class FFmpegError(Exception):
    """
    Typed ffmpeg failure.
    - message: sanitized/shortened text safe for job.error
    - stderr: full stderr for server logs/debugging
    - cmd: the command executed
    """
    message: str
    stderr: str = ""
    stdout: str = ""
    returncode: Optional[int] = None
    cmd: Optional[list[str]] = None
    timed_out: bool = False

    def __str__(self) -> str:
        return self.message


def resolve_encoder_path(configured: str = "") -> str:
    """
    Pick the ffmpeg executable once at startup.

    Explicit configuration wins, then ffmpeg on PATH, then the bare name
    (which fails later with a clear FFmpegError if it is really missing).
    """
    if configured:
        return configured
    found = shutil.which("ffmpeg")
    if found:
        return found
    return "ffmpeg"


def encoder_available(ffmpeg_path: str) -> bool:
    if os.path.isabs(ffmpeg_path):
        return os.path.isfile(ffmpeg_path) and os.access(ffmpeg_path, os.X_OK)
    return shutil.which(ffmpeg_path) is not None


def sanitize_ffmpeg_stderr(stderr: str, max_lines: int = 25, max_chars: int = 4000) -> str:
    """
    Keep the error understandable but short:
    - take the last N lines (ffmpeg usually prints the real reason near the end)
    - trim overly long lines and total size
    - remove common noisy prefixes
    """
    if not stderr:
        return "FFmpeg failed (no stderr)"

    s = stderr.replace("\r\n", "\n").replace("\r", "\n")
    lines = [ln for ln in s.split("\n") if ln.strip()]

    tail = lines[-max_lines:] if len(lines) > max_lines else lines

    cleaned: list[str] = []
    for ln in tail:
        ln = ln.strip()
        if not ln:
            continue
        if re.match(r"^ffmpeg version\b", ln, re.IGNORECASE):
            continue
        if re.match(r"^built with\b", ln, re.IGNORECASE):
            continue
        if re.match(r"^configuration:", ln, re.IGNORECASE):
            continue
        if re.match(r"^(libav(util|codec|format|device|filter)|libswscale|libswresample|libpostproc)\b", ln, re.IGNORECASE):
            continue
        if re.match(r"^Input #\d+", ln, re.IGNORECASE):
            continue
        if re.match(r"^Output #\d+", ln, re.IGNORECASE):
            continue
        if re.match(r"^Stream mapping:", ln, re.IGNORECASE):
            continue
        if re.match(r"^Press \[q\] to stop", ln, re.IGNORECASE):
            continue
        if len(ln) > 500:
            ln = ln[:500] + "…"
        cleaned.append(ln)

    out = "\n".join(cleaned).strip()
    if not out:
        out = "FFmpeg failed (no useful stderr)"

    if len(out) > max_chars:
        out = out[-max_chars:]
    return out


def _inject_nostdin(cmd: Sequence[str], ffmpeg_path: str = "ffmpeg") -> list[str]:
    cmd_list = list(cmd)
    if not cmd_list:
        raise ValueError("Empty ffmpeg command")

    # Accept either a full command or args only; args-only gets the
    # resolved executable prepended.
    first = str(cmd_list[0])
    base = os.path.basename(first).lower()
    if first != ffmpeg_path and base not in FFMPEG_NAMES:
        cmd_list.insert(0, ffmpeg_path)

    if "-nostdin" not in cmd_list:
        cmd_list.insert(1, "-nostdin")
    return cmd_list


def _inject_threads(cmd_list: list[str], threads: int = 0) -> list[str]:
    """Limit ffmpeg thread usage in constrained containers (0 = ffmpeg default)."""
    if not cmd_list or threads <= 0:
        return cmd_list

    if "-threads" in cmd_list:
        return cmd_list

    try:
        idx = cmd_list.index("-nostdin") + 1
    except ValueError:
        idx = 1

    cmd_list[idx:idx] = ["-threads", str(threads)]
    return cmd_list


def _tail_text(s: str, *, max_lines: int = 25, max_chars: int = 4000) -> str:
    if not s:
        return ""
    t = s.replace("\r\n", "\n").replace("\r", "\n")
    lines = [ln for ln in t.split("\n") if ln.strip()]
    tail = lines[-max_lines:] if len(lines) > max_lines else lines
    out = "\n".join(tail).strip()
    if len(out) > max_chars:
        out = out[-max_chars:]
    return out


def run_ffmpeg_capture(
    cmd: Sequence[str],
    *,
    ffmpeg_path: str = "ffmpeg",
    check: bool = True,
    timeout: Optional[float] = None,
    threads: int = 0,
) -> subprocess.CompletedProcess:
    """
    Run ffmpeg with robust defaults:
    - inject -nostdin to prevent background hangs
    - capture output for diagnostics
    - kill the child when the timeout expires
    - optionally raise FFmpegError with sanitized stderr
    """
    cmd_list = _inject_nostdin(cmd, ffmpeg_path)
    cmd_list = _inject_threads(cmd_list, threads)

    try:
        proc = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        stderr = e.stderr or ""
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", "replace")
        raise FFmpegError(
            message=f"FFmpeg timed out after {timeout}s",
            stderr=stderr,
            cmd=cmd_list,
            timed_out=True,
        )
    except OSError as e:
        raise FFmpegError(
            message=f"FFmpeg could not be started ({cmd_list[0]}): {e}",
            cmd=cmd_list,
        )

    if check and proc.returncode != 0:
        stderr = proc.stderr or ""
        stdout = proc.stdout or ""
        rc = proc.returncode

        # SIGKILL (OOM in a container) leaves no stderr: 137 or -9.
        likely_oom = rc in (137, -9)
        if not stderr:
            extra = "Likely out of memory." if likely_oom else "No stderr captured."
            msg = (
                f"FFmpeg failed (exit {rc}). {extra}\n"
                f"Tip: try fewer clips, increase RAM, or set FFMPEG_THREADS=1.\n"
            )
            if stdout:
                msg += f"FFmpeg stdout (tail):\n{_tail_text(stdout)}"
            else:
                msg += "FFmpeg stdout was empty."
        else:
            msg = f"FFmpeg failed (exit {rc}):\n{sanitize_ffmpeg_stderr(stderr)}"

        raise FFmpegError(
            message=msg,
            stderr=stderr,
            stdout=stdout,
            returncode=rc,
            cmd=cmd_list,
        )

    return proc


def run_ffmpeg(
    cmd: Sequence[str],
    *,
    ffmpeg_path: str = "ffmpeg",
    timeout: Optional[float] = None,
    threads: int = 0,
) -> None:
    """Run ffmpeg and raise FFmpegError on failure."""
    run_ffmpeg_capture(cmd, ffmpeg_path=ffmpeg_path, check=True, timeout=timeout, threads=threads)


def resolve_ffprobe_path(ffmpeg_path: str, configured: str = "") -> Optional[str]:
    """
    Find ffprobe for the resolved ffmpeg: explicit configuration, then the
    binary next to ffmpeg, then ffprobe on PATH. None when there is none.
    """
    if configured:
        return configured
    directory = os.path.dirname(ffmpeg_path)
    if directory:
        exe = ".exe" if ffmpeg_path.lower().endswith(".exe") else ""
        sibling = os.path.join(directory, f"ffprobe{exe}")
        if os.path.isfile(sibling) and os.access(sibling, os.X_OK):
            return sibling
    return shutil.which("ffprobe")


def run_ffprobe_capture(
    cmd: Sequence[str],
    *,
    check: bool = True,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """
    Run ffprobe with robust defaults:
    - capture output for diagnostics
    - optionally raise FFmpegError with sanitized stderr
    """
    cmd_list = list(cmd)
    if not cmd_list:
        raise ValueError("Empty ffprobe command")

    try:
        proc = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        stderr = e.stderr or ""
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", "replace")
        raise FFmpegError(
            message=f"FFprobe timed out after {timeout}s",
            stderr=stderr,
            cmd=cmd_list,
            timed_out=True,
        )
    except OSError as e:
        raise FFmpegError(message=f"FFprobe could not be started ({cmd_list[0]}): {e}", cmd=cmd_list)

    if check and proc.returncode != 0:
        raise FFmpegError(
            message=f"FFprobe failed:\n{sanitize_ffmpeg_stderr(proc.stderr)}",
            stderr=proc.stderr or "",
            returncode=proc.returncode,
            cmd=cmd_list,
        )

    return proc


@dataclass
class MediaInfo:
    """What the pipeline needs to know about an input or a segment."""
    duration: Optional[float] = None
    has_audio: bool = False
    width: int = 0
    height: int = 0
    fps: Optional[float] = None


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """'30/1' or '29.97' -> float; None for missing or 0/0."""
    if not value:
        return None
    if "/" in value:
        num, den = value.split("/", 1)
        if float(den) == 0:
            return None
        return float(num) / float(den)
    return float(value)


def parse_ffprobe_json(payload: str) -> MediaInfo:
    try:
        data = json.loads(payload or "{}")
    except json.JSONDecodeError as e:
        raise FFmpegError(message=f"Failed to parse ffprobe output: {e}")

    info = MediaInfo()
    duration = data.get("format", {}).get("duration")
    if duration not in (None, "N/A"):
        info.duration = float(duration)

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "audio":
            info.has_audio = True
        elif codec_type == "video" and not info.width:
            info.width = int(stream.get("width", 0))
            info.height = int(stream.get("height", 0))
            info.fps = parse_frame_rate(stream.get("avg_frame_rate")) or parse_frame_rate(
                stream.get("r_frame_rate")
            )
    return info


# ffmpeg's human-readable input dump; used only when no ffprobe is installed
_AUDIO_STREAM_RE = re.compile(r"Stream #\d+:\d+(?:\[[^\]]*\])?(?:\([^)]*\))?: Audio:")
_DURATION_RE = re.compile(r"Duration: (\d+):(\d+):(\d+(?:\.\d+)?)")
_VIDEO_LINE_RE = re.compile(r"Stream #\d+:\d+(?:\[[^\]]*\])?(?:\([^)]*\))?: Video:(.*)")
_GEOMETRY_RE = re.compile(r", (\d{2,5})x(\d{2,5})[\s,]")
_FPS_RE = re.compile(r"(\d+(?:\.\d+)?) fps")


def dump_input(path: str, *, ffmpeg_path: str = "ffmpeg", timeout: Optional[float] = 30) -> str:
    """
    Return ffmpeg's input dump (stderr of `ffmpeg -i path`).

    ffmpeg exits non-zero because no output is given; that is expected.
    """
    proc = run_ffmpeg_capture(
        [ffmpeg_path, "-hide_banner", "-i", path],
        ffmpeg_path=ffmpeg_path,
        check=False,
        timeout=timeout,
    )
    return proc.stderr or ""


def has_audio_stream(dump: str) -> bool:
    return bool(_AUDIO_STREAM_RE.search(dump or ""))


def parse_duration(dump: str) -> Optional[float]:
    m = _DURATION_RE.search(dump or "")
    if not m:
        return None
    hours, minutes, seconds = m.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_input_dump(dump: str) -> MediaInfo:
    info = MediaInfo(duration=parse_duration(dump), has_audio=has_audio_stream(dump))
    m = _VIDEO_LINE_RE.search(dump or "")
    if m:
        details = m.group(1) + " "
        geometry = _GEOMETRY_RE.search(details)
        if geometry:
            info.width, info.height = int(geometry.group(1)), int(geometry.group(2))
        fps = _FPS_RE.search(details)
        if fps:
            info.fps = float(fps.group(1))
    return info


def inspect_media(
    path: str,
    *,
    ffmpeg_path: str = "ffmpeg",
    ffprobe_path: Optional[str] = None,
    timeout: Optional[float] = 30,
) -> MediaInfo:
    """
    Inspect a media file.

    ffprobe's JSON is preferred. Minimal ffmpeg installs ship without
    ffprobe, so the ffmpeg input dump is parsed instead in that case.
    """
    if ffprobe_path:
        proc = run_ffprobe_capture(
            [
                ffprobe_path,
                "-v", "error",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                path,
            ],
            timeout=timeout,
        )
        return parse_ffprobe_json(proc.stdout)
    return parse_input_dump(dump_input(path, ffmpeg_path=ffmpeg_path, timeout=timeout))
