import base64
import binascii
import re
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from enum import Enum
from datetime import datetime, date, timezone
from dataclasses import dataclass, field


DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# data:audio/mpeg;base64,....
_DATA_URL_PREFIX_RE = re.compile(r"^data:audio/[^;]+;base64,")


def validate_iso_date(value: Optional[str]) -> Optional[str]:
    """Accept None/'' or a real zero-padded YYYY-MM-DD date."""
    if value is None or value == "":
        return None
    if not DATE_RE.match(value):
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD")
    date.fromisoformat(value)
    return value


class JobStatus(str, Enum):
    """Status of a compilation job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class CompilationStage(str, Enum):
    """Where a compilation run currently is."""
    IDLE = "idle"
    FETCHING = "fetching"
    DOWNLOADING = "downloading"
    NORMALIZING = "normalizing"
    CONCATENATING = "concatenating"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


class MediaKind(str, Enum):
    VIDEO = "video"
    IMAGE = "image"

    @classmethod
    def from_filename(cls, name: str) -> "MediaKind":
        ext = name.rsplit(".", 1)[-1].lower()
        if ext in ("jpg", "jpeg", "png"):
            return cls.IMAGE
        return cls.VIDEO


# --- Internal Dataclass Models ---

@dataclass
class RemoteFile:
    """One file as listed by the segment store."""
    id: str
    name: str
    mime_type: str = "application/octet-stream"
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    size: int = 0


@dataclass
class MediaItem:
    """One calendar day's captured content."""
    date: str  # YYYY-MM-DD
    kind: MediaKind
    remote_id: str
    name: str
    modified_at: Optional[datetime] = None

    @property
    def extension(self) -> str:
        return self.name.rsplit(".", 1)[-1].lower()


@dataclass
class CompilationRequest:
    """
    What to compile.

    Dates are zero-padded ISO strings; either may be None for an open
    bound. ``music_track`` is raw audio bytes.
    """
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    music_track: Optional[bytes] = None

    def __post_init__(self) -> None:
        self.start_date = validate_iso_date(self.start_date)
        self.end_date = validate_iso_date(self.end_date)
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError(
                f"start_date {self.start_date} is after end_date {self.end_date}"
            )

    @property
    def has_range(self) -> bool:
        return bool(self.start_date and self.end_date)


@dataclass
class CompilationResult:
    file_id: str
    file_name: str
    clip_count: int


@dataclass
class ProgressEvent:
    stage: CompilationStage
    message: str
    current: int = 0
    total: int = 0


@dataclass
class CompilationJob:
    """
    Lifecycle record of one compilation run.

    Owned by the JobTracker; the engine only sees progress events.
    """
    id: str
    user_id: str
    request: CompilationRequest
    status: JobStatus = JobStatus.PENDING
    stage: CompilationStage = CompilationStage.IDLE
    progress_message: str = "Queued"
    result: Optional[CompilationResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    requires_reauth: bool = False
    clip_count: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETE, JobStatus.FAILED)


# --- API Request/Response Models ---

class CompileRequestBody(BaseModel):
    """Request body for POST /api/compile."""
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")
    # base64 MP3, optionally as a data URL
    music_data: Optional[str] = Field(None, alias="musicData")

    model_config = {"populate_by_name": True}

    @field_validator("start_date", "end_date")
    @classmethod
    def _check_date(cls, v: Optional[str]) -> Optional[str]:
        return validate_iso_date(v)

    def decode_music(self) -> Optional[bytes]:
        if not self.music_data:
            return None
        raw = _DATA_URL_PREFIX_RE.sub("", self.music_data.strip())
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("musicData is not valid base64 audio")

    def to_request(self) -> CompilationRequest:
        return CompilationRequest(
            start_date=self.start_date,
            end_date=self.end_date,
            music_track=self.decode_music(),
        )


class CompileStartResponse(BaseModel):
    success: bool
    status: str
    message: str
    job_id: Optional[str] = None


class CompilationResultInfo(BaseModel):
    file_id: str
    file_name: str
    clip_count: int


class CompileStatusResponse(BaseModel):
    """Job snapshot for polling; status is 'idle' when nothing is tracked."""
    status: str
    job_id: Optional[str] = None
    stage: Optional[CompilationStage] = None
    progress: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    clip_count: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    requires_reauth: bool = False
    result: Optional[CompilationResultInfo] = None

    @classmethod
    def idle(cls) -> "CompileStatusResponse":
        return cls(status="idle", progress="No compilation in progress")

    @classmethod
    def from_job(cls, job: CompilationJob) -> "CompileStatusResponse":
        result = None
        if job.result is not None:
            result = CompilationResultInfo(
                file_id=job.result.file_id,
                file_name=job.result.file_name,
                clip_count=job.result.clip_count,
            )
        return cls(
            status=job.status.value,
            job_id=job.id,
            stage=job.stage,
            progress=job.progress_message,
            start_date=job.request.start_date,
            end_date=job.request.end_date,
            started_at=job.started_at,
            completed_at=job.completed_at,
            clip_count=job.clip_count,
            error=job.error,
            error_type=job.error_type,
            requires_reauth=job.requires_reauth,
            result=result,
        )


class ClipListItem(BaseModel):
    """Daily clip in the gallery listing."""
    id: str
    name: str
    date: str
    type: MediaKind
    created_at: Optional[datetime] = None
    size: int = 0
    thumbnail_id: Optional[str] = None


class ClipListResponse(BaseModel):
    clips: List[ClipListItem]
    folder_id: str


class CompilationListItem(BaseModel):
    id: str
    name: str
    created_at: Optional[datetime] = None
    size: int = 0


class CompilationListResponse(BaseModel):
    compilations: List[CompilationListItem]


class ClipUploadResponse(BaseModel):
    """Answer to a recording or upload: the stored daily clip."""
    success: bool = True
    file: ClipListItem
