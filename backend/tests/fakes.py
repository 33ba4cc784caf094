"""In-memory stand-ins for object storage and ffmpeg used across tests."""

import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from app.errors import StorageError
from app.models import RemoteFile
from app.services.storage import StorageService


def ts(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 1, day, hour, 0, 0, tzinfo=timezone.utc)


def remote(name: str, modified: Optional[datetime] = None, file_id: Optional[str] = None) -> RemoteFile:
    return RemoteFile(
        id=file_id or f"user/365 Moments/{name}",
        name=name,
        created_at=modified,
        modified_at=modified,
        size=10,
    )


class FakeStorage:
    """Implements the StorageService surface the pipeline uses."""

    folder_prefix = staticmethod(StorageService.folder_prefix)
    is_in_folder = staticmethod(StorageService.is_in_folder)
    guess_content_type = staticmethod(StorageService.guess_content_type)

    def __init__(self, folder_id: str = "user/365 Moments/"):
        self.folder_id = folder_id
        self.files: Dict[str, Tuple[RemoteFile, bytes]] = {}
        self.downloads: List[str] = []
        self.uploads: List[Tuple[str, str, str, bytes]] = []
        self.deleted: List[str] = []
        self.fail_download: Dict[str, Exception] = {}
        self.fail_upload: Optional[Exception] = None
        self.fail_list: Optional[Exception] = None
        self.fail_folder: Optional[Exception] = None

    def add(self, name: str, modified: Optional[datetime] = None, data: bytes = b"media") -> RemoteFile:
        f = RemoteFile(
            id=self.folder_id + name,
            name=name,
            created_at=modified,
            modified_at=modified,
            size=len(data),
        )
        self.files[f.id] = (f, data)
        return f

    def get_or_create_folder(self, name: str, user_scope: str) -> str:
        if self.fail_folder is not None:
            raise self.fail_folder
        return self.folder_id

    def list_files(self, folder_id: str) -> List[RemoteFile]:
        if self.fail_list is not None:
            raise self.fail_list
        return [f for f, _ in self.files.values() if f.id.startswith(folder_id)]

    def download_file(self, file_id: str, file_path: str) -> str:
        self.downloads.append(file_id)
        if file_id in self.fail_download:
            raise self.fail_download[file_id]
        if file_id not in self.files:
            raise StorageError(f"NoSuchKey {file_id}")
        with open(file_path, "wb") as fh:
            fh.write(self.files[file_id][1])
        return file_path

    def open_stream(self, file_id: str, chunk_size: int = 1024 * 1024):
        if file_id not in self.files:
            raise StorageError(f"NoSuchKey {file_id}")
        return iter([self.files[file_id][1]])

    def upload_file(self, folder_id: str, name: str, file_path: str, content_type: Optional[str] = None) -> RemoteFile:
        if self.fail_upload is not None:
            raise self.fail_upload
        with open(file_path, "rb") as fh:
            data = fh.read()
        self.uploads.append((folder_id, name, content_type or "", data))
        f = RemoteFile(id=folder_id + name, name=name, mime_type=content_type or "", size=len(data))
        self.files[f.id] = (f, data)
        return f

    def delete_file(self, file_id: str) -> None:
        self.deleted.append(file_id)
        self.files.pop(file_id, None)


def fake_ffmpeg_writer(calls: list):
    """
    Replacement for run_ffmpeg: records the command and writes a small
    file at the output path (the last argument).
    """

    def run(cmd, *, ffmpeg_path="ffmpeg", timeout=None, threads=0):
        calls.append(list(cmd))
        output = cmd[-1]
        os.makedirs(os.path.dirname(output) or ".", exist_ok=True)
        with open(output, "wb") as fh:
            fh.write(b"encoded")

    return run
