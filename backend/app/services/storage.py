import os
import re
import io
from contextlib import contextmanager
from typing import Iterator, Optional, List
from pathlib import Path

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError

from app.config import Settings, get_settings
from app.errors import StorageError, StoragePermissionError
from app.models import RemoteFile


# S3 error codes that mean "your credentials/scopes are not good enough"
PERMISSION_ERROR_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
}

FOLDER_MARKER = ".folder"

_SCOPE_UNSAFE_RE = re.compile(r"[^A-Za-z0-9@._+-]")


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except S3Error as e:
        if e.code in PERMISSION_ERROR_CODES:
            raise StoragePermissionError(
                f"Storage access not granted while trying to {action}. Please log in again."
            ) from e
        raise StorageError(f"Storage error while trying to {action}: {e.code} {e.message}") from e
    except (TransportError, OSError) as e:
        # MinIO unreachable (MaxRetryError, refused connection, reset, DNS)
        raise StorageError(f"Storage unreachable while trying to {action}: {e}") from e


class StorageService:
    """
    Per-user content folders on MinIO / S3-compatible object storage.

    A folder is an object-key prefix ``<user scope>/<folder name>/`` and
    a file id is the full object key. Daily clips are stored as
    ``YYYY-MM-DD.ext`` inside the folder, thumbnails as
    ``YYYY-MM-DD.thumb.jpg`` and compilations next to them.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Minio] = None):
        self.settings = settings or get_settings()
        self.bucket = self.settings.minio.bucket

        if client is None:
            # e.g., s3.us-east-2.amazonaws.com -> us-east-2
            endpoint = self.settings.minio.endpoint
            region = None
            if "amazonaws.com" in endpoint:
                parts = endpoint.split(".")
                if len(parts) >= 3 and parts[0] == "s3":
                    region = parts[1]
                    print(f"🔧 Detected AWS S3 region: {region}", flush=True)

            client = Minio(
                endpoint,
                access_key=self.settings.minio.access_key,
                secret_key=self.settings.minio.secret_key,
                secure=self.settings.minio.secure,
                region=region,
            )
        self.client = client

    def ensure_bucket(self) -> bool:
        """Create the content bucket if it doesn't exist. Returns False if storage is unreachable."""
        print(f"🔧 S3 Config: endpoint={self.settings.minio.endpoint}, bucket={self.bucket}", flush=True)
        try:
            # list_objects only needs s3:ListBucket on this bucket, unlike bucket_exists()
            try:
                list(self.client.list_objects(self.bucket, max_keys=1))
                print(f"✅ Bucket accessible: {self.bucket}", flush=True)
            except S3Error as list_err:
                if list_err.code != "NoSuchBucket":
                    raise
                print(f"📦 Creating bucket: {self.bucket}", flush=True)
                self.client.make_bucket(self.bucket)
            return True
        except Exception as e:
            # Keep the app up and report storage as unhealthy.
            print(f"⚠️ Storage initialization failed (MinIO/S3 unreachable?): {e}", flush=True)
            return False

    # Folders

    @staticmethod
    def folder_prefix(name: str, user_scope: str) -> str:
        scope = _SCOPE_UNSAFE_RE.sub("_", user_scope.strip()) or "anonymous"
        folder = name.strip().strip("/") or "default"
        return f"{scope}/{folder}/"

    def get_or_create_folder(self, name: str, user_scope: str) -> str:
        """
        Resolve a user's folder, creating its marker object on first use.

        Returns:
            Folder id (object-key prefix ending in '/')
        """
        folder_id = self.folder_prefix(name, user_scope)
        marker = folder_id + FOLDER_MARKER
        with _translate_errors("open the content folder"):
            try:
                self.client.stat_object(self.bucket, marker)
            except S3Error as e:
                if e.code not in ("NoSuchKey", "NoSuchObject"):
                    raise
                self.client.put_object(
                    self.bucket,
                    marker,
                    io.BytesIO(b""),
                    0,
                    content_type="application/x-directory",
                )
                print(f"📁 Created folder: {folder_id}", flush=True)
        return folder_id

    @staticmethod
    def is_in_folder(file_id: str, folder_id: str) -> bool:
        return file_id.startswith(folder_id) and "/" not in file_id[len(folder_id):]

    # Files

    def list_files(self, folder_id: str) -> List[RemoteFile]:
        """
        List every file directly inside a folder.

        The MinIO iterator follows continuation tokens, so this returns all
        pages.
        """
        files: List[RemoteFile] = []
        with _translate_errors("list clips"):
            for obj in self.client.list_objects(self.bucket, prefix=folder_id, recursive=False):
                if obj.is_dir:
                    continue
                name = obj.object_name[len(folder_id):]
                if not name or name == FOLDER_MARKER:
                    continue
                files.append(
                    RemoteFile(
                        id=obj.object_name,
                        name=name,
                        mime_type=self.guess_content_type(name),
                        created_at=obj.last_modified,
                        modified_at=obj.last_modified,
                        size=obj.size or 0,
                    )
                )
        return files

    def download_file(self, file_id: str, file_path: str) -> str:
        """
        Download a file to a local path.

        Returns:
            Local file path
        """
        os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
        with _translate_errors(f"download {os.path.basename(file_id)}"):
            self.client.fget_object(self.bucket, file_id, file_path)
        return file_path

    def open_stream(self, file_id: str, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
        """
        Open a stored file for streaming.

        The object is requested eagerly so storage errors surface here, not
        halfway through a response. The connection is released when the
        returned iterator is exhausted or closed.
        """
        with _translate_errors(f"read {os.path.basename(file_id)}"):
            response = self.client.get_object(self.bucket, file_id)

        def chunks() -> Iterator[bytes]:
            try:
                yield from response.stream(chunk_size)
            finally:
                response.close()
                response.release_conn()

        return chunks()

    def upload_file(
        self,
        folder_id: str,
        name: str,
        file_path: str,
        content_type: Optional[str] = None,
    ) -> RemoteFile:
        """
        Upload a local file into a folder.

        Returns:
            The stored file (id is the object key)
        """
        if content_type is None:
            content_type = self.guess_content_type(name)

        object_name = f"{folder_id}{name}"
        with _translate_errors(f"upload {name}"):
            self.client.fput_object(
                self.bucket,
                object_name,
                file_path,
                content_type=content_type,
            )

        return RemoteFile(
            id=object_name,
            name=name,
            mime_type=content_type,
            size=os.path.getsize(file_path),
        )

    def delete_file(self, file_id: str) -> None:
        with _translate_errors(f"delete {os.path.basename(file_id)}"):
            self.client.remove_object(self.bucket, file_id)

    @staticmethod
    def guess_content_type(file_path: str) -> str:
        """Guess content type from file extension."""
        ext = Path(file_path).suffix.lower()

        content_types = {
            ".mp4": "video/mp4",
            ".webm": "video/webm",
            ".mp3": "audio/mpeg",
            ".jpg": "image/jpeg",
            ".jpeg": "image/jpeg",
            ".png": "image/png",
        }

        return content_types.get(ext, "application/octet-stream")
