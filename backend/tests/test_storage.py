import tempfile
import os
import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

from minio.error import S3Error
from urllib3.exceptions import MaxRetryError, ProtocolError

from app.config import MinioConfig, Settings
from app.errors import StorageError, StoragePermissionError
from app.services.storage import FOLDER_MARKER, StorageService


def s3_error(code: str) -> S3Error:
    return S3Error(
        code=code,
        message=f"{code} message",
        resource="resource",
        request_id="request-id",
        host_id="host-id",
        response=None,
    )


def obj(name: str, is_dir: bool = False, size: int = 10):
    return SimpleNamespace(
        object_name=name,
        is_dir=is_dir,
        size=size,
        last_modified=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class TestStorageService(unittest.TestCase):
    def setUp(self) -> None:
        self.client = MagicMock()
        self.storage = StorageService(Settings(minio=MinioConfig(bucket="moments")), client=self.client)

    def test_folder_prefix_is_scoped_per_user(self) -> None:
        self.assertEqual(
            StorageService.folder_prefix("365 Moments", "alice@example.com"),
            "alice@example.com/365 Moments/",
        )
        self.assertEqual(StorageService.folder_prefix("365 Moments", "a/b c"), "a_b_c/365 Moments/")

    def test_is_in_folder(self) -> None:
        folder = "alice/365 Moments/"
        self.assertTrue(StorageService.is_in_folder(folder + "2024-01-01.mp4", folder))
        self.assertFalse(StorageService.is_in_folder("bob/365 Moments/2024-01-01.mp4", folder))
        self.assertFalse(StorageService.is_in_folder(folder + "nested/x.mp4", folder))

    def test_existing_folder_is_not_recreated(self) -> None:
        folder = self.storage.get_or_create_folder("365 Moments", "alice")
        self.assertEqual(folder, "alice/365 Moments/")
        self.client.stat_object.assert_called_once_with("moments", "alice/365 Moments/" + FOLDER_MARKER)
        self.client.put_object.assert_not_called()

    def test_missing_folder_gets_marker(self) -> None:
        self.client.stat_object.side_effect = s3_error("NoSuchKey")
        self.storage.get_or_create_folder("365 Moments", "alice")
        args = self.client.put_object.call_args[0]
        self.assertEqual(args[:2], ("moments", "alice/365 Moments/" + FOLDER_MARKER))

    def test_list_files_skips_marker_and_subfolders(self) -> None:
        folder = "alice/365 Moments/"
        self.client.list_objects.return_value = [
            obj(folder + FOLDER_MARKER, size=0),
            obj(folder + "sub/", is_dir=True),
            obj(folder + "2024-01-01.mp4"),
            obj(folder + "2024-01-01.thumb.jpg"),
        ]

        files = self.storage.list_files(folder)

        self.assertEqual([f.name for f in files], ["2024-01-01.mp4", "2024-01-01.thumb.jpg"])
        self.assertEqual(files[0].id, folder + "2024-01-01.mp4")
        self.assertEqual(files[0].mime_type, "video/mp4")
        self.assertEqual(files[1].mime_type, "image/jpeg")
        self.assertIsNotNone(files[0].modified_at)

    def test_access_denied_requires_reauth(self) -> None:
        self.client.list_objects.side_effect = s3_error("AccessDenied")
        with self.assertRaises(StoragePermissionError) as ctx:
            self.storage.list_files("alice/365 Moments/")
        self.assertTrue(ctx.exception.requires_reauth)

    def test_other_s3_errors_are_storage_errors(self) -> None:
        self.client.fget_object.side_effect = s3_error("NoSuchKey")
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(StorageError) as ctx:
                self.storage.download_file("alice/365 Moments/2024-01-01.mp4", os.path.join(tmp, "a.mp4"))
        self.assertNotIsInstance(ctx.exception, StoragePermissionError)

    def test_unreachable_storage_is_a_storage_error(self) -> None:
        self.client.list_objects.side_effect = MaxRetryError(None, "/moments", reason=ConnectionRefusedError(111, "refused"))
        with self.assertRaises(StorageError) as ctx:
            self.storage.list_files("alice/365 Moments/")
        self.assertNotIsInstance(ctx.exception, StoragePermissionError)
        self.assertIn("unreachable", str(ctx.exception))

    def test_dropped_connection_on_download_and_upload(self) -> None:
        self.client.fget_object.side_effect = ProtocolError("Connection aborted.")
        self.client.fput_object.side_effect = ConnectionResetError(104, "reset by peer")
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "a.mp4")
            with self.assertRaises(StorageError):
                self.storage.download_file("alice/365 Moments/2024-01-01.mp4", path)
            with open(path, "wb") as f:
                f.write(b"x")
            with self.assertRaises(StorageError):
                self.storage.upload_file("alice/365 Moments/", "out.mp4", path)

    def test_folder_lookup_when_unreachable(self) -> None:
        self.client.stat_object.side_effect = MaxRetryError(None, "/moments/x")
        with self.assertRaises(StorageError):
            self.storage.get_or_create_folder("365 Moments", "alice")
        self.client.put_object.assert_not_called()

    def test_content_type_guess(self) -> None:
        self.assertEqual(StorageService.guess_content_type("2024-01-01.webm"), "video/webm")
        self.assertEqual(StorageService.guess_content_type("2024-01-01.thumb.jpg"), "image/jpeg")
        self.assertEqual(StorageService.guess_content_type("notes.txt"), "application/octet-stream")

    def test_upload_returns_object_key(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "out.mp4")
            with open(path, "wb") as f:
                f.write(b"12345")
            stored = self.storage.upload_file("alice/365 Moments/", "out.mp4", path, "video/mp4")

        self.assertEqual(stored.id, "alice/365 Moments/out.mp4")
        self.assertEqual(stored.size, 5)
        self.client.fput_object.assert_called_once_with(
            "moments", "alice/365 Moments/out.mp4", path, content_type="video/mp4"
        )

    def test_open_stream_releases_connection(self) -> None:
        response = MagicMock()
        response.stream.return_value = iter([b"ab", b"cd"])
        self.client.get_object.return_value = response

        chunks = self.storage.open_stream("alice/365 Moments/out.mp4", chunk_size=2)

        self.assertEqual(b"".join(chunks), b"abcd")
        response.stream.assert_called_once_with(2)
        response.release_conn.assert_called_once()

    def test_open_stream_fails_before_streaming(self) -> None:
        self.client.get_object.side_effect = s3_error("AccessDenied")
        with self.assertRaises(StoragePermissionError):
            self.storage.open_stream("alice/365 Moments/out.mp4")

    def test_ensure_bucket_creates_missing_bucket(self) -> None:
        self.client.list_objects.side_effect = s3_error("NoSuchBucket")
        self.assertTrue(self.storage.ensure_bucket())
        self.client.make_bucket.assert_called_once_with("moments")

    def test_ensure_bucket_reports_unreachable(self) -> None:
        self.client.list_objects.side_effect = ConnectionError("refused")
        self.assertFalse(self.storage.ensure_bucket())


if __name__ == "__main__":
    unittest.main()
