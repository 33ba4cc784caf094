import tempfile
import unittest
from pathlib import Path

from app.services.workspace import Workspace


class TestWorkspace(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_each_run_gets_its_own_directory(self) -> None:
        a = Workspace(self.root).create()
        b = Workspace(self.root).create()
        self.assertNotEqual(a.path, b.path)
        self.assertTrue(a.path.name.startswith("session-"))

    def test_existing_directory_is_never_reused(self) -> None:
        Workspace(self.root, name="session-x").create()
        with self.assertRaises(FileExistsError):
            Workspace(self.root, name="session-x").create()

    def test_destroy_is_idempotent(self) -> None:
        ws = Workspace(self.root).create()
        ws.file("a.mp4").write_bytes(b"x")
        ws.destroy()
        ws.destroy()
        self.assertFalse(ws.exists)

    def test_context_manager_cleans_up_on_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with Workspace(self.root) as ws:
                path = ws.path
                (path / "seg.mp4").write_bytes(b"x")
                raise RuntimeError("boom")
        self.assertFalse(Path(path).exists())


if __name__ == "__main__":
    unittest.main()
