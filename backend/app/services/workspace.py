import os
import shutil
import uuid
from pathlib import Path
from typing import Optional


class Workspace:
    """
    Scratch directory owned by exactly one compilation run.

    Named ``session-<uuid4>`` under the temp root so concurrent runs never
    share files. ``destroy()`` is idempotent.
    """

    def __init__(self, root: str, name: Optional[str] = None):
        self.path = Path(root) / (name or f"session-{uuid.uuid4()}")

    def create(self) -> "Workspace":
        os.makedirs(self.path, exist_ok=False)
        return self

    def file(self, name: str) -> Path:
        return self.path / name

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def destroy(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            print(f"🗑️ Cleaned up workspace {self.path.name}", flush=True)

    def __enter__(self) -> "Workspace":
        return self.create()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()
