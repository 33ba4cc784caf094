"""
Error taxonomy for the compilation pipeline.

Every error raised inside a compilation run ends up, as a message string,
on the user's job record. None of them are retried automatically.
"""

from typing import Optional


class CompilationError(Exception):
    """Base class for failures that abort a compilation run."""


class CatalogError(CompilationError):
    """The requested media set cannot be compiled. Raised before any download."""


class EmptyRangeError(CatalogError):
    def __init__(self, message: str = "No clips found in selected range"):
        super().__init__(message)


class InsufficientClipsError(CatalogError):
    def __init__(self, found: int, required: int):
        self.found = found
        self.required = required
        super().__init__(f"Need at least {required} clips to compile (found {found})")


class DownloadError(CompilationError):
    def __init__(self, message: str, date: Optional[str] = None):
        self.date = date
        super().__init__(message)


class NormalizationError(CompilationError):
    """Re-encode of one day's item failed or timed out."""

    def __init__(self, date: str, reason: str):
        self.date = date
        self.reason = reason
        super().__init__(f"Failed to normalize clip for {date}: {reason}")


class ConcatenationError(CompilationError):
    pass


class UploadError(CompilationError):
    pass


class AlreadyRunningError(Exception):
    """A compilation is already running for this user."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__("A compilation is already in progress")


class StorageError(Exception):
    """Remote object storage failure."""


class StoragePermissionError(StorageError):
    """
    Storage rejected our credentials or scopes.

    Callers must force the user to re-authenticate; the job tracker records
    it as a failed job with ``requires_reauth`` set.
    """

    requires_reauth = True


class IngestError(Exception):
    """Re-encoding an uploaded clip failed; nothing was stored."""
