import asyncio
import traceback as tb
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from app.errors import AlreadyRunningError, CompilationError, StoragePermissionError
from app.models import (
    CompilationJob,
    CompilationRequest,
    CompilationResult,
    CompilationStage,
    JobStatus,
    ProgressEvent,
)
from app.services.compiler import CompilationEngine


class JobTracker:
    """
    Tracks one compilation job per user and runs it in the background.

    All bookkeeping happens on the event loop thread, so the admission
    check in submit() and the job mutations never interleave. A
    multi-threaded host would need a lock around ``_jobs``.

    Once a job is terminal (COMPLETE/FAILED) later updates are ignored.
    """

    def __init__(self, engine: CompilationEngine):
        self.engine = engine
        self._jobs: Dict[str, CompilationJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def submit(self, user_id: str, folder_id: str, request: CompilationRequest) -> CompilationJob:
        """
        Admit a compilation for a user and start it without waiting.

        Must be called from inside the running event loop.

        Raises:
            AlreadyRunningError: the user's current job is still running
        """
        if self.is_running(user_id):
            raise AlreadyRunningError(self._jobs[user_id].id)

        job = CompilationJob(id=str(uuid.uuid4()), user_id=user_id, request=request)
        self._jobs[user_id] = job

        job.status = JobStatus.RUNNING
        job.progress_message = "Starting..."
        print(f"🔄 Job {job.id} for {user_id}: {JobStatus.PENDING.value} -> {job.status.value}", flush=True)

        task = asyncio.get_running_loop().create_task(
            self._run(job, folder_id), name=f"compile-{job.id}"
        )
        # Attached before the task is detached, so even an unexpected
        # crash or cancellation lands on the job record.
        task.add_done_callback(lambda t, job=job: self._on_task_done(job, t))
        self._tasks[job.id] = task
        return job

    def status(self, user_id: str) -> Optional[CompilationJob]:
        """Current job for the user, or None when idle."""
        return self._jobs.get(user_id)

    def clear(self, user_id: str) -> None:
        """Forget the user's job record whatever its status."""
        self._jobs.pop(user_id, None)

    def is_running(self, user_id: str) -> bool:
        job = self._jobs.get(user_id)
        return job is not None and job.status == JobStatus.RUNNING

    async def wait(self, job_id: str) -> None:
        """Wait for a job's background task to finish (no-op if unknown)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding runs; their workspaces are removed as they unwind."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Service-layer names used by the HTTP handlers
    def start_compilation(self, user_id: str, folder_id: str, request: CompilationRequest) -> CompilationJob:
        return self.submit(user_id, folder_id, request)

    def get_status(self, user_id: str) -> Optional[CompilationJob]:
        return self.status(user_id)

    def clear_status(self, user_id: str) -> None:
        self.clear(user_id)

    async def _run(self, job: CompilationJob, folder_id: str) -> None:
        try:
            result = await self.engine.compile(
                folder_id,
                job.request,
                progress=lambda event: self._on_progress(job, event),
            )
        except Exception as e:
            self._fail(job, e)
            return
        self._complete(job, result)

    def _on_progress(self, job: CompilationJob, event: ProgressEvent) -> None:
        if job.is_terminal:
            return
        job.stage = event.stage
        job.progress_message = event.message
        if event.total:
            job.clip_count = event.total

    def _complete(self, job: CompilationJob, result: CompilationResult) -> None:
        if job.status == JobStatus.FAILED:
            return
        job.status = JobStatus.COMPLETE
        job.stage = CompilationStage.DONE
        job.progress_message = "Done!"
        job.result = result
        job.clip_count = result.clip_count
        job.completed_at = datetime.now(timezone.utc)
        print(f"✅ Job {job.id} completed: {result.file_name} ({result.clip_count} clips)", flush=True)

    def _fail(self, job: CompilationJob, error: BaseException) -> None:
        if job.status == JobStatus.COMPLETE:
            return
        if not isinstance(error, (CompilationError, StoragePermissionError)):
            tb.print_exception(type(error), error, error.__traceback__)
        job.status = JobStatus.FAILED
        job.stage = CompilationStage.FAILED
        job.progress_message = "Failed"
        job.error = str(error) or type(error).__name__
        job.error_type = type(error).__name__
        job.requires_reauth = isinstance(error, StoragePermissionError)
        job.completed_at = datetime.now(timezone.utc)
        print(f"❌ Job {job.id} failed ({job.error_type}): {job.error}", flush=True)

    def _on_task_done(self, job: CompilationJob, task: asyncio.Task) -> None:
        self._tasks.pop(job.id, None)
        if task.cancelled():
            self._fail(job, CompilationError("Compilation cancelled"))
            return
        exc = task.exception()
        if exc is not None:
            self._fail(job, exc)
