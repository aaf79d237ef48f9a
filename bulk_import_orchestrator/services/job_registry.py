"""
JobRegistry service for Bulk Import Orchestrator

Owns the import job state machine. Every status change goes through here and is
applied to the job store as a conditional write, serialized per job by an
asyncio lock.
"""

import asyncio
import inspect
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..models.job import (
    ImportJob, JobFile, JobSpec, JobSnapshot, JobStatus, FileStatus, ProcessingMode,
    can_transition_to
)
from ..models.execution import ExecutionSummary
from ..utils.database import JobStore
from ..utils.logger import get_logger, set_log_context
from ..core.exceptions import (
    UnknownJobError, JobNotStagingError, JobNotRunningError, JobStateError, ValidationError
)


LEASE_EXPIRED_MESSAGE = "Execution lease expired"

TerminalListener = Callable[[JobSnapshot], Union[None, Awaitable[None]]]


class JobRegistry:
    """
    Durable registry of import jobs and their files.

    Provides capabilities for:
    - Job creation and file staging
    - Monotonic status transitions (STAGING -> READY -> RUNNING -> COMPLETE | ERROR)
    - Exclusive claiming of READY jobs under an expiring lease
    - Per-file progress tracking
    - Lock-free status snapshots for polling
    """

    def __init__(self, store: JobStore, lease_seconds: int = 600):
        """
        Initialize JobRegistry.

        Args:
            store: Persistence backend for jobs and files
            lease_seconds: Length of the execution lease granted on claim
        """
        self.store = store
        self.lease_seconds = lease_seconds

        # per-job locks, kept only while a coroutine holds or waits on one
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._terminal_listeners: List[TerminalListener] = []

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="job_registry")

    @asynccontextmanager
    async def _job_lock(self, job_id: str):
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if not self._lock_users[job_id]:
                del self._lock_users[job_id]
                del self._locks[job_id]

    def _lease_deadline(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.lease_seconds)

    async def _load(self, job_id: str, include_content: bool = False) -> ImportJob:
        job = await self.store.get_job(job_id, include_content=include_content)
        if job is None:
            raise UnknownJobError(job_id)
        return job

    async def create_job(self, spec: JobSpec, files: Sequence[JobFile] = (), activate: bool = False) -> str:
        """
        Create a new job, optionally with its first files, in a single store write.

        Args:
            spec: Job parameters
            files: File parts staged together with the job
            activate: Create the job READY instead of STAGING

        Returns:
            The new job ID

        Raises:
            ValidationError: If the job parameters are invalid or there are more
                files than declared
        """
        if not isinstance(spec.processing_mode, ProcessingMode):
            raise ValidationError("processing_mode", "must be a ProcessingMode", spec.processing_mode)
        if isinstance(spec.batch_size, bool) or not isinstance(spec.batch_size, int) or spec.batch_size < 1:
            raise ValidationError("batch_size", "must be a positive integer", spec.batch_size)
        if (isinstance(spec.declared_file_count, bool) or not isinstance(spec.declared_file_count, int)
                or spec.declared_file_count < 0):
            raise ValidationError("declared_file_count", "must be a non-negative integer",
                                  spec.declared_file_count)

        if len(files) > spec.declared_file_count:
            raise ValidationError(
                "files",
                f"job declares {spec.declared_file_count} files, got {len(files)}",
                len(files)
            )

        job = ImportJob.from_spec(spec)
        for sequence, job_file in enumerate(files):
            job_file.job_id = job.job_id
            job_file.sequence = sequence
            job.files.append(job_file)

        if activate:
            job.status = JobStatus.READY
            job.status_message = f"Job ready with {len(job.files)} of {job.declared_file_count} files"
        else:
            job.status_message = "Job created"
        await self.store.insert_job(job)

        self.logger.info("Job created", extra={
            "job_id": job.job_id,
            "status": job.status.value,
            "processing_mode": job.processing_mode.value,
            "batch_size": job.batch_size,
            "file_count": len(job.files),
            "declared_file_count": job.declared_file_count
        })
        return job.job_id

    async def append_files(self, job_id: str, files: Sequence[JobFile]) -> int:
        """
        Append file parts to a STAGING job, all or none.

        Files receive consecutive sequence numbers after the ones already stored.

        Returns:
            Total number of files on the job after the append

        Raises:
            UnknownJobError: If the job does not exist
            JobNotStagingError: If the job is no longer STAGING
            ValidationError: If the append would exceed the declared file count
        """
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.status != JobStatus.STAGING:
                raise JobNotStagingError(job_id, job.status)

            total = len(job.files) + len(files)
            if total > job.declared_file_count:
                raise ValidationError(
                    "files",
                    f"job declares {job.declared_file_count} files, append would make {total}",
                    total
                )

            staged = []
            for offset, job_file in enumerate(files):
                job_file.job_id = job_id
                job_file.sequence = len(job.files) + offset
                staged.append(job_file)

            if not await self.store.insert_files(job_id, staged, JobStatus.STAGING):
                current = await self._load(job_id)
                raise JobNotStagingError(job_id, current.status)

        self.logger.info("Files staged", extra={
            "job_id": job_id,
            "appended": len(staged),
            "file_count": total,
            "declared_file_count": job.declared_file_count
        })
        return total

    async def activate(self, job_id: str) -> None:
        """
        Move a job from STAGING to READY.

        Raises:
            UnknownJobError: If the job does not exist
            JobNotStagingError: If the job is not STAGING
        """
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if not can_transition_to(job.status, JobStatus.READY):
                raise JobNotStagingError(job_id, job.status)

            message = f"Job ready with {len(job.files)} of {job.declared_file_count} files"
            if not await self.store.transition_status(
                job_id, JobStatus.STAGING, JobStatus.READY, message, datetime.utcnow()
            ):
                current = await self._load(job_id)
                raise JobNotStagingError(job_id, current.status)

        self.logger.info("Job activated", extra={"job_id": job_id, "file_count": len(job.files)})

    async def claim_next_ready(self, worker_id: str) -> Optional[ImportJob]:
        """
        Claim the oldest READY job for ``worker_id``.

        The claim is a single conditional write in the store, so two workers can
        never receive the same job.

        Returns:
            The claimed RUNNING job with file content, or None if nothing is READY
        """
        now = datetime.utcnow()
        job = await self.store.claim_next_ready(
            worker_id,
            now,
            self._lease_deadline(now),
            message=f"Job claimed by {worker_id}"
        )
        if job:
            self.logger.info("Job claimed", extra={
                "job_id": job.job_id,
                "worker_id": worker_id,
                "file_count": len(job.files)
            })
        return job

    async def renew_lease(self, job_id: str, worker_id: str) -> bool:
        """Extend the execution lease held by ``worker_id``."""
        return await self.store.renew_lease(job_id, worker_id, self._lease_deadline(datetime.utcnow()))

    async def record_file_outcome(
        self,
        job_id: str,
        file_id: str,
        row_cursor: int,
        file_status: FileStatus,
        outcome: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Persist progress of one file of a RUNNING job.

        Raises:
            UnknownJobError: If the job or file does not exist
            JobNotRunningError: If the job is not RUNNING
            ValidationError: If ``row_cursor`` would move backwards
        """
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.status != JobStatus.RUNNING:
                raise JobNotRunningError(job_id, job.status)

            job_file = next((f for f in job.files if f.file_id == file_id), None)
            if job_file is None:
                raise ValidationError("file_id", f"job {job_id} has no such file", file_id)
            if row_cursor < job_file.row_cursor:
                raise ValidationError(
                    "row_cursor",
                    f"cannot move from {job_file.row_cursor} back to {row_cursor}",
                    row_cursor
                )

            await self.store.update_file(job_id, file_id, row_cursor, file_status, outcome)

    async def complete_job(self, job_id: str, summary: Optional[ExecutionSummary] = None) -> None:
        """
        Move a RUNNING job to COMPLETE.

        Raises:
            UnknownJobError: If the job does not exist
            JobNotRunningError: If the job is not RUNNING
        """
        message = summary.message if summary and summary.message else "Job complete"
        await self._finish(job_id, JobStatus.COMPLETE, message, summary)

    async def fail_job(self, job_id: str, message: str, summary: Optional[ExecutionSummary] = None) -> None:
        """
        Move a RUNNING job to ERROR with a diagnostic message.

        Raises:
            UnknownJobError: If the job does not exist
            JobNotRunningError: If the job is not RUNNING
        """
        await self._finish(job_id, JobStatus.ERROR, message, summary)

    async def _finish(self, job_id: str, target: JobStatus, message: str,
                      summary: Optional[ExecutionSummary]) -> None:
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if not can_transition_to(job.status, target):
                raise JobNotRunningError(job_id, job.status)

            outcome = summary.to_dict() if summary else None
            if not await self.store.transition_status(
                job_id, JobStatus.RUNNING, target, message, datetime.utcnow(),
                outcome=outcome, release_lease=True
            ):
                current = await self._load(job_id)
                raise JobNotRunningError(job_id, current.status)

        log = self.logger.info if target == JobStatus.COMPLETE else self.logger.warning
        log("Job finished", extra={"job_id": job_id, "status": target.value, "status_message": message})

        await self._notify_terminal(job_id)

    async def reap_expired_leases(self) -> List[str]:
        """
        Fail RUNNING jobs whose execution lease has expired.

        Returns:
            IDs of the jobs moved to ERROR
        """
        reaped = []
        for job_id in await self.store.find_expired_leases(datetime.utcnow()):
            try:
                await self.fail_job(job_id, LEASE_EXPIRED_MESSAGE)
            except JobStateError:
                # Finished by its worker in the meantime
                continue
            reaped.append(job_id)

        if reaped:
            self.logger.warning("Reaped expired leases", extra={"job_ids": reaped})
        return reaped

    async def get_status(self, job_id: str) -> JobSnapshot:
        """
        Get a read-only snapshot of a job.

        Raises:
            UnknownJobError: If the job does not exist
        """
        return JobSnapshot.from_job(await self._load(job_id))

    async def get_job(self, job_id: str, include_content: bool = False) -> ImportJob:
        """Load the full job record."""
        return await self._load(job_id, include_content=include_content)

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobSnapshot]:
        """List job snapshots, newest first."""
        jobs = await self.store.list_jobs(status=status, limit=limit)
        return [JobSnapshot.from_job(job) for job in jobs]

    async def count_by_status(self) -> Dict[str, int]:
        """Job counts keyed by status plus ``total``."""
        return await self.store.count_by_status()

    def add_terminal_listener(self, callback: TerminalListener) -> None:
        """
        Register a callback invoked with the job snapshot after it reaches COMPLETE or ERROR.

        Callbacks run only after the terminal transition has been written.
        """
        self._terminal_listeners.append(callback)

    async def _notify_terminal(self, job_id: str) -> None:
        if not self._terminal_listeners:
            return

        snapshot = await self.get_status(job_id)
        for callback in list(self._terminal_listeners):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Terminal listener failed: {str(e)}", extra={"job_id": job_id})
