"""
In-process job store

Keeps jobs in a dict guarded by one asyncio lock. Used for tests, local runs
and single-process deployments selected with ``memory://``.
"""

import asyncio
import copy
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .database import JobStore
from ..models.job import ImportJob, JobFile, JobStatus, FileStatus


class InMemoryJobStore(JobStore):
    """Job store holding copies of every job in memory."""

    def __init__(self):
        self._jobs: Dict[str, ImportJob] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(job: ImportJob, include_content: bool = True) -> ImportJob:
        clone = copy.deepcopy(job)
        if not include_content:
            clone.files = [replace(f, content="") for f in clone.files]
        return clone

    async def insert_job(self, job: ImportJob) -> None:
        async with self._lock:
            self._jobs[job.job_id] = copy.deepcopy(job)

    async def get_job(self, job_id: str, include_content: bool = True) -> Optional[ImportJob]:
        job = self._jobs.get(job_id)
        return self._copy(job, include_content) if job else None

    async def insert_files(self, job_id: str, files: List[JobFile], expected_status: JobStatus) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != expected_status:
                return False
            job.files.extend(copy.deepcopy(files))
            job.files.sort(key=lambda f: f.sequence)
            return True

    async def transition_status(self, job_id, expected, target, message, at, outcome=None,
                                release_lease=False) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != expected:
                return False
            job.status = target
            job.status_message = message
            job.status_time = at
            if outcome is not None:
                job.outcome = copy.deepcopy(outcome)
            if release_lease:
                job.lease_owner = None
                job.lease_expires_at = None
            return True

    async def claim_next_ready(self, worker_id, at, lease_expires_at, message=None) -> Optional[ImportJob]:
        async with self._lock:
            ready = [j for j in self._jobs.values() if j.status == JobStatus.READY]
            if not ready:
                return None
            job = min(ready, key=lambda j: (j.status_time, j.created_at))
            job.status = JobStatus.RUNNING
            job.status_message = message
            job.status_time = at
            job.lease_owner = worker_id
            job.lease_expires_at = lease_expires_at
            return self._copy(job)

    async def update_file(self, job_id: str, file_id: str, row_cursor: int, file_status: FileStatus,
                          outcome: Optional[Dict[str, Any]] = None) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            for job_file in job.files:
                if job_file.file_id == file_id:
                    job_file.row_cursor = max(job_file.row_cursor, row_cursor)
                    job_file.file_status = file_status
                    if outcome is not None:
                        job_file.outcome = copy.deepcopy(outcome)
                    return True
            return False

    async def renew_lease(self, job_id: str, worker_id: str, lease_expires_at: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.RUNNING or job.lease_owner != worker_id:
                return False
            job.lease_expires_at = lease_expires_at
            return True

    async def find_expired_leases(self, now: datetime) -> List[str]:
        return [
            job.job_id for job in list(self._jobs.values())
            if job.status == JobStatus.RUNNING
            and job.lease_expires_at is not None
            and job.lease_expires_at < now
        ]

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[ImportJob]:
        jobs = [j for j in list(self._jobs.values()) if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [self._copy(j, include_content=False) for j in jobs[:limit]]

    async def count_by_status(self) -> Dict[str, int]:
        stats = {"total": 0}
        for job in list(self._jobs.values()):
            stats[job.status.value] = stats.get(job.status.value, 0) + 1
            stats["total"] += 1
        return stats
