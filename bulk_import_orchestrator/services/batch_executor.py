"""
BatchExecutor service for Bulk Import Orchestrator

Background worker pool that claims READY jobs and replays their files into the
record store in bounded batches, then drives each job to COMPLETE or ERROR.
"""

import asyncio
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from timeit import default_timer
from typing import List, Optional

from ..models.job import ImportJob, JobFile, FileStatus, ProcessingMode
from ..models.execution import ExecutionSummary, FileOutcome
from ..engines.base import RecordStore
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..core.exceptions import ExecutionError, JobStateError
from .job_registry import JobRegistry


@dataclass
class ExecutionPolicy:
    """Thresholds deciding whether a finished pass counts as COMPLETE."""

    max_error_files: int = 0
    max_row_failure_ratio: Optional[float] = None

    def evaluate(self, summary: ExecutionSummary) -> Optional[str]:
        """
        Check a finished pass against the policy.

        Returns:
            None if the job should complete, otherwise the failure message
        """
        error_files = summary.error_files
        if len(error_files) > self.max_error_files:
            return summary.first_error_message() or f"{len(error_files)} files failed"

        if self.max_row_failure_ratio is not None and summary.rows_total:
            ratio = summary.rows_failed / summary.rows_total
            if ratio > self.max_row_failure_ratio:
                first = summary.first_error_message()
                message = f"{summary.rows_failed} of {summary.rows_total} rows failed"
                return f"{message}: {first}" if first else message

        return None


class BatchExecutor:
    """
    Executes claimed import jobs.

    Provides capabilities for:
    - A pool of long-lived worker tasks polling for READY jobs
    - ATOMIC_BATCH and PER_ROW commit modes
    - Per-file row cursor and outcome tracking
    - Lease renewal and reaping of abandoned RUNNING jobs
    """

    def __init__(
        self,
        registry: JobRegistry,
        record_store: RecordStore,
        worker_count: int = 2,
        idle_interval: float = 5.0,
        policy: Optional[ExecutionPolicy] = None,
        metrics=None,
        worker_prefix: Optional[str] = None
    ):
        """
        Initialize BatchExecutor.

        Args:
            registry: Job registry used for claims and bookkeeping
            record_store: Collaborator that persists rows
            worker_count: Number of worker tasks started by ``start``
            idle_interval: Seconds a worker sleeps when nothing is READY
            policy: Completion thresholds
            metrics: Optional ImportMetrics
            worker_prefix: Prefix for worker IDs, defaults to host and PID
        """
        self.registry = registry
        self.record_store = record_store
        self.worker_count = worker_count
        self.idle_interval = idle_interval
        self.policy = policy or ExecutionPolicy()
        self.metrics = metrics
        self.worker_prefix = worker_prefix or f"{socket.gethostname()}-{os.getpid()}"

        self._workers: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="batch_executor")

    @property
    def active_workers(self) -> int:
        return sum(1 for task in self._workers if not task.done())

    async def start(self):
        """Start the worker pool."""
        if self._workers:
            return

        self._shutdown_event.clear()
        for index in range(self.worker_count):
            worker_id = f"{self.worker_prefix}-{index}"
            self._workers.append(asyncio.create_task(self._worker_loop(worker_id)))

        self.logger.info("BatchExecutor started", extra={"worker_count": self.worker_count})

    async def stop(self, grace_period: float = 10.0):
        """Stop the worker pool, letting in-flight jobs finish within ``grace_period``."""
        if not self._workers:
            return

        self._shutdown_event.set()
        done, pending = await asyncio.wait(self._workers, timeout=grace_period)

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._workers = []
        self.logger.info("BatchExecutor stopped", extra={"cancelled": len(pending)})

    async def _worker_loop(self, worker_id: str):
        """Claim and execute jobs until shutdown."""
        while not self._shutdown_event.is_set():
            processed = False
            try:
                await self.registry.reap_expired_leases()
                processed = await self.run_once(worker_id)
            except Exception as e:
                self.logger.error(f"Worker iteration failed: {str(e)}", extra={"worker_id": worker_id},
                                  exc_info=True)

            if processed:
                continue

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.idle_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self, worker_id: str = "inline") -> bool:
        """
        Claim at most one READY job and execute it to a terminal status.

        Returns:
            True if a job was claimed
        """
        job = await self.registry.claim_next_ready(worker_id)
        if job is None:
            return False

        await self.execute_job(job, worker_id)
        return True

    async def execute_job(self, job: ImportJob, worker_id: str) -> ExecutionSummary:
        """
        Replay every file of a RUNNING job and record the terminal status.

        Never raises: unexpected failures move the job to ERROR. Everything logged
        while the job runs carries its job_id and worker_id.
        """
        with LoggerContext(job_id=job.job_id, worker_id=worker_id):
            return await self._execute(job, worker_id)

    async def _execute(self, job: ImportJob, worker_id: str) -> ExecutionSummary:
        summary = ExecutionSummary(job_id=job.job_id, worker_id=worker_id)

        self.logger.info("Executing job", extra={
            "processing_mode": job.processing_mode.value,
            "batch_size": job.batch_size,
            "file_count": len(job.files)
        })

        try:
            for job_file in sorted(job.files, key=lambda f: f.sequence):
                summary.files.append(await self._process_file(job, job_file, worker_id))

            summary.completed_at = datetime.utcnow()
            failure = self.policy.evaluate(summary)
            summary.succeeded = failure is None

            if failure:
                summary.message = failure
                await self.registry.fail_job(job.job_id, failure, summary)
            else:
                summary.message = (
                    f"Imported {summary.rows_committed} of {summary.rows_total} rows "
                    f"from {len(summary.files)} files"
                )
                await self.registry.complete_job(job.job_id, summary)

        except JobStateError as e:
            # Lease reaped while we were working
            summary.succeeded = False
            summary.message = e.message
            self.logger.warning("Abandoning job that is no longer running", extra={
                "job_id": job.job_id,
                "worker_id": worker_id,
                "error": e.message
            })

        except Exception as e:
            summary.succeeded = False
            summary.completed_at = datetime.utcnow()
            summary.message = f"Unexpected error during import: {str(e)}"
            self.logger.error("Job execution failed", extra={"job_id": job.job_id}, exc_info=True)
            try:
                await self.registry.fail_job(job.job_id, summary.message, summary)
            except Exception as fail_error:
                self.logger.error(f"Could not record job failure: {str(fail_error)}",
                                  extra={"job_id": job.job_id})

        return summary

    async def _process_file(self, job: ImportJob, job_file: JobFile, worker_id: str) -> FileOutcome:
        outcome = FileOutcome(file_id=job_file.file_id, sequence=job_file.sequence)
        rows = self.record_store.split_rows(job_file.content)
        outcome.rows_total = len(rows)
        outcome.status = FileStatus.RUNNING

        cursor = 0
        await self.registry.record_file_outcome(
            job.job_id, job_file.file_id, cursor, FileStatus.RUNNING, outcome.to_dict()
        )

        while cursor < len(rows):
            group = rows[cursor:cursor + job.batch_size]
            started = default_timer()

            if job.processing_mode == ProcessingMode.ATOMIC_BATCH:
                try:
                    await self.record_store.commit_batch(job_file.tenant, group)
                except Exception as e:
                    error = self._batch_error(job, job_file, cursor, len(group), e)
                    outcome.record_failure(error.row_index, error.message)
                    outcome.status = FileStatus.ERROR
                    self._count_rows(failed=len(group))

                    self.logger.warning("Batch commit failed", extra=error.details)
                    await self.registry.record_file_outcome(
                        job.job_id, job_file.file_id, cursor, FileStatus.ERROR, outcome.to_dict()
                    )
                    return outcome

                outcome.rows_committed += len(group)
                self._count_rows(committed=len(group))
            else:
                for offset, row in enumerate(group):
                    try:
                        await self.record_store.commit_row(job_file.tenant, row)
                    except Exception as e:
                        outcome.record_failure(
                            cursor + offset,
                            f"Row {cursor + offset} of file {job_file.sequence} failed: {str(e)}"
                        )
                        self._count_rows(failed=1)
                    else:
                        outcome.rows_committed += 1
                        self._count_rows(committed=1)

            if self.metrics:
                self.metrics.observe_batch(job.processing_mode.value, default_timer() - started)

            cursor += len(group)
            await self.registry.record_file_outcome(
                job.job_id, job_file.file_id, cursor, FileStatus.RUNNING, outcome.to_dict()
            )
            if not await self.registry.renew_lease(job.job_id, worker_id):
                self.logger.warning("Execution lease could not be renewed", extra={
                    "job_id": job.job_id,
                    "worker_id": worker_id
                })

        outcome.status = FileStatus.COMPLETE
        await self.registry.record_file_outcome(
            job.job_id, job_file.file_id, cursor, FileStatus.COMPLETE, outcome.to_dict()
        )

        self.logger.info("File processed", extra={
            "job_id": job.job_id,
            "file_id": job_file.file_id,
            "rows_total": outcome.rows_total,
            "rows_committed": outcome.rows_committed,
            "rows_failed": outcome.rows_failed
        })
        return outcome

    @staticmethod
    def _batch_error(job: ImportJob, job_file: JobFile, cursor: int, size: int, cause: Exception) -> ExecutionError:
        row_index = cursor
        cause_row = getattr(cause, "row_index", None)
        if isinstance(cause_row, int):
            row_index = cursor + cause_row

        return ExecutionError(
            job.job_id,
            f"Failed to commit rows {cursor}-{cursor + size - 1} of file {job_file.sequence}: {str(cause)}",
            file_id=job_file.file_id,
            row_index=row_index
        )

    def _count_rows(self, committed: int = 0, failed: int = 0):
        if self.metrics:
            self.metrics.rows(committed=committed, failed=failed)
