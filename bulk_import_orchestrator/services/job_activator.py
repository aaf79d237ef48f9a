"""
JobActivator service for Bulk Import Orchestrator

Moves STAGING jobs to READY once every declared file has arrived, or
unconditionally when the submission path forces it.
"""

from ..models.job import JobStatus
from ..utils.logger import get_logger, set_log_context
from ..core.exceptions import JobStateError
from .job_registry import JobRegistry


class JobActivator:
    """Decides when a staged job may be handed to the batch executor."""

    def __init__(self, registry: JobRegistry):
        self.registry = registry
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="job_activator")

    @staticmethod
    def should_activate(file_count: int, declared_file_count: int, force: bool = False) -> bool:
        """Whether a job holding ``file_count`` of ``declared_file_count`` files may run."""
        return force or file_count >= declared_file_count

    async def maybe_activate(self, job_id: str, force: bool = False) -> bool:
        """
        Activate ``job_id`` if its file set is complete (or ``force`` is set).

        Safe to call repeatedly: a job that is already past STAGING, or whose
        files have not all arrived, is left alone.

        Args:
            job_id: Job to check
            force: Activate regardless of the declared file count

        Returns:
            True if this call moved the job to READY

        Raises:
            UnknownJobError: If the job does not exist
        """
        job = await self.registry.get_job(job_id)
        if job.status != JobStatus.STAGING:
            return False

        if not self.should_activate(len(job.files), job.declared_file_count, force):
            self.logger.debug("Job not complete yet", extra={
                "job_id": job_id,
                "file_count": len(job.files),
                "declared_file_count": job.declared_file_count
            })
            return False

        try:
            await self.registry.activate(job_id)
        except JobStateError:
            # Activated concurrently
            return False

        return True
