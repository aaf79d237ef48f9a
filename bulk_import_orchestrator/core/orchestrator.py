"""
Main ImportOrchestrator class that coordinates all services

Wires the job store, registry, submission handler, activator, batch executor,
poll responder and monitoring together and owns their start/stop lifecycle.
"""

from typing import Any, Dict, List, Optional

from ..models.job import JobStatus
from ..engines.base import RecordStore
from ..engines.local_engine import InMemoryRecordStore
from ..engines.http_engine import HttpRecordStore
from ..services.job_registry import JobRegistry
from ..services.job_activator import JobActivator
from ..services.submission_handler import SubmissionHandler, ImportRequest, SubmissionResult
from ..services.batch_executor import BatchExecutor, ExecutionPolicy
from ..services.poll_status import PollStatusResponder, PollResponse
from ..services.monitoring_service import MonitoringService, ImportMetrics
from ..utils.config import ImportSettings
from ..utils.database import JobStore, create_job_store
from ..utils.logger import get_logger, set_log_context
from .exceptions import OrchestratorError


class ImportOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Bulk import submission and multi-call file staging
    - Status polling and job listing
    - Running the batch executor in-process
    - System health and metrics
    """

    def __init__(
        self,
        settings: Optional[ImportSettings] = None,
        store: Optional[JobStore] = None,
        record_store: Optional[RecordStore] = None
    ):
        """
        Initialize the ImportOrchestrator.

        Args:
            settings: Runtime settings, defaults to ``ImportSettings()``
            store: Job store, built from ``settings.database_url`` when omitted
            record_store: Record store collaborator, built from
                ``settings.record_store_url`` when omitted
        """
        self.settings = settings or ImportSettings()
        self.store = store or create_job_store(self.settings.database_url, self.settings.pool_size)
        self.record_store = record_store or self._build_record_store()

        self.metrics = ImportMetrics()
        self.registry = JobRegistry(self.store, lease_seconds=self.settings.lease_seconds)
        self.registry.add_terminal_listener(self.metrics.job_finished)

        self.activator = JobActivator(self.registry)
        self.submission_handler = SubmissionHandler(
            self.registry,
            self.activator,
            buffer_size=self.settings.buffer_size,
            defer_incomplete_activation=self.settings.defer_incomplete_activation,
            metrics=self.metrics
        )
        self.poll_responder = PollStatusResponder(
            self.registry,
            retry_after_seconds=self.settings.retry_after_seconds
        )
        self.executor = BatchExecutor(
            self.registry,
            self.record_store,
            worker_count=self.settings.worker_count,
            idle_interval=self.settings.idle_interval,
            policy=ExecutionPolicy(
                max_error_files=self.settings.max_error_files,
                max_row_failure_ratio=self.settings.max_row_failure_ratio
            ),
            metrics=self.metrics
        )
        self.monitoring_service = MonitoringService(
            self.store,
            metrics=self.metrics,
            executor=self.executor if self.settings.run_workers else None
        )

        self._is_running = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    def _build_record_store(self) -> RecordStore:
        if self.settings.record_store_url:
            return HttpRecordStore(
                self.settings.record_store_url,
                timeout=self.settings.record_store_timeout,
                tenant_header=self.settings.tenant_header
            )
        return InMemoryRecordStore()

    async def start(self, run_workers: Optional[bool] = None):
        """
        Start the orchestrator and all services.

        Args:
            run_workers: Start the batch executor pool; defaults to ``settings.run_workers``
        """
        run_workers = self.settings.run_workers if run_workers is None else run_workers
        self.logger.info("Starting ImportOrchestrator", extra={
            "store": type(self.store).__name__,
            "record_store": self.record_store.engine_name,
            "run_workers": run_workers
        })

        try:
            await self.store.initialize()
            await self.record_store.initialize()
            if run_workers:
                await self.executor.start()
            self._is_running = True
            self.logger.info("ImportOrchestrator started successfully")

        except Exception as e:
            self.logger.error("Failed to start ImportOrchestrator", exc_info=True)
            await self.stop()
            raise OrchestratorError(f"Failed to start orchestrator: {str(e)}")

    async def stop(self):
        """Stop the orchestrator and all services."""
        self.logger.info("Stopping ImportOrchestrator")

        await self.executor.stop()
        await self.record_store.shutdown()
        await self.store.close()

        self._is_running = False
        self.logger.info("ImportOrchestrator stopped")

    async def __aenter__(self) -> "ImportOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def is_running(self) -> bool:
        return self._is_running

    async def submit(self, request: ImportRequest) -> SubmissionResult:
        """Accept a ``$import`` submission."""
        return await self.submission_handler.submit(request)

    async def append_files(self, job_id: str, request: ImportRequest) -> SubmissionResult:
        """Stage more files on a STAGING job."""
        return await self.submission_handler.append_files(job_id, request)

    async def poll(self, job_id: str) -> PollResponse:
        """Build the poll-status response for a job."""
        return await self.poll_responder.poll(job_id)

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """
        Get detailed job status.

        Raises:
            UnknownJobError: If the job does not exist
        """
        snapshot = await self.registry.get_status(job_id)
        return snapshot.to_dict()

    async def list_jobs(self, status_filter: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """List jobs, newest first, optionally filtered by status name."""
        status = JobStatus(status_filter.upper()) if status_filter else None
        snapshots = await self.registry.list_jobs(status=status, limit=limit)
        return [snapshot.to_dict() for snapshot in snapshots]

    async def run_pending(self, worker_id: str = "inline", max_jobs: Optional[int] = None) -> int:
        """
        Execute READY jobs inline until none are left.

        Returns:
            Number of jobs executed
        """
        executed = 0
        while max_jobs is None or executed < max_jobs:
            if not await self.executor.run_once(worker_id):
                break
            executed += 1
        return executed

    async def get_system_health(self) -> Dict[str, Any]:
        """Get the system health report."""
        health = await self.monitoring_service.get_system_health()
        return health.to_dict()

    async def health_check(self) -> bool:
        """Quick health check."""
        return self._is_running and await self.store.is_healthy()
