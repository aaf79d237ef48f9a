"""
MonitoringService for Bulk Import Orchestrator

Prometheus metrics for submissions, executions and row throughput, plus a
system health summary built from job counts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from ..models.job import JobStatus, JobSnapshot
from ..utils.database import JobStore
from ..utils.logger import get_logger, set_log_context


class ImportMetrics:
    """Prometheus collectors for the import pipeline, on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "bulk_import"):
        self.registry = registry or CollectorRegistry()

        self.jobs_submitted = Counter(
            "jobs_submitted_total",
            "Bulk import jobs accepted",
            namespace=namespace,
            registry=self.registry
        )
        self.files_submitted = Counter(
            "files_submitted_total",
            "File parts accepted with submissions",
            namespace=namespace,
            registry=self.registry
        )
        self.jobs_finished = Counter(
            "jobs_finished_total",
            "Jobs that reached a terminal status",
            ["status"],
            namespace=namespace,
            registry=self.registry
        )
        self.rows_committed = Counter(
            "rows_committed_total",
            "Rows committed to the record store",
            namespace=namespace,
            registry=self.registry
        )
        self.rows_failed = Counter(
            "rows_failed_total",
            "Rows rejected by the record store",
            namespace=namespace,
            registry=self.registry
        )
        self.batch_latency = Histogram(
            "batch_commit_seconds",
            "Time spent committing one batch",
            ["mode"],
            namespace=namespace,
            registry=self.registry
        )

    def job_submitted(self, file_count: int = 0):
        self.jobs_submitted.inc()
        self.files_submitted.inc(file_count)

    def job_finished(self, snapshot: JobSnapshot):
        """Terminal listener: count the job by final status."""
        self.jobs_finished.labels(snapshot.status.value).inc()

    def rows(self, committed: int = 0, failed: int = 0):
        if committed:
            self.rows_committed.inc(committed)
        if failed:
            self.rows_failed.inc(failed)

    def observe_batch(self, mode: str, seconds: float):
        self.batch_latency.labels(mode).observe(seconds)

    def render(self) -> bytes:
        """Prometheus text exposition of every collector."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST


@dataclass
class SystemHealth:
    """Overall system health status."""
    overall_status: str
    store_healthy: bool
    total_jobs: int
    staging_jobs: int
    ready_jobs: int
    running_jobs: int
    completed_jobs: int
    failed_jobs: int
    active_workers: int
    error_rate: float
    uptime_seconds: float
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_status": self.overall_status,
            "store_healthy": self.store_healthy,
            "total_jobs": self.total_jobs,
            "staging_jobs": self.staging_jobs,
            "ready_jobs": self.ready_jobs,
            "running_jobs": self.running_jobs,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "active_workers": self.active_workers,
            "error_rate": self.error_rate,
            "uptime_seconds": self.uptime_seconds,
            "timestamp": self.timestamp.isoformat()
        }


class MonitoringService:
    """Builds health reports from the job store and the executor."""

    def __init__(self, store: JobStore, metrics: Optional[ImportMetrics] = None, executor=None):
        """
        Initialize MonitoringService.

        Args:
            store: Job store to query
            metrics: Metrics to expose
            executor: Optional BatchExecutor whose live workers are reported
        """
        self.store = store
        self.metrics = metrics or ImportMetrics()
        self.executor = executor
        self.start_time = datetime.utcnow()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="monitoring_service")

    async def get_system_health(self) -> SystemHealth:
        """
        Get current system health status.

        Returns:
            SystemHealth object with current status
        """
        store_healthy = await self.store.is_healthy()
        counts = await self.store.count_by_status() if store_healthy else {"total": 0}

        completed = counts.get(JobStatus.COMPLETE.value, 0)
        failed = counts.get(JobStatus.ERROR.value, 0)
        finished = completed + failed
        error_rate = (failed / finished) * 100 if finished else 0.0

        ready = counts.get(JobStatus.READY.value, 0)
        active_workers = self.executor.active_workers if self.executor else 0

        health = SystemHealth(
            overall_status=self._determine_overall_status(store_healthy, error_rate, ready, active_workers),
            store_healthy=store_healthy,
            total_jobs=counts.get("total", 0),
            staging_jobs=counts.get(JobStatus.STAGING.value, 0),
            ready_jobs=ready,
            running_jobs=counts.get(JobStatus.RUNNING.value, 0),
            completed_jobs=completed,
            failed_jobs=failed,
            active_workers=active_workers,
            error_rate=error_rate,
            uptime_seconds=(datetime.utcnow() - self.start_time).total_seconds()
        )

        if health.overall_status != "healthy":
            self.logger.warning("System health degraded", extra=health.to_dict())
        return health

    def _determine_overall_status(self, store_healthy: bool, error_rate: float, ready_jobs: int,
                                  active_workers: int) -> str:
        """Determine overall system health status."""
        if not store_healthy:
            return "critical"

        # Jobs waiting with nobody to run them
        if ready_jobs > 0 and self.executor is not None and active_workers == 0:
            return "degraded"

        if error_rate > 50.0:
            return "degraded"

        if error_rate > 10.0:
            return "warning"

        return "healthy"
