"""
PollStatusResponder for Bulk Import Orchestrator

Maps a job's status to the response a polling client sees: 202 with progress
headers while the job is in flight, 200 on COMPLETE, 500 on ERROR.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..models.job import JobSnapshot, JobStatus
from ..utils.logger import get_logger, set_log_context
from .job_registry import JobRegistry


DEFAULT_RETRY_AFTER_SECONDS = 120


def operation_outcome(diagnostics: Optional[str] = None) -> Dict[str, Any]:
    """OperationOutcome body; one ``error`` issue when ``diagnostics`` is given."""
    outcome: Dict[str, Any] = {"resourceType": "OperationOutcome"}
    if diagnostics is not None:
        outcome["issue"] = [{
            "severity": "error",
            "code": "processing",
            "diagnostics": diagnostics
        }]
    return outcome


def format_instant(value: datetime) -> str:
    """ISO-8601 UTC instant; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PollResponse:
    """Transport-neutral poll result."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None


class PollStatusResponder:
    """Renders poll responses from registry snapshots. Never mutates a job."""

    def __init__(self, registry: JobRegistry, retry_after_seconds: int = DEFAULT_RETRY_AFTER_SECONDS):
        self.registry = registry
        self.retry_after_seconds = retry_after_seconds
        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="poll_status")

    async def poll(self, job_id: str) -> PollResponse:
        """
        Build the poll response for ``job_id``.

        Raises:
            UnknownJobError: If the job does not exist
        """
        snapshot = await self.registry.get_status(job_id)
        response = self.render(snapshot)

        self.logger.debug("Job polled", extra={
            "job_id": job_id,
            "status": snapshot.status.value,
            "status_code": response.status_code
        })
        return response

    def render(self, snapshot: JobSnapshot) -> PollResponse:
        if snapshot.status == JobStatus.COMPLETE:
            return PollResponse(200, {}, operation_outcome())

        if snapshot.status == JobStatus.ERROR:
            return PollResponse(500, {}, operation_outcome(snapshot.status_message or "Job failed"))

        return PollResponse(202, {
            "X-Progress": f"Status set to {snapshot.status.value} at {format_instant(snapshot.status_time)}",
            "Retry-After": str(self.retry_after_seconds)
        })
