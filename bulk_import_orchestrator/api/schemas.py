"""
Response models for the bulk import HTTP API.
"""

from typing import List, Optional

from pydantic import BaseModel


class SubmissionResponse(BaseModel):
    """Body of the 202 returned for an accepted submission."""
    job_id: str
    poll_location: str
    file_count: int
    declared_file_count: int
    status: str


class OutcomeIssue(BaseModel):
    severity: str
    code: str
    diagnostics: Optional[str] = None


class OperationOutcome(BaseModel):
    """Minimal OperationOutcome resource."""
    resourceType: str = "OperationOutcome"
    issue: Optional[List[OutcomeIssue]] = None


class HealthResponse(BaseModel):
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
    timestamp: str
