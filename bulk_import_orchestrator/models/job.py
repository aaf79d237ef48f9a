"""
Job-related data models for Bulk Import Orchestrator

Defines import jobs, the file parts they own, the processing modes, and the
monotonic status transition rules that every state change must respect.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from uuid import uuid4


class JobStatus(Enum):
    """Import job status enumeration."""
    STAGING = "STAGING"
    READY = "READY"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


class FileStatus(Enum):
    """Status of a single file part within a job."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


class ProcessingMode(Enum):
    """Commit granularity used when replaying a file's rows."""
    ATOMIC_BATCH = "ATOMIC_BATCH"
    PER_ROW = "PER_ROW"


TERMINAL_STATUSES = (JobStatus.COMPLETE, JobStatus.ERROR)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class JobSpec:
    """Parameters needed to open a new import job."""

    description: Optional[str] = None
    processing_mode: ProcessingMode = ProcessingMode.ATOMIC_BATCH
    batch_size: int = 1
    declared_file_count: int = 0


@dataclass
class JobFile:
    """One file part extracted from a multipart submission."""

    job_id: str
    content: str
    sequence: int = 0
    tenant: Optional[str] = None
    description: Optional[str] = None
    file_id: str = field(default_factory=lambda: uuid4().hex)
    row_cursor: int = 0
    file_status: FileStatus = FileStatus.PENDING
    outcome: Optional[Dict[str, Any]] = None

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        """Convert file to dictionary for serialization."""
        data = {
            "file_id": self.file_id,
            "job_id": self.job_id,
            "sequence": self.sequence,
            "tenant": self.tenant,
            "description": self.description,
            "row_cursor": self.row_cursor,
            "file_status": self.file_status.value,
            "outcome": self.outcome
        }
        if include_content:
            data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobFile":
        """Create file from dictionary."""
        data = dict(data)
        data["file_status"] = FileStatus(data.get("file_status", FileStatus.PENDING.value))
        data.setdefault("content", "")
        return cls(**data)


@dataclass
class ImportJob:
    """Core import job data model."""

    job_id: str = field(default_factory=lambda: uuid4().hex)
    description: Optional[str] = None
    processing_mode: ProcessingMode = ProcessingMode.ATOMIC_BATCH
    batch_size: int = 1
    declared_file_count: int = 0

    # Status tracking
    status: JobStatus = JobStatus.STAGING
    status_message: Optional[str] = None
    status_time: datetime = field(default_factory=datetime.utcnow)
    created_at: datetime = field(default_factory=datetime.utcnow)

    files: List[JobFile] = field(default_factory=list)

    # Execution lease
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    outcome: Optional[Dict[str, Any]] = None

    @classmethod
    def from_spec(cls, spec: JobSpec) -> "ImportJob":
        """Build a fresh STAGING job from a job spec."""
        return cls(
            description=spec.description,
            processing_mode=spec.processing_mode,
            batch_size=spec.batch_size,
            declared_file_count=spec.declared_file_count
        )

    def is_terminal(self) -> bool:
        """Check if job reached COMPLETE or ERROR."""
        return self.status in TERMINAL_STATUSES

    def is_complete_set(self) -> bool:
        """Check if every declared file has arrived."""
        return len(self.files) == self.declared_file_count

    def to_dict(self, include_content: bool = False) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        return {
            "job_id": self.job_id,
            "description": self.description,
            "processing_mode": self.processing_mode.value,
            "batch_size": self.batch_size,
            "declared_file_count": self.declared_file_count,
            "status": self.status.value,
            "status_message": self.status_message,
            "status_time": _isoformat(self.status_time),
            "created_at": _isoformat(self.created_at),
            "files": [f.to_dict(include_content=include_content) for f in self.files],
            "lease_owner": self.lease_owner,
            "lease_expires_at": _isoformat(self.lease_expires_at),
            "outcome": self.outcome
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportJob":
        """Create job from dictionary."""
        data = dict(data)
        for field_name in ["status_time", "created_at", "lease_expires_at"]:
            data[field_name] = _parse_datetime(data.get(field_name))

        data["processing_mode"] = ProcessingMode(data["processing_mode"])
        data["status"] = JobStatus(data["status"])
        data["files"] = [JobFile.from_dict(f) for f in data.get("files") or []]

        return cls(**data)


@dataclass(frozen=True)
class FileProgress:
    """Read-only progress view of one file."""

    file_id: str
    sequence: int
    tenant: Optional[str]
    file_status: FileStatus
    row_cursor: int
    outcome: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "sequence": self.sequence,
            "tenant": self.tenant,
            "file_status": self.file_status.value,
            "row_cursor": self.row_cursor,
            "outcome": self.outcome
        }


@dataclass(frozen=True)
class JobSnapshot:
    """Point-in-time, read-only view of a job returned by status lookups."""

    job_id: str
    status: JobStatus
    status_message: Optional[str]
    status_time: datetime
    created_at: datetime
    description: Optional[str]
    processing_mode: ProcessingMode
    batch_size: int
    declared_file_count: int
    file_count: int
    files: tuple = ()
    outcome: Optional[Dict[str, Any]] = None

    @classmethod
    def from_job(cls, job: ImportJob) -> "JobSnapshot":
        return cls(
            job_id=job.job_id,
            status=job.status,
            status_message=job.status_message,
            status_time=job.status_time,
            created_at=job.created_at,
            description=job.description,
            processing_mode=job.processing_mode,
            batch_size=job.batch_size,
            declared_file_count=job.declared_file_count,
            file_count=len(job.files),
            files=tuple(
                FileProgress(
                    file_id=f.file_id,
                    sequence=f.sequence,
                    tenant=f.tenant,
                    file_status=f.file_status,
                    row_cursor=f.row_cursor,
                    outcome=f.outcome
                )
                for f in job.files
            ),
            outcome=job.outcome
        )

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "status_message": self.status_message,
            "status_time": _isoformat(self.status_time),
            "created_at": _isoformat(self.created_at),
            "description": self.description,
            "processing_mode": self.processing_mode.value,
            "batch_size": self.batch_size,
            "declared_file_count": self.declared_file_count,
            "file_count": self.file_count,
            "files": [f.to_dict() for f in self.files],
            "outcome": self.outcome
        }


# Job status transition rules
JOB_STATUS_TRANSITIONS = {
    JobStatus.STAGING: [JobStatus.READY],
    JobStatus.READY: [JobStatus.RUNNING],
    JobStatus.RUNNING: [JobStatus.COMPLETE, JobStatus.ERROR],
    JobStatus.COMPLETE: [],  # Terminal state
    JobStatus.ERROR: []  # Terminal state
}


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of valid status transitions from current status."""
    return JOB_STATUS_TRANSITIONS.get(current_status, [])
