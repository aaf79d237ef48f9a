"""
Execution outcome models for Bulk Import Orchestrator

Captures what happened while replaying a job's files into the record store:
per-row failures, per-file outcomes, and the job-level summary stored on the
terminal transition.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from .job import FileStatus


@dataclass
class RowFailure:
    """A single row that the record store rejected."""

    row_index: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"row_index": self.row_index, "message": self.message}


@dataclass
class FileOutcome:
    """Result of processing one file part."""

    file_id: str
    sequence: int
    status: FileStatus = FileStatus.PENDING
    rows_total: int = 0
    rows_committed: int = 0
    failed_rows: List[RowFailure] = field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def rows_failed(self) -> int:
        return len(self.failed_rows)

    def record_failure(self, row_index: int, message: str):
        """Record a rejected row."""
        self.failed_rows.append(RowFailure(row_index=row_index, message=message))
        if self.error_message is None:
            self.error_message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert outcome to dictionary."""
        return {
            "file_id": self.file_id,
            "sequence": self.sequence,
            "status": self.status.value,
            "rows_total": self.rows_total,
            "rows_committed": self.rows_committed,
            "rows_failed": self.rows_failed,
            "failed_rows": [f.to_dict() for f in self.failed_rows],
            "error_message": self.error_message
        }


@dataclass
class ExecutionSummary:
    """Summary of a whole job execution pass."""

    job_id: str
    worker_id: Optional[str] = None
    files: List[FileOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    succeeded: Optional[bool] = None
    message: Optional[str] = None

    @property
    def rows_total(self) -> int:
        return sum(f.rows_total for f in self.files)

    @property
    def rows_committed(self) -> int:
        return sum(f.rows_committed for f in self.files)

    @property
    def rows_failed(self) -> int:
        return sum(f.rows_failed for f in self.files)

    @property
    def error_files(self) -> List[FileOutcome]:
        return [f for f in self.files if f.status == FileStatus.ERROR]

    def first_error_message(self) -> Optional[str]:
        """Message of the first failure encountered, in file order."""
        for outcome in self.files:
            if outcome.error_message:
                return outcome.error_message
        return None

    def get_duration(self) -> Optional[float]:
        """Get execution duration in seconds if finished."""
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert summary to dictionary."""
        return {
            "job_id": self.job_id,
            "worker_id": self.worker_id,
            "succeeded": self.succeeded,
            "message": self.message,
            "rows_total": self.rows_total,
            "rows_committed": self.rows_committed,
            "rows_failed": self.rows_failed,
            "files": [f.to_dict() for f in self.files],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.get_duration()
        }
