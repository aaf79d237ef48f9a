"""
Exception classes for Bulk Import Orchestrator

Provides the hierarchy of exceptions raised while accepting, tracking and
executing bulk-import jobs. Submission-time errors are surfaced to the client
immediately; execution-time errors are recorded on the job and only become
visible through the poll protocol.
"""

from typing import Optional, Dict, Any


class BulkImportError(Exception):
    """Base exception for all bulk import errors."""

    http_status = 500

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }

    def to_operation_outcome(self) -> Dict[str, Any]:
        """Render the error as an OperationOutcome payload for HTTP clients."""
        return {
            "resourceType": "OperationOutcome",
            "issue": [
                {
                    "severity": "error",
                    "code": "processing",
                    "diagnostics": self.message
                }
            ]
        }


class AsyncRequiredError(BulkImportError):
    """Raised when a client submits an import without asking for async processing."""

    http_status = 400

    def __init__(self, operation: str = "$import"):
        super().__init__(
            f"Must request async processing for {operation}",
            error_code="ASYNC_REQUIRED",
            details={"operation": operation}
        )


class MalformedRequestError(BulkImportError):
    """Raised when the request body or its parameters cannot be accepted."""

    http_status = 400

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(
            message,
            error_code="MALFORMED_REQUEST",
            details={"parameter": parameter}
        )


class UnknownJobError(BulkImportError):
    """Raised when a requested job cannot be found."""

    http_status = 404

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} not found",
            error_code="UNKNOWN_JOB",
            details={"job_id": job_id}
        )


class JobStateError(BulkImportError):
    """Raised when an operation is not legal in the job's current status."""

    http_status = 409

    def __init__(self, job_id: str, status: Any, message: str, error_code: str = "JOB_STATE_ERROR"):
        status_name = getattr(status, "value", status)
        super().__init__(
            message,
            error_code=error_code,
            details={"job_id": job_id, "status": status_name}
        )
        self.job_id = job_id
        self.status = status


class JobNotStagingError(JobStateError):
    """Raised when files are appended to, or activation is requested for, a non-STAGING job."""

    def __init__(self, job_id: str, status: Any):
        super().__init__(
            job_id,
            status,
            f"Job {job_id} is not accepting files (status {getattr(status, 'value', status)})",
            error_code="JOB_NOT_STAGING"
        )


class JobNotRunningError(JobStateError):
    """Raised when execution bookkeeping targets a job that is not RUNNING."""

    def __init__(self, job_id: str, status: Any):
        super().__init__(
            job_id,
            status,
            f"Job {job_id} is not running (status {getattr(status, 'value', status)})",
            error_code="JOB_NOT_RUNNING"
        )


class ExecutionError(BulkImportError):
    """Raised when replaying a file into the record store fails."""

    def __init__(self, job_id: str, message: str, file_id: Optional[str] = None, row_index: Optional[int] = None):
        super().__init__(
            message,
            error_code="EXECUTION_ERROR",
            details={"job_id": job_id, "file_id": file_id, "row_index": row_index}
        )
        self.job_id = job_id
        self.file_id = file_id
        self.row_index = row_index


class RecordStoreError(BulkImportError):
    """Raised by record store collaborators when rows cannot be persisted."""

    def __init__(self, message: str, row_index: Optional[int] = None):
        super().__init__(
            message,
            error_code="RECORD_STORE_ERROR",
            details={"row_index": row_index}
        )
        self.row_index = row_index


class ValidationError(BulkImportError):
    """Raised when input validation fails."""

    http_status = 400

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class ConfigurationError(BulkImportError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class DatabaseError(BulkImportError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class OrchestratorError(BulkImportError):
    """Raised when orchestrator-level operations fail."""

    def __init__(self, message: str):
        super().__init__(
            f"Orchestrator error: {message}",
            error_code="ORCHESTRATOR_ERROR"
        )
