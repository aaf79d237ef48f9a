"""
Core package for Bulk Import Orchestrator

Contains the exception hierarchy and the main orchestrator class.
"""

from .exceptions import (
    BulkImportError,
    AsyncRequiredError,
    MalformedRequestError,
    UnknownJobError,
    JobStateError,
    JobNotStagingError,
    JobNotRunningError,
    ExecutionError,
    RecordStoreError,
    ValidationError,
    ConfigurationError,
    DatabaseError,
    OrchestratorError
)
from .orchestrator import ImportOrchestrator

__all__ = [
    "ImportOrchestrator",
    "BulkImportError",
    "AsyncRequiredError",
    "MalformedRequestError",
    "UnknownJobError",
    "JobStateError",
    "JobNotStagingError",
    "JobNotRunningError",
    "ExecutionError",
    "RecordStoreError",
    "ValidationError",
    "ConfigurationError",
    "DatabaseError",
    "OrchestratorError"
]
