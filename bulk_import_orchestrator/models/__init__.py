"""
Data models for Bulk Import Orchestrator

This module contains the data models used throughout the import pipeline,
including jobs, file parts, snapshots and execution outcomes.
"""

# Job models
from .job import (
    ImportJob,
    JobFile,
    JobSpec,
    JobSnapshot,
    FileProgress,
    JobStatus,
    FileStatus,
    ProcessingMode,
    TERMINAL_STATUSES,
    JOB_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions
)

# Execution models
from .execution import (
    RowFailure,
    FileOutcome,
    ExecutionSummary
)

__all__ = [
    # Job models
    "ImportJob",
    "JobFile",
    "JobSpec",
    "JobSnapshot",
    "FileProgress",
    "JobStatus",
    "FileStatus",
    "ProcessingMode",
    "TERMINAL_STATUSES",
    "JOB_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",

    # Execution models
    "RowFailure",
    "FileOutcome",
    "ExecutionSummary"
]
