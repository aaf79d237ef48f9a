"""
Services package for Bulk Import Orchestrator

Contains the job registry, submission, activation, execution, polling and
monitoring services.
"""

from .job_registry import JobRegistry
from .job_activator import JobActivator
from .submission_handler import SubmissionHandler, ImportRequest, SubmissionResult, parse_prefer_header
from .batch_executor import BatchExecutor, ExecutionPolicy
from .poll_status import PollStatusResponder, PollResponse
from .monitoring_service import MonitoringService, ImportMetrics, SystemHealth

__all__ = [
    "JobRegistry",
    "JobActivator",
    "SubmissionHandler",
    "ImportRequest",
    "SubmissionResult",
    "parse_prefer_header",
    "BatchExecutor",
    "ExecutionPolicy",
    "PollStatusResponder",
    "PollResponse",
    "MonitoringService",
    "ImportMetrics",
    "SystemHealth"
]
