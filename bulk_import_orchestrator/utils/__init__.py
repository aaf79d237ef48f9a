"""
Utilities package for Bulk Import Orchestrator

Contains persistence backends, the multipart parser, configuration and logging.
"""

from .database import DatabaseManager, JobStore, create_job_store
from .memory_store import InMemoryJobStore
from .config import ImportSettings, load_settings
from .multipart import MultipartStream, MultipartPart, iter_parts, get_boundary, parse_content_type
from .logger import setup_logger, get_logger, set_log_context, LoggerContext

__all__ = [
    "DatabaseManager",
    "JobStore",
    "create_job_store",
    "InMemoryJobStore",
    "ImportSettings",
    "load_settings",
    "MultipartStream",
    "MultipartPart",
    "iter_parts",
    "get_boundary",
    "parse_content_type",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext"
]
