"""
CLI package for Bulk Import Orchestrator

Provides command-line interface for schema setup, servers, workers and jobs.
"""

from .main import main, cli

__all__ = ["main", "cli"]
