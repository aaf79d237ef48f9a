"""
Record store collaborators.

Provides the record store interface used by the batch executor and its
in-memory and HTTP implementations.
"""

from .base import RecordStore
from .local_engine import InMemoryRecordStore
from .http_engine import HttpRecordStore

__all__ = [
    "RecordStore",
    "InMemoryRecordStore",
    "HttpRecordStore"
]
