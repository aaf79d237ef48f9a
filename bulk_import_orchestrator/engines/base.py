"""
Base record store interface.

The record store is the external collaborator that persists the rows replayed
from an import file. The batch executor only talks to it through this class.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence


class RecordStore(ABC):
    """
    Abstract base class for record store collaborators.

    Implementations decide what a row is (``split_rows``) and how rows are
    persisted. ``commit_batch`` must be all-or-nothing: if it raises, none of the
    rows passed to it may become visible.
    """

    def __init__(self):
        self._is_initialized = False

    async def initialize(self) -> bool:
        """
        Initialize the record store.

        Returns:
            True if initialization successful
        """
        self._is_initialized = True
        return True

    async def shutdown(self) -> bool:
        """
        Shutdown the record store and clean up resources.

        Returns:
            True if shutdown successful
        """
        self._is_initialized = False
        return True

    def split_rows(self, content: str) -> List[str]:
        """
        Split file content into logical rows.

        The default row boundary is one non-blank line (NDJSON).
        """
        return [line for line in content.splitlines() if line.strip()]

    @abstractmethod
    async def commit_batch(self, tenant: Optional[str], rows: Sequence[str]) -> None:
        """
        Persist ``rows`` as a single all-or-nothing unit.

        Raises:
            RecordStoreError: If any row is rejected; nothing is persisted
        """

    @abstractmethod
    async def commit_row(self, tenant: Optional[str], row: str) -> None:
        """
        Persist a single row.

        Raises:
            RecordStoreError: If the row is rejected
        """

    @property
    def is_initialized(self) -> bool:
        """Check if store is initialized."""
        return self._is_initialized

    @property
    def engine_name(self) -> str:
        """Get the store name."""
        return self.__class__.__name__.replace("RecordStore", "").lower() or "base"
