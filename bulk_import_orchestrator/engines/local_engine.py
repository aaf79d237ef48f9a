"""
Local in-memory record store.

Keeps committed rows per tenant in process memory. Each row must be a JSON
object; batches are validated completely before anything is committed.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Sequence

from .base import RecordStore
from ..core.exceptions import RecordStoreError
from ..utils.logger import get_logger


DEFAULT_PARTITION = "DEFAULT"

RowValidator = Callable[[Dict[str, Any]], Optional[str]]


class InMemoryRecordStore(RecordStore):
    """
    Record store for local runs and tests.

    Suitable for:
    - Development and testing
    - Single-process deployments where records are consumed in-process
    """

    def __init__(self, validator: Optional[RowValidator] = None):
        """
        Initialize the in-memory store.

        Args:
            validator: Optional callable returning an error message for a rejected
                record, or None to accept it
        """
        super().__init__()
        self.validator = validator
        self.records: Dict[str, List[Dict[str, Any]]] = {}
        self.commit_count = 0
        self._lock = asyncio.Lock()
        self.logger = get_logger(__name__)

    def _decode(self, row: str, row_index: int) -> Dict[str, Any]:
        try:
            record = json.loads(row)
        except json.JSONDecodeError as e:
            raise RecordStoreError(f"Row {row_index} is not valid JSON: {e.msg}", row_index=row_index)

        if not isinstance(record, dict):
            raise RecordStoreError(f"Row {row_index} is not a JSON object", row_index=row_index)

        if self.validator:
            problem = self.validator(record)
            if problem:
                raise RecordStoreError(f"Row {row_index} rejected: {problem}", row_index=row_index)

        return record

    async def commit_batch(self, tenant: Optional[str], rows: Sequence[str]) -> None:
        records = [self._decode(row, index) for index, row in enumerate(rows)]

        async with self._lock:
            self.records.setdefault(tenant or DEFAULT_PARTITION, []).extend(records)
            self.commit_count += 1

        self.logger.debug("Committed batch", extra={"tenant": tenant, "rows": len(records)})

    async def commit_row(self, tenant: Optional[str], row: str) -> None:
        await self.commit_batch(tenant, [row])

    def get_records(self, tenant: Optional[str] = None) -> List[Dict[str, Any]]:
        """Records committed for ``tenant`` (default partition when None)."""
        return list(self.records.get(tenant or DEFAULT_PARTITION, []))

    @property
    def total_records(self) -> int:
        return sum(len(records) for records in self.records.values())
