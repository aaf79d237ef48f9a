"""
HTTP record store.

Forwards batches to a remote ingestion endpoint with httpx. The endpoint is
expected to apply ``{"atomic": true, "rows": [...]}`` bodies all-or-nothing and
answer with a 2xx status on success.
"""

from typing import Dict, Optional, Sequence

import httpx

from .base import RecordStore
from ..core.exceptions import RecordStoreError
from ..utils.logger import get_logger


class HttpRecordStore(RecordStore):
    """Record store that POSTs rows to ``<base_url>/batch``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        tenant_header: str = "X-Tenant-ID",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the HTTP record store.

        Args:
            base_url: Root URL of the ingestion service
            timeout: Per-request timeout in seconds
            headers: Extra headers sent with every request
            tenant_header: Header carrying the tenant of the rows
            transport: Optional httpx transport (used for testing)
        """
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self.tenant_header = tenant_header
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None
        self.logger = get_logger(__name__)

    async def initialize(self) -> bool:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport
            )
        self._is_initialized = True
        self.logger.info("HTTP record store initialized", extra={"base_url": self.base_url})
        return True

    async def shutdown(self) -> bool:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        self._is_initialized = False
        return True

    async def _post(self, tenant: Optional[str], rows: Sequence[str], atomic: bool) -> None:
        if self.client is None:
            await self.initialize()

        headers = {self.tenant_header: tenant} if tenant else {}
        try:
            response = await self.client.post(
                "/batch",
                json={"atomic": atomic, "rows": list(rows)},
                headers=headers
            )
        except httpx.HTTPError as e:
            raise RecordStoreError(f"Record store request failed: {e}")

        if response.is_success:
            return

        row_index = None
        message = response.text or response.reason_phrase
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = payload.get("message", message)
            row_index = payload.get("row_index")

        raise RecordStoreError(
            f"Record store rejected batch ({response.status_code}): {message}",
            row_index=row_index
        )

    async def commit_batch(self, tenant: Optional[str], rows: Sequence[str]) -> None:
        await self._post(tenant, rows, atomic=True)

    async def commit_row(self, tenant: Optional[str], row: str) -> None:
        await self._post(tenant, [row], atomic=True)
