import io
from typing import Iterable, Optional, Tuple, Union

import pytest
import pytest_asyncio

from bulk_import_orchestrator.core.orchestrator import ImportOrchestrator
from bulk_import_orchestrator.engines.local_engine import InMemoryRecordStore
from bulk_import_orchestrator.models.job import JobFile, JobSpec, ProcessingMode
from bulk_import_orchestrator.services.batch_executor import BatchExecutor
from bulk_import_orchestrator.services.job_activator import JobActivator
from bulk_import_orchestrator.services.job_registry import JobRegistry
from bulk_import_orchestrator.services.monitoring_service import ImportMetrics
from bulk_import_orchestrator.services.poll_status import PollStatusResponder
from bulk_import_orchestrator.services.submission_handler import ImportRequest, SubmissionHandler
from bulk_import_orchestrator.utils.config import ImportSettings
from bulk_import_orchestrator.utils.memory_store import InMemoryJobStore


BOUNDARY = "XyZ-boundary-1234"

Part = Tuple[Union[str, bytes], Union[str, bytes]]


def encode_multipart(parts: Iterable[Part], boundary: str = BOUNDARY, preamble: bytes = b"",
                     epilogue: bytes = b"\r\n") -> bytes:
    """Build a multipart body from (header block, body) pairs."""
    out = io.BytesIO()
    out.write(preamble)
    for headers, body in parts:
        headers = headers.encode("utf-8") if isinstance(headers, str) else headers
        body = body.encode("utf-8") if isinstance(body, str) else body
        out.write(b"--" + boundary.encode("ascii") + b"\r\n")
        out.write(headers + b"\r\n\r\n")
        out.write(body + b"\r\n")
    out.write(b"--" + boundary.encode("ascii") + b"--" + epilogue)
    return out.getvalue()


def _file_part(name: str, content: str) -> Part:
    headers = (
        f'Content-Disposition: form-data; name="file"; filename="{name}"\r\n'
        "Content-Type: application/x-ndjson"
    )
    return headers, content


# MULTIPART FIXTURES ------------------------------------------------------------------------------------------
@pytest.fixture
def multipart():
    """Builder for raw multipart bodies."""
    return encode_multipart


@pytest.fixture
def file_part():
    """Builder for an NDJSON file part: file_part(name, content)."""
    return _file_part


@pytest.fixture
def make_request():
    """Builder for ImportRequest objects around a multipart body."""

    def _make(parts: Iterable[Part] = (), prefer: Optional[str] = "respond-async",
              content_type: Optional[str] = None, body: Optional[bytes] = None, **params) -> ImportRequest:
        headers = {"Content-Type": content_type or f"multipart/form-data; boundary={BOUNDARY}"}
        if prefer is not None:
            headers["Prefer"] = prefer
        raw = body if body is not None else encode_multipart(list(parts))
        params.setdefault("server_base", "http://import.test/fhir")
        return ImportRequest(headers=headers, body=io.BytesIO(raw), **params)

    return _make


# SERVICE FIXTURES --------------------------------------------------------------------------------------------
@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def registry(job_store):
    return JobRegistry(job_store, lease_seconds=600)


@pytest.fixture
def activator(registry):
    return JobActivator(registry)


@pytest.fixture
def metrics():
    return ImportMetrics()


@pytest.fixture
def handler(registry, activator, metrics):
    return SubmissionHandler(registry, activator, metrics=metrics)


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def executor(registry, record_store, metrics):
    return BatchExecutor(registry, record_store, worker_count=1, idle_interval=0.01,
                         metrics=metrics, worker_prefix="test")


@pytest.fixture
def responder(registry):
    return PollStatusResponder(registry)


@pytest.fixture
def settings():
    return ImportSettings(database_url="memory://", worker_count=0, run_workers=False, idle_interval=0.01)


@pytest.fixture
def ready_job(registry, activator):
    """Factory creating a READY job from file contents."""

    async def _create(*contents: str, mode: ProcessingMode = ProcessingMode.ATOMIC_BATCH,
                      batch_size: int = 1, tenant: Optional[str] = None) -> str:
        job_id = await registry.create_job(JobSpec(
            description="test job",
            processing_mode=mode,
            batch_size=batch_size,
            declared_file_count=len(contents)
        ))
        await registry.append_files(job_id, [
            JobFile(job_id=job_id, content=content, tenant=tenant) for content in contents
        ])
        assert await activator.maybe_activate(job_id)
        return job_id

    return _create


@pytest_asyncio.fixture
async def orchestrator(settings):
    """Started in-memory orchestrator without background workers."""
    orchestrator = ImportOrchestrator(settings)
    await orchestrator.start()
    yield orchestrator
    await orchestrator.stop()
