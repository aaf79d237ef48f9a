"""
SubmissionHandler service for Bulk Import Orchestrator

Accepts an asynchronous bulk-import request: validates it, streams the multipart
body into file parts, stages them as a new job and returns the poll location.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Mapping, Optional, Union

from ..models.job import JobFile, JobSpec, JobStatus, ProcessingMode
from ..utils.multipart import DEFAULT_BUFFER_SIZE, MultipartStream, get_boundary
from ..utils.logger import get_logger, set_log_context
from ..core.exceptions import AsyncRequiredError, MalformedRequestError
from .job_registry import JobRegistry
from .job_activator import JobActivator


RESPOND_ASYNC = "respond-async"
POLL_STATUS_OPERATION = "$import-poll-status"


def parse_prefer_header(value: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Parse a ``Prefer`` header into lower-cased preference names and values.

    ``Prefer: respond-async, wait=10`` becomes ``{"respond-async": None, "wait": "10"}``.
    """
    preferences: Dict[str, Optional[str]] = {}
    if not value:
        return preferences

    for item in value.replace(";", ",").split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, pref_value = item.partition("=")
        preferences[name.strip().lower()] = pref_value.strip().strip('"') if sep else None
    return preferences


@dataclass
class ImportRequest:
    """Transport-neutral view of an incoming ``$import`` request."""

    headers: Mapping[str, str]
    body: BinaryIO
    tenant: Optional[str] = None
    server_base: str = ""
    job_description: Optional[str] = None
    processing_mode: Optional[str] = None
    declared_file_count: Optional[Union[int, str]] = None
    batch_size: Optional[Union[int, str]] = None

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in dict(self.headers).items()}

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)


@dataclass
class SubmissionResult:
    """What the client needs to follow up on an accepted submission."""

    job_id: str
    poll_location: str
    file_count: int
    declared_file_count: int
    status: JobStatus
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "poll_location": self.poll_location,
            "file_count": self.file_count,
            "declared_file_count": self.declared_file_count,
            "status": self.status.value,
            **self.details
        }


def _parse_int(value: Optional[Union[int, str]], parameter: str, minimum: int) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise MalformedRequestError(f"Invalid {parameter}: {value}", parameter=parameter)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise MalformedRequestError(f"Invalid {parameter}: {value}", parameter=parameter)
    if number < minimum:
        raise MalformedRequestError(f"{parameter} must be at least {minimum}, got {number}", parameter=parameter)
    return number


def _parse_processing_mode(value: Optional[str]) -> ProcessingMode:
    if value is None or not value.strip():
        return ProcessingMode.ATOMIC_BATCH
    try:
        return ProcessingMode(value.strip().upper())
    except ValueError:
        allowed = ", ".join(m.value for m in ProcessingMode)
        raise MalformedRequestError(
            f"Unknown processingMode {value!r}; expected one of {allowed}",
            parameter="processingMode"
        )


class SubmissionHandler:
    """
    Turns ``$import`` requests into staged jobs.

    Nothing is persisted until the request has been fully validated and its body
    parsed, so a rejected request never leaves a job behind.
    """

    def __init__(
        self,
        registry: JobRegistry,
        activator: JobActivator,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        defer_incomplete_activation: bool = False,
        metrics=None
    ):
        """
        Initialize SubmissionHandler.

        Args:
            registry: Job registry to stage jobs in
            activator: Activation policy for new jobs and appended files
            buffer_size: Read size for the multipart parser
            defer_incomplete_activation: Leave jobs STAGING while fewer files than
                declared have arrived instead of force-activating them
            metrics: Optional ImportMetrics
        """
        self.registry = registry
        self.activator = activator
        self.buffer_size = buffer_size
        self.defer_incomplete_activation = defer_incomplete_activation
        self.metrics = metrics

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="submission_handler")

    @staticmethod
    def poll_location(server_base: str, job_id: str) -> str:
        """Absolute URL of the poll-status operation for ``job_id``."""
        return f"{server_base.rstrip('/')}/{POLL_STATUS_OPERATION}?_jobId={job_id}"

    def _read_files(self, body: BinaryIO, boundary: bytes, tenant: Optional[str]) -> List[JobFile]:
        files = []
        for part in MultipartStream(body, boundary, self.buffer_size):
            files.append(JobFile(
                job_id="",
                content=part.text(),
                tenant=tenant,
                description=part.header_text
            ))
        return files

    async def _parse_body(self, request: ImportRequest, boundary: bytes) -> List[JobFile]:
        return await asyncio.to_thread(self._read_files, request.body, boundary, request.tenant)

    @staticmethod
    def check_headers(headers: Mapping[str, str], require_async: bool = True) -> bytes:
        """
        Validate the parts of a request that are known before its body is read.

        Args:
            headers: Request headers
            require_async: Whether ``Prefer: respond-async`` is mandatory

        Returns:
            The multipart boundary

        Raises:
            AsyncRequiredError: If ``require_async`` is set and the preference is missing
            MalformedRequestError: If the content type is not multipart/form-data with a boundary
        """
        headers = {k.lower(): v for k, v in headers.items()}
        if require_async and RESPOND_ASYNC not in parse_prefer_header(headers.get("prefer")):
            raise AsyncRequiredError("$import")
        return get_boundary(headers.get("content-type"))

    async def submit(self, request: ImportRequest) -> SubmissionResult:
        """
        Accept a bulk-import submission.

        Args:
            request: Incoming request

        Returns:
            SubmissionResult with the job ID and poll location

        Raises:
            AsyncRequiredError: If ``Prefer: respond-async`` is missing
            MalformedRequestError: If the content type, parameters or body are invalid
        """
        boundary = self.check_headers(request.headers)

        processing_mode = _parse_processing_mode(request.processing_mode)
        batch_size = _parse_int(request.batch_size, "batchSize", 1) or 1
        declared = _parse_int(request.declared_file_count, "declaredFileCount", 0)

        files = await self._parse_body(request, boundary)

        if declared is None:
            declared = len(files)
        elif declared < len(files):
            raise MalformedRequestError(
                f"declaredFileCount {declared} is smaller than the {len(files)} files submitted",
                parameter="declaredFileCount"
            )

        # One store write: a failure leaves no job behind
        activate = self.activator.should_activate(
            len(files), declared, force=not self.defer_incomplete_activation
        )
        job_id = await self.registry.create_job(JobSpec(
            description=request.job_description,
            processing_mode=processing_mode,
            batch_size=batch_size,
            declared_file_count=declared
        ), files, activate=activate)

        if self.metrics:
            self.metrics.job_submitted(len(files))

        snapshot = await self.registry.get_status(job_id)
        result = SubmissionResult(
            job_id=job_id,
            poll_location=self.poll_location(request.server_base, job_id),
            file_count=snapshot.file_count,
            declared_file_count=snapshot.declared_file_count,
            status=snapshot.status
        )

        self.logger.info("Bulk import submitted", extra={
            "job_id": job_id,
            "tenant": request.tenant,
            "file_count": result.file_count,
            "declared_file_count": declared,
            "status": result.status.value
        })
        return result

    async def append_files(self, job_id: str, request: ImportRequest) -> SubmissionResult:
        """
        Stage more files on an existing STAGING job, then activate it if complete.

        Raises:
            UnknownJobError: If the job does not exist
            JobNotStagingError: If the job is no longer accepting files
            MalformedRequestError: If the body is invalid
            ValidationError: If more files arrive than were declared
        """
        boundary = self.check_headers(request.headers, require_async=False)
        files = await self._parse_body(request, boundary)
        if files:
            await self.registry.append_files(job_id, files)
        await self.activator.maybe_activate(job_id)

        snapshot = await self.registry.get_status(job_id)
        self.logger.info("Files appended", extra={
            "job_id": job_id,
            "appended": len(files),
            "file_count": snapshot.file_count,
            "status": snapshot.status.value
        })
        return SubmissionResult(
            job_id=job_id,
            poll_location=self.poll_location(request.server_base, job_id),
            file_count=snapshot.file_count,
            declared_file_count=snapshot.declared_file_count,
            status=snapshot.status
        )
