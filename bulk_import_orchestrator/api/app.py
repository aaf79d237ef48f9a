"""
FastAPI application exposing the bulk import operations.

Routes:
    - POST /$import: submit a multipart bulk import (requires ``Prefer: respond-async``)
    - POST /$import-files: stage more files on a STAGING job
    - GET /$import-poll-status: poll a job
    - GET /health: system health
    - GET /metrics: Prometheus exposition
"""

import tempfile
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response

from ..core.exceptions import BulkImportError, MalformedRequestError
from ..core.orchestrator import ImportOrchestrator
from ..services.submission_handler import ImportRequest, SubmissionResult
from ..utils.config import ImportSettings, load_settings
from ..utils.logger import get_logger
from .schemas import SubmissionResponse, OperationOutcome, OutcomeIssue, HealthResponse


OUTCOME_MEDIA_TYPE = "application/fhir+json"

logger = get_logger(__name__)


async def _spool_body(request: Request, max_memory: int):
    """Copy the request stream into a spooled file the blocking parser can read."""
    spool = tempfile.SpooledTemporaryFile(max_size=max_memory)
    async for chunk in request.stream():
        spool.write(chunk)
    spool.seek(0)
    return spool


def _outcome_response(status_code: int, diagnostics: str) -> JSONResponse:
    outcome = OperationOutcome(issue=[OutcomeIssue(severity="error", code="processing", diagnostics=diagnostics)])
    return JSONResponse(
        status_code=status_code,
        content=outcome.model_dump(exclude_none=True),
        media_type=OUTCOME_MEDIA_TYPE
    )


def _submission_response(result: SubmissionResult) -> JSONResponse:
    body = SubmissionResponse(
        job_id=result.job_id,
        poll_location=result.poll_location,
        file_count=result.file_count,
        declared_file_count=result.declared_file_count,
        status=result.status.value
    )
    return JSONResponse(
        status_code=202,
        content=body.model_dump(),
        headers={"Content-Location": result.poll_location}
    )


def create_app(orchestrator: Optional[ImportOrchestrator] = None,
               settings: Optional[ImportSettings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator: Orchestrator to serve; built from ``settings`` when omitted
        settings: Settings used when no orchestrator is given, defaults to ``load_settings()``

    Returns:
        Configured FastAPI app; the orchestrator is started and stopped with the app lifespan
    """
    if orchestrator is None:
        orchestrator = ImportOrchestrator(settings or load_settings())
    settings = orchestrator.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start()
        try:
            yield
        finally:
            await orchestrator.stop()

    app = FastAPI(title="Bulk Import API", version="1.0.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    @app.exception_handler(BulkImportError)
    async def bulk_import_error_handler(request: Request, exc: BulkImportError):
        if exc.http_status >= 500:
            logger.error(f"Request failed: {exc.message}", extra={
                "error_code": exc.error_code,
                "details": exc.details
            })
        else:
            logger.info(f"Request rejected: {exc.message}", extra={
                "path": request.url.path,
                "error_code": exc.error_code
            })
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_operation_outcome(),
            media_type=OUTCOME_MEDIA_TYPE
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error: {str(exc)}", exc_info=exc)
        return _outcome_response(500, "Internal server error")

    async def _build_request(request: Request, require_async: bool = True, **params) -> ImportRequest:
        # Reject on headers alone before any of the upload is read
        orchestrator.submission_handler.check_headers(request.headers, require_async=require_async)
        body = await _spool_body(request, settings.spool_max_memory)
        return ImportRequest(
            headers=dict(request.headers),
            body=body,
            tenant=request.headers.get(settings.tenant_header) or settings.default_tenant,
            server_base=str(request.base_url).rstrip("/"),
            **params
        )

    @app.post("/$import", status_code=202)
    async def bulk_import(
        request: Request,
        job_description: Optional[str] = Query(default=None, alias="jobDescription"),
        processing_mode: Optional[str] = Query(default=None, alias="processingMode"),
        declared_file_count: Optional[str] = Query(default=None, alias="declaredFileCount"),
        batch_size: Optional[str] = Query(default=None, alias="batchSize")
    ):
        """Accept a multipart bulk import and answer with the poll location."""
        import_request = await _build_request(
            request,
            job_description=job_description,
            processing_mode=processing_mode,
            declared_file_count=declared_file_count,
            batch_size=batch_size
        )
        try:
            result = await orchestrator.submit(import_request)
        finally:
            import_request.body.close()
        return _submission_response(result)

    @app.post("/$import-files", status_code=202)
    async def bulk_import_files(
        request: Request,
        job_id: Optional[str] = Query(default=None, alias="_jobId")
    ):
        """Stage additional files on a job created with an incomplete file set."""
        if not job_id:
            raise MalformedRequestError("Missing required parameter _jobId", parameter="_jobId")

        import_request = await _build_request(request, require_async=False)
        try:
            result = await orchestrator.append_files(job_id, import_request)
        finally:
            import_request.body.close()
        return _submission_response(result)

    @app.get("/$import-poll-status")
    async def bulk_import_poll_status(job_id: Optional[str] = Query(default=None, alias="_jobId")):
        """Report a job's progress or final outcome."""
        if not job_id:
            raise MalformedRequestError("Missing required parameter _jobId", parameter="_jobId")

        poll = await orchestrator.poll(job_id)
        if poll.body is None:
            return Response(status_code=poll.status_code, headers=poll.headers)
        return JSONResponse(
            status_code=poll.status_code,
            content=poll.body,
            headers=poll.headers,
            media_type=OUTCOME_MEDIA_TYPE
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """System health endpoint."""
        health = await orchestrator.get_system_health()
        status_code = 503 if health["overall_status"] == "critical" else 200
        return JSONResponse(status_code=status_code, content=HealthResponse(**health).model_dump())

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics."""
        return Response(content=orchestrator.metrics.render(), media_type=orchestrator.metrics.content_type)

    return app
