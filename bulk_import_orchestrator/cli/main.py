"""
Main CLI entry point for Bulk Import Orchestrator

Provides command-line interface for schema setup, running the API server and
executor workers, and submitting and tracking import jobs.
"""

import asyncio
import json
import sys
from pathlib import Path

import click
import httpx

from ..core.exceptions import BulkImportError, ConfigurationError
from ..core.orchestrator import ImportOrchestrator
from ..utils.config import load_settings
from ..utils.database import create_job_store
from ..utils.logger import setup_logger


DEFAULT_SERVER_URL = "http://localhost:8000"


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL (memory:// for in-process)')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose):
    """Bulk Import Orchestrator CLI"""

    ctx.ensure_object(dict)

    try:
        settings = load_settings(config, database_url=database_url, log_level=log_level)
    except ConfigurationError as e:
        raise click.ClickException(e.message)

    logger = setup_logger(
        level=settings.log_level,
        structured=settings.structured_logging and not verbose,
        log_file=settings.log_file
    )

    ctx.obj['logger'] = logger
    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def db(ctx):
    """Database management commands"""
    pass


@cli.group()
@click.pass_context
def job(ctx):
    """Job submission and tracking commands"""
    pass


# Database Commands
@db.command('init')
@click.pass_context
def init_db(ctx):
    """Create the import tables and indexes"""
    settings = ctx.obj['settings']

    async def _init():
        store = create_job_store(settings.database_url, settings.pool_size)
        try:
            await store.initialize()
            await store.create_schema()
        finally:
            await store.close()

    try:
        asyncio.run(_init())
    except BulkImportError as e:
        click.echo(f"Error creating schema: {e.message}", err=True)
        sys.exit(1)

    click.echo("Schema ready")


# Server Commands
@cli.command('serve')
@click.option('--host', default='0.0.0.0', help='HTTP server host')
@click.option('--port', type=int, default=8000, help='HTTP server port')
@click.option('--workers/--no-workers', 'run_workers', default=None,
              help='Run batch executor workers in the server process')
@click.pass_context
def serve(ctx, host, port, run_workers):
    """Start the bulk import HTTP server"""
    import uvicorn
    from ..api.app import create_app

    settings = ctx.obj['settings']
    if run_workers is not None:
        settings = settings.model_copy(update={"run_workers": run_workers})

    click.echo(f"Starting HTTP server on {host}:{port}")
    uvicorn.run(create_app(ImportOrchestrator(settings)), host=host, port=port, log_config=None)


@cli.command('worker')
@click.option('--once', is_flag=True, help='Execute READY jobs inline and exit')
@click.option('--max-jobs', type=int, default=None, help='Stop after this many jobs (with --once)')
@click.pass_context
def run_worker(ctx, once, max_jobs):
    """Run batch executor workers against the shared job store"""
    settings = ctx.obj['settings']

    async def _run():
        orchestrator = ImportOrchestrator(settings)
        await orchestrator.start(run_workers=not once)
        try:
            if once:
                executed = await orchestrator.run_pending(max_jobs=max_jobs)
                click.echo(f"Executed {executed} jobs")
                return

            click.echo(f"Running {settings.worker_count} workers. Press Ctrl+C to stop.")
            while True:
                await asyncio.sleep(1)
        finally:
            await orchestrator.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Shutting down workers...")
    except BulkImportError as e:
        click.echo(f"Worker error: {e.message}", err=True)
        sys.exit(1)


# Job Commands
def _http_client(base_url: str) -> httpx.AsyncClient:
    """HTTP client for talking to a running server."""
    return httpx.AsyncClient(base_url=base_url, timeout=60.0)


def _outcome_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    issues = payload.get("issue") if isinstance(payload, dict) else None
    if issues:
        return issues[0].get("diagnostics", "")
    return json.dumps(payload)


@job.command('submit')
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--url', default=DEFAULT_SERVER_URL, show_default=True, help='Server base URL')
@click.option('--description', help='Job description')
@click.option('--processing-mode', type=click.Choice(['ATOMIC_BATCH', 'PER_ROW'], case_sensitive=False),
              default='ATOMIC_BATCH', help='Commit granularity')
@click.option('--batch-size', type=int, default=1, help='Rows per commit')
@click.option('--declared-file-count', type=int, default=None, help='Total files the job will receive')
@click.option('--tenant', help='Tenant the files belong to')
@click.pass_context
def submit_job(ctx, files, url, description, processing_mode, batch_size, declared_file_count, tenant):
    """Submit FILES as one bulk import job"""
    settings = ctx.obj['settings']

    params = {"processingMode": processing_mode.upper(), "batchSize": batch_size}
    if description:
        params["jobDescription"] = description
    if declared_file_count is not None:
        params["declaredFileCount"] = declared_file_count

    headers = {"Prefer": "respond-async"}
    if tenant:
        headers[settings.tenant_header] = tenant

    async def _submit() -> httpx.Response:
        parts = [
            ("file", (Path(path).name, Path(path).read_bytes(), "application/x-ndjson"))
            for path in files
        ]
        async with _http_client(url) as client:
            return await client.post("/$import", params=params, headers=headers, files=parts)

    try:
        response = asyncio.run(_submit())
    except httpx.HTTPError as e:
        click.echo(f"Error submitting job: {str(e)}", err=True)
        sys.exit(1)

    if response.status_code != 202:
        click.echo(f"Submission rejected ({response.status_code}): {_outcome_message(response)}", err=True)
        sys.exit(1)

    result = response.json()
    click.echo("Job submitted successfully!")
    click.echo(f"Job ID: {result['job_id']}")
    click.echo(f"Files: {result['file_count']} of {result['declared_file_count']}")
    click.echo(f"Status: {result['status']}")
    click.echo(f"Poll: {response.headers.get('Content-Location')}")


@job.command('status')
@click.argument('job_id')
@click.option('--url', default=DEFAULT_SERVER_URL, show_default=True, help='Server base URL')
@click.option('--wait', is_flag=True, help='Keep polling until the job finishes')
@click.option('--interval', type=float, default=None, help='Seconds between polls (default: Retry-After)')
@click.pass_context
def job_status(ctx, job_id, url, wait, interval):
    """Poll the status of JOB_ID"""

    async def _poll() -> httpx.Response:
        async with _http_client(url) as client:
            while True:
                response = await client.get("/$import-poll-status", params={"_jobId": job_id})
                if response.status_code != 202 or not wait:
                    return response
                click.echo(response.headers.get("X-Progress", "In progress"))
                await asyncio.sleep(interval if interval is not None
                                    else float(response.headers.get("Retry-After", 120)))

    try:
        response = asyncio.run(_poll())
    except httpx.HTTPError as e:
        click.echo(f"Error polling job: {str(e)}", err=True)
        sys.exit(1)

    if response.status_code == 202:
        click.echo(response.headers.get("X-Progress", "In progress"))
    elif response.status_code == 200:
        click.echo(f"Job {job_id} COMPLETE")
    elif response.status_code == 500:
        click.echo(f"Job {job_id} ERROR: {_outcome_message(response)}")
        sys.exit(2)
    else:
        click.echo(f"Error polling job ({response.status_code}): {_outcome_message(response)}", err=True)
        sys.exit(1)


@job.command('list')
@click.option('--status', type=click.Choice(['STAGING', 'READY', 'RUNNING', 'COMPLETE', 'ERROR'],
                                            case_sensitive=False), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Limit number of jobs to show')
@click.pass_context
def list_jobs(ctx, status, limit):
    """List jobs straight from the job store"""
    settings = ctx.obj['settings']

    async def _list():
        orchestrator = ImportOrchestrator(settings)
        await orchestrator.start(run_workers=False)
        try:
            return await orchestrator.list_jobs(status, limit)
        finally:
            await orchestrator.stop()

    try:
        jobs = asyncio.run(_list())
    except BulkImportError as e:
        click.echo(f"Error listing jobs: {e.message}", err=True)
        sys.exit(1)

    _display_jobs_table(jobs, ctx.obj['verbose'])


def _display_jobs_table(jobs: list, verbose: bool):
    """Display jobs in table format"""
    if not jobs:
        click.echo("No jobs found")
        return

    if verbose:
        click.echo(f"{'Job ID':<34} {'Status':<10} {'Files':<9} {'Mode':<13} {'Created':<20} Message")
        click.echo("-" * 110)
    else:
        click.echo(f"{'Job ID':<34} {'Status':<10} {'Files':<9} {'Created':<20}")
        click.echo("-" * 76)

    for job_info in jobs:
        files = f"{job_info['file_count']}/{job_info['declared_file_count']}"
        created = (job_info.get('created_at') or 'Unknown')[:19]

        if verbose:
            click.echo(f"{job_info['job_id']:<34} {job_info['status']:<10} {files:<9} "
                       f"{job_info['processing_mode']:<13} {created:<20} {job_info.get('status_message') or ''}")
        else:
            click.echo(f"{job_info['job_id']:<34} {job_info['status']:<10} {files:<9} {created:<20}")


def main():
    """Main CLI entry point"""
    cli(obj={})


if __name__ == '__main__':
    main()
