import asyncio
import importlib
import re

import httpx
import pytest
from click.testing import CliRunner

from bulk_import_orchestrator.api.app import create_app
from bulk_import_orchestrator.cli.main import cli
from bulk_import_orchestrator.core.orchestrator import ImportOrchestrator

# The cli package re-exports the main() function under the submodule name.
cli_main = importlib.import_module("bulk_import_orchestrator.cli.main")


BASE_ARGS = ["--database-url", "memory://", "--log-level", "WARNING"]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def served(settings, monkeypatch):
    """In-process server the job commands talk to instead of the network."""
    orchestrator = ImportOrchestrator(settings)
    app = create_app(orchestrator)

    def client_factory(base_url):
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=base_url)

    monkeypatch.setattr(cli_main, "_http_client", client_factory)
    return orchestrator


@pytest.fixture
def ndjson_files(tmp_path):
    first = tmp_path / "patients.ndjson"
    first.write_text('{"id": "p1"}\n{"id": "p2"}\n')
    second = tmp_path / "visits.ndjson"
    second.write_text('{"id": "v1"}\n')
    return [str(first), str(second)]


def _job_id(output):
    return re.search(r"Job ID: (\w+)", output).group(1)


def test_help(runner):
    result = runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    assert "Bulk Import Orchestrator CLI" in result.output


def test_db_init_memory(runner):
    result = runner.invoke(cli, BASE_ARGS + ["db", "init"])

    assert result.exit_code == 0
    assert "Schema ready" in result.output


def test_job_list_empty(runner):
    result = runner.invoke(cli, BASE_ARGS + ["job", "list"])

    assert result.exit_code == 0
    assert "No jobs found" in result.output


def test_worker_once_without_jobs(runner):
    result = runner.invoke(cli, BASE_ARGS + ["worker", "--once"])

    assert result.exit_code == 0
    assert "Executed 0 jobs" in result.output


def test_invalid_configuration(runner):
    result = runner.invoke(cli, ["--log-level", "chatty", "job", "list"])

    assert result.exit_code != 0
    assert "Configuration error for log_level" in result.output


def test_submit_and_poll(runner, served, ndjson_files):
    submitted = runner.invoke(cli, BASE_ARGS + [
        "job", "submit", *ndjson_files,
        "--description", "clinic export",
        "--batch-size", "2",
        "--tenant", "clinic-7"
    ])

    assert submitted.exit_code == 0, submitted.output
    assert "Job submitted successfully!" in submitted.output
    assert "Files: 2 of 2" in submitted.output
    assert "Status: READY" in submitted.output
    job_id = _job_id(submitted.output)
    assert f"$import-poll-status?_jobId={job_id}" in submitted.output

    pending = runner.invoke(cli, BASE_ARGS + ["job", "status", job_id])
    assert pending.exit_code == 0
    assert "Status set to READY at" in pending.output

    assert asyncio.run(served.run_pending()) == 1

    done = runner.invoke(cli, BASE_ARGS + ["job", "status", job_id])
    assert done.exit_code == 0
    assert f"Job {job_id} COMPLETE" in done.output
    assert [r["id"] for r in served.record_store.get_records("clinic-7")] == ["p1", "p2", "v1"]


def test_status_of_failed_job(runner, served, tmp_path):
    broken = tmp_path / "broken.ndjson"
    broken.write_text("not json\n")
    submitted = runner.invoke(cli, BASE_ARGS + ["job", "submit", str(broken)])
    job_id = _job_id(submitted.output)
    asyncio.run(served.run_pending())

    result = runner.invoke(cli, BASE_ARGS + ["job", "status", job_id])

    assert result.exit_code == 2
    assert f"Job {job_id} ERROR: Failed to commit rows 0-0 of file 0" in result.output


def test_status_of_unknown_job(runner, served):
    result = runner.invoke(cli, BASE_ARGS + ["job", "status", "never-created"])

    assert result.exit_code == 1
    assert "Error polling job (404): Job never-created not found" in result.output


def test_rejected_submission(runner, monkeypatch, ndjson_files):
    def handler(request):
        return httpx.Response(400, json={
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "error", "code": "processing", "diagnostics": "Invalid batchSize: 0"}]
        })

    monkeypatch.setattr(cli_main, "_http_client",
                        lambda base_url: httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url))

    result = runner.invoke(cli, BASE_ARGS + ["job", "submit", ndjson_files[0]])

    assert result.exit_code == 1
    assert "Submission rejected (400): Invalid batchSize: 0" in result.output
