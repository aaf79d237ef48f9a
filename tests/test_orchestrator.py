import pytest

from bulk_import_orchestrator import quick_start
from bulk_import_orchestrator.core.exceptions import OrchestratorError
from bulk_import_orchestrator.core.orchestrator import ImportOrchestrator
from bulk_import_orchestrator.engines.http_engine import HttpRecordStore
from bulk_import_orchestrator.engines.local_engine import InMemoryRecordStore
from bulk_import_orchestrator.models.job import JobSpec
from bulk_import_orchestrator.services.monitoring_service import MonitoringService
from bulk_import_orchestrator.utils.memory_store import InMemoryJobStore


class BrokenStore(InMemoryJobStore):
    async def initialize(self):
        raise ConnectionError("database unreachable")

    async def is_healthy(self):
        return False


@pytest.mark.asyncio
async def test_submit_execute_poll(orchestrator, make_request, file_part):
    result = await orchestrator.submit(make_request([file_part("a.ndjson", '{"id": 1}\n{"id": 2}\n')]))

    assert (await orchestrator.poll(result.job_id)).status_code == 202
    assert await orchestrator.run_pending() == 1
    assert await orchestrator.run_pending() == 0

    response = await orchestrator.poll(result.job_id)
    assert response.status_code == 200
    assert orchestrator.record_store.total_records == 2

    status = await orchestrator.get_job_status(result.job_id)
    assert status["status"] == "COMPLETE"
    assert status["outcome"]["rows_committed"] == 2
    assert orchestrator.metrics.registry.get_sample_value(
        "bulk_import_jobs_finished_total", {"status": "COMPLETE"}) == 1.0


@pytest.mark.asyncio
async def test_run_pending_respects_max_jobs(orchestrator, make_request):
    for _ in range(3):
        await orchestrator.submit(make_request([]))

    assert await orchestrator.run_pending(max_jobs=2) == 2
    assert await orchestrator.run_pending() == 1


@pytest.mark.asyncio
async def test_list_jobs_by_status_name(orchestrator, make_request):
    ready = await orchestrator.submit(make_request([]))
    await orchestrator.registry.create_job(JobSpec(declared_file_count=1))

    jobs = await orchestrator.list_jobs("ready")

    assert [job["job_id"] for job in jobs] == [ready.job_id]
    assert len(await orchestrator.list_jobs()) == 2


@pytest.mark.asyncio
async def test_health(orchestrator):
    assert await orchestrator.health_check() is True

    health = await orchestrator.get_system_health()
    assert health["overall_status"] == "healthy"
    assert health["active_workers"] == 0


@pytest.mark.asyncio
async def test_start_failure_is_wrapped(settings):
    orchestrator = ImportOrchestrator(settings, store=BrokenStore())

    with pytest.raises(OrchestratorError, match="database unreachable"):
        await orchestrator.start()

    assert orchestrator.is_running() is False


@pytest.mark.asyncio
async def test_context_manager_starts_workers(settings):
    settings = settings.model_copy(update={"worker_count": 2, "run_workers": True})
    async with ImportOrchestrator(settings) as orchestrator:
        assert orchestrator.executor.active_workers == 2

    assert orchestrator.executor.active_workers == 0
    assert orchestrator.is_running() is False


def test_record_store_selection(settings):
    assert isinstance(ImportOrchestrator(settings).record_store, InMemoryRecordStore)

    remote = ImportOrchestrator(settings.model_copy(update={"record_store_url": "http://records.test"}))
    assert isinstance(remote.record_store, HttpRecordStore)
    assert remote.record_store.tenant_header == settings.tenant_header


def test_quick_start():
    orchestrator = quick_start()

    assert isinstance(orchestrator.store, InMemoryJobStore)
    assert orchestrator.is_running() is False


# HEALTH STATUS -----------------------------------------------------------------------------------------------
class IdleExecutor:
    active_workers = 0


@pytest.mark.asyncio
async def test_unhealthy_store_is_critical():
    health = await MonitoringService(BrokenStore()).get_system_health()

    assert health.overall_status == "critical"
    assert health.total_jobs == 0


@pytest.mark.asyncio
async def test_ready_jobs_without_workers_is_degraded(registry, job_store):
    job_id = await registry.create_job(JobSpec())
    await registry.activate(job_id)

    health = await MonitoringService(job_store, executor=IdleExecutor()).get_system_health()

    assert health.overall_status == "degraded"
    assert health.ready_jobs == 1


@pytest.mark.asyncio
async def test_error_rate_drives_status(registry, job_store):
    outcomes = ["fail", "ok", "ok", "ok", "ok", "ok", "ok", "ok"]
    for outcome in outcomes:
        job_id = await registry.create_job(JobSpec())
        await registry.activate(job_id)
        await registry.claim_next_ready("w")
        if outcome == "fail":
            await registry.fail_job(job_id, "failed")
        else:
            await registry.complete_job(job_id)

    health = await MonitoringService(job_store).get_system_health()

    assert health.failed_jobs == 1
    assert health.completed_jobs == 7
    assert health.error_rate == pytest.approx(12.5)
    assert health.overall_status == "warning"
