import asyncio
import logging

import pytest

from bulk_import_orchestrator.engines.base import RecordStore
from bulk_import_orchestrator.engines.local_engine import InMemoryRecordStore
from bulk_import_orchestrator.models.execution import ExecutionSummary, FileOutcome
from bulk_import_orchestrator.models.job import FileStatus, JobStatus, ProcessingMode
from bulk_import_orchestrator.services.batch_executor import BatchExecutor, ExecutionPolicy


def rows(*ids):
    return "".join(f'{{"id": {i}}}\n' for i in ids)


async def _wait_for_status(registry, job_id, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        snapshot = await registry.get_status(job_id)
        if snapshot.is_terminal():
            return snapshot
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


class ExplodingRecordStore(RecordStore):
    def split_rows(self, content):
        raise RuntimeError("boom")

    async def commit_batch(self, tenant, rows):
        pass

    async def commit_row(self, tenant, row):
        pass


# ATOMIC_BATCH ------------------------------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_atomic_job_completes(executor, registry, record_store, ready_job):
    job_id = await ready_job(rows(1, 2, 3), rows(4, 5), batch_size=2, tenant="tenant-a")

    assert await executor.run_once("w") is True

    snapshot = await registry.get_status(job_id)
    assert snapshot.status == JobStatus.COMPLETE
    assert snapshot.status_message == "Imported 5 of 5 rows from 2 files"
    assert [r["id"] for r in record_store.get_records("tenant-a")] == [1, 2, 3, 4, 5]
    assert record_store.commit_count == 3
    assert [f.file_status for f in snapshot.files] == [FileStatus.COMPLETE, FileStatus.COMPLETE]
    assert [f.row_cursor for f in snapshot.files] == [3, 2]
    assert snapshot.outcome["rows_committed"] == 5


@pytest.mark.asyncio
async def test_atomic_failure_commits_nothing_from_the_failed_batch(executor, registry, record_store, ready_job,
                                                                    responder):
    job_id = await ready_job('{"id": 1}\nnot json\n{"id": 3}\n', rows(9), batch_size=10)

    await executor.run_once("w")

    assert [r["id"] for r in record_store.get_records()] == [9]
    snapshot = await registry.get_status(job_id)
    assert snapshot.status == JobStatus.ERROR
    assert snapshot.status_message.startswith("Failed to commit rows 0-2 of file 0: Row 1 is not valid JSON")
    assert snapshot.files[0].file_status == FileStatus.ERROR
    assert snapshot.files[0].row_cursor == 0
    assert snapshot.files[0].outcome["failed_rows"][0]["row_index"] == 1

    response = await responder.poll(job_id)
    assert response.status_code == 500
    assert response.body["issue"][0]["diagnostics"] == snapshot.status_message


@pytest.mark.asyncio
async def test_atomic_failure_keeps_earlier_batches(executor, registry, record_store, ready_job):
    job_id = await ready_job(rows(1, 2) + "[]\n", batch_size=2)

    await executor.run_once("w")

    snapshot = await registry.get_status(job_id)
    assert [r["id"] for r in record_store.get_records()] == [1, 2]
    assert snapshot.status == JobStatus.ERROR
    assert snapshot.files[0].row_cursor == 2
    assert "Row 0 is not a JSON object" in snapshot.status_message


@pytest.mark.asyncio
async def test_later_files_still_processed_after_failed_file(executor, registry, record_store, ready_job):
    job_id = await ready_job("oops\n", rows(7))

    await executor.run_once("w")

    snapshot = await registry.get_status(job_id)
    assert snapshot.status == JobStatus.ERROR
    assert [f.file_status for f in snapshot.files] == [FileStatus.ERROR, FileStatus.COMPLETE]
    assert [r["id"] for r in record_store.get_records()] == [7]


@pytest.mark.asyncio
async def test_empty_job_completes(executor, registry, ready_job):
    job_id = await ready_job()

    await executor.run_once("w")

    snapshot = await registry.get_status(job_id)
    assert snapshot.status == JobStatus.COMPLETE
    assert snapshot.status_message == "Imported 0 of 0 rows from 0 files"


# PER_ROW -----------------------------------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_per_row_failures_are_isolated(executor, registry, record_store, ready_job):
    job_id = await ready_job(rows(1) + "bad\n" + rows(3), mode=ProcessingMode.PER_ROW, batch_size=2)

    await executor.run_once("w")

    assert [r["id"] for r in record_store.get_records()] == [1, 3]
    snapshot = await registry.get_status(job_id)
    progress = snapshot.files[0]
    assert progress.file_status == FileStatus.COMPLETE
    assert progress.row_cursor == 3
    assert progress.outcome["rows_committed"] == 2
    assert progress.outcome["rows_failed"] == 1
    assert progress.outcome["failed_rows"][0]["message"].startswith("Row 1 of file 0 failed:")
    # a COMPLETE file with rejected rows is within the default policy
    assert snapshot.status == JobStatus.COMPLETE
    assert snapshot.status_message == "Imported 2 of 3 rows from 1 files"


@pytest.mark.asyncio
async def test_per_row_ratio_policy_fails_job(registry, record_store, ready_job):
    executor = BatchExecutor(registry, record_store, policy=ExecutionPolicy(max_row_failure_ratio=0.25))
    job_id = await ready_job(rows(1) + "bad\n", mode=ProcessingMode.PER_ROW, batch_size=5)

    await executor.run_once("w")

    snapshot = await registry.get_status(job_id)
    assert snapshot.status == JobStatus.ERROR
    assert snapshot.status_message.startswith("1 of 2 rows failed: Row 1 of file 0 failed:")


# POLICY ------------------------------------------------------------------------------------------------------
def _summary(*outcomes):
    return ExecutionSummary(job_id="job", files=list(outcomes))


def test_policy_allows_clean_summary():
    outcome = FileOutcome(file_id="f", sequence=0, status=FileStatus.COMPLETE, rows_total=3, rows_committed=3)

    assert ExecutionPolicy().evaluate(_summary(outcome)) is None


def test_policy_reports_first_error_file():
    failed = FileOutcome(file_id="f1", sequence=0, status=FileStatus.ERROR, rows_total=2)
    failed.record_failure(0, "first problem")
    other = FileOutcome(file_id="f2", sequence=1, status=FileStatus.ERROR, rows_total=2)
    other.record_failure(1, "second problem")

    assert ExecutionPolicy().evaluate(_summary(failed, other)) == "first problem"
    assert ExecutionPolicy(max_error_files=2).evaluate(_summary(failed, other)) is None


def test_policy_without_error_message():
    failed = FileOutcome(file_id="f1", sequence=0, status=FileStatus.ERROR)

    assert ExecutionPolicy().evaluate(_summary(failed)) == "1 files failed"


def test_policy_row_ratio():
    outcome = FileOutcome(file_id="f", sequence=0, status=FileStatus.COMPLETE, rows_total=10, rows_committed=8)
    outcome.record_failure(2, "bad row")
    outcome.record_failure(5, "worse row")

    assert ExecutionPolicy(max_row_failure_ratio=0.2).evaluate(_summary(outcome)) is None
    assert ExecutionPolicy(max_row_failure_ratio=0.1).evaluate(_summary(outcome)) == "2 of 10 rows failed: bad row"


# LOGGING AND FAILURES ----------------------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_execution_logs_carry_job_and_worker(executor, registry, ready_job, caplog):
    caplog.set_level(logging.INFO, logger="bulk_import_orchestrator")
    job_id = await ready_job(rows(1))
    claimed = await registry.claim_next_ready("w-7")

    await executor.execute_job(claimed, "w-7")

    finished = [r for r in caplog.records if r.getMessage() == "Job finished"]
    assert len(finished) == 1
    assert finished[0].job_id == job_id
    assert finished[0].worker_id == "w-7"


@pytest.mark.asyncio
async def test_concurrent_jobs_log_their_own_worker(executor, registry, ready_job, caplog):
    caplog.set_level(logging.INFO, logger="bulk_import_orchestrator")
    first = await ready_job(rows(1))
    second = await ready_job(rows(2))
    jobs = [await registry.claim_next_ready("w-a"), await registry.claim_next_ready("w-b")]

    await asyncio.gather(executor.execute_job(jobs[0], "w-a"), executor.execute_job(jobs[1], "w-b"))

    workers = {r.job_id: r.worker_id for r in caplog.records if r.getMessage() == "Job finished"}
    assert workers == {jobs[0].job_id: "w-a", jobs[1].job_id: "w-b"}
    assert {first, second} == set(workers)


@pytest.mark.asyncio
async def test_reaped_job_is_not_claimed_again(registry, ready_job):
    job_id = await ready_job(rows(1))
    await registry.claim_next_ready("w")
    await registry.fail_job(job_id, "Execution lease expired")

    assert await registry.claim_next_ready("w") is None
    assert (await registry.get_status(job_id)).status == JobStatus.ERROR


@pytest.mark.asyncio
async def test_unexpected_error_fails_job(registry, ready_job):
    executor = BatchExecutor(registry, ExplodingRecordStore())
    job_id = await ready_job(rows(1))

    await executor.run_once("w")

    snapshot = await registry.get_status(job_id)
    assert snapshot.status == JobStatus.ERROR
    assert snapshot.status_message == "Unexpected error during import: boom"


@pytest.mark.asyncio
async def test_job_reaped_during_execution_is_abandoned(executor, registry, ready_job):
    job_id = await ready_job(rows(1))
    job = await registry.claim_next_ready("w")
    await registry.fail_job(job_id, "Execution lease expired")

    summary = await executor.execute_job(job, "w")

    assert summary.succeeded is False
    snapshot = await registry.get_status(job_id)
    assert snapshot.status == JobStatus.ERROR
    assert snapshot.status_message == "Execution lease expired"


@pytest.mark.asyncio
async def test_record_store_rejection_uses_row_index(registry, ready_job):
    store = InMemoryRecordStore(validator=lambda record: "missing id" if "id" not in record else None)
    executor = BatchExecutor(registry, store)
    job_id = await ready_job(rows(1) + '{"name": "x"}\n', batch_size=2)

    await executor.run_once("w")

    snapshot = await registry.get_status(job_id)
    assert snapshot.status_message == "Failed to commit rows 0-1 of file 0: Row 1 rejected: missing id"
    assert store.get_records() == []


@pytest.mark.asyncio
async def test_rows_are_counted_in_metrics(executor, metrics, ready_job):
    await ready_job(rows(1) + "bad\n", mode=ProcessingMode.PER_ROW)

    await executor.run_once("w")

    assert metrics.registry.get_sample_value("bulk_import_rows_committed_total") == 1.0
    assert metrics.registry.get_sample_value("bulk_import_rows_failed_total") == 1.0
    assert metrics.registry.get_sample_value("bulk_import_batch_commit_seconds_count",
                                             {"mode": "PER_ROW"}) == 2.0


# WORKER POOL -------------------------------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_run_once_without_ready_jobs(executor):
    assert await executor.run_once() is False


@pytest.mark.asyncio
async def test_workers_pick_up_ready_jobs(executor, registry, record_store, ready_job):
    await executor.start()
    try:
        assert executor.active_workers == 1
        job_id = await ready_job(rows(1, 2))

        snapshot = await _wait_for_status(registry, job_id)
    finally:
        await executor.stop(grace_period=1.0)

    assert snapshot.status == JobStatus.COMPLETE
    assert record_store.total_records == 2
    assert executor.active_workers == 0


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(executor):
    await executor.stop()

    assert executor.active_workers == 0
