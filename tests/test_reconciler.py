import asyncio
from datetime import timedelta

import pytest

from analysis_worker.v1.infra.jobs.models import AnalysisJob, AnalysisResult, JobStatus, utcnow
from analysis_worker.v1.infra.jobs.reconciler import StandaloneReconciler, StuckJobReconciler
from analysis_worker.v1.infra.jobs.schemas import ReconcileAction
from analysis_worker.v1.infra.jobs.store import JobStatusStore
from analysis_worker.v1.infra.refunds import RefundService

from conftest import ASSESSMENT, FakeRefundGateway


@pytest.fixture
def job_store(database):
    return JobStatusStore(database)


@pytest.fixture
def gateway():
    return FakeRefundGateway()


@pytest.fixture
def reconciler(job_store, settings, gateway, store):
    return StuckJobReconciler(job_store, settings, RefundService(gateway, store))


async def add_job(database, job_id, status, age, user_id="user-1"):
    stamp = utcnow() - age
    async with database.SessionLocal() as session:
        session.add(
            AnalysisJob(
                job_id=job_id,
                user_id=user_id,
                payload=ASSESSMENT,
                status=status.value,
                created_at=stamp,
                updated_at=stamp,
            )
        )
        await session.commit()


async def add_result(database, user_id, created_at, status=JobStatus.COMPLETED):
    async with database.SessionLocal() as session:
        result = AnalysisResult(
            user_id=user_id,
            status=status.value,
            test_result={"archetype": "The Analyst", "shortSummary": "Methodical."},
            created_at=created_at,
        )
        session.add(result)
        await session.commit()
        return result.id


async def test_stuck_processing_job_is_failed_and_refunded(reconciler, job_store, database, gateway):
    await add_job(database, "job-stuck", JobStatus.PROCESSING, timedelta(hours=3))

    report = await reconciler.run_once()

    assert report.examined == 1
    assert report.failed == 1
    assert report.refunds_requested == 1
    job = await job_store.get("job-stuck")
    assert job.status == "failed"
    assert job.completed_at is not None
    assert job.error_message.startswith("Job timed out: stuck in processing for 180 minutes")
    assert gateway.calls == [
        {"user_id": "user-1", "amount": 1, "job_id": "job-stuck", "reason": "STUCK_JOB_TIMEOUT"}
    ]


async def test_second_run_is_a_no_op(reconciler, database, gateway):
    await add_job(database, "job-stuck", JobStatus.PROCESSING, timedelta(hours=3))

    await reconciler.run_once()
    report = await reconciler.run_once()

    assert report.examined == 0
    assert len(gateway.calls) == 1


async def test_dry_run_changes_nothing(reconciler, job_store, database, gateway):
    await add_job(database, "job-stuck", JobStatus.PROCESSING, timedelta(hours=3))

    report = await reconciler.run_once(dry_run=True)

    assert report.dry_run
    assert report.failed == 1
    assert report.outcomes[0].action == ReconcileAction.FAILED
    assert (await job_store.get("job-stuck")).status == "processing"
    assert gateway.calls == []


async def test_correlated_result_marks_job_completed(reconciler, job_store, database, gateway):
    await add_job(database, "job-done", JobStatus.PROCESSING, timedelta(hours=3))
    job = await job_store.get("job-done")
    result_id = await add_result(database, "user-1", job.created_at + timedelta(minutes=2))

    report = await reconciler.run_once()

    assert report.completed == 1
    job = await job_store.get("job-done")
    assert job.status == "completed"
    assert job.result_id == result_id
    assert gateway.calls == []


async def test_result_outside_window_is_ignored(reconciler, job_store, database):
    await add_job(database, "job-stuck", JobStatus.PROCESSING, timedelta(hours=3))
    job = await job_store.get("job-stuck")
    await add_result(database, "user-1", job.created_at + timedelta(minutes=30))
    await add_result(database, "user-2", job.created_at + timedelta(minutes=1))

    report = await reconciler.run_once()
    assert report.failed == 1


async def test_recent_and_terminal_jobs_are_left_alone(reconciler, database):
    await add_job(database, "job-fresh", JobStatus.PROCESSING, timedelta(minutes=10))
    await add_job(database, "job-queued", JobStatus.QUEUED, timedelta(hours=3))
    await add_job(database, "job-finished", JobStatus.COMPLETED, timedelta(days=2))

    report = await reconciler.run_once()
    assert report.examined == 0


async def test_old_queued_job_is_failed(reconciler, job_store, database):
    await add_job(database, "job-lost", JobStatus.QUEUED, timedelta(days=2))

    report = await reconciler.run_once()

    assert report.failed == 1
    assert (await job_store.get("job-lost")).status == "failed"


async def test_timeout_overrides(reconciler, database):
    await add_job(database, "job-slow", JobStatus.PROCESSING, timedelta(minutes=10))

    report = await reconciler.run_once(processing_timeout_s=300)
    assert report.processing_timeout_s == 300
    assert report.failed == 1


async def test_zero_timeout_override_is_honored(reconciler, database):
    await add_job(database, "job-new", JobStatus.PROCESSING, timedelta(minutes=1))

    report = await reconciler.run_once(dry_run=True, processing_timeout_s=0)
    assert report.processing_timeout_s == 0
    assert report.failed == 1

    stats = await reconciler.statistics(0)
    assert stats["processing_timeout_s"] == 0
    assert stats["stuck_count"] == 1


async def test_repair_skips_job_that_progressed(reconciler, job_store, database):
    await add_job(database, "job-racing", JobStatus.PROCESSING, timedelta(hours=3))
    [stale] = await job_store.find_stale(utcnow(), utcnow() - timedelta(days=1))

    assert await job_store.transition("job-racing", JobStatus.COMPLETED, result_id="r-1")
    assert not await job_store.repair(stale, JobStatus.FAILED, error_message="late")
    assert (await job_store.get("job-racing")).status == "completed"


async def test_transition_refuses_backwards_moves(job_store):
    await job_store.create("job-1", "user-1", ASSESSMENT)
    assert await job_store.transition("job-1", JobStatus.PROCESSING)
    assert await job_store.transition("job-1", JobStatus.FAILED, error_message="boom")
    assert not await job_store.transition("job-1", JobStatus.PROCESSING)
    assert not await job_store.transition("job-1", JobStatus.COMPLETED)


async def test_statistics_reports_stuck_jobs(reconciler, database):
    await add_job(database, "job-stuck", JobStatus.PROCESSING, timedelta(hours=3))
    await add_job(database, "job-fresh", JobStatus.PROCESSING, timedelta(minutes=5))
    await add_job(database, "job-done", JobStatus.COMPLETED, timedelta(hours=1))

    stats = await reconciler.statistics()

    assert stats["by_status"]["processing"]["count"] == 2
    assert stats["by_status"]["completed"]["count"] == 1
    assert stats["by_status"]["failed"]["count"] == 0
    assert stats["stuck_count"] == 1
    assert stats["processing_timeout_s"] == 3600


async def test_standalone_drains_failed_refunds_on_stop(settings, database, store):
    gateway = FakeRefundGateway(failures=1)
    standalone = StandaloneReconciler(
        settings, gateway=gateway, state_store=store, database=database
    )
    await add_job(database, "job-stuck", JobStatus.PROCESSING, timedelta(hours=3))

    standalone.start()
    report = await standalone.reconciler.run_once()
    assert report.failed == 1
    assert len(standalone.refunds.queue) == 1

    await standalone.stop()

    assert [call["job_id"] for call in gateway.calls] == ["job-stuck", "job-stuck"]
    assert standalone.refunds.refunded == 1
    assert len(standalone.refunds.queue) == 0


async def test_standalone_retries_failed_refunds_in_background(settings, database, store):
    settings = settings.model_copy(update={"refund_drain_interval_s": 0.01})
    gateway = FakeRefundGateway(failures=1)
    standalone = StandaloneReconciler(
        settings, gateway=gateway, state_store=store, database=database
    )
    await add_job(database, "job-stuck", JobStatus.PROCESSING, timedelta(hours=3))

    standalone.start()
    try:
        await standalone.reconciler.run_once()
        for _ in range(100):
            if standalone.refunds.refunded:
                break
            await asyncio.sleep(0.01)
    finally:
        await standalone.stop()

    assert standalone.refunds.refunded == 1
    assert len(gateway.calls) == 2
