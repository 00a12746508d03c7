import pytest

from analysis_worker.v1.infra.refunds import RefundOutcome, RefundService

from conftest import FakeRefundGateway


@pytest.fixture
def gateway():
    return FakeRefundGateway()


@pytest.fixture
def refunds(gateway, store):
    return RefundService(gateway, store, amount=1, batch_size=10, max_attempts=3)


async def test_refund_is_issued_once_per_job(refunds, gateway):
    assert await refunds.request_refund("job-1", "user-1", "PROCESSING_TIMEOUT") == RefundOutcome.REFUNDED
    assert await refunds.request_refund("job-1", "user-1", "STUCK_JOB_TIMEOUT") == RefundOutcome.DUPLICATE

    assert gateway.calls == [
        {"user_id": "user-1", "amount": 1, "job_id": "job-1", "reason": "PROCESSING_TIMEOUT"}
    ]


async def test_failed_refund_is_queued_and_drained(refunds, gateway):
    gateway.failures = 1
    assert await refunds.request_refund("job-1", "user-1", "INFERENCE_PROVIDER_ERROR") == RefundOutcome.QUEUED
    assert len(refunds.queue) == 1

    assert await refunds.drain() == 1
    assert len(refunds.queue) == 0
    assert refunds.refunded == 1
    assert len(gateway.calls) == 2


async def test_refund_abandoned_after_max_attempts(refunds, gateway):
    gateway.failures = 10
    await refunds.request_refund("job-1", "user-1", "INTERNAL_ERROR")

    await refunds.drain()
    assert len(refunds.queue) == 1
    await refunds.drain()

    assert len(refunds.queue) == 0
    assert refunds.abandoned == 1
    assert len(gateway.calls) == 3


async def test_drain_processes_one_batch(gateway, store):
    refunds = RefundService(gateway, store, batch_size=2)
    gateway.failures = 3
    for index in range(3):
        await refunds.request_refund(f"job-{index}", "user-1", "INTERNAL_ERROR")

    assert await refunds.drain() == 2
    assert len(refunds.queue) == 1
