import httpx
import pytest

from analysis_worker.v1.core.circuit_breaker import CircuitBreaker, ResilientClient
from analysis_worker.v1.infra.archive_client import ArchiveClient, StatusWriteBuffer


@pytest.fixture
def client(settings, store, archive):
    breaker = CircuitBreaker("archive_service", store)
    return ArchiveClient(settings, ResilientClient(breaker, max_retries=0), archive.client())


@pytest.fixture
def buffer(client):
    return StatusWriteBuffer(client, batch_size=3, interval_s=5, max_attempts=2)


async def test_requests_carry_internal_service_headers(client, archive, settings):
    await client.update_job_status("job-1", "processing")

    request = archive.requests[-1]
    assert request.method == "PUT"
    assert request.url.path == "/jobs/job-1/status"
    assert request.headers["X-Internal-Service"] == "true"
    assert request.headers["X-Service-Key"] == settings.internal_service_key


async def test_create_result_returns_id(client, archive):
    result_id = await client.create_result(
        "user-1", {"riasec": {}}, {"archetype": "A"}, "AI-Driven Talent Mapping", job_id="job-1"
    )
    assert result_id in archive.results
    assert archive.results[result_id]["job_id"] == "job-1"
    assert "allow_overwrite" not in archive.results[result_id]


async def test_missing_result_is_none(client):
    assert await client.get_result("nope") is None


async def test_buffered_updates_coalesce_per_job(buffer, archive):
    await buffer.enqueue("job-1", "processing", heartbeat_count=1)
    await buffer.enqueue("job-1", "processing", heartbeat_count=2)
    assert list(buffer.pending) == ["job-1"]
    assert archive.status_updates == []

    assert await buffer.flush() == 1
    assert archive.status_updates == [("job-1", {"status": "processing", "heartbeat_count": 2})]


async def test_full_buffer_flushes(buffer, archive):
    for index in range(3):
        await buffer.enqueue(f"job-{index}", "processing")
    assert buffer.pending == {}
    assert len(archive.status_updates) == 3


async def test_failed_flush_requeues_then_drops(buffer, archive):
    archive.fail_with = 503
    await buffer.enqueue("job-1", "processing")

    assert await buffer.flush() == 0
    assert "job-1" in buffer.pending

    assert await buffer.flush() == 0
    assert buffer.pending == {}
    assert buffer.dropped == 1


async def test_terminal_write_discards_pending_and_later_updates(buffer, archive):
    await buffer.enqueue("job-1", "processing", heartbeat_count=4)
    await buffer.write_terminal("job-1", "completed", result_id="result-1")
    await buffer.enqueue("job-1", "processing", heartbeat_count=5)
    await buffer.flush()

    assert archive.statuses("job-1") == ["completed"]
    assert archive.last_update("job-1")["result_id"] == "result-1"


async def test_terminal_write_failure_propagates(buffer, archive):
    archive.fail_with = 500
    with pytest.raises(httpx.HTTPStatusError):
        await buffer.write_terminal("job-1", "failed", error_message="boom")


async def test_stop_flushes_pending(buffer, archive):
    buffer.start()
    await buffer.enqueue("job-1", "processing")
    await buffer.stop()
    assert archive.statuses("job-1") == ["processing"]
