import pytest

from analysis_worker.v1.infra.jobs.dedup import DeduplicationGuard, compute_hash
from analysis_worker.v1.infra.jobs.schemas import DedupReason

from conftest import ASSESSMENT

COMPLETE_RESULT = {"test_result": {"archetype": "The Analyst", "shortSummary": "Methodical."}}


class ResultLookup:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def __call__(self, result_reference):
        self.calls.append(result_reference)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def lookup():
    return ResultLookup(COMPLETE_RESULT)


@pytest.fixture
def guard(store, lookup, clock):
    return DeduplicationGuard(
        store, lookup, retention_s=3600, processing_ttl_s=1800, max_entries=3, clock=clock
    )


def test_hash_is_deterministic_and_key_order_independent():
    reordered = {key: ASSESSMENT[key] for key in reversed(list(ASSESSMENT))}
    fields = ["riasec", "ocean", "viaIs"]
    assert compute_hash("user-1", ASSESSMENT, fields) == compute_hash("user-1", reordered, fields)


def test_hash_ignores_irrelevant_fields_and_includes_user():
    fields = ["riasec", "ocean", "viaIs"]
    noisy = {**ASSESSMENT, "submitted_from": "mobile"}
    assert compute_hash("user-1", ASSESSMENT, fields) == compute_hash("user-1", noisy, fields)
    assert compute_hash("user-1", ASSESSMENT, fields) != compute_hash("user-2", ASSESSMENT, fields)


async def test_second_identical_job_rejected_referencing_first(guard):
    first = await guard.admit("job-1", "user-1", ASSESSMENT)
    assert first.admitted
    assert first.reason == DedupReason.NEW

    second = await guard.admit("job-2", "user-1", ASSESSMENT)
    assert not second.admitted
    assert second.reason == DedupReason.CURRENTLY_PROCESSING
    assert second.original_job_id == "job-1"

    stats = await guard.stats()
    assert stats["processing"] == 1


async def test_redelivery_of_owner_is_readmitted(guard):
    await guard.admit("job-1", "user-1", ASSESSMENT)
    again = await guard.admit("job-1", "user-1", ASSESSMENT)
    assert again.admitted


async def test_completed_job_resolves_duplicates(guard, lookup):
    decision = await guard.admit("job-1", "user-1", ASSESSMENT)
    await guard.complete(decision.content_hash, "job-1", "result-1")

    duplicate = await guard.admit("job-2", "user-1", ASSESSMENT)
    assert not duplicate.admitted
    assert duplicate.reason == DedupReason.RECENTLY_PROCESSED
    assert duplicate.original_job_id == "job-1"
    assert duplicate.result_reference == "result-1"
    assert lookup.calls == ["result-1"]


async def test_incomplete_result_is_reprocessed_with_overwrite(guard, lookup):
    decision = await guard.admit("job-1", "user-1", ASSESSMENT)
    await guard.complete(decision.content_hash, "job-1", "result-1")
    lookup.result = {"test_result": {"archetype": "The Analyst"}}

    retry = await guard.admit("job-2", "user-1", ASSESSMENT)
    assert retry.admitted
    assert retry.reason == DedupReason.INCOMPLETE_RESULT_REPROCESSING
    assert retry.allow_overwrite


async def test_completeness_check_fails_open(guard, lookup):
    decision = await guard.admit("job-1", "user-1", ASSESSMENT)
    await guard.complete(decision.content_hash, "job-1", "result-1")
    lookup.error = ConnectionError("archive down")

    duplicate = await guard.admit("job-2", "user-1", ASSESSMENT)
    assert not duplicate.admitted
    assert duplicate.reason == DedupReason.RECENTLY_PROCESSED


async def test_completed_entry_expires_after_retention(guard, clock):
    decision = await guard.admit("job-1", "user-1", ASSESSMENT)
    await guard.complete(decision.content_hash, "job-1", "result-1")

    clock.advance(3601)
    fresh = await guard.admit("job-2", "user-1", ASSESSMENT)
    assert fresh.admitted
    assert fresh.reason == DedupReason.NEW


async def test_failed_job_releases_entry(guard):
    decision = await guard.admit("job-1", "user-1", ASSESSMENT)
    assert await guard.fail(decision.content_hash, "job-1")

    assert (await guard.admit("job-2", "user-1", ASSESSMENT)).admitted


async def test_fail_only_releases_own_entry(guard):
    decision = await guard.admit("job-1", "user-1", ASSESSMENT)
    assert not await guard.fail(decision.content_hash, "job-2")
    assert not (await guard.admit("job-3", "user-1", ASSESSMENT)).admitted


async def test_eviction_drops_stale_and_enforces_capacity(guard, clock):
    for index in range(5):
        payload = {**ASSESSMENT, "riasec": {"realistic": index}}
        await guard.admit(f"job-{index}", "user-1", payload)
        clock.advance(1)

    removed = await guard.evict()
    assert removed == 2
    assert (await guard.stats())["processing"] == 3

    assert await guard.evict(now=clock() + 1801) == 3
    assert (await guard.stats())["processing"] == 0
