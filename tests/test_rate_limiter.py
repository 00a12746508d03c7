import pytest

from analysis_worker.v1.core.exceptions import RateLimitedError
from analysis_worker.v1.core.rate_limiter import (
    AdmissionRateLimiter,
    ProviderRateGate,
    TokenBucket,
)


@pytest.fixture
def limiter(store, clock):
    return AdmissionRateLimiter(
        store, global_per_minute=5, user_per_hour=100, ip_per_hour=100, clock=clock
    )


async def test_five_per_minute_admits_five_then_rejects(limiter):
    for _ in range(5):
        decision = await limiter.check_and_consume("user-1")
        assert decision.allowed

    decision = await limiter.check_and_consume("user-1")
    assert not decision.allowed
    assert decision.scope == "global"
    assert decision.retry_after_s == pytest.approx(12.0)


async def test_bucket_refills_after_window(limiter, clock):
    for _ in range(5):
        await limiter.check_and_consume("user-1")
    assert not (await limiter.check_and_consume("user-1")).allowed

    clock.advance(60)
    tokens = await limiter.tokens("user-1")
    assert tokens["global"] == pytest.approx(5.0)
    assert (await limiter.check_and_consume("user-1")).allowed


async def test_partial_refill_is_proportional(limiter, clock):
    for _ in range(5):
        await limiter.check_and_consume("user-1")

    clock.advance(13)
    assert (await limiter.check_and_consume("user-1")).allowed
    assert not (await limiter.check_and_consume("user-1")).allowed


async def test_user_scope_is_per_user(store, clock):
    limiter = AdmissionRateLimiter(
        store, global_per_minute=100, user_per_hour=2, ip_per_hour=100, clock=clock
    )
    assert (await limiter.check_and_consume("alice")).allowed
    assert (await limiter.check_and_consume("alice")).allowed

    rejected = await limiter.check_and_consume("alice")
    assert not rejected.allowed
    assert rejected.scope == "user"
    assert rejected.retry_after_s == pytest.approx(1800.0)

    assert (await limiter.check_and_consume("bob")).allowed


async def test_rejection_consumes_nothing(store, clock):
    limiter = AdmissionRateLimiter(
        store, global_per_minute=100, user_per_hour=100, ip_per_hour=1, clock=clock
    )
    assert (await limiter.check_and_consume("alice", ip="10.0.0.1")).allowed
    assert not (await limiter.check_and_consume("alice", ip="10.0.0.1")).allowed

    tokens = await limiter.tokens("alice")
    assert tokens["user"] == pytest.approx(99.0)
    assert limiter.throttled["ip"] == 1


async def test_ip_scope_skipped_without_ip(store, clock):
    limiter = AdmissionRateLimiter(
        store, global_per_minute=100, user_per_hour=100, ip_per_hour=1, clock=clock
    )
    for _ in range(3):
        assert (await limiter.check_and_consume("alice")).allowed


def test_tokens_stay_within_bounds():
    bucket = TokenBucket.full("global", capacity=5, window_s=60, now=0)
    for _ in range(10):
        bucket.consume()
    assert bucket.tokens == 0

    bucket.refill(now=10_000)
    assert bucket.tokens == 5

    restored = TokenBucket.from_state("global", 5, 60, {"tokens": 42, "last_refill": 0})
    assert restored.tokens == 5


async def test_provider_gate_waits_for_token(store, clock):
    sleeps = []

    async def sleep(delay):
        sleeps.append(delay)
        clock.advance(delay)

    gate = ProviderRateGate(
        store,
        requests_per_minute=1,
        max_attempts=5,
        base_delay_s=1,
        max_delay_s=120,
        clock=clock,
        sleep=sleep,
        jitter=lambda: 0.0,
    )

    async def call():
        return "ok"

    assert await gate.execute(call, "job-1") == "ok"
    assert await gate.execute(call, "job-2") == "ok"
    assert sleeps and sleeps[0] == pytest.approx(60.0)
    assert gate.throttled == 1


async def test_provider_gate_gives_up_after_max_attempts(store, clock):
    async def sleep(delay):
        pass

    gate = ProviderRateGate(
        store,
        requests_per_minute=1,
        max_attempts=3,
        clock=clock,
        sleep=sleep,
        jitter=lambda: 0.0,
    )
    await gate.acquire("job-1")

    with pytest.raises(RateLimitedError) as exc_info:
        await gate.acquire("job-2")
    assert exc_info.value.scope == "provider"
    assert gate.rejected == 1
    assert gate.throttled == 3
