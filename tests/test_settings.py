import pytest
from pydantic import ValidationError

from analysis_worker.config.settings import Settings, StateStoreBackend, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "Analysis Worker"
    assert settings.version == "1.0.0"
    assert settings.worker_concurrency == 10
    assert settings.max_retries == 3
    assert settings.breaker_failure_threshold == 5
    assert settings.breaker_cooldown_s == 60
    assert settings.breaker_recovery_successes == 3
    assert settings.state_store_backend == StateStoreBackend.MEMORY


def test_dedup_fields_default_to_assessment_dimensions():
    settings = Settings()
    assert settings.dedup_hash_fields == ["riasec", "ocean", "viaIs"]
    assert settings.result_required_fields == ["archetype", "shortSummary"]


def test_production_blocks_memory_store_with_replicas():
    """Process-local state cannot be shared between replicas."""
    with pytest.raises(ValueError, match="STATE_STORE_BACKEND=memory is not allowed"):
        Settings(
            environment="production",
            state_store_backend=StateStoreBackend.MEMORY,
            consumer_replicas=3,
        )


def test_production_allows_redis_with_replicas():
    settings = Settings(
        environment="production",
        state_store_backend=StateStoreBackend.REDIS,
        consumer_replicas=3,
    )
    assert settings.consumer_replicas == 3


def test_single_replica_may_use_memory_store_in_production():
    settings = Settings(environment="production", consumer_replicas=1)
    assert settings.state_store_backend == StateStoreBackend.MEMORY


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("STATE_STORE_BACKEND", "redis")
    settings = Settings()
    assert settings.worker_concurrency == 4
    assert settings.state_store_backend == StateStoreBackend.REDIS


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)


@pytest.mark.parametrize(
    "field",
    [
        "rate_limit_global_per_minute",
        "rate_limit_user_per_hour",
        "rate_limit_ip_per_hour",
        "inference_requests_per_minute",
    ],
)
def test_rate_limits_must_allow_at_least_one_request(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_background_periods_are_configurable():
    settings = Settings(dedup_eviction_interval_s=60, max_retry_delay_s=120)
    assert settings.dedup_eviction_interval_s == 60
    assert settings.max_retry_delay_s == 120
    assert Settings().dedup_eviction_interval_s == 300
