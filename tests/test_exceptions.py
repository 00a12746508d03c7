import asyncio

import httpx
import pytest

from analysis_worker.v1.core.exceptions import (
    DownstreamError,
    DownstreamUnavailableError,
    DuplicateJobError,
    InferenceProviderError,
    InternalError,
    ProcessingTimeoutError,
    RateLimitedError,
    TransientNetworkError,
    ValidationError,
    classify_error,
    is_retryable_error,
)


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("PUT", "http://archive.test/jobs/job-1/status")
    return httpx.HTTPStatusError(
        "error", request=request, response=httpx.Response(code, request=request)
    )


@pytest.mark.parametrize(
    "error,retryable",
    [
        (TransientNetworkError("reset"), True),
        (RateLimitedError("user", 12), True),
        (InternalError("boom"), True),
        (ValidationError("bad"), False),
        (DuplicateJobError("job-1"), False),
        (ProcessingTimeoutError("job-1", 1800), False),
        (InferenceProviderError("provider 500"), False),
    ],
)
def test_taxonomy_retryability(error, retryable):
    assert classify_error(error).retryable is retryable


@pytest.mark.parametrize("code,retryable", [(500, True), (503, True), (429, True), (400, False), (404, False)])
def test_http_status_classification(code, retryable):
    assert is_retryable_error(status_error(code)) is retryable
    classified = classify_error(status_error(code))
    assert isinstance(classified, DownstreamError)
    assert classified.retryable is retryable


def test_network_errors_are_transient():
    assert is_retryable_error(httpx.ConnectError("refused"))
    assert is_retryable_error(asyncio.TimeoutError())
    assert isinstance(classify_error(httpx.ReadTimeout("slow")), TransientNetworkError)


def test_open_circuit_not_retried_by_client_but_redelivered():
    error = DownstreamUnavailableError("archive_service", 30)
    assert not is_retryable_error(error)
    assert classify_error(error).retryable


def test_unknown_errors_become_internal():
    classified = classify_error(KeyError("missing"))
    assert isinstance(classified, InternalError)
    assert classified.retryable
