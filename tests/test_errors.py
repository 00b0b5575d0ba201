import httpx
import pytest

from media_pipeline.errors import (
    ErrorCode,
    PipelineError,
    classify_exception,
    from_http_status,
    provider_failure,
)


@pytest.mark.parametrize(
    "status, code, retryable",
    [
        (400, ErrorCode.VALIDATION_ERROR, False),
        (401, ErrorCode.AUTHENTICATION_FAILED, False),
        (404, ErrorCode.NOT_FOUND, False),
        (429, ErrorCode.RATE_LIMIT, True),
        (502, ErrorCode.GENERATION_FAILED, True),
        (418, ErrorCode.GENERATION_FAILED, False),
    ],
)
def test_http_status_classification(status, code, retryable):
    error = from_http_status(status, "boom")
    assert error.code == code
    assert error.retryable is retryable


def test_provider_failure_uses_transient_hints():
    assert provider_failure("failed", "CUDA out of memory").retryable is True
    assert provider_failure("failed", "NSFW content detected").retryable is False
    canceled = provider_failure("canceled", None)
    assert canceled.code == ErrorCode.PREDICTION_FAILED
    assert canceled.retryable is False
    assert canceled.message == "prediction canceled"


def test_classify_exception_maps_library_errors():
    request = httpx.Request("GET", "https://provider.test/x")
    assert classify_exception(httpx.ReadTimeout("slow", request=request)).code == ErrorCode.TIMEOUT
    network = classify_exception(httpx.ConnectError("refused", request=request))
    assert network.code == ErrorCode.GENERATION_FAILED
    assert network.retryable is True
    status_error = httpx.HTTPStatusError(
        "bad", request=request, response=httpx.Response(429, request=request, text="slow down")
    )
    assert classify_exception(status_error).code == ErrorCode.RATE_LIMIT
    assert classify_exception(FileNotFoundError("gone")).code == ErrorCode.NOT_FOUND
    assert classify_exception(ValueError("bad")).code == ErrorCode.VALIDATION_ERROR
    assert classify_exception(RuntimeError()).code == ErrorCode.INTERNAL_ERROR


def test_payload_and_http_status():
    error = PipelineError(ErrorCode.TIMEOUT, "took too long")
    assert error.http_status == 503
    assert error.to_payload() == {
        "success": False,
        "error": "took too long",
        "code": "TIMEOUT",
        "retryable": True,
    }
    assert PipelineError(ErrorCode.VERSION_CONFLICT, "stale").http_status == 409
    assert PipelineError(ErrorCode.RENDER_FAILED, "ffmpeg").http_status == 500
