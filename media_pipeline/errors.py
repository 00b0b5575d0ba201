from __future__ import annotations

from enum import Enum

import httpx


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    GENERATION_FAILED = "GENERATION_FAILED"
    PREDICTION_FAILED = "PREDICTION_FAILED"
    TIMEOUT = "TIMEOUT"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    RENDER_FAILED = "RENDER_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_DEFAULT_RETRYABLE = {
    ErrorCode.RATE_LIMIT: True,
    ErrorCode.TIMEOUT: True,
    ErrorCode.GENERATION_FAILED: True,
}

_HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.AUTHENTICATION_FAILED: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VERSION_CONFLICT: 409,
    ErrorCode.RATE_LIMIT: 429,
}


class PipelineError(Exception):
    """Structured failure carrying its retryability from the point it was raised."""

    def __init__(self, code: ErrorCode, message: str, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = _DEFAULT_RETRYABLE.get(code, False) if retryable is None else retryable

    @property
    def http_status(self) -> int:
        status = _HTTP_STATUS.get(self.code)
        if status is not None:
            return status
        return 503 if self.retryable else 500

    def to_payload(self) -> dict[str, object]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"PipelineError(code={self.code.value!r}, message={self.message!r}, retryable={self.retryable})"


def validation_error(message: str) -> PipelineError:
    return PipelineError(ErrorCode.VALIDATION_ERROR, message)


def not_found(message: str) -> PipelineError:
    return PipelineError(ErrorCode.NOT_FOUND, message)


def from_http_status(status: int, message: str) -> PipelineError:
    if status in (400, 422):
        return PipelineError(ErrorCode.VALIDATION_ERROR, message)
    if status in (401, 403):
        return PipelineError(ErrorCode.AUTHENTICATION_FAILED, message)
    if status == 404:
        return PipelineError(ErrorCode.NOT_FOUND, message)
    if status == 429:
        return PipelineError(ErrorCode.RATE_LIMIT, message)
    if status == 408:
        return PipelineError(ErrorCode.TIMEOUT, message)
    if status >= 500:
        return PipelineError(ErrorCode.GENERATION_FAILED, message, retryable=True)
    return PipelineError(ErrorCode.GENERATION_FAILED, message, retryable=False)


_TRANSIENT_PROVIDER_HINTS = (
    "rate limit",
    "timeout",
    "timed out",
    "temporar",
    "unavailable",
    "overloaded",
    "out of memory",
    "cuda",
    "connection",
)


def provider_failure(status: str, message: str | None) -> PipelineError:
    """Classify a provider-reported failed/canceled prediction.

    The provider only gives free text, so this is the single place where that
    text is interpreted.
    """
    text = (message or f"prediction {status}").strip()
    if status == "canceled":
        return PipelineError(ErrorCode.PREDICTION_FAILED, text, retryable=False)
    lowered = text.lower()
    retryable = any(hint in lowered for hint in _TRANSIENT_PROVIDER_HINTS)
    return PipelineError(ErrorCode.PREDICTION_FAILED, text, retryable=retryable)


def classify_exception(exc: BaseException) -> PipelineError:
    """Map any raised error once into the pipeline taxonomy."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return PipelineError(ErrorCode.TIMEOUT, f"request timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return from_http_status(response.status_code, f"HTTP {response.status_code}: {response.text[:500]}")
    if isinstance(exc, httpx.TransportError):
        return PipelineError(ErrorCode.GENERATION_FAILED, f"network error: {exc}", retryable=True)
    if isinstance(exc, FileNotFoundError):
        return PipelineError(ErrorCode.NOT_FOUND, str(exc))
    if isinstance(exc, (ValueError, TypeError)):
        return PipelineError(ErrorCode.VALIDATION_ERROR, str(exc))
    return PipelineError(ErrorCode.INTERNAL_ERROR, str(exc) or exc.__class__.__name__)
