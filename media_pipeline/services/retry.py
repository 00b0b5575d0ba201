"""Retry policy shared by provider calls, downloads and background removal."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from media_pipeline.errors import ErrorCode, PipelineError, classify_exception

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[Any]]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
    context: dict[str, Any] | None = None,
    log: logging.Logger | None = None,
) -> T:
    """Run ``func`` until it succeeds, a non-retryable error surfaces or attempts run out.

    Every failure is classified once; only ``retryable`` errors are retried.
    The last classified error is raised.
    """
    log = log or logger
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as exc:
            error = classify_exception(exc)
            extra = {
                **(context or {}),
                "operation": label,
                "attempt": attempt,
                "max_attempts": attempts,
                "code": error.code.value,
                "retryable": error.retryable,
            }
            if not error.retryable or attempt >= attempts:
                log.warning(f"{label} failed", extra=extra)
                if error is exc:
                    raise
                raise error from exc
            delay = policy.delay_for(attempt)
            log.info(f"{label} attempt failed, retrying", extra={**extra, "delay_seconds": delay, "error": error.message})
            await sleep(delay)
    raise PipelineError(ErrorCode.INTERNAL_ERROR, f"{label} did not run")  # pragma: no cover
