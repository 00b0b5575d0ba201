from __future__ import annotations

import asyncio
import base64
import logging
import os
from typing import List, Optional

from pydantic import BaseModel, Field

from media_pipeline.errors import ErrorCode, PipelineError, classify_exception, not_found, validation_error
from media_pipeline.models.domain import JobKind
from media_pipeline.services.job_orchestrator import JobOrchestrator
from media_pipeline.services.retry import RetryPolicy, retry_with_backoff


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _write_bytes(path: str, data: bytes) -> None:
    with open(path, "wb") as fh:
        fh.write(data)


class IterativeRemovalResult(BaseModel):
    source_path: str
    path: str
    processed_paths: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.processed_paths)


class BatchRemovalItem(BaseModel):
    source_path: str
    path: str
    success: bool
    processed_paths: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class BackgroundRemover:
    """Removes image backgrounds through the prediction provider.

    Iterations feed each output into the next request. A failed iteration
    keeps the last good output, so callers always get a usable path back.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        retries: int = 3,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.orchestrator = orchestrator
        settings = orchestrator.settings
        self.policy = RetryPolicy(
            max_attempts=retries,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
        self.log = logger or logging.getLogger(__name__)

    async def remove_background(self, image_path: str) -> str:
        if not image_path or not isinstance(image_path, str):
            raise validation_error("image path is required")
        if not os.path.isfile(image_path):
            raise not_found(f"Image file not found: {image_path}")
        data = await asyncio.to_thread(_read_bytes, image_path)
        mime_type = "image/png" if image_path.lower().endswith(".png") else "image/jpeg"
        data_url = f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"

        job = await self.orchestrator.submit(
            JobKind.BACKGROUND_REMOVAL,
            {"image": data_url},
            input_refs=[image_path],
        )
        job = await self.orchestrator.wait_for_completion(job.job_id, kind=JobKind.BACKGROUND_REMOVAL)
        processed, _ = await self.orchestrator.fetch_bytes(str(job.output_ref))

        # Cutouts carry alpha, always PNG.
        base, _ = os.path.splitext(image_path)
        output_path = f"{base}-bg-removed.png"
        try:
            await asyncio.to_thread(_write_bytes, output_path, processed)
        except OSError as exc:
            raise PipelineError(ErrorCode.INTERNAL_ERROR, f"Failed to save {output_path}: {exc}") from exc
        self.log.info(
            "background removed",
            extra={"source_path": image_path, "output_path": output_path, "job_id": job.job_id},
        )
        return output_path

    async def remove_background_with_retry(self, image_path: str) -> str:
        return await retry_with_backoff(
            lambda: self.remove_background(image_path),
            self.policy,
            sleep=self.orchestrator.sleep,
            label="remove_background",
            context={"source_path": image_path},
            log=self.log,
        )

    async def remove_background_iterative(self, image_path: str, iterations: int = 2) -> IterativeRemovalResult:
        result = IterativeRemovalResult(source_path=image_path, path=image_path)
        current = image_path
        for iteration in range(1, max(1, iterations) + 1):
            try:
                current = await self.remove_background_with_retry(current)
            except Exception as exc:
                error = classify_exception(exc)
                result.errors.append(f"iteration {iteration}: {error.message}")
                self.log.warning(
                    "background removal iteration failed, keeping last good output",
                    extra={"source_path": image_path, "iteration": iteration, "code": error.code.value},
                )
                continue
            result.processed_paths.append(current)
            result.path = current
        return result

    async def remove_background_batch(self, paths: List[str], iterations: int = 2) -> List[BatchRemovalItem]:
        items: List[BatchRemovalItem] = []
        for path in paths:
            outcome = await self.remove_background_iterative(path, iterations)
            items.append(
                BatchRemovalItem(
                    source_path=path,
                    path=outcome.path,
                    success=outcome.succeeded,
                    processed_paths=outcome.processed_paths,
                    error="; ".join(outcome.errors) or None,
                )
            )
        self.log.info(
            "background removal batch finished",
            extra={"items": len(items), "failed": sum(1 for item in items if not item.success)},
        )
        return items
