from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import mimetypes
import os
import pathlib
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from media_pipeline.clients.predictions import PredictionClient
from media_pipeline.clients.s3_storage import S3StorageClient
from media_pipeline.config import Settings
from media_pipeline.errors import (
    ErrorCode,
    PipelineError,
    classify_exception,
    not_found,
    provider_failure,
)
from media_pipeline.events.publisher import JobEventPublisher
from media_pipeline.models.domain import (
    ArtifactCategory,
    GenerationJob,
    JobKind,
    JobStatus,
    JobStatusHistory,
    JobTransition,
    StoredArtifact,
    can_transition,
)
from media_pipeline.services.retry import RetryPolicy, Sleep, retry_with_backoff
from media_pipeline.storage.repository import ArtifactRegistry, GenerationJobRepository

KIND_FOLDERS = {
    JobKind.IMAGE: "images",
    JobKind.VIDEO: "videos",
    JobKind.MUSIC: "audio",
    JobKind.NARRATION: "audio",
    JobKind.BACKGROUND_REMOVAL: "images",
}

KIND_MIME_TYPES = {
    JobKind.IMAGE: "image/png",
    JobKind.VIDEO: "video/mp4",
    JobKind.MUSIC: "audio/mpeg",
    JobKind.NARRATION: "audio/mpeg",
    JobKind.BACKGROUND_REMOVAL: "image/png",
}


def extract_output_url(prediction: dict[str, Any]) -> str:
    output = prediction.get("output")
    if isinstance(output, str) and output:
        return output
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str) and item:
                return item
    raise PipelineError(
        ErrorCode.PREDICTION_FAILED,
        "Prediction succeeded but no output URL found",
        retryable=False,
    )


class JobOrchestrator:
    """Drives provider predictions to a terminal state and stores their output.

    Polling is client driven: every read is one ``poll_once`` call and the
    waiting loop sleeps through the injected ``sleep`` between reads.
    """

    def __init__(
        self,
        client: PredictionClient,
        storage: S3StorageClient,
        repo: GenerationJobRepository,
        settings: Settings,
        registry: ArtifactRegistry | None = None,
        events: JobEventPublisher | None = None,
        sleep: Sleep = asyncio.sleep,
        download_transport: httpx.AsyncBaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.storage = storage
        self.repo = repo
        self.settings = settings
        self.registry = registry
        self.events = events
        self.sleep = sleep
        self.download_transport = download_transport
        self.log = logger or logging.getLogger(__name__)
        self.request_policy = RetryPolicy(
            max_attempts=settings.max_retries,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
        self.download_policy = RetryPolicy(
            max_attempts=settings.download_retries,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    def model_for(self, kind: JobKind) -> str:
        return {
            JobKind.IMAGE: self.settings.image_model,
            JobKind.VIDEO: self.settings.video_model,
            JobKind.MUSIC: self.settings.music_model,
            JobKind.NARRATION: self.settings.narration_model,
            JobKind.BACKGROUND_REMOVAL: self.settings.background_removal_model,
        }[kind]

    async def submit(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        input_refs: list[str] | None = None,
        model: str | None = None,
        project_id: str | None = None,
        scene_index: int | None = None,
    ) -> GenerationJob:
        model_id = model or self.model_for(kind)
        prediction = await retry_with_backoff(
            lambda: self.client.create_prediction(model_id, payload),
            self.request_policy,
            sleep=self.sleep,
            label="create_prediction",
            context={"kind": kind.value, "model": model_id, "project_id": project_id},
            log=self.log,
        )
        job = GenerationJob(
            job_id=str(prediction["id"]),
            kind=kind,
            model=model_id,
            input_refs=list(input_refs or []),
            project_id=project_id,
            scene_index=scene_index,
            status_history=[JobStatusHistory(status=JobStatus.STARTING, message="Prediction created")],
        )
        self._publish_transition(job, None)
        self._apply_prediction(job, prediction)
        self.repo.save(job)
        return job

    def get_job(self, job_id: str) -> GenerationJob:
        job = self.repo.get(job_id)
        if job is None:
            raise not_found(f"Generation job not found: {job_id}")
        return job

    async def poll_once(self, job_id: str, kind: JobKind | None = None) -> GenerationJob:
        job = self.repo.get(job_id)
        if job is None:
            # Predictions created outside this process are adopted on first read.
            job = GenerationJob(job_id=job_id, kind=kind or JobKind.VIDEO)
        if job.status.is_terminal:
            return job
        job.attempt += 1
        try:
            prediction = await self.client.get_prediction(job_id)
        except Exception:
            self.repo.save(job)
            raise
        self._apply_prediction(job, prediction)
        self.repo.save(job)
        return job

    async def wait_for_completion(
        self,
        job_id: str,
        max_attempts: int | None = None,
        interval_seconds: float | None = None,
        kind: JobKind | None = None,
    ) -> GenerationJob:
        attempts = max(1, max_attempts or self.settings.poll_max_attempts)
        interval = self.settings.poll_interval_seconds if interval_seconds is None else interval_seconds
        for attempt in range(1, attempts + 1):
            try:
                job = await self.poll_once(job_id, kind=kind)
            except Exception as exc:
                error = classify_exception(exc)
                if not error.retryable:
                    if error is exc:
                        raise
                    raise error from exc
                self.log.info(
                    "poll attempt failed, retrying",
                    extra={"job_id": job_id, "attempt": attempt, "code": error.code.value, "error": error.message},
                )
            else:
                if job.status.is_terminal:
                    return self._terminal_result(job)
            if attempt < attempts:
                await self.sleep(interval)
        raise PipelineError(
            ErrorCode.TIMEOUT,
            f"Prediction {job_id} did not finish after {attempts} polls ({attempts * interval:.0f}s)",
            retryable=True,
        )

    async def cancel(self, job_id: str) -> GenerationJob:
        job = self.get_job(job_id)
        if job.status.is_terminal:
            return job
        prediction = await self.client.cancel_prediction(job_id)
        self._apply_prediction(job, prediction)
        self.repo.save(job)
        return job

    async def generate(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        input_refs: list[str] | None = None,
        model: str | None = None,
        project_id: str | None = None,
        scene_index: int | None = None,
    ) -> GenerationJob:
        job = await self.submit(
            kind,
            payload,
            input_refs=input_refs,
            model=model,
            project_id=project_id,
            scene_index=scene_index,
        )
        job = await self.wait_for_completion(job.job_id, kind=kind)
        if project_id and job.output_ref:
            job.artifact = await self.download_and_save_with_retry(
                job.output_ref,
                project_id=project_id,
                scene_index=scene_index,
                kind=kind,
            )
            self.repo.save(job)
        return job

    async def check_status(
        self,
        job_id: str,
        project_id: str | None = None,
        scene_index: int | None = None,
        kind: JobKind | None = None,
    ) -> GenerationJob:
        """One client-facing poll; downloads the output when placement context is given."""
        job = await self.poll_once(job_id, kind=kind)
        if job.status != JobStatus.SUCCEEDED or not project_id or job.artifact or not job.output_ref:
            return job
        try:
            job.artifact = await self.download_and_save_with_retry(
                job.output_ref,
                project_id=project_id,
                scene_index=scene_index,
                kind=job.kind,
            )
        except PipelineError as exc:
            self.log.warning(
                "output download failed, returning remote output only",
                extra={"job_id": job_id, "project_id": project_id, "code": exc.code.value, "error": exc.message},
            )
            return job
        job.project_id = project_id
        job.scene_index = scene_index
        self.repo.save(job)
        return job

    async def download_and_save_with_retry(
        self,
        url: str,
        project_id: str,
        scene_index: int | None = None,
        kind: JobKind = JobKind.IMAGE,
        category: ArtifactCategory = ArtifactCategory.GENERATED,
    ) -> StoredArtifact:
        return await retry_with_backoff(
            lambda: self.download_and_save(url, project_id, scene_index, kind, category),
            self.download_policy,
            sleep=self.sleep,
            label="download_and_save",
            context={"url": url, "project_id": project_id, "scene_index": scene_index},
            log=self.log,
        )

    async def download_and_save(
        self,
        url: str,
        project_id: str,
        scene_index: int | None = None,
        kind: JobKind = JobKind.IMAGE,
        category: ArtifactCategory = ArtifactCategory.GENERATED,
    ) -> StoredArtifact:
        data, content_type = await self.fetch_bytes(url)
        mime_type = self._resolve_mime(url, content_type, kind)
        if mime_type.startswith("image/"):
            await asyncio.to_thread(self._validate_image, data, url)
        local_path = await asyncio.to_thread(self._write_local, data, url, project_id, scene_index, kind, mime_type)
        try:
            stored = await asyncio.to_thread(
                self.storage.store,
                data,
                project_id,
                category.value,
                mime_type,
                filename=os.path.basename(local_path),
            )
        except ValueError as exc:
            self.log.warning(
                "artifact upload failed",
                extra={"leg": "upload", "url": url, "project_id": project_id, "error": str(exc)},
            )
            raise PipelineError(ErrorCode.GENERATION_FAILED, f"artifact upload failed: {exc}", retryable=True) from exc
        artifact = StoredArtifact(
            key=stored.key,
            url=stored.url,
            local_path=local_path,
            size_bytes=len(data),
            mime_type=mime_type,
            project_id=project_id,
            category=category,
        )
        if self.registry is not None:
            self.registry.register(artifact, uploaded=True)
        self.log.info(
            "artifact saved",
            extra={"project_id": project_id, "key": stored.key, "local_path": local_path, "size_bytes": len(data)},
        )
        return artifact

    async def fetch_bytes(self, url: str) -> tuple[bytes, str | None]:
        read_timeout = max(10.0, float(self.settings.asset_download_timeout))
        timeout = httpx.Timeout(connect=10.0, read=read_timeout, write=10.0, pool=read_timeout)
        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                transport=self.download_transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            self.log.warning("download fetch failed", extra={"leg": "fetch", "url": url, "error": str(exc)})
            raise classify_exception(exc) from exc
        data = response.content
        if not data:
            self.log.warning("download fetch returned empty body", extra={"leg": "fetch", "url": url})
            raise PipelineError(ErrorCode.GENERATION_FAILED, "Downloaded payload is empty", retryable=True)
        return data, response.headers.get("content-type")

    def _write_local(
        self,
        data: bytes,
        url: str,
        project_id: str,
        scene_index: int | None,
        kind: JobKind,
        mime_type: str,
    ) -> str:
        folder = os.path.join(self.settings.temp_root, project_id, KIND_FOLDERS[kind])
        digest = hashlib.sha256(data).hexdigest()[:16]
        suffix = pathlib.PurePosixPath(urlparse(url).path).suffix or mimetypes.guess_extension(mime_type) or ".bin"
        prefix = f"scene-{scene_index}-" if scene_index is not None else ""
        path = os.path.join(folder, f"{prefix}{kind.value}-{digest}{suffix}")
        try:
            os.makedirs(folder, exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(data)
            if os.path.getsize(path) == 0:
                raise OSError("saved file is empty")
        except OSError as exc:
            self.log.warning(
                "download write failed",
                extra={"leg": "write", "url": url, "local_path": path, "error": str(exc)},
            )
            raise PipelineError(ErrorCode.INTERNAL_ERROR, f"Failed to save {path}: {exc}", retryable=True) from exc
        return path

    def _resolve_mime(self, url: str, content_type: str | None, kind: JobKind) -> str:
        if content_type:
            mime = content_type.split(";", 1)[0].strip().lower()
            if mime and mime != "application/octet-stream":
                return mime
        guessed = mimetypes.guess_type(urlparse(url).path)[0]
        return guessed or KIND_MIME_TYPES[kind]

    def _validate_image(self, data: bytes, url: str) -> None:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as exc:
            self.log.warning("downloaded file may not be a valid image", extra={"url": url, "error": str(exc)})

    def _apply_prediction(self, job: GenerationJob, prediction: dict[str, Any]) -> None:
        raw_status = str(prediction.get("status") or "")
        try:
            observed = JobStatus(raw_status)
        except ValueError:
            self.log.warning("unknown prediction status ignored", extra={"job_id": job.job_id, "status": raw_status})
            return
        if observed == job.status:
            return
        if not can_transition(job.status, observed):
            self.log.warning(
                "prediction status transition ignored",
                extra={"job_id": job.job_id, "current": job.status.value, "observed": observed.value},
            )
            return
        previous = job.status
        job.status = observed
        message = f"Prediction {observed.value}"
        if observed == JobStatus.SUCCEEDED:
            try:
                job.output_ref = extract_output_url(prediction)
            except PipelineError as exc:
                job.error = exc.message
        elif observed in (JobStatus.FAILED, JobStatus.CANCELED):
            job.error = prediction.get("error") or f"Generation {observed.value}"
            message = f"{message}: {job.error}"
        if observed.is_terminal:
            job.completed_at = datetime.utcnow()
        job.status_history.append(JobStatusHistory(status=observed, message=message))
        self.log.info(
            "prediction status changed",
            extra={"job_id": job.job_id, "status": observed.value, "attempt": job.attempt},
        )
        self._publish_transition(job, previous)

    def _terminal_result(self, job: GenerationJob) -> GenerationJob:
        if job.status == JobStatus.SUCCEEDED:
            if not job.output_ref:
                raise PipelineError(ErrorCode.PREDICTION_FAILED, job.error or "Prediction has no output", retryable=False)
            return job
        raise provider_failure(job.status.value, job.error)

    def _publish_transition(self, job: GenerationJob, previous: JobStatus | None) -> None:
        if not self.events:
            return
        try:
            self.events.publish_transition(JobTransition.from_job(job, previous))
        except Exception:  # pragma: no cover
            self.log.warning("job event emission failed", extra={"job_id": job.job_id}, exc_info=True)
