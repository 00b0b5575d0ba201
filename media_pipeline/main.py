from __future__ import annotations

import asyncio
import logging
import os
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from media_pipeline.cache.content_cache import MB, ContentCache
from media_pipeline.clients.predictions import PredictionClient
from media_pipeline.clients.s3_storage import S3StorageClient
from media_pipeline.config import Settings, get_settings
from media_pipeline.errors import (
    ErrorCode,
    PipelineError,
    classify_exception,
    validation_error,
)
from media_pipeline.events.publisher import JobEventPublisher
from media_pipeline.lifecycle import run_periodic_cleanup
from media_pipeline.models.api import (
    AddClipRequest,
    ApiResponse,
    BackgroundRemovalRequest,
    CacheStatsResponse,
    ClipEditsRequest,
    CleanupRequest,
    CronCleanupSummary,
    DiskUsageResponse,
    GenerationRequest,
    GenerationResponse,
    OrphanDeleteRequest,
    OverlayUpdateRequest,
    PlayheadSplitRequest,
    PreviewRequest,
    ReorderRequest,
    SplitRequest,
    StitchRequest,
    TimelineInitRequest,
    TimelineResponse,
    TrimRequest,
    VersionedRequest,
    ok,
)
from media_pipeline.models.domain import JobKind, ScheduledCleanupReport, TextOverlay
from media_pipeline.services.assembly import AssemblyEngine
from media_pipeline.services.background_removal import BackgroundRemover
from media_pipeline.services.cleanup_service import CleanupManager
from media_pipeline.services.clip_editor import ClipEditor
from media_pipeline.services.ffmpeg import FfmpegRunner, ffmpeg_runner
from media_pipeline.services.job_orchestrator import JobOrchestrator
from media_pipeline.services.media_server import MediaServer
from media_pipeline.services.retry import Sleep
from media_pipeline.services.timeline import TimelineEditor, TimelineStore
from media_pipeline.storage.repository import ArtifactRegistry, GenerationJobRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)

GB = 1024 * MB


@dataclass
class ServiceContainer:
    settings: Settings
    video_cache: ContentCache
    image_cache: ContentCache
    storage: S3StorageClient
    media: MediaServer
    registry: ArtifactRegistry
    jobs: GenerationJobRepository
    predictions: PredictionClient
    events: Optional[JobEventPublisher]
    orchestrator: JobOrchestrator
    background: BackgroundRemover
    timelines: TimelineStore
    clip_editor: ClipEditor
    assembly: AssemblyEngine
    cleanup: CleanupManager

    async def aclose(self) -> None:
        self.video_cache.close()
        self.image_cache.close()
        await self.predictions.aclose()
        if self.events is not None:
            self.events.close()


def build_services(
    settings: Settings,
    *,
    prediction_transport: httpx.AsyncBaseTransport | None = None,
    download_transport: httpx.AsyncBaseTransport | None = None,
    ffmpeg: FfmpegRunner | None = None,
    sleep: Sleep = asyncio.sleep,
) -> ServiceContainer:
    video_cache = ContentCache(
        max_total_bytes=int(settings.video_cache_max_mb * MB),
        max_entry_bytes=int(settings.video_cache_max_entry_mb * MB),
        ttl_seconds=settings.video_cache_ttl_minutes * 60,
        name="video",
    )
    image_cache = ContentCache(
        max_total_bytes=int(settings.image_cache_max_mb * MB),
        max_entry_bytes=int(settings.image_cache_max_entry_mb * MB),
        ttl_seconds=settings.image_cache_ttl_minutes * 60,
        name="image",
    )
    storage = S3StorageClient(
        bucket=settings.s3_bucket,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        endpoint_url=settings.s3_endpoint_url,
        region_name=settings.s3_region,
        public_url=settings.s3_public_url,
        folder_prefix=settings.storage_folder_prefix,
        addressing_style=settings.s3_addressing_style,
        presign_ttl_seconds=settings.presign_ttl_seconds,
    )
    roots: List[str] = []
    for root in [settings.temp_root, *settings.media_roots]:
        if root and root not in roots:
            roots.append(root)
    media = MediaServer(video_cache, image_cache, storage, roots)

    registry = ArtifactRegistry()
    jobs = GenerationJobRepository()
    predictions = PredictionClient(
        api_token=settings.replicate_api_token,
        base_url=settings.replicate_base_url,
        timeout=settings.provider_timeout_seconds,
        transport=prediction_transport,
    )
    events = _build_events(settings)
    orchestrator = JobOrchestrator(
        predictions,
        storage,
        jobs,
        settings,
        registry=registry,
        events=events,
        sleep=sleep,
        download_transport=download_transport,
    )
    runner = ffmpeg or ffmpeg_runner(settings.ffmpeg_binary)
    clip_editor = ClipEditor(settings.temp_root, settings.encoding_profile, runner=runner)
    return ServiceContainer(
        settings=settings,
        video_cache=video_cache,
        image_cache=image_cache,
        storage=storage,
        media=media,
        registry=registry,
        jobs=jobs,
        predictions=predictions,
        events=events,
        orchestrator=orchestrator,
        background=BackgroundRemover(orchestrator, retries=settings.max_retries),
        timelines=TimelineStore(),
        clip_editor=clip_editor,
        assembly=AssemblyEngine(settings, clip_editor, storage=storage, runner=runner),
        cleanup=CleanupManager(
            settings.temp_root,
            threshold_bytes=int(settings.cleanup_threshold_gb * GB),
            default_max_age_seconds=settings.cleanup_max_age_hours * 3600,
            preserve_categories=settings.cleanup_preserve_categories,
        ),
    )


def _build_events(settings: Settings) -> JobEventPublisher | None:
    if not settings.kafka_enabled:
        return None
    try:
        return JobEventPublisher(settings.kafka_bootstrap_servers, settings.kafka_updates_topic)
    except Exception:
        logger.warning("job event publisher unavailable", exc_info=True)
        return None


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def _error_response(error: PipelineError) -> JSONResponse:
    payload = ApiResponse(**error.to_payload())
    return JSONResponse(status_code=error.http_status, content=payload.model_dump(mode="json"))


def create_app(settings: Settings | None = None, services: ServiceContainer | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container = services or build_services(settings or get_settings())
        app.state.services = container
        shutdown_event = asyncio.Event()
        cleanup_task: asyncio.Task | None = None
        interval = container.settings.cleanup_interval_seconds
        if interval > 0:
            cleanup_task = asyncio.create_task(
                run_periodic_cleanup(
                    manager=container.cleanup,
                    persistence=container.registry,
                    shutdown_event=shutdown_event,
                    interval_seconds=interval,
                    budget_seconds=container.settings.cleanup_budget_seconds,
                )
            )
        try:
            yield
        finally:
            shutdown_event.set()
            if cleanup_task is not None:
                try:
                    await asyncio.wait_for(cleanup_task, timeout=5)
                except asyncio.TimeoutError:
                    cleanup_task.cancel()
            await container.aclose()

    app = FastAPI(title="media-pipeline", lifespan=lifespan)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.warning(
                "request failed",
                extra={"path": request.url.path, "code": exc.code.value, "retryable": exc.retryable},
            )
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        return _error_response(validation_error(details or "invalid request"))

    @app.exception_handler(ValueError)
    @app.exception_handler(FileNotFoundError)
    @app.exception_handler(httpx.HTTPError)
    async def classified_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return _error_response(classify_exception(exc))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        error = classify_exception(exc)
        logger.error("unhandled error", extra={"path": request.url.path, "code": error.code.value}, exc_info=exc)
        return _error_response(error)

    app.include_router(router)
    return app


router = APIRouter()


@router.api_route("/media/serve", methods=["GET", "HEAD"])
def serve_media(
    request: Request,
    path: Optional[str] = Query(default=None),
    key: Optional[str] = Query(default=None),
    range_header: Optional[str] = Header(default=None, alias="Range"),
    services: ServiceContainer = Depends(get_services),
) -> Response:
    return services.media.build_response(request.method, path, key, range_header)


@router.get("/cache-stats", response_model=ApiResponse)
def cache_stats(services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    stats = CacheStatsResponse(video=services.video_cache.get_stats(), image=services.image_cache.get_stats())
    return ok(stats.model_dump(mode="json"))


@router.post("/generations", response_model=ApiResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_generation(
    payload: GenerationRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    call = services.orchestrator.generate if payload.wait else services.orchestrator.submit
    job = await call(
        payload.kind,
        payload.input,
        input_refs=payload.input_refs,
        model=payload.model,
        project_id=payload.project_id,
        scene_index=payload.scene_index,
    )
    return ok(GenerationResponse(job=job).model_dump(mode="json"))


@router.get("/generations/{job_id}", response_model=ApiResponse)
async def get_generation(
    job_id: str,
    project_id: Optional[str] = Query(default=None),
    scene_index: Optional[int] = Query(default=None, ge=0),
    kind: Optional[JobKind] = Query(default=None),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    job = await services.orchestrator.check_status(job_id, project_id=project_id, scene_index=scene_index, kind=kind)
    return ok(GenerationResponse(job=job).model_dump(mode="json"))


@router.post("/generations/{job_id}:cancel", response_model=ApiResponse)
async def cancel_generation(job_id: str, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    job = await services.orchestrator.cancel(job_id)
    return ok(GenerationResponse(job=job).model_dump(mode="json"))


@router.post("/background-removal", response_model=ApiResponse)
async def remove_backgrounds(
    payload: BackgroundRemovalRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    items = await services.background.remove_background_batch(payload.paths, payload.iterations)
    return ok(
        {
            "results": [item.model_dump(mode="json") for item in items],
            "succeeded": sum(1 for item in items if item.success),
            "failed": sum(1 for item in items if not item.success),
        }
    )


def _timeline_payload(editor: TimelineEditor) -> dict[str, Any]:
    response = TimelineResponse(timeline=editor.snapshot(), can_undo=editor.can_undo, can_redo=editor.can_redo)
    return response.model_dump(mode="json")


@router.get("/projects/{project_id}/timeline", response_model=ApiResponse)
def get_timeline(project_id: str, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        return ok(_timeline_payload(editor))


@router.put("/projects/{project_id}/timeline", response_model=ApiResponse)
def initialize_timeline(
    project_id: str,
    payload: TimelineInitRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    clips = [clip.to_clip() for clip in payload.clips]
    with services.timelines.edit(project_id) as editor:
        editor.initialize(clips, expected_version=payload.expected_version)
        return ok(_timeline_payload(editor))


@router.post("/projects/{project_id}/timeline/clips", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def add_clip(
    project_id: str,
    payload: AddClipRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.add_clip(payload.clip.to_clip(), index=payload.index, expected_version=payload.expected_version)
        return ok(_timeline_payload(editor))


@router.post("/projects/{project_id}/timeline/clips/{clip_id}:trim", response_model=ApiResponse)
def trim_clip(
    project_id: str,
    clip_id: str,
    payload: TrimRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.trim_clip(clip_id, payload.trim_start, payload.trim_end, expected_version=payload.expected_version)
        return ok(_timeline_payload(editor))


@router.post("/projects/{project_id}/timeline/clips/{clip_id}:split", response_model=ApiResponse)
def split_clip(
    project_id: str,
    clip_id: str,
    payload: SplitRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.split_clip(clip_id, payload.split_time, expected_version=payload.expected_version)
        return ok(_timeline_payload(editor))


@router.post("/projects/{project_id}/timeline/clips/{clip_id}:reorder", response_model=ApiResponse)
def reorder_clip(
    project_id: str,
    clip_id: str,
    payload: ReorderRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.reorder_clip(clip_id, payload.new_index, expected_version=payload.expected_version)
        return ok(_timeline_payload(editor))


@router.delete("/projects/{project_id}/timeline/clips/{clip_id}", response_model=ApiResponse)
def delete_clip(
    project_id: str,
    clip_id: str,
    expected_version: Optional[int] = Query(default=None, ge=0),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.delete_clip(clip_id, expected_version=expected_version)
        return ok(_timeline_payload(editor))


@router.post("/projects/{project_id}/timeline:split-at-playhead", response_model=ApiResponse)
def split_at_playhead(
    project_id: str,
    payload: PlayheadSplitRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.split_at_playhead(payload.time, expected_version=payload.expected_version)
        return ok(_timeline_payload(editor))


@router.post("/projects/{project_id}/timeline:undo", response_model=ApiResponse)
def undo_timeline(
    project_id: str,
    payload: Optional[VersionedRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.undo(expected_version=payload.expected_version if payload else None)
        return ok(_timeline_payload(editor))


@router.post("/projects/{project_id}/timeline:redo", response_model=ApiResponse)
def redo_timeline(
    project_id: str,
    payload: Optional[VersionedRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    with services.timelines.edit(project_id) as editor:
        editor.redo(expected_version=payload.expected_version if payload else None)
        return ok(_timeline_payload(editor))


@router.get("/projects/{project_id}/text-overlays", response_model=ApiResponse)
def list_text_overlays(project_id: str, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    overlays = services.timelines.list_overlays(project_id)
    return ok([overlay.model_dump(mode="json") for overlay in overlays])


@router.post("/projects/{project_id}/text-overlays", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
def create_text_overlay(
    project_id: str,
    payload: TextOverlay,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    overlay = services.timelines.add_overlay(project_id, payload)
    return ok(overlay.model_dump(mode="json"))


@router.patch("/projects/{project_id}/text-overlays/{overlay_id}", response_model=ApiResponse)
def update_text_overlay(
    project_id: str,
    overlay_id: str,
    payload: OverlayUpdateRequest,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    overlay = services.timelines.update_overlay(project_id, overlay_id, payload.model_dump(exclude_unset=True))
    return ok(overlay.model_dump(mode="json"))


@router.delete("/projects/{project_id}/text-overlays/{overlay_id}", response_model=ApiResponse)
def delete_text_overlay(
    project_id: str,
    overlay_id: str,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    services.timelines.remove_overlay(project_id, overlay_id)
    return ok({"deleted": overlay_id})


@router.post("/projects/{project_id}/clip-edits", response_model=ApiResponse)
async def apply_clip_edits(
    project_id: str,
    payload: Optional[ClipEditsRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    from_timeline = payload is None or payload.clips is None
    clips = services.timelines.get_state(project_id).clips if from_timeline else payload.clips
    if not clips:
        raise validation_error("clips array is required and must not be empty")
    paths = await services.clip_editor.apply_clip_edits(clips, project_id)
    if from_timeline:
        with services.timelines.edit(project_id) as editor:
            for clip, path in zip(clips, paths):
                if any(item.id == clip.id for item in editor.clips):
                    editor.set_edited_artifact(clip.id, path, rendered_from=clip)
    return ok({"edited_paths": paths})


@router.post("/projects/{project_id}/preview", response_model=ApiResponse)
async def generate_preview(
    project_id: str,
    payload: Optional[PreviewRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    payload = payload or PreviewRequest()
    clips = payload.clips if payload.clips is not None else services.timelines.get_state(project_id).clips
    overlays = (
        payload.text_overlays if payload.text_overlays is not None else services.timelines.list_overlays(project_id)
    )
    if not clips:
        raise validation_error("clips array is required and must not be empty")
    preview_path = await services.assembly.generate_preview(clips, overlays, project_id)
    return ok({"preview_video_path": preview_path, "url": f"/media/serve?path={preview_path}"})


@router.post("/projects/{project_id}/stitch", response_model=ApiResponse)
async def stitch_project(
    project_id: str,
    payload: Optional[StitchRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    payload = payload or StitchRequest()
    paths = payload.paths
    if not paths:
        clips = services.timelines.get_state(project_id).clips
        if not clips:
            raise validation_error("paths are required when the timeline is empty")
        paths = await services.clip_editor.apply_clip_edits(clips, project_id)
    result = await services.assembly.stitch_videos(paths, project_id, style=payload.style, logo_path=payload.logo_path)
    return ok(result.model_dump(mode="json"))


@router.get("/projects/{project_id}/disk-usage", response_model=ApiResponse)
def project_disk_usage(project_id: str, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    check = services.cleanup.check_threshold(project_id)
    response = DiskUsageResponse(usage=check.usage, threshold_bytes=check.threshold_bytes, exceeded=check.exceeded)
    return ok(response.model_dump(mode="json"))


@router.delete("/projects/{project_id}/temp-files", response_model=ApiResponse)
def delete_project_temp_files(project_id: str, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    result = services.cleanup.delete_project_temp_files(project_id)
    services.registry.remove_project(project_id)
    services.clip_editor.clear_clip_edit_cache(project_id)
    return ok(result.model_dump(mode="json"))


@router.delete("/projects/{project_id}/artifacts", response_model=ApiResponse)
def delete_stored_artifact(
    project_id: str,
    key: str = Query(..., min_length=1),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    project_prefix = "/".join(part for part in (services.storage.folder_prefix, project_id) if part) + "/"
    clean_key = key.strip("/")
    if not clean_key.startswith(project_prefix) or ".." in clean_key.split("/"):
        raise validation_error(f"artifact key does not belong to project {project_id}")
    deleted = services.storage.delete(clean_key)
    services.registry.forget(clean_key)
    logger.info("stored artifact deleted", extra={"project_id": project_id, "key": clean_key, "deleted": deleted})
    return ok({"key": clean_key, "deleted": deleted})


@router.post("/cleanup", response_model=ApiResponse)
def run_cleanup(payload: CleanupRequest, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    max_age = payload.max_age_hours * 3600 if payload.max_age_hours is not None else None
    if payload.project_id:
        result = services.cleanup.cleanup_project_temp_files(
            payload.project_id, max_age_seconds=max_age, dry_run=payload.dry_run
        )
        return ok({"results": {payload.project_id: result.model_dump(mode="json")}, "dry_run": payload.dry_run})
    results = services.cleanup.cleanup_all_temp_files(max_age_seconds=max_age, dry_run=payload.dry_run)
    return ok(
        {
            "results": {project: result.model_dump(mode="json") for project, result in results.items()},
            "dry_run": payload.dry_run,
        }
    )


@router.get("/cleanup/orphans", response_model=ApiResponse)
def list_orphans(
    project_id: Optional[str] = Query(default=None),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    orphans = services.cleanup.find_orphaned_files(services.registry, project_id)
    return ok({"orphaned_files": orphans, "count": len(orphans)})


@router.post("/cleanup/orphans:delete", response_model=ApiResponse)
def delete_orphans(payload: OrphanDeleteRequest, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    result = services.cleanup.delete_orphaned_files(payload.paths, confirm=payload.confirm)
    return ok(result.model_dump(mode="json"))


def summarize_cleanup(report: ScheduledCleanupReport) -> CronCleanupSummary:
    temp_files = sum(result.deleted_files for result in report.temp_cleanup.values())
    temp_bytes = sum(result.deleted_bytes for result in report.temp_cleanup.values())
    return CronCleanupSummary(
        projects_cleaned=len(report.temp_cleanup),
        files_deleted=temp_files + report.uploaded_cleanup.deleted_files,
        bytes_freed=temp_bytes + report.uploaded_cleanup.deleted_bytes,
        uploaded_files_cleaned=report.uploaded_cleanup.deleted_files,
        orphaned_files_found=len(report.orphaned_files),
        errors=list(report.errors),
        timed_out=report.timed_out,
    )


def _check_cron_secret(settings: Settings, authorization: Optional[str]) -> None:
    if not settings.cron_secret:
        logger.warning("cron secret is not configured, cleanup endpoint is unprotected")
        return
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
        raise PipelineError(ErrorCode.AUTHENTICATION_FAILED, "Unauthorized")


@router.post("/cron/cleanup", response_model=ApiResponse)
def cron_cleanup(
    authorization: Optional[str] = Header(default=None),
    services: ServiceContainer = Depends(get_services),
) -> ApiResponse:
    _check_cron_secret(services.settings, authorization)
    report = services.cleanup.run_scheduled_cleanup(
        services.registry,
        budget_seconds=services.settings.cleanup_budget_seconds,
    )
    return ok(summarize_cleanup(report).model_dump(mode="json"))


@router.get("/cron/cleanup", response_model=ApiResponse)
def cron_cleanup_health(services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    return ok(
        {
            "status": "ok",
            "temp_root": services.settings.temp_root,
            "temp_root_exists": os.path.isdir(services.settings.temp_root),
        }
    )


app = create_app()
