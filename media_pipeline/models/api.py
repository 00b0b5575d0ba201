from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from media_pipeline.cache.content_cache import CacheStats

from .domain import (
    DiskUsage,
    GenerationJob,
    JobKind,
    TextAlign,
    TextOverlay,
    TimelineClip,
    TimelineState,
)


class ApiResponse(BaseModel):
    """Envelope used by every JSON endpoint."""

    success: bool = True
    data: Any = None
    error: Optional[str] = None
    code: Optional[str] = None
    retryable: Optional[bool] = None


def ok(data: Any = None) -> ApiResponse:
    return ApiResponse(success=True, data=data)


class GenerationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    kind: JobKind
    input: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None
    input_refs: List[str] = Field(default_factory=list)
    project_id: Optional[str] = None
    scene_index: Optional[int] = Field(default=None, ge=0)
    wait: bool = False

    @field_validator("input")
    @classmethod
    def validate_input(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not value:
            raise ValueError("input must not be empty")
        return value


class GenerationResponse(BaseModel):
    job: GenerationJob


class BackgroundRemovalRequest(BaseModel):
    paths: List[str] = Field(..., min_length=1)
    iterations: int = Field(default=2, ge=1, le=5)


class ClipInput(BaseModel):
    id: Optional[str] = None
    source_artifact_ref: str
    source_duration: float = Field(gt=0)
    trim_start: float = 0.0
    trim_end: Optional[float] = None
    title: Optional[str] = None
    scene_index: Optional[int] = None

    def to_clip(self) -> TimelineClip:
        data = self.model_dump(exclude_none=True)
        return TimelineClip(**data)


class VersionedRequest(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=0)


class TimelineInitRequest(VersionedRequest):
    clips: List[ClipInput] = Field(default_factory=list)


class AddClipRequest(VersionedRequest):
    clip: ClipInput
    index: Optional[int] = Field(default=None, ge=0)


class TrimRequest(VersionedRequest):
    trim_start: float
    trim_end: float


class SplitRequest(VersionedRequest):
    split_time: float


class PlayheadSplitRequest(VersionedRequest):
    time: float = Field(ge=0)


class ReorderRequest(VersionedRequest):
    new_index: int


class TimelineResponse(BaseModel):
    timeline: TimelineState
    can_undo: bool
    can_redo: bool


class OverlayUpdateRequest(BaseModel):
    text: Optional[str] = None
    x: Optional[float] = Field(default=None, ge=0, le=1)
    y: Optional[float] = Field(default=None, ge=0, le=1)
    start_time: Optional[float] = Field(default=None, ge=0)
    end_time: Optional[float] = None
    font_family: Optional[str] = None
    font_size: Optional[int] = Field(default=None, ge=1)
    font_color: Optional[str] = None
    opacity: Optional[float] = Field(default=None, ge=0, le=1)
    text_align: Optional[TextAlign] = None
    border_width: Optional[int] = Field(default=None, ge=0)
    border_color: Optional[str] = None
    shadow_enabled: Optional[bool] = None
    shadow_color: Optional[str] = None
    shadow_offset_x: Optional[int] = None
    shadow_offset_y: Optional[int] = None
    background_color: Optional[str] = None
    background_opacity: Optional[float] = Field(default=None, ge=0, le=1)
    order: Optional[int] = None


class ClipEditsRequest(BaseModel):
    clips: Optional[List[TimelineClip]] = None


class PreviewRequest(BaseModel):
    clips: Optional[List[TimelineClip]] = None
    text_overlays: Optional[List[TextOverlay]] = None


class StitchRequest(BaseModel):
    paths: Optional[List[str]] = None
    style: Optional[str] = None
    logo_path: Optional[str] = None


class CleanupRequest(BaseModel):
    project_id: Optional[str] = None
    max_age_hours: Optional[float] = Field(default=None, ge=0)
    dry_run: bool = False


class OrphanDeleteRequest(BaseModel):
    paths: List[str] = Field(..., min_length=1)
    confirm: bool = False


class DiskUsageResponse(BaseModel):
    usage: DiskUsage
    threshold_bytes: int
    exceeded: bool


class CacheStatsResponse(BaseModel):
    video: CacheStats
    image: CacheStats


class CronCleanupSummary(BaseModel):
    projects_cleaned: int = 0
    files_deleted: int = 0
    bytes_freed: int = 0
    uploaded_files_cleaned: int = 0
    orphaned_files_found: int = 0
    errors: List[str] = Field(default_factory=list)
    timed_out: bool = False
