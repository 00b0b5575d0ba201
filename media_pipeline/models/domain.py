from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, model_validator


class JobKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    MUSIC = "music"
    NARRATION = "narration"
    BACKGROUND_REMOVAL = "background-removal"


class JobStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED})

_STATUS_RANK = {
    JobStatus.STARTING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.SUCCEEDED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELED: 2,
}


def can_transition(current: JobStatus, observed: JobStatus) -> bool:
    """Only forward moves are allowed and nothing leaves a terminal state."""
    if current.is_terminal:
        return False
    return _STATUS_RANK[observed] > _STATUS_RANK[current]


class ArtifactCategory(str, Enum):
    UPLOAD = "upload"
    GENERATED = "generated"
    PREVIEW = "preview"
    TEMP = "temp"


class JobStatusHistory(BaseModel):
    status: JobStatus
    message: str
    occurred_at: datetime = Field(default_factory=datetime.utcnow)


class StoredArtifact(BaseModel):
    key: str
    url: Optional[str] = None
    local_path: Optional[str] = None
    size_bytes: int
    mime_type: str
    project_id: str
    category: ArtifactCategory = ArtifactCategory.GENERATED


class GenerationJob(BaseModel):
    job_id: str
    kind: JobKind
    status: JobStatus = JobStatus.STARTING
    model: Optional[str] = None
    input_refs: List[str] = Field(default_factory=list)
    attempt: int = 0
    project_id: Optional[str] = None
    scene_index: Optional[int] = None
    output_ref: Optional[str] = None
    error: Optional[str] = None
    artifact: Optional[StoredArtifact] = None
    status_history: List[JobStatusHistory] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class JobTransition(BaseModel):
    """One status change of a generation job, as published to downstream consumers."""

    job_id: str
    kind: JobKind
    previous_status: Optional[JobStatus] = None
    status: JobStatus
    attempt: int = 0
    output_ref: Optional[str] = None
    error: Optional[str] = None
    project_id: Optional[str] = None
    scene_index: Optional[int] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def from_job(cls, job: GenerationJob, previous_status: Optional[JobStatus]) -> "JobTransition":
        return cls(
            job_id=job.job_id,
            kind=job.kind,
            previous_status=previous_status,
            status=job.status,
            attempt=job.attempt,
            output_ref=job.output_ref,
            error=job.error,
            project_id=job.project_id,
            scene_index=job.scene_index,
        )


class TimelineClip(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    source_artifact_ref: str
    source_duration: float = Field(gt=0)
    trim_start: float = 0.0
    trim_end: Optional[float] = None
    order: int = 0
    start_time: float = 0.0
    title: Optional[str] = None
    scene_index: Optional[int] = None
    edited_artifact_ref: Optional[str] = None
    is_split: bool = False
    original_clip_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_trim(self) -> "TimelineClip":
        if self.trim_end is None:
            self.trim_end = self.source_duration
        if self.trim_start < 0:
            raise ValueError("trim_start must be >= 0")
        if not self.trim_start < self.trim_end:
            raise ValueError("trim_start must be lower than trim_end")
        if self.trim_end > self.source_duration + 1e-9:
            raise ValueError("trim_end must not exceed source_duration")
        return self

    @computed_field  # type: ignore[misc]
    @property
    def duration(self) -> float:
        return float(self.trim_end) - self.trim_start

    @computed_field  # type: ignore[misc]
    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def is_trimmed(self) -> bool:
        return self.trim_start > 0 or float(self.trim_end) < self.source_duration


class TextAlign(str, Enum):
    LEFT = "left"
    CENTER = "center"
    RIGHT = "right"


class TextOverlay(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    text: str
    x: float = Field(default=0.5, ge=0, le=1)
    y: float = Field(default=0.5, ge=0, le=1)
    start_time: float = Field(default=0.0, ge=0)
    end_time: float
    font_family: str = "Arial"
    font_size: int = Field(default=48, ge=1)
    font_color: str = "#FFFFFF"
    opacity: float = Field(default=1.0, ge=0, le=1)
    text_align: TextAlign = TextAlign.CENTER
    border_width: int = Field(default=0, ge=0)
    border_color: Optional[str] = None
    shadow_enabled: bool = False
    shadow_color: str = "#000000"
    shadow_offset_x: int = 2
    shadow_offset_y: int = 2
    background_color: Optional[str] = None
    background_opacity: float = Field(default=0.0, ge=0, le=1)
    order: int = 0

    @model_validator(mode="after")
    def _check_window(self) -> "TextOverlay":
        if not self.start_time < self.end_time:
            raise ValueError("start_time must be lower than end_time")
        return self


class TimelineState(BaseModel):
    project_id: str
    clips: List[TimelineClip] = Field(default_factory=list)
    version: int = 0

    @computed_field  # type: ignore[misc]
    @property
    def total_duration(self) -> float:
        return sum(clip.duration for clip in self.clips)


class CleanupResult(BaseModel):
    scope: str = "global"
    deleted_files: int = 0
    deleted_bytes: int = 0
    preserved_files: int = 0
    errors: List[str] = Field(default_factory=list)


class CategoryUsage(BaseModel):
    bytes: int = 0
    count: int = 0


class DiskUsage(BaseModel):
    project_id: str
    total_bytes: int = 0
    file_count: int = 0
    by_category: dict[str, CategoryUsage] = Field(default_factory=dict)


class ThresholdCheck(BaseModel):
    exceeded: bool
    threshold_bytes: int
    usage: DiskUsage


class ScheduledCleanupReport(BaseModel):
    temp_cleanup: dict[str, CleanupResult] = Field(default_factory=dict)
    uploaded_cleanup: CleanupResult = Field(default_factory=CleanupResult)
    orphaned_files: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    timed_out: bool = False
    duration_seconds: float = 0.0


class VideoInfo(BaseModel):
    duration: float
    width: int = 0
    height: int = 0
    has_audio: bool = False


class StitchResult(BaseModel):
    local_path: str
    url: Optional[str] = None
    download_url: Optional[str] = None
    s3_key: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
