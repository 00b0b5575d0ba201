from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional, Sequence

from media_pipeline.errors import ErrorCode, PipelineError, not_found, validation_error
from media_pipeline.models.domain import TimelineClip
from media_pipeline.services.ffmpeg import FfmpegRunner, ffmpeg_runner

EDITS_CATEGORY = "timeline-edits"


@dataclass
class ClipCacheEntry:
    signature: str
    output_path: str
    created_at: float


def clip_signature(clip: TimelineClip, encoding_profile: str) -> str:
    payload = {
        "video_path": clip.source_artifact_ref,
        "trim_start": clip.trim_start,
        "trim_end": clip.trim_end,
        "source_duration": clip.source_duration,
        "encoding_profile": encoding_profile,
    }
    return hashlib.md5(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


class ClipEditor:
    """Renders trimmed timeline clips, reusing earlier output when nothing changed."""

    def __init__(
        self,
        temp_root: str,
        encoding_profile: str = "libx264-ultrafast-crf23-aac128k",
        runner: FfmpegRunner | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.temp_root = temp_root
        self.encoding_profile = encoding_profile
        self.runner = runner or ffmpeg_runner()
        self.log = logger or logging.getLogger(__name__)
        self._cache: Dict[str, Dict[str, ClipCacheEntry]] = {}
        self._lock = Lock()

    def edits_dir(self, project_id: str) -> str:
        return os.path.join(self.temp_root, project_id, EDITS_CATEGORY)

    async def apply_clip_edits(self, clips: Sequence[TimelineClip], project_id: str) -> List[str]:
        if not project_id:
            raise validation_error("project_id is required")
        if not clips:
            raise validation_error("at least one clip is required")
        output_dir = self.edits_dir(project_id)
        os.makedirs(output_dir, exist_ok=True)
        paths = await asyncio.gather(*(self._process_clip(clip, project_id, output_dir) for clip in clips))
        self.log.info("clip edits applied", extra={"project_id": project_id, "clip_count": len(paths)})
        return list(paths)

    async def crop_video(self, input_path: str, output_path: str, start: float, end: float) -> None:
        duration = end - start
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        head = ["-ss", f"{start:g}", "-i", input_path, "-t", f"{duration:g}", "-c:v", "libx264", "-preset", "ultrafast", "-crf", "23"]
        tail = ["-avoid_negative_ts", "make_zero", "-y", output_path]
        try:
            await self.runner([*head, "-c:a", "aac", "-b:a", "128k", *tail])
        except PipelineError as exc:
            if exc.code != ErrorCode.RENDER_FAILED:
                raise
            self.log.info(
                "trim with audio failed, retrying video only",
                extra={"input_path": input_path, "error": exc.message[-300:]},
            )
            await self.runner([*head, "-an", *tail])

    def clear_clip_edit_cache(self, project_id: str | None = None) -> None:
        with self._lock:
            if project_id is None:
                projects = list(self._cache)
                self._cache.clear()
            else:
                projects = [project_id]
                self._cache.pop(project_id, None)
        if project_id is None and os.path.isdir(self.temp_root):
            projects = [entry.name for entry in os.scandir(self.temp_root) if entry.is_dir()]
        for pid in projects:
            shutil.rmtree(self.edits_dir(pid), ignore_errors=True)
        self.log.info("clip edit cache cleared", extra={"project_id": project_id})

    def cached_path(self, project_id: str, clip: TimelineClip) -> str | None:
        with self._lock:
            entry = self._cache.get(project_id, {}).get(clip.id)
        if entry and entry.signature == clip_signature(clip, self.encoding_profile) and os.path.isfile(entry.output_path):
            return entry.output_path
        return None

    async def _process_clip(self, clip: TimelineClip, project_id: str, output_dir: str) -> str:
        signature = clip_signature(clip, self.encoding_profile)
        with self._lock:
            entry = self._cache.get(project_id, {}).get(clip.id)
        if entry is not None:
            if entry.signature == signature and os.path.isfile(entry.output_path):
                self.log.debug("using cached clip edit", extra={"clip_id": clip.id, "project_id": project_id})
                return entry.output_path
            with self._lock:
                self._cache.get(project_id, {}).pop(clip.id, None)

        source = clip.source_artifact_ref
        if not os.path.isfile(source):
            self.log.error(
                "input video file does not exist",
                extra={"clip_id": clip.id, "source_path": source},
            )
            raise not_found(f"Input video file does not exist: {source}")

        output_path = os.path.join(output_dir, f"clip-{clip.id}-{signature[:12]}.mp4")
        if clip.is_trimmed:
            self.log.info(
                "trimming clip",
                extra={"clip_id": clip.id, "trim_start": clip.trim_start, "trim_end": clip.trim_end},
            )
            await self.crop_video(source, output_path, clip.trim_start, float(clip.trim_end))
        else:
            await asyncio.to_thread(shutil.copyfile, source, output_path)
        if not os.path.isfile(output_path):
            raise PipelineError(ErrorCode.RENDER_FAILED, f"edited clip was not created: {output_path}")

        with self._lock:
            self._cache.setdefault(project_id, {})[clip.id] = ClipCacheEntry(signature, output_path, time.time())
        return output_path
