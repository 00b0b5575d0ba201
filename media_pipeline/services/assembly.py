from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from typing import Awaitable, Callable, List, Optional, Sequence

import numpy as np
from PIL import Image

from media_pipeline.clients.s3_storage import S3StorageClient
from media_pipeline.config import Settings
from media_pipeline.errors import ErrorCode, PipelineError, not_found, validation_error
from media_pipeline.models.domain import StitchResult, TextOverlay, TimelineClip, VideoInfo
from media_pipeline.services import render_graph
from media_pipeline.services.clip_editor import ClipEditor
from media_pipeline.services.ffmpeg import FfmpegRunner, ffmpeg_runner, probe_video, read_frame

Probe = Callable[[str], Awaitable[VideoInfo]]
FrameReader = Callable[[str, Optional[float]], Awaitable[np.ndarray]]

PREVIEW_DIR = "preview"
FINAL_DIR = "final"
DEFAULT_SIMILARITY = 0.5
_COMPARE_SIZE = (64, 36)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def frame_similarity(first: np.ndarray, second: np.ndarray) -> float:
    """Score two RGB frames in [0, 1]; 1 means visually identical."""

    def prepare(frame: np.ndarray) -> np.ndarray:
        image = Image.fromarray(np.asarray(frame, dtype=np.uint8)).convert("L").resize(_COMPARE_SIZE)
        return np.asarray(image, dtype=np.float32)

    diff = np.abs(prepare(first) - prepare(second)).mean() / 255.0
    return float(np.clip(1.0 - diff, 0.0, 1.0))


class AssemblyEngine:
    """Turns timeline clips into preview and final renders."""

    def __init__(
        self,
        settings: Settings,
        clip_editor: ClipEditor,
        storage: S3StorageClient | None = None,
        runner: FfmpegRunner | None = None,
        probe: Probe = probe_video,
        frame_reader: FrameReader = read_frame,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.clip_editor = clip_editor
        self.storage = storage
        self.runner = runner or ffmpeg_runner(settings.ffmpeg_binary)
        self.probe = probe
        self.frame_reader = frame_reader
        self.log = logger or logging.getLogger(__name__)

    def project_dir(self, project_id: str, category: str) -> str:
        return os.path.join(self.settings.temp_root, project_id, category)

    async def generate_preview(
        self,
        clips: Sequence[TimelineClip],
        overlays: Sequence[TextOverlay],
        project_id: str,
    ) -> str:
        if not clips:
            raise validation_error("clips must not be empty")
        edited = await self.clip_editor.apply_clip_edits(clips, project_id)

        preview_dir = self.project_dir(project_id, PREVIEW_DIR)
        os.makedirs(preview_dir, exist_ok=True)
        preview_path = os.path.join(preview_dir, "preview.mp4")
        concat_path = os.path.join(preview_dir, "concat.txt")
        with open(concat_path, "w", encoding="utf-8") as fh:
            fh.write(render_graph.concat_list(edited))

        width, height = self.settings.preview_width, self.settings.preview_height
        graph, label = render_graph.preview_filter(
            overlays,
            width=width,
            height=height,
            fps=self.settings.fps,
            font_directory=self.settings.font_directory,
        )
        head = ["-f", "concat", "-safe", "0", "-i", concat_path, "-filter_complex", graph, "-map", f"[{label}]"]
        video = ["-c:v", "libx264", "-preset", "ultrafast", "-crf", "28", "-r", str(self.settings.fps), "-fps_mode", "cfr"]
        self.log.info(
            "rendering preview",
            extra={"project_id": project_id, "clip_count": len(clips), "overlay_count": len(overlays)},
        )
        try:
            try:
                await self.runner([*head, "-map", "0:a?", *video, "-c:a", "aac", "-b:a", "96k", "-y", preview_path])
            except PipelineError as exc:
                if exc.code != ErrorCode.RENDER_FAILED:
                    raise
                self.log.info("preview audio processing failed, retrying without audio", extra={"project_id": project_id})
                await self.runner([*head, *video, "-an", "-y", preview_path])
        finally:
            try:
                os.remove(concat_path)
            except OSError:
                self.log.debug("concat list already removed", extra={"path": concat_path})
        if not os.path.isfile(preview_path):
            raise PipelineError(ErrorCode.RENDER_FAILED, "Preview video file was not created")
        return preview_path

    async def stitch_videos(
        self,
        paths: Sequence[str],
        project_id: str,
        style: str | None = None,
        logo_path: str | None = None,
    ) -> StitchResult:
        if not paths:
            raise validation_error("At least one video file is required")
        if not project_id:
            raise validation_error("Project ID is required")
        ordered: List[str] = list(paths)
        if logo_path:
            # Intro first, then the logo sting, then the scene clips.
            ordered.insert(1, logo_path)
        for path in ordered:
            if not os.path.isfile(path):
                raise not_found(f"Video file not found: {path}")
        lut_path = self._lut_for(style)

        infos = list(await asyncio.gather(*(self.probe(path) for path in ordered)))
        self._warn_incompatible(ordered, infos)

        output_dir = self.project_dir(project_id, FINAL_DIR)
        os.makedirs(output_dir, exist_ok=True)
        output_path = os.path.join(output_dir, "output.mp4")

        similarities: List[float] = []
        transitions: List[render_graph.Transition] = []
        try:
            if len(ordered) == 1 and not lut_path:
                await self.runner(["-i", ordered[0], "-c", "copy", "-y", output_path])
            else:
                for first, second in zip(ordered, ordered[1:]):
                    score = await self.similarity(first, second)
                    similarities.append(score)
                    transitions.append(render_graph.select_transition(score))
                await self._render_final(ordered, infos, transitions, lut_path, output_path)
        except Exception:
            try:
                os.remove(output_path)
            except OSError:
                self.log.debug("no partial output to remove", extra={"path": output_path})
            raise
        if not os.path.isfile(output_path):
            raise PipelineError(ErrorCode.RENDER_FAILED, "Stitched video file was not created")

        result = StitchResult(
            local_path=output_path,
            metadata={
                "clip_count": len(ordered),
                "duration": round(sum(info.duration for info in infos), 3),
                "transitions": [{"kind": t.kind, "duration": t.duration} for t in transitions],
                "similarities": [round(score, 3) for score in similarities],
                "style": style,
                "logo": bool(logo_path),
            },
        )
        if self.storage is not None:
            data = await asyncio.to_thread(_read_bytes, output_path)
            digest = hashlib.sha256(data).hexdigest()[:16]
            try:
                stored = await asyncio.to_thread(
                    self.storage.store, data, project_id, FINAL_DIR, "video/mp4", f"final-{digest}.mp4"
                )
                download_url = await asyncio.to_thread(self.storage.presign, stored.key)
            except ValueError as exc:
                raise PipelineError(ErrorCode.RENDER_FAILED, f"final video upload failed: {exc}", retryable=True) from exc
            result.url = stored.url
            result.s3_key = stored.key
            result.download_url = download_url
        self.log.info(
            "video stitching completed",
            extra={"project_id": project_id, "output_path": output_path, "s3_key": result.s3_key},
        )
        return result

    async def similarity(self, first: str, second: str) -> float:
        """Compare the last frame of ``first`` with the first frame of ``second``."""
        try:
            tail = await self.frame_reader(first, None)
            head = await self.frame_reader(second, 0.0)
            return frame_similarity(tail, head)
        except Exception as exc:
            self.log.warning(
                "similarity analysis failed, using default",
                extra={"first": first, "second": second, "error": str(exc)},
            )
            return DEFAULT_SIMILARITY

    async def _render_final(
        self,
        paths: Sequence[str],
        infos: Sequence[VideoInfo],
        transitions: Sequence[render_graph.Transition],
        lut_path: str | None,
        output_path: str,
    ) -> None:
        inputs: List[str] = []
        for path in paths:
            inputs.extend(["-i", path])

        async def render(interpolate: bool) -> None:
            graph, video_label, audio_label = render_graph.stitch_filter(
                [info.duration for info in infos],
                [info.has_audio for info in infos],
                transitions,
                width=self.settings.final_width,
                height=self.settings.final_height,
                fps=self.settings.fps,
                lut_path=lut_path,
                interpolate=interpolate,
            )
            if audio_label:
                mapping = ["-map", f"[{video_label}]", "-map", f"[{audio_label}]", "-c:a", "aac", "-b:a", "192k"]
            else:
                mapping = ["-map", f"[{video_label}]", "-an"]
            await self.runner(
                [
                    *inputs,
                    "-filter_complex",
                    graph,
                    *mapping,
                    "-c:v",
                    "libx264",
                    "-preset",
                    "medium",
                    "-crf",
                    "23",
                    "-r",
                    str(self.settings.fps),
                    "-fps_mode",
                    "cfr",
                    "-y",
                    output_path,
                ]
            )

        try:
            await render(interpolate=True)
        except PipelineError as exc:
            if exc.code != ErrorCode.RENDER_FAILED:
                raise
            self.log.warning("motion interpolation failed, falling back to fps filter", extra={"error": exc.message[-300:]})
            await render(interpolate=False)

    def _lut_for(self, style: str | None) -> str | None:
        if not style:
            return None
        name = self.settings.style_luts.get(style)
        if name is None:
            raise validation_error(f"unknown style: {style}")
        path = name if os.path.isabs(name) else os.path.join(self.settings.lut_directory, name)
        if not os.path.isfile(path):
            raise not_found(f"LUT file not found for style {style}: {path}")
        return path

    def _warn_incompatible(self, paths: Sequence[str], infos: Sequence[VideoInfo]) -> None:
        sizes = {(info.width, info.height) for info in infos}
        if len(sizes) > 1:
            self.log.warning(
                "videos have different resolutions, scaling to output size",
                extra={"resolutions": sorted(sizes), "clip_count": len(paths)},
            )
