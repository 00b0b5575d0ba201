from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, List, Sequence

import numpy as np
from moviepy.video.io.VideoFileClip import VideoFileClip

from media_pipeline.errors import ErrorCode, PipelineError, not_found
from media_pipeline.models.domain import VideoInfo

FfmpegRunner = Callable[[Sequence[str]], Awaitable[str]]

logger = logging.getLogger(__name__)

STDERR_TAIL = 2000


async def run_ffmpeg(args: Sequence[str], binary: str = "ffmpeg", timeout: float | None = None) -> str:
    """Run ffmpeg with ``args`` and return its stderr; non-zero exit raises RENDER_FAILED."""
    cmd: List[str] = [binary, "-hide_banner", "-loglevel", "error", *args]
    logger.debug("running ffmpeg", extra={"argv": cmd})
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise PipelineError(ErrorCode.RENDER_FAILED, f"ffmpeg binary not found: {binary}") from exc
    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise PipelineError(ErrorCode.TIMEOUT, f"ffmpeg timed out after {timeout}s") from exc
    text = stderr.decode("utf-8", errors="replace")
    if process.returncode != 0:
        tail = text[-STDERR_TAIL:]
        logger.warning("ffmpeg failed", extra={"returncode": process.returncode, "stderr_tail": tail})
        raise PipelineError(ErrorCode.RENDER_FAILED, f"ffmpeg exited with {process.returncode}: {tail}")
    return text


def ffmpeg_runner(binary: str = "ffmpeg", timeout: float | None = None) -> FfmpegRunner:
    async def runner(args: Sequence[str]) -> str:
        return await run_ffmpeg(args, binary=binary, timeout=timeout)

    return runner


def _probe(path: str) -> VideoInfo:
    clip = VideoFileClip(path)
    try:
        width, height = clip.size
        return VideoInfo(
            duration=float(clip.duration or 0.0),
            width=int(width),
            height=int(height),
            has_audio=clip.audio is not None,
        )
    finally:
        clip.close()


async def probe_video(path: str) -> VideoInfo:
    if not os.path.isfile(path):
        raise not_found(f"Video file not found: {path}")
    try:
        return await asyncio.to_thread(_probe, path)
    except (OSError, KeyError, ValueError) as exc:
        raise PipelineError(ErrorCode.RENDER_FAILED, f"Failed to get video info for {path}: {exc}") from exc


def _read_frame(path: str, at: float | None) -> np.ndarray:
    clip = VideoFileClip(path, audio=False)
    try:
        duration = float(clip.duration or 0.0)
        # Last frame is read slightly before the end to avoid decoder edge cases.
        t = max(0.0, duration - 0.1) if at is None else min(max(0.0, at), max(0.0, duration - 0.01))
        return np.asarray(clip.get_frame(t))
    finally:
        clip.close()


async def read_frame(path: str, at: float | None = 0.0) -> np.ndarray:
    """Decode one RGB frame; ``at=None`` means the last frame."""
    return await asyncio.to_thread(_read_frame, path, at)
