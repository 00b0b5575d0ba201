from __future__ import annotations

import logging
from contextlib import contextmanager
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from media_pipeline.errors import ErrorCode, PipelineError, not_found, validation_error
from media_pipeline.models.domain import TextOverlay, TimelineClip, TimelineState

_EPSILON = 1e-6


def _replace(clip: TimelineClip, **changes: Any) -> TimelineClip:
    data = clip.model_dump(exclude={"duration", "end_time"})
    data.update(changes)
    return TimelineClip(**data)


def _cut_of(clip: TimelineClip) -> tuple:
    return (clip.source_artifact_ref, clip.source_duration, clip.trim_start, clip.trim_end)


def reflow(clips: List[TimelineClip]) -> List[TimelineClip]:
    """Reassign order 0..n-1 and lay clips end to end from t=0."""
    current = 0.0
    out: List[TimelineClip] = []
    for index, clip in enumerate(clips):
        clip = clip.model_copy(update={"order": index, "start_time": current})
        current += clip.duration
        out.append(clip)
    return out


class TimelineEditor:
    """Clip list for one project with full-state undo/redo.

    Every mutation snapshots the previous clip list, clears the redo stack
    and bumps ``version``. Callers that pass ``expected_version`` get a
    VERSION_CONFLICT instead of silently overwriting a newer edit.
    """

    def __init__(self, project_id: str, logger: Optional[logging.Logger] = None) -> None:
        self.state = TimelineState(project_id=project_id)
        self._undo: List[List[TimelineClip]] = []
        self._redo: List[List[TimelineClip]] = []
        self.log = logger or logging.getLogger(__name__)

    @property
    def clips(self) -> List[TimelineClip]:
        return self.state.clips

    @property
    def version(self) -> int:
        return self.state.version

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def snapshot(self) -> TimelineState:
        return self.state.model_copy(deep=True)

    def initialize(self, clips: List[TimelineClip], expected_version: int | None = None) -> TimelineState:
        self._check_version(expected_version)
        self.state.clips = reflow([clip.model_copy(deep=True) for clip in clips])
        self._undo.clear()
        self._redo.clear()
        self.state.version += 1
        return self.snapshot()

    def add_clip(self, clip: TimelineClip, index: int | None = None, expected_version: int | None = None) -> TimelineState:
        self._check_version(expected_version)
        clips = list(self.clips)
        position = len(clips) if index is None else max(0, min(index, len(clips)))
        clips.insert(position, clip.model_copy(deep=True))
        return self._commit(clips, "clip added", clip_id=clip.id)

    def trim_clip(
        self,
        clip_id: str,
        trim_start: float,
        trim_end: float,
        expected_version: int | None = None,
    ) -> TimelineState:
        self._check_version(expected_version)
        index, clip = self._find(clip_id)
        start = max(0.0, min(trim_start, clip.source_duration))
        end = max(start, min(trim_end, clip.source_duration))
        if end - start <= _EPSILON:
            raise validation_error(f"trim range for clip {clip_id} is empty")
        clips = list(self.clips)
        clips[index] = _replace(clip, trim_start=start, trim_end=end, edited_artifact_ref=None)
        return self._commit(clips, "clip trimmed", clip_id=clip_id)

    def split_clip(self, clip_id: str, split_time: float, expected_version: int | None = None) -> TimelineState:
        """Split at ``split_time`` on the timeline (not the source)."""
        self._check_version(expected_version)
        index, clip = self._find(clip_id)
        offset = split_time - clip.start_time
        if offset <= _EPSILON or offset >= clip.duration - _EPSILON:
            raise validation_error(f"split time {split_time} is outside clip {clip_id}")
        cut = clip.trim_start + offset
        first = _replace(clip, trim_end=cut, edited_artifact_ref=None)
        second = _replace(
            clip,
            id=str(uuid4()),
            trim_start=cut,
            edited_artifact_ref=None,
            is_split=True,
            original_clip_id=clip.original_clip_id or clip.id,
        )
        clips = list(self.clips)
        clips[index : index + 1] = [first, second]
        return self._commit(clips, "clip split", clip_id=clip_id)

    def split_at_playhead(self, time: float, expected_version: int | None = None) -> TimelineState:
        for clip in self.clips:
            if clip.start_time <= time < clip.end_time:
                return self.split_clip(clip.id, time, expected_version=expected_version)
        raise validation_error(f"no clip under playhead at {time}")

    def delete_clip(self, clip_id: str, expected_version: int | None = None) -> TimelineState:
        self._check_version(expected_version)
        index, _ = self._find(clip_id)
        clips = list(self.clips)
        del clips[index]
        return self._commit(clips, "clip deleted", clip_id=clip_id)

    def reorder_clip(self, clip_id: str, new_index: int, expected_version: int | None = None) -> TimelineState:
        self._check_version(expected_version)
        index, clip = self._find(clip_id)
        target = max(0, min(new_index, len(self.clips) - 1))
        if target == index:
            return self.snapshot()
        clips = list(self.clips)
        clips.pop(index)
        clips.insert(target, clip)
        return self._commit(clips, "clip reordered", clip_id=clip_id)

    def undo(self, expected_version: int | None = None) -> TimelineState:
        self._check_version(expected_version)
        if not self._undo:
            return self.snapshot()
        self._redo.append(self.state.clips)
        self.state.clips = self._undo.pop()
        self.state.version += 1
        return self.snapshot()

    def redo(self, expected_version: int | None = None) -> TimelineState:
        self._check_version(expected_version)
        if not self._redo:
            return self.snapshot()
        self._undo.append(self.state.clips)
        self.state.clips = self._redo.pop()
        self.state.version += 1
        return self.snapshot()

    def set_edited_artifact(self, clip_id: str, path: str, rendered_from: TimelineClip | None = None) -> bool:
        """Record a rendered trim without touching history or version.

        When ``rendered_from`` is given the path is only recorded if the clip
        still has the cut that was rendered; returns whether it was recorded.
        """
        index, clip = self._find(clip_id)
        if rendered_from is not None and _cut_of(rendered_from) != _cut_of(clip):
            self.log.info(
                "edited artifact is stale, not recorded",
                extra={"project_id": self.state.project_id, "clip_id": clip_id, "path": path},
            )
            return False
        self.state.clips[index] = clip.model_copy(update={"edited_artifact_ref": path})
        return True

    def _commit(self, clips: List[TimelineClip], event: str, **context: Any) -> TimelineState:
        self._undo.append(self.state.clips)
        self._redo.clear()
        self.state.clips = reflow(clips)
        self.state.version += 1
        self.log.info(
            event,
            extra={
                "project_id": self.state.project_id,
                "version": self.state.version,
                "clip_count": len(self.state.clips),
                **context,
            },
        )
        return self.snapshot()

    def _find(self, clip_id: str) -> tuple[int, TimelineClip]:
        for index, clip in enumerate(self.clips):
            if clip.id == clip_id:
                return index, clip
        raise not_found(f"clip not found: {clip_id}")

    def _check_version(self, expected_version: int | None) -> None:
        if expected_version is not None and expected_version != self.state.version:
            raise PipelineError(
                ErrorCode.VERSION_CONFLICT,
                f"timeline version is {self.state.version}, expected {expected_version}",
            )


class TimelineStore:
    """Per-project editors and text overlays; one lock per project."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._editors: Dict[str, TimelineEditor] = {}
        self._overlays: Dict[str, List[TextOverlay]] = {}
        self._locks: Dict[str, Lock] = {}
        self._guard = Lock()
        self.log = logger or logging.getLogger(__name__)

    def _lock_for(self, project_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = Lock()
                self._editors[project_id] = TimelineEditor(project_id, logger=self.log)
                self._overlays[project_id] = []
            return lock

    @contextmanager
    def edit(self, project_id: str) -> Iterator[TimelineEditor]:
        with self._lock_for(project_id):
            yield self._editors[project_id]

    def get_state(self, project_id: str) -> TimelineState:
        with self.edit(project_id) as editor:
            return editor.snapshot()

    def history_flags(self, project_id: str) -> dict[str, bool]:
        with self.edit(project_id) as editor:
            return {"can_undo": editor.can_undo, "can_redo": editor.can_redo}

    def list_overlays(self, project_id: str) -> List[TextOverlay]:
        with self._lock_for(project_id):
            overlays = sorted(self._overlays[project_id], key=lambda item: item.order)
            return [item.model_copy(deep=True) for item in overlays]

    def add_overlay(self, project_id: str, overlay: TextOverlay) -> TextOverlay:
        with self._lock_for(project_id):
            overlays = self._overlays[project_id]
            if any(item.id == overlay.id for item in overlays):
                raise validation_error(f"text overlay already exists: {overlay.id}")
            stored = overlay.model_copy(deep=True)
            overlays.append(stored)
            return stored.model_copy(deep=True)

    def update_overlay(self, project_id: str, overlay_id: str, changes: dict[str, Any]) -> TextOverlay:
        with self._lock_for(project_id):
            overlays = self._overlays[project_id]
            for index, item in enumerate(overlays):
                if item.id == overlay_id:
                    data = item.model_dump()
                    data.update({key: value for key, value in changes.items() if key != "id"})
                    try:
                        updated = TextOverlay(**data)
                    except ValueError as exc:
                        raise validation_error(str(exc)) from exc
                    overlays[index] = updated
                    return updated.model_copy(deep=True)
        raise not_found(f"text overlay not found: {overlay_id}")

    def remove_overlay(self, project_id: str, overlay_id: str) -> None:
        with self._lock_for(project_id):
            overlays = self._overlays[project_id]
            remaining = [item for item in overlays if item.id != overlay_id]
            if len(remaining) == len(overlays):
                raise not_found(f"text overlay not found: {overlay_id}")
            self._overlays[project_id] = remaining
