"""ffmpeg filter graph builders for preview and final renders.

Everything here is pure string building so render commands can be asserted
without running ffmpeg.
"""

from __future__ import annotations

import os
from typing import List, NamedTuple, Sequence, Tuple

from media_pipeline.models.domain import TextAlign, TextOverlay

HIGH_SIMILARITY_THRESHOLD = 0.8
MEDIUM_SIMILARITY_THRESHOLD = 0.5
MIN_TRANSITION_DURATION = 0.15
DEFAULT_TRANSITION_DURATION = 0.2
MAX_TRANSITION_DURATION = 0.3

# Font sizes are authored against a 1080p canvas.
REFERENCE_HEIGHT = 1080


class Transition(NamedTuple):
    kind: str
    duration: float


def select_transition(similarity: float) -> Transition:
    if similarity >= HIGH_SIMILARITY_THRESHOLD:
        return Transition("fade", MIN_TRANSITION_DURATION)
    if similarity >= MEDIUM_SIMILARITY_THRESHOLD:
        return Transition("fade", DEFAULT_TRANSITION_DURATION)
    return Transition("distance", MAX_TRANSITION_DURATION)


def escape_drawtext(text: str) -> str:
    return (
        text.replace("\\", "\\\\\\\\")
        .replace("'", "'\\\\\\''")
        .replace(":", "\\:")
        .replace("[", "\\[")
        .replace("]", "\\]")
        .replace(",", "\\,")
        .replace("%", "\\%")
    )


def escape_filter_path(path: str) -> str:
    return path.replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


def _hex(color: str) -> str:
    return "0x" + color.lstrip("#")


def _num(value: float) -> str:
    return f"{value:g}"


def drawtext_filter(
    overlay: TextOverlay,
    source: str,
    target: str,
    width: int,
    height: int,
    font_directory: str,
) -> str:
    x = round(overlay.x * width)
    y = round(overlay.y * height)
    font_size = max(1, round(overlay.font_size * height / REFERENCE_HEIGHT))
    font_file = os.path.join(font_directory, f"{overlay.font_family}.ttf")

    parts = [
        f"text='{escape_drawtext(overlay.text)}'",
        f"fontfile='{escape_filter_path(font_file)}'",
        f"fontsize={font_size}",
        f"fontcolor={_hex(overlay.font_color)}@{_num(overlay.opacity)}",
    ]
    if overlay.text_align == TextAlign.CENTER:
        parts.append(f"x={x}-(tw/2)")
    elif overlay.text_align == TextAlign.RIGHT:
        parts.append(f"x={x}-tw")
    else:
        parts.append(f"x={x}")
    parts.append(f"y={y}")
    if overlay.border_width > 0 and overlay.border_color:
        parts.append(f"borderw={overlay.border_width}")
        parts.append(f"bordercolor={_hex(overlay.border_color)}")
    if overlay.shadow_enabled:
        parts.append(f"shadowcolor={_hex(overlay.shadow_color)}@0.8")
        parts.append(f"shadowx={overlay.shadow_offset_x}")
        parts.append(f"shadowy={overlay.shadow_offset_y}")
    if overlay.background_color and overlay.background_opacity > 0:
        parts.append("box=1")
        parts.append(f"boxcolor={_hex(overlay.background_color)}@{_num(overlay.background_opacity)}")
        parts.append("boxborderw=10")
    parts.append(f"enable='between(t,{_num(overlay.start_time)},{_num(overlay.end_time)})'")
    return f"[{source}]drawtext=" + ":".join(parts) + f"[{target}]"


def preview_filter(
    overlays: Sequence[TextOverlay],
    width: int = 1280,
    height: int = 720,
    fps: int = 30,
    font_directory: str = "/usr/share/fonts/truetype",
) -> Tuple[str, str]:
    """Return ``(filter_complex, output_label)`` for a concat-demuxed preview."""
    filters = [
        f"[0:v]setpts=PTS-STARTPTS,fps={fps},"
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2[v]"
    ]
    label = "v"
    ordered = sorted(overlays, key=lambda item: item.order)
    for index, overlay in enumerate(ordered):
        target = "vfinal" if index == len(ordered) - 1 else f"vtext{index}"
        filters.append(drawtext_filter(overlay, label, target, width, height, font_directory))
        label = target
    return ";".join(filters), label


def concat_list(paths: Sequence[str]) -> str:
    lines = []
    for path in paths:
        escaped = path.replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def stitch_filter(
    durations: Sequence[float],
    has_audio: Sequence[bool],
    transitions: Sequence[Transition],
    width: int = 1920,
    height: int = 1080,
    fps: int = 30,
    lut_path: str | None = None,
    interpolate: bool = True,
) -> Tuple[str, str, str | None]:
    """Build the final-render graph.

    Each input is normalised to ``fps`` and ``width``x``height``. Neighbours
    fade out/in over their transition duration and are concatenated.
    Returns ``(filter_complex, video_label, audio_label)``.
    """
    count = len(durations)
    if count != len(has_audio):
        raise ValueError("durations and has_audio must have the same length")
    if count > 1 and len(transitions) != count - 1:
        raise ValueError("one transition is required between each pair of clips")
    any_audio = any(has_audio)
    if interpolate:
        rate = f"minterpolate=fps={fps}:mi_mode=mci:mc_mode=aobmc:me_mode=bidir:vsbmc=1:scd=none"
    else:
        rate = f"fps={fps}"

    filters: List[str] = []
    for i, duration in enumerate(durations):
        filters.append(
            f"[{i}:v]setpts=PTS-STARTPTS,{rate},"
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2[v{i}]"
        )
        if any_audio:
            if has_audio[i]:
                filters.append(f"[{i}:a]asetpts=PTS-STARTPTS,aresample=44100:async=1[a{i}]")
            else:
                filters.append(
                    f"anullsrc=channel_layout=stereo:sample_rate=44100,"
                    f"atrim=0:{_num(duration)},asetpts=PTS-STARTPTS[a{i}]"
                )

    concat_inputs: List[str] = []
    for i, duration in enumerate(durations):
        video, audio = f"v{i}", f"a{i}" if any_audio else None
        fade_in = transitions[i - 1].duration if i > 0 and count > 1 else None
        fade_out = transitions[i].duration if i < count - 1 else None
        v_steps: List[str] = []
        a_steps: List[str] = []
        if fade_in is not None:
            v_steps.append(f"fade=t=in:st=0:d={_num(fade_in)}")
            a_steps.append(f"afade=t=in:st=0:d={_num(fade_in)}")
        if fade_out is not None:
            start = max(fade_in or 0.0, duration - fade_out)
            v_steps.append(f"fade=t=out:st={_num(start)}:d={_num(fade_out)}")
            a_steps.append(f"afade=t=out:st={_num(start)}:d={_num(fade_out)}")
        if v_steps:
            filters.append(f"[{video}]{','.join(v_steps)}[vf{i}]")
            video = f"vf{i}"
            if audio:
                filters.append(f"[{audio}]{','.join(a_steps)}[af{i}]")
                audio = f"af{i}"
        concat_inputs.append(f"[{video}]" + (f"[{audio}]" if audio else ""))

    outputs = "[vcat][aout]" if any_audio else "[vcat]"
    filters.append(f"{''.join(concat_inputs)}concat=n={count}:v=1{':a=1' if any_audio else ''}{outputs}")
    if lut_path:
        filters.append(f"[vcat]lut3d=file='{escape_filter_path(lut_path)}'[vout]")
    else:
        filters.append("[vcat]null[vout]")
    return ";".join(filters), "vout", "aout" if any_audio else None
