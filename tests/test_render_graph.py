import pytest

from media_pipeline.models.domain import TextAlign, TextOverlay
from media_pipeline.services import render_graph
from media_pipeline.services.render_graph import Transition


@pytest.mark.parametrize(
    "score, expected",
    [
        (0.95, Transition("fade", 0.15)),
        (0.8, Transition("fade", 0.15)),
        (0.6, Transition("fade", 0.2)),
        (0.5, Transition("fade", 0.2)),
        (0.1, Transition("distance", 0.3)),
    ],
)
def test_select_transition_thresholds(score, expected):
    assert render_graph.select_transition(score) == expected


def test_drawtext_positions_follow_alignment():
    overlay = TextOverlay(text="Hi", x=0.5, y=0.25, end_time=2.0)
    centered = render_graph.drawtext_filter(overlay, "v", "vfinal", 1280, 720, "/fonts")
    assert centered.startswith("[v]drawtext=")
    assert centered.endswith("[vfinal]")
    assert "x=640-(tw/2)" in centered
    assert "y=180" in centered
    assert "fontsize=32" in centered
    assert "fontfile='/fonts/Arial.ttf'" in centered
    assert "enable='between(t,0,2)'" in centered

    right = overlay.model_copy(update={"text_align": TextAlign.RIGHT})
    assert "x=640-tw" in render_graph.drawtext_filter(right, "v", "o", 1280, 720, "/fonts")
    left = overlay.model_copy(update={"text_align": TextAlign.LEFT})
    assert ":x=640:" in render_graph.drawtext_filter(left, "v", "o", 1280, 720, "/fonts")


def test_drawtext_optional_styling():
    overlay = TextOverlay(
        text="Title",
        end_time=1.0,
        border_width=3,
        border_color="#FF0000",
        shadow_enabled=True,
        background_color="#000000",
        background_opacity=0.5,
        opacity=0.75,
    )
    graph = render_graph.drawtext_filter(overlay, "v", "o", 1920, 1080, "/fonts")
    assert "fontcolor=0xFFFFFF@0.75" in graph
    assert "borderw=3:bordercolor=0xFF0000" in graph
    assert "shadowx=2:shadowy=2" in graph
    assert "box=1:boxcolor=0x000000@0.5" in graph


def test_drawtext_escapes_special_characters():
    assert render_graph.escape_drawtext("a:b,c[d]%") == "a\\:b\\,c\\[d\\]\\%"
    assert render_graph.escape_filter_path("C:\\luts\\film.cube") == "C\\:/luts/film.cube"


def test_preview_filter_chains_overlays_in_order():
    overlays = [
        TextOverlay(id="second", text="B", end_time=2.0, order=1),
        TextOverlay(id="first", text="A", end_time=2.0, order=0),
    ]
    graph, label = render_graph.preview_filter(overlays, width=1280, height=720, fps=30)

    assert label == "vfinal"
    steps = graph.split(";")
    assert steps[0].endswith("[v]")
    assert steps[1].startswith("[v]drawtext=text='A'")
    assert steps[1].endswith("[vtext0]")
    assert steps[2].startswith("[vtext0]drawtext=text='B'")

    plain, plain_label = render_graph.preview_filter([])
    assert plain_label == "v"
    assert "drawtext" not in plain


def test_stitch_filter_with_mixed_audio():
    graph, video, audio = render_graph.stitch_filter(
        [5.0, 4.0],
        [True, False],
        [Transition("fade", 0.2)],
        fps=30,
    )

    assert (video, audio) == ("vout", "aout")
    assert "minterpolate=fps=30" in graph
    assert "anullsrc=channel_layout=stereo:sample_rate=44100,atrim=0:4" in graph
    assert "[v0]fade=t=out:st=4.8:d=0.2[vf0]" in graph
    assert "[v1]fade=t=in:st=0:d=0.2[vf1]" in graph
    assert "[vf0][af0][vf1][af1]concat=n=2:v=1:a=1[vcat][aout]" in graph
    assert graph.endswith("[vcat]null[vout]")


def test_stitch_filter_without_audio_and_with_lut():
    graph, video, audio = render_graph.stitch_filter(
        [3.0],
        [False],
        [],
        lut_path="/luts/warm.cube",
        interpolate=False,
    )

    assert audio is None
    assert "fps=30" in graph
    assert "minterpolate" not in graph
    assert "concat=n=1:v=1[vcat]" in graph
    assert graph.endswith("[vcat]lut3d=file='/luts/warm.cube'[vout]")


def test_stitch_filter_rejects_mismatched_inputs():
    with pytest.raises(ValueError):
        render_graph.stitch_filter([1.0, 2.0], [True], [Transition("fade", 0.2)])
    with pytest.raises(ValueError):
        render_graph.stitch_filter([1.0, 2.0], [True, True], [])


def test_concat_list_quotes_paths():
    assert render_graph.concat_list(["/a/b.mp4", "/c/it's.mp4"]) == "file '/a/b.mp4'\nfile '/c/it'\\''s.mp4'\n"
