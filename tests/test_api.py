import io
import os

import httpx
import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from media_pipeline.main import build_services, create_app
from media_pipeline.models.domain import StoredArtifact, VideoInfo


class Provider:
    def __init__(self):
        self.created = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/cancel"):
            return httpx.Response(200, json={"id": "pred-1", "status": "canceled"})
        if request.method == "POST":
            self.created += 1
            return httpx.Response(201, json={"id": f"pred-{self.created}", "status": "starting"})
        prediction_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(
            200,
            json={"id": prediction_id, "status": "succeeded", "output": ["https://cdn.test/frame.png"]},
        )


def serve_png(request: httpx.Request) -> httpx.Response:
    buffer = io.BytesIO()
    Image.new("RGB", (2, 2)).save(buffer, format="PNG")
    return httpx.Response(200, content=buffer.getvalue(), headers={"content-type": "image/png"})


async def fake_probe(path):
    return VideoInfo(duration=4.0, width=1280, height=720, has_audio=False)


async def flat_frames(path, at):
    return np.zeros((36, 64, 3), dtype=np.uint8)


def make_client(settings, fake_ffmpeg, no_sleep):
    services = build_services(
        settings,
        prediction_transport=httpx.MockTransport(Provider()),
        download_transport=httpx.MockTransport(serve_png),
        ffmpeg=fake_ffmpeg,
        sleep=no_sleep,
    )
    services.assembly.probe = fake_probe
    services.assembly.frame_reader = flat_frames
    return TestClient(create_app(services=services))


@pytest.fixture
def client(settings, fake_ffmpeg, no_sleep):
    with make_client(settings, fake_ffmpeg, no_sleep) as test_client:
        yield test_client


def write_file(root, relative, content=b"0123456789"):
    path = os.path.join(root, relative)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(content)
    return path


def clip_payload(source, duration=10.0, **extra):
    return {"source_artifact_ref": source, "source_duration": duration, **extra}


def test_cache_stats_envelope(client):
    response = client.get("/cache-stats")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["error"] is None
    assert body["data"]["video"]["name"] == "video"
    assert body["data"]["image"]["entries"] == 0


def test_media_serve_supports_ranges(client, temp_root):
    path = write_file(temp_root, "p1/videos/clip.mp4")

    full = client.get("/media/serve", params={"path": path})
    assert full.status_code == 200
    assert full.content == b"0123456789"
    assert full.headers["x-cache"] == "MISS"

    partial = client.get("/media/serve", params={"path": path}, headers={"Range": "bytes=2-5"})
    assert partial.status_code == 206
    assert partial.content == b"2345"
    assert partial.headers["content-range"] == "bytes 2-5/10"
    assert partial.headers["x-cache"] == "HIT"

    beyond = client.get("/media/serve", params={"path": path}, headers={"Range": "bytes=50-"})
    assert beyond.status_code == 416

    missing = client.get("/media/serve", params={"path": os.path.join(temp_root, "nope.mp4")})
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


def test_timeline_editing_flow(client, temp_root):
    source = write_file(temp_root, "p1/videos/scene-0.mp4")
    base = "/projects/p1/timeline"

    init = client.put(base, json={"clips": [clip_payload(source, id="a"), clip_payload(source, 5.0, id="b")]})
    assert init.status_code == 200
    timeline = init.json()["data"]["timeline"]
    assert timeline["version"] == 1
    assert timeline["total_duration"] == 15.0

    trimmed = client.post(f"{base}/clips/a:trim", json={"trim_start": 1.0, "trim_end": 7.0, "expected_version": 1})
    assert trimmed.status_code == 200
    assert trimmed.json()["data"]["timeline"]["clips"][1]["start_time"] == 6.0

    split = client.post(f"{base}/clips/a:split", json={"split_time": 2.0})
    assert split.status_code == 200
    data = split.json()["data"]
    assert len(data["timeline"]["clips"]) == 3
    assert data["timeline"]["total_duration"] == 11.0
    assert data["can_undo"] is True

    undone = client.post(f"{base}:undo")
    assert len(undone.json()["data"]["timeline"]["clips"]) == 2
    assert undone.json()["data"]["can_redo"] is True
    redone = client.post(f"{base}:redo")
    assert len(redone.json()["data"]["timeline"]["clips"]) == 3

    conflict = client.post(f"{base}/clips/b:reorder", json={"new_index": 0, "expected_version": 1})
    assert conflict.status_code == 409
    assert conflict.json() == {
        "success": False,
        "data": None,
        "error": conflict.json()["error"],
        "code": "VERSION_CONFLICT",
        "retryable": False,
    }

    reordered = client.post(f"{base}/clips/b:reorder", json={"new_index": 0})
    assert reordered.json()["data"]["timeline"]["clips"][0]["id"] == "b"

    playhead = client.post(f"{base}:split-at-playhead", json={"time": 1.0})
    assert len(playhead.json()["data"]["timeline"]["clips"]) == 4

    deleted = client.delete(f"{base}/clips/b")
    assert deleted.status_code == 200
    assert all(item["id"] != "b" for item in deleted.json()["data"]["timeline"]["clips"])

    missing = client.delete(f"{base}/clips/b")
    assert missing.status_code == 404

    state = client.get(base).json()["data"]["timeline"]
    assert [item["order"] for item in state["clips"]] == list(range(len(state["clips"])))


def test_invalid_clip_bounds_are_validation_errors(client):
    response = client.put(
        "/projects/p1/timeline",
        json={"clips": [clip_payload("/tmp/a.mp4", 5.0, trim_start=4.0, trim_end=9.0)]},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"

    bad_body = client.post("/projects/p1/timeline/clips/a:trim", json={"trim_start": "soon"})
    assert bad_body.status_code == 400
    assert bad_body.json()["success"] is False


def test_text_overlay_crud(client):
    base = "/projects/p1/text-overlays"
    created = client.post(base, json={"id": "t1", "text": "Hello", "end_time": 3.0})
    assert created.status_code == 201
    assert created.json()["data"]["font_size"] == 48

    updated = client.patch(f"{base}/t1", json={"text": "Hi", "text_align": "right"})
    assert updated.json()["data"]["text"] == "Hi"
    assert updated.json()["data"]["text_align"] == "right"

    invalid = client.patch(f"{base}/t1", json={"start_time": 10.0})
    assert invalid.status_code == 400

    listed = client.get(base).json()["data"]
    assert [item["id"] for item in listed] == ["t1"]

    assert client.delete(f"{base}/t1").status_code == 200
    assert client.delete(f"{base}/t1").status_code == 404


def test_generation_submit_and_status(client, temp_root):
    created = client.post("/generations", json={"kind": "image", "input": {"prompt": "a frame"}})
    assert created.status_code == 202
    job = created.json()["data"]["job"]
    assert job["status"] == "starting"

    polled = client.get(f"/generations/{job['job_id']}", params={"project_id": "p1", "scene_index": 3})
    assert polled.status_code == 200
    job = polled.json()["data"]["job"]
    assert job["status"] == "succeeded"
    assert job["output_ref"] == "https://cdn.test/frame.png"
    local_path = job["artifact"]["local_path"]
    assert local_path.startswith(os.path.join(temp_root, "p1", "images", "scene-3-image-"))
    assert os.path.isfile(local_path)


def test_generation_rejects_empty_input(client):
    response = client.post("/generations", json={"kind": "image", "input": {}})
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_waiting_generation_returns_terminal_job(client):
    response = client.post("/generations", json={"kind": "video", "input": {"prompt": "x"}, "wait": True})
    assert response.status_code == 202
    assert response.json()["data"]["job"]["status"] == "succeeded"


def test_clip_edits_preview_and_stitch_from_timeline(client, temp_root, fake_ffmpeg):
    source = write_file(temp_root, "p1/videos/scene-0.mp4")
    client.put(
        "/projects/p1/timeline",
        json={"clips": [clip_payload(source, id="a", trim_end=4.0), clip_payload(source, id="b")]},
    )
    client.post("/projects/p1/text-overlays", json={"text": "Intro", "end_time": 1.0})

    edits = client.post("/projects/p1/clip-edits")
    assert edits.status_code == 200
    edited = edits.json()["data"]["edited_paths"]
    assert os.path.basename(os.path.dirname(edited[0])) == "timeline-edits"
    assert os.path.basename(edited[0]).startswith("clip-a-")
    timeline = client.get("/projects/p1/timeline").json()["data"]["timeline"]
    assert timeline["clips"][0]["edited_artifact_ref"] == edited[0]

    preview = client.post("/projects/p1/preview")
    assert preview.status_code == 200
    assert preview.json()["data"]["preview_video_path"].endswith(os.path.join("preview", "preview.mp4"))
    assert "drawtext" in fake_ffmpeg.calls[-1][fake_ffmpeg.calls[-1].index("-filter_complex") + 1]

    stitched = client.post("/projects/p1/stitch", json={})
    assert stitched.status_code == 200
    data = stitched.json()["data"]
    assert data["local_path"].endswith(os.path.join("final", "output.mp4"))
    assert data["metadata"]["clip_count"] == 2
    assert data["s3_key"].startswith("projects/p1/final/")


def test_stitch_with_empty_timeline_is_rejected(client):
    response = client.post("/projects/empty/stitch")
    assert response.status_code == 400


def test_disk_usage_and_temp_file_deletion(client, temp_root):
    write_file(temp_root, "p1/images/a.png", b"x" * 4)
    write_file(temp_root, "p1/videos/b.mp4", b"x" * 6)

    usage = client.get("/projects/p1/disk-usage").json()["data"]
    assert usage["usage"]["total_bytes"] == 10
    assert usage["usage"]["by_category"]["videos"]["count"] == 1
    assert usage["exceeded"] is False

    deleted = client.delete("/projects/p1/temp-files").json()["data"]
    assert deleted["deleted_files"] == 2
    assert not os.path.exists(os.path.join(temp_root, "p1"))


def test_manual_cleanup_dry_run(client, temp_root):
    path = write_file(temp_root, "p1/images/old.png")
    os.utime(path, (0, 0))

    response = client.post("/cleanup", json={"dry_run": True, "max_age_hours": 1})

    body = response.json()["data"]
    assert body["dry_run"] is True
    assert body["results"]["p1"]["deleted_files"] == 1
    assert os.path.exists(path)


def test_orphan_endpoints(client, temp_root):
    orphan = write_file(temp_root, "p1/images/stray.png")

    listed = client.get("/cleanup/orphans").json()["data"]
    assert listed["orphaned_files"] == [orphan]

    refused = client.post("/cleanup/orphans:delete", json={"paths": [orphan]})
    assert refused.status_code == 400
    assert os.path.exists(orphan)

    deleted = client.post("/cleanup/orphans:delete", json={"paths": [orphan], "confirm": True})
    assert deleted.json()["data"]["deleted_files"] == 1


def test_cron_cleanup_requires_secret(settings, fake_ffmpeg, no_sleep, temp_root):
    secured = settings.model_copy(update={"cron_secret": "s3cret"})
    old = write_file(temp_root, "p1/images/old.png", b"x" * 5)
    os.utime(old, (0, 0))

    with make_client(secured, fake_ffmpeg, no_sleep) as client:
        assert client.post("/cron/cleanup").status_code == 401
        denied = client.post("/cron/cleanup", headers={"Authorization": "Bearer wrong"})
        assert denied.status_code == 401
        assert denied.json()["code"] == "AUTHENTICATION_FAILED"

        allowed = client.post("/cron/cleanup", headers={"Authorization": "Bearer s3cret"})
        assert allowed.status_code == 200
        summary = allowed.json()["data"]
        assert summary["projects_cleaned"] == 1
        assert summary["files_deleted"] == 1
        assert summary["bytes_freed"] == 5
        assert summary["timed_out"] is False

        health = client.get("/cron/cleanup").json()["data"]
        assert health == {"status": "ok", "temp_root": temp_root, "temp_root_exists": True}


def test_clip_edits_do_not_attach_renders_to_retrimmed_clips(settings, no_sleep, temp_root):
    source = write_file(temp_root, "p1/videos/scene-0.mp4")
    app_state = {}

    async def retrim_while_rendering(args):
        argv = list(args)
        with app_state["services"].timelines.edit("p1") as editor:
            editor.trim_clip("a", 1.0, 2.0)
        with open(argv[-1], "wb") as fh:
            fh.write(b"rendered")
        return ""

    with make_client(settings, retrim_while_rendering, no_sleep) as client:
        app_state["services"] = client.app.state.services
        client.put("/projects/p1/timeline", json={"clips": [clip_payload(source, id="a", trim_end=4.0)]})

        edits = client.post("/projects/p1/clip-edits")

        assert edits.status_code == 200
        timeline = client.get("/projects/p1/timeline").json()["data"]["timeline"]
        clip = timeline["clips"][0]
        assert (clip["trim_start"], clip["trim_end"]) == (1.0, 2.0)
        assert clip["edited_artifact_ref"] is None


def test_delete_stored_artifact_is_scoped_to_project(client):
    services = client.app.state.services
    stored = services.storage.store(b"frame", "p1", "generated", "image/png", filename="hero.png")
    services.registry.register(
        StoredArtifact(key=stored.key, url=stored.url, size_bytes=5, mime_type="image/png", project_id="p1"),
        uploaded=True,
    )

    foreign = client.delete("/projects/p2/artifacts", params={"key": stored.key})
    assert foreign.status_code == 400
    assert foreign.json()["code"] == "VALIDATION_ERROR"

    response = client.delete("/projects/p1/artifacts", params={"key": stored.key})
    assert response.status_code == 200
    assert response.json()["data"] == {"key": "projects/p1/generated/hero.png", "deleted": True}
    assert services.registry.get(stored.key) is None
    with pytest.raises(ValueError):
        services.storage.download_bytes(stored.key)
