import os

import pytest

from media_pipeline.cache.content_cache import ContentCache
from media_pipeline.clients.s3_storage import S3StorageClient
from media_pipeline.errors import ErrorCode, PipelineError
from media_pipeline.services.media_server import (
    ByteRange,
    MediaServer,
    RangeNotSatisfiable,
    parse_range_header,
)


def test_parse_range_variants():
    assert parse_range_header(None, 100) is None
    assert parse_range_header("bytes=0-9", 100) == ByteRange(0, 9)
    assert parse_range_header("bytes=90-", 100) == ByteRange(90, 99)
    assert parse_range_header("bytes=-10", 100) == ByteRange(90, 99)
    assert parse_range_header("bytes=50-500", 100) == ByteRange(50, 99)
    assert parse_range_header("bytes=10-5", 100) is None
    assert parse_range_header("items=0-5", 100) is None
    assert parse_range_header("bytes=0-1,5-6", 100) is None


def test_parse_range_past_end_is_not_satisfiable():
    with pytest.raises(RangeNotSatisfiable):
        parse_range_header("bytes=100-", 100)
    with pytest.raises(RangeNotSatisfiable):
        parse_range_header("bytes=-0", 100)
    with pytest.raises(RangeNotSatisfiable):
        parse_range_header("bytes=500-", 100)
    with pytest.raises(RangeNotSatisfiable):
        parse_range_header("bytes=500-20", 100)


def _server(root, storage=None):
    return MediaServer(
        ContentCache(max_total_bytes=1024, max_entry_bytes=512, name="video"),
        ContentCache(max_total_bytes=1024, max_entry_bytes=512, name="image"),
        storage,
        [root],
    )


@pytest.fixture
def video_file(temp_root):
    path = os.path.join(temp_root, "p1", "videos", "clip.mp4")
    os.makedirs(os.path.dirname(path))
    with open(path, "wb") as fh:
        fh.write(bytes(range(100)))
    return path


def test_full_response_then_cache_hit(temp_root, video_file):
    server = _server(temp_root)

    first = server.build_response("GET", video_file, None, None)
    second = server.build_response("GET", video_file, None, None)

    assert first.status_code == 200
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert first.headers["Accept-Ranges"] == "bytes"
    assert first.headers["Cache-Control"] == "public, max-age=3600"
    assert first.body == bytes(range(100))


def test_range_response_returns_exact_slice(temp_root, video_file):
    server = _server(temp_root)

    response = server.build_response("GET", video_file, None, "bytes=10-19")

    assert response.status_code == 206
    assert response.headers["Content-Range"] == "bytes 10-19/100"
    assert response.headers["Content-Length"] == "10"
    assert response.body == bytes(range(10, 20))


def test_unsatisfiable_range_returns_416(temp_root, video_file):
    response = _server(temp_root).build_response("GET", video_file, None, "bytes=500-")
    assert response.status_code == 416
    assert response.headers["Content-Range"] == "bytes */100"


def test_head_returns_headers_without_body(temp_root, video_file):
    response = _server(temp_root).build_response("HEAD", video_file, None, None)
    assert response.status_code == 200
    assert response.headers["Content-Length"] == "100"
    assert response.body == b""


def test_relative_path_resolves_under_root(temp_root, video_file):
    response = _server(temp_root).build_response("GET", "p1/videos/clip.mp4", None, "bytes=0-0")
    assert response.body == b"\x00"


def test_paths_outside_roots_are_rejected(temp_root, tmp_path):
    outside = tmp_path / "secret.mp4"
    outside.write_bytes(b"nope")
    server = _server(temp_root)
    with pytest.raises(PipelineError) as excinfo:
        server.build_response("GET", str(outside), None, None)
    assert excinfo.value.code == ErrorCode.VALIDATION_ERROR
    with pytest.raises(PipelineError):
        server.build_response("GET", "../secret.mp4", None, None)


def test_missing_file_is_not_found(temp_root):
    with pytest.raises(PipelineError) as excinfo:
        _server(temp_root).build_response("GET", os.path.join(temp_root, "missing.mp4"), None, None)
    assert excinfo.value.code == ErrorCode.NOT_FOUND


def test_storage_key_served_and_images_use_image_cache(temp_root):
    storage = S3StorageClient(bucket="", access_key=None, secret_key=None)
    storage.upload_bytes("projects/p1/generated/frame.png", b"png-bytes", content_type="image/png")
    server = _server(temp_root, storage)

    response = server.build_response("GET", None, "projects/p1/generated/frame.png", None)

    assert response.status_code == 200
    assert response.body == b"png-bytes"
    assert response.headers["content-type"].startswith("image/png")
    assert "s3://projects/p1/generated/frame.png" in server.image_cache
    assert len(server.video_cache) == 0
