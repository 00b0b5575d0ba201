from __future__ import annotations

import logging
import mimetypes
import os
import re
from typing import NamedTuple, Optional

from fastapi import Response

from media_pipeline.cache.content_cache import ContentCache
from media_pipeline.clients.s3_storage import S3StorageClient
from media_pipeline.errors import not_found, validation_error

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)

CACHE_CONTROL = "public, max-age=3600"


class ByteRange(NamedTuple):
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


class RangeNotSatisfiable(Exception):
    """Raised when a well-formed Range header falls outside the resource."""

    def __init__(self, size: int) -> None:
        super().__init__(f"requested range not satisfiable for size {size}")
        self.size = size


def parse_range_header(header: str | None, size: int) -> ByteRange | None:
    """Return the inclusive byte range requested, or None to serve the full body.

    Malformed or multi-range headers are ignored. Ranges starting past the end
    of the resource raise RangeNotSatisfiable; an end past the resource is
    clamped to the last byte.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header)
    if not match:
        return None
    raw_start, raw_end = match.groups()
    if not raw_start and not raw_end:
        return None
    if not raw_start:
        suffix = int(raw_end)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return ByteRange(max(0, size - suffix), size - 1)
    start = int(raw_start)
    if start >= size:
        raise RangeNotSatisfiable(size)
    end = int(raw_end) if raw_end else size - 1
    if end < start:
        return None
    return ByteRange(start, min(end, size - 1))


class MediaServer:
    """Serves local or object-storage artifacts through the content caches."""

    def __init__(
        self,
        video_cache: ContentCache,
        image_cache: ContentCache,
        storage: S3StorageClient | None,
        media_roots: list[str],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.video_cache = video_cache
        self.image_cache = image_cache
        self.storage = storage
        self.media_roots = [os.path.realpath(root) for root in media_roots if root]
        self.log = logger or logging.getLogger(__name__)

    def resolve_path(self, raw_path: str) -> str:
        candidate = (raw_path or "").strip()
        if not candidate:
            raise validation_error("path parameter is required")
        if not os.path.isabs(candidate):
            if not self.media_roots:
                raise validation_error("relative paths are not supported")
            candidate = os.path.join(self.media_roots[0], candidate)
        resolved = os.path.realpath(candidate)
        if not any(self._within(resolved, root) for root in self.media_roots):
            raise validation_error("path is outside of the served media roots")
        if not os.path.isfile(resolved):
            raise not_found(f"Media not found: {raw_path}")
        return resolved

    def load(self, path: str | None = None, key: str | None = None) -> tuple[bytes, str, str]:
        """Return ``(data, content_type, cache_status)`` for a path or storage key."""
        if path:
            cache_key = self.resolve_path(path)
            source = cache_key
        elif key:
            cache_key = f"s3://{key.strip().lstrip('/')}"
            source = key
        else:
            raise validation_error("path or key parameter is required")
        content_type = mimetypes.guess_type(source)[0] or "application/octet-stream"
        cache = self._cache_for(content_type)
        data = cache.get(cache_key)
        if data is not None:
            return data, content_type, "HIT"
        if path:
            with open(cache_key, "rb") as fh:
                data = fh.read()
        else:
            if self.storage is None:
                raise not_found("object storage is not configured")
            try:
                data = self.storage.download_bytes(source)
            except ValueError as exc:
                raise not_found(f"Media not found: {key}") from exc
        cache.set(cache_key, data)
        self.log.debug(
            "media loaded",
            extra={"key": cache_key, "size_bytes": len(data), "cache": cache.name},
        )
        return data, content_type, "MISS"

    def build_response(
        self,
        method: str,
        path: str | None,
        key: str | None,
        range_header: str | None,
    ) -> Response:
        data, content_type, cache_status = self.load(path=path, key=key)
        size = len(data)
        headers = {
            "Accept-Ranges": "bytes",
            "Cache-Control": CACHE_CONTROL,
            "X-Cache": cache_status,
        }
        head_only = method.upper() == "HEAD"
        try:
            byte_range = parse_range_header(range_header, size)
        except RangeNotSatisfiable:
            headers["Content-Range"] = f"bytes */{size}"
            return Response(status_code=416, headers=headers, media_type=content_type)
        if byte_range is None:
            headers["Content-Length"] = str(size)
            return Response(
                content=b"" if head_only else data,
                status_code=200,
                headers=headers,
                media_type=content_type,
            )
        headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{size}"
        headers["Content-Length"] = str(byte_range.length)
        body = b"" if head_only else data[byte_range.start : byte_range.end + 1]
        return Response(content=body, status_code=206, headers=headers, media_type=content_type)

    def _cache_for(self, content_type: str) -> ContentCache:
        if content_type.startswith("image/"):
            return self.image_cache
        return self.video_cache

    @staticmethod
    def _within(path: str, root: str) -> bool:
        try:
            return os.path.commonpath([path, root]) == root
        except ValueError:
            return False
