from __future__ import annotations

import hashlib
import mimetypes
from typing import Dict, NamedTuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError


class StoredObject(NamedTuple):
    key: str
    url: str


class S3StorageClient:
    """Durable object storage with an in-memory fallback when S3 is not configured."""

    def __init__(
        self,
        bucket: str,
        access_key: str | None,
        secret_key: str | None,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        public_url: str | None = None,
        folder_prefix: str = "",
        timeout: float = 30.0,
        addressing_style: str | None = None,
        presign_ttl_seconds: int = 3600,
    ) -> None:
        self.bucket = (bucket or "").strip()
        self.access_key = (access_key or "").strip()
        self.secret_key = (secret_key or "").strip()
        self.endpoint_url = (endpoint_url or "").rstrip("/") or None
        self.region_name = (region_name or "").strip() or None
        self.public_url_base = (public_url or "").rstrip("/")
        self.folder_prefix = self._normalize_path(folder_prefix)
        self.timeout = timeout
        self.presign_ttl_seconds = presign_ttl_seconds
        self._memory: Dict[str, bytes] = {}
        self._client = None
        if self.is_configured():
            session = boto3.session.Session(
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=self.region_name,
            )
            config = BotoConfig(
                s3={"addressing_style": (addressing_style or "virtual").lower()},
                connect_timeout=timeout,
                read_timeout=timeout,
            )
            self._client = session.client("s3", endpoint_url=self.endpoint_url, config=config)

    def is_configured(self) -> bool:
        return bool(self.bucket and self.access_key and self.secret_key)

    def build_key(
        self,
        data: bytes,
        project_id: str,
        category: str,
        mime_type: str,
        filename: str | None = None,
    ) -> str:
        if filename:
            name = filename.strip().split("/")[-1]
        else:
            digest = hashlib.sha256(data).hexdigest()[:32]
            name = f"{digest}{mimetypes.guess_extension(mime_type) or '.bin'}"
        return "/".join(part for part in (self.folder_prefix, project_id, category, name) if part)

    def store(
        self,
        data: bytes,
        project_id: str,
        category: str,
        mime_type: str,
        filename: str | None = None,
    ) -> StoredObject:
        key = self.build_key(data, project_id, category, mime_type, filename)
        url = self.upload_bytes(key, data, content_type=mime_type)
        return StoredObject(key=key, url=url)

    def upload_bytes(
        self,
        path: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        key = self._normalize_path(path)
        if not self.is_configured() or self._client is None:
            self._memory[key] = content
            return self.public_url(key)
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover - AWS error surface
            raise ValueError(f"S3 upload failed: {exc}") from exc
        return self.public_url(key)

    def download_bytes(self, path: str) -> bytes:
        key = self._normalize_path(path)
        if not self.is_configured() or self._client is None:
            if key not in self._memory:
                raise ValueError("object not found in memory storage")
            return self._memory[key]
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            body = response.get("Body")
            if body is None:
                return b""
            return body.read()
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover
            raise ValueError(f"S3 download failed: {exc}") from exc

    def presign(self, path: str, ttl_seconds: int | None = None) -> str:
        key = self._normalize_path(path)
        if not self.is_configured() or self._client is None:
            if key not in self._memory:
                raise ValueError("object not found in memory storage")
            return self.public_url(key)
        ttl = self.presign_ttl_seconds if ttl_seconds is None else ttl_seconds
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=max(1, int(ttl)),
            )
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover
            raise ValueError(f"S3 presign failed: {exc}") from exc

    def delete(self, path: str) -> bool:
        key = self._normalize_path(path)
        if not self.is_configured() or self._client is None:
            return self._memory.pop(key, None) is not None
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover
            raise ValueError(f"S3 delete failed: {exc}") from exc
        return True

    def public_url(self, path: str) -> str:
        clean = self._normalize_path(path)
        if self.public_url_base:
            return f"{self.public_url_base}/{clean}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{clean}"
        return f"/{self.bucket}/{clean}"

    def _normalize_path(self, path: str | None) -> str:
        if not path:
            return ""
        return "/".join(part for part in path.strip().split("/") if part)
