from __future__ import annotations

import logging
from pathlib import Path
import re
import time
from typing import Any, Mapping, Protocol

from sendconnect.config import Settings
from sendconnect.errors import ConfigurationError, StorageReadError, StorageWriteError

logger = logging.getLogger("sendconnect.storage")

LOCAL_BUCKET_REF = "local"
_UNSAFE_FILE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class BlobStore(Protocol):
    bucket_ref: str

    def put_object(
        self,
        *,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        ...

    def get_object(self, *, bucket_ref: str, key: str) -> bytes:
        ...

    def probe(self) -> None:
        ...


def _normalize_backend(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"local", "filesystem", "fs"}:
        return "local"
    if normalized in {"s3"}:
        return "s3"
    raise ConfigurationError(f"Unsupported STORAGE_BACKEND '{value}'. Use 'local' or 's3'.")


def sanitize_file_name(file_name: str) -> str:
    safe_name = Path(file_name or "").name or "document.pdf"
    return _UNSAFE_FILE_NAME_CHARS.sub("_", safe_name)


def build_raw_document_key(
    *,
    prefix: str,
    user_id: str,
    file_name: str,
    timestamp_ms: int | None = None,
) -> str:
    stamp = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    base = prefix.strip().strip("/")
    owner = user_id.strip() or "anonymous"
    key = f"{owner}/{stamp}-{sanitize_file_name(file_name)}"
    return f"{base}/{key}" if base else key


def file_name_from_key(key: str) -> str:
    return key.rsplit("/", 1)[-1] or "document.pdf"


class LocalBlobStore:
    """Filesystem-backed store used for development and tests."""

    bucket_ref = LOCAL_BUCKET_REF

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _resolve(self, key: str) -> Path:
        if not key.strip():
            raise StorageReadError("Missing storage key.")
        root = self._root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise StorageReadError(f"Storage key escapes the storage root: '{key}'")
        return path

    def put_object(
        self,
        *,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        try:
            destination = self._resolve(key)
        except StorageReadError as exc:
            raise StorageWriteError(str(exc)) from exc
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(content)

    def get_object(self, *, bucket_ref: str, key: str) -> bytes:
        path = self._resolve(key)
        if not path.exists():
            raise StorageReadError(f"Stored file not found at '{key}'.")
        return path.read_bytes()

    def probe(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        probe = self._root / ".ready_probe"
        probe.write_text("ok", encoding="utf-8")
        probe.unlink(missing_ok=True)


class S3BlobStore:
    def __init__(self, *, bucket: str, aws_region: str, client: Any | None = None) -> None:
        if not bucket.strip():
            raise ConfigurationError("S3 storage backend selected but S3_BUCKET is not configured.")
        self.bucket_ref = bucket.strip()
        self._aws_region = aws_region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            import boto3  # type: ignore
        except ImportError as exc:
            raise ConfigurationError("boto3 is required for S3 storage backend.") from exc
        self._client = boto3.client("s3", region_name=self._aws_region)
        return self._client

    def put_object(
        self,
        *,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> None:
        client = self._get_client()
        try:
            client.put_object(
                Bucket=self.bucket_ref,
                Key=key,
                Body=content,
                ContentType=content_type or "application/pdf",
                Metadata=dict(metadata or {}),
            )
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageWriteError(
                f"Failed to write document to S3 (bucket={self.bucket_ref}, key={key}): {exc}"
            ) from exc

    def get_object(self, *, bucket_ref: str, key: str) -> bytes:
        bucket = (bucket_ref or self.bucket_ref).strip()
        client = self._get_client()
        try:
            response = client.get_object(Bucket=bucket, Key=key)
            body = response.get("Body")
            if body is None:
                raise StorageReadError(f"Failed to download PDF from S3 (bucket={bucket}, key={key}): empty body")
            return body.read()
        except StorageReadError:
            raise
        except Exception as exc:
            raise StorageReadError(f"Failed to download PDF from S3 (bucket={bucket}, key={key}): {exc}") from exc

    def probe(self) -> None:
        self._get_client().head_bucket(Bucket=self.bucket_ref)


def build_blob_store(settings: Settings) -> BlobStore:
    backend = _normalize_backend(settings.storage_backend)
    if backend == "local":
        return LocalBlobStore(settings.storage_root)
    return S3BlobStore(bucket=str(settings.s3_bucket or ""), aws_region=settings.aws_region)
