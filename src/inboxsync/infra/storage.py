"""Durable blob storage for recovered media.

Backends: local filesystem (dev/tests) and Google Cloud Storage. Objects are
content-addressed (sha256) so re-uploading the same bytes is a no-op.
"""

from __future__ import annotations

import hashlib
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock

from google.cloud import storage as gcs_storage

from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_LOCAL_DIR = "var/media"
UPLOAD_TIMEOUT = 30.0


class MediaStorageError(RuntimeError):
    """Raised when media persistence fails."""


@dataclass(frozen=True)
class StoredObject:
    url: str
    key: str
    backend: str
    size: int


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _infer_extension(original_name: str | None, mimetype: str | None) -> str:
    if mimetype:
        guessed = mimetypes.guess_extension(mimetype.split(";", 1)[0].strip(), strict=False)
        if guessed:
            return guessed
    if original_name:
        suffix = Path(original_name).suffix
        if suffix:
            return suffix
    return ""


def object_key(prefix: str, content: bytes, mimetype: str | None, original_name: str | None) -> str:
    digest = content_hash(content)
    extension = _infer_extension(original_name, mimetype)
    return f"{prefix}{digest[:2]}/{digest}{extension}"


def _normalize_prefix(prefix: str) -> str:
    prefix = prefix.strip("/")
    return prefix + "/" if prefix else ""


class BaseMediaStorage:
    backend_name: str = "base"

    def __init__(self, public_base_url: str | None = None) -> None:
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _url(self, key: str, fallback: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return fallback

    def persist(self, *, content: bytes, mimetype: str | None, original_name: str | None) -> StoredObject:
        raise NotImplementedError


class LocalMediaStorage(BaseMediaStorage):
    backend_name = "local"

    def __init__(self, root_dir: Path, public_base_url: str | None = None) -> None:
        super().__init__(public_base_url)
        self.root_dir = root_dir

    def persist(self, *, content: bytes, mimetype: str | None, original_name: str | None) -> StoredObject:
        key = object_key("", content, mimetype, original_name)
        target = self.root_dir / key
        if not target.exists():
            temp = target.with_suffix(target.suffix + ".tmp")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                temp.write_bytes(content)
                temp.replace(target)
            except OSError as exc:
                temp.unlink(missing_ok=True)
                raise MediaStorageError(f"failed to persist media to {target}") from exc
        return StoredObject(
            url=self._url(key, target.as_posix()),
            key=key,
            backend=self.backend_name,
            size=len(content),
        )


class GCSMediaStorage(BaseMediaStorage):
    backend_name = "gcs"

    def __init__(
        self,
        *,
        bucket: str,
        prefix: str = "",
        timeout_seconds: float = UPLOAD_TIMEOUT,
        public_base_url: str | None = None,
        client: gcs_storage.Client | None = None,
    ) -> None:
        super().__init__(public_base_url)
        self.client = client or gcs_storage.Client()
        self.bucket = self.client.bucket(bucket)
        self.prefix = _normalize_prefix(prefix)
        self.timeout = max(1.0, float(timeout_seconds))

    def persist(self, *, content: bytes, mimetype: str | None, original_name: str | None) -> StoredObject:
        key = object_key(self.prefix, content, mimetype, original_name)
        blob = self.bucket.blob(key)
        try:
            blob.upload_from_string(
                content,
                content_type=mimetype or "application/octet-stream",
                timeout=self.timeout,
            )
        except Exception as exc:
            raise MediaStorageError(f"failed to upload media to gs://{self.bucket.name}/{key}") from exc
        return StoredObject(
            url=self._url(key, f"gs://{self.bucket.name}/{key}"),
            key=key,
            backend=self.backend_name,
            size=len(content),
        )


_storage_lock = Lock()
_storage_instance: BaseMediaStorage | None = None


def _build_storage() -> BaseMediaStorage:
    """Build the configured backend.

    Env vars:
    - MEDIA_STORAGE_BACKEND: local (default) | gcs
    - MEDIA_STORAGE_DIR: root for local storage (default var/media)
    - MEDIA_GCS_BUCKET / MEDIA_GCS_PREFIX: GCS target
    - MEDIA_PUBLIC_BASE_URL: optional public URL prefix for stored keys
    """
    backend = os.environ.get("MEDIA_STORAGE_BACKEND", "local")
    public_base_url = os.environ.get("MEDIA_PUBLIC_BASE_URL") or None
    if backend == "local":
        root = Path(os.environ.get("MEDIA_STORAGE_DIR", DEFAULT_LOCAL_DIR))
        return LocalMediaStorage(root, public_base_url=public_base_url)
    if backend == "gcs":
        bucket = os.environ.get("MEDIA_GCS_BUCKET", "")
        if not bucket:
            raise MediaStorageError("MEDIA_GCS_BUCKET is required when using the gcs storage backend")
        return GCSMediaStorage(
            bucket=bucket,
            prefix=os.environ.get("MEDIA_GCS_PREFIX", ""),
            public_base_url=public_base_url,
        )
    raise MediaStorageError(f"unsupported media storage backend: {backend}")


def get_media_storage() -> BaseMediaStorage:
    global _storage_instance
    storage = _storage_instance
    if storage is not None:
        return storage
    with _storage_lock:
        if _storage_instance is None:
            _storage_instance = _build_storage()
            logger.info(
                "media storage initialized",
                extra={"extra_fields": safe_log_context(backend=_storage_instance.backend_name)},
            )
        return _storage_instance


def reset_media_storage() -> None:
    """Drop the cached backend (tests, config reload)."""
    global _storage_instance
    with _storage_lock:
        _storage_instance = None
