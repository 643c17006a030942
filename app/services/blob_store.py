from __future__ import annotations

import logging
import mimetypes
import threading
import time
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Tuple
from uuid import uuid4

from app.config import get_settings
from app.errors import BlobStorageError, InvalidParameterError, PayloadTooLargeError

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp", "image/svg+xml")


@dataclass(slots=True, frozen=True)
class UploadConstraints:
    """Limits attached to an upload token."""

    allowed_types: Tuple[str, ...] = IMAGE_CONTENT_TYPES
    max_bytes: int = 50 * 1024 * 1024


@dataclass(slots=True, frozen=True)
class UploadToken:
    url: str
    token: str
    expires_at: float


@dataclass(slots=True)
class _PendingUpload:
    constraints: UploadConstraints
    filename: str
    expires_at: float


@dataclass(slots=True)
class _StoredBlob:
    path: Path
    content_type: str
    size: int
    created_at: float = field(default_factory=time.time)


class BlobStore:
    """
    Temporary blob storage for uploads that are too large to inline.

    Clients ask for a single-use upload token, PUT their bytes to the returned
    URL, and hand the resulting blob URL to a processing endpoint. Blobs live on
    the local filesystem under `base_dir` and are deleted once processed, or
    after `blob_ttl_seconds` if nobody processes them. The store makes no
    durability promises beyond one processing request.
    """

    def __init__(
        self,
        base_dir: Path,
        public_base_url: str,
        token_ttl_seconds: int = 600,
        blob_ttl_seconds: int = 3600,
    ) -> None:
        self._base_dir = base_dir
        self._public_base_url = public_base_url.rstrip("/")
        self._token_ttl_seconds = token_ttl_seconds
        self._blob_ttl_seconds = blob_ttl_seconds
        self._pending: Dict[str, _PendingUpload] = {}
        self._blobs: Dict[str, _StoredBlob] = {}
        self._lock = threading.Lock()
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def blob_url(self, blob_id: str) -> str:
        return f"{self._public_base_url}/api/v1/blobs/{blob_id}"

    def issue_upload_token(
        self,
        constraints: UploadConstraints,
        filename: str = "upload",
    ) -> UploadToken:
        """Authorize one direct upload subject to `constraints`."""
        token = uuid4().hex
        expires_at = time.time() + self._token_ttl_seconds
        self._purge_expired()
        with self._lock:
            self._pending[token] = _PendingUpload(
                constraints=constraints, filename=filename, expires_at=expires_at
            )
        logger.info("Issued upload token for %s (max %d bytes)", filename, constraints.max_bytes)
        return UploadToken(
            url=f"{self._public_base_url}/api/v1/blob/upload/{token}",
            token=token,
            expires_at=expires_at,
        )

    def store_upload(self, token: str, data: bytes, content_type: str | None) -> str:
        """
        Persist the bytes uploaded against `token` and return the blob URL.

        The token is consumed even when validation fails.
        """
        self._purge_expired()
        with self._lock:
            pending = self._pending.pop(token, None)
        if pending is None or pending.expires_at < time.time():
            raise InvalidParameterError("Upload token is unknown or has expired.")

        content_type = (content_type or "").split(";")[0].strip().lower()
        if content_type == "image/jpg":
            content_type = "image/jpeg"
        if content_type not in pending.constraints.allowed_types:
            raise InvalidParameterError(
                f"Content type {content_type or 'unknown'!r} is not allowed. "
                "Only JPG, PNG, WebP, and SVG are supported."
            )
        if len(data) > pending.constraints.max_bytes:
            raise PayloadTooLargeError(len(data), pending.constraints.max_bytes)
        if not data:
            raise InvalidParameterError("Upload body is empty.")

        blob_id = uuid4().hex
        extension = mimetypes.guess_extension(content_type) or ".bin"
        path = self._base_dir / f"{blob_id}{extension}"
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise BlobStorageError("Failed to persist uploaded blob to disk.") from exc

        with self._lock:
            self._blobs[blob_id] = _StoredBlob(path=path, content_type=content_type, size=len(data))
        logger.info("Stored blob %s (%d bytes, %s)", blob_id, len(data), content_type)
        return self.blob_url(blob_id)

    def _blob_id(self, url: str) -> str:
        prefix = f"{self._public_base_url}/api/v1/blobs/"
        if not url.startswith(prefix):
            raise InvalidParameterError("Blob URL was not issued by this service.")
        return url[len(prefix) :]

    def get(self, blob_id: str) -> Tuple[bytes, str]:
        """Return the stored bytes and content type for `blob_id`."""
        self._purge_expired()
        with self._lock:
            blob = self._blobs.get(blob_id)
        if blob is None:
            raise InvalidParameterError("Blob not found.")
        try:
            return blob.path.read_bytes(), blob.content_type
        except OSError as exc:
            raise BlobStorageError("Failed to read blob from disk.") from exc

    def fetch(self, url: str) -> bytes:
        data, _ = self.get(self._blob_id(url))
        return data

    def delete(self, url: str) -> None:
        """Remove a blob. Unknown blobs are ignored."""
        blob_id = self._blob_id(url)
        with self._lock:
            blob = self._blobs.pop(blob_id, None)
        if blob is None:
            return
        try:
            blob.path.unlink(missing_ok=True)
        except OSError as exc:
            raise BlobStorageError("Failed to delete blob from disk.") from exc
        logger.info("Deleted blob %s", blob_id)

    def _purge_expired(self) -> None:
        """Drop expired upload tokens and blobs nobody came back for."""
        now = time.time()
        with self._lock:
            for token in [t for t, p in self._pending.items() if p.expires_at < now]:
                del self._pending[token]
            stale = [b for b, blob in self._blobs.items() if blob.created_at + self._blob_ttl_seconds < now]
            expired = [(blob_id, self._blobs.pop(blob_id)) for blob_id in stale]

        for blob_id, blob in expired:
            try:
                blob.path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Failed to remove expired blob %s: %s", blob_id, exc)
                continue
            logger.info("Expired blob %s", blob_id)


@lru_cache()
def get_blob_store() -> BlobStore:
    """Return the process-wide blob store."""
    settings = get_settings()
    return BlobStore(
        base_dir=settings.storage_dir,
        public_base_url=settings.public_base_url,
        token_ttl_seconds=settings.blob_token_ttl_seconds,
        blob_ttl_seconds=settings.blob_ttl_seconds,
    )
