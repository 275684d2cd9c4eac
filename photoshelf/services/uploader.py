from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from ..core.errors import UploadError
from ..core.logging import get_logger
from ..core.storage import Storage
from ..ingest.naming import format_timestamp

AssetRole = Literal["original", "thumb", "preview"]

ROLE_PREFIXES: dict[str, str] = {
    "original": "originals",
    "thumb": "thumbs",
    "preview": "previews",
}

THUMB_EXT = ".jpg"
PREVIEW_EXT = ".mp4"

CONTENT_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".json": "application/json",
}


@dataclass(slots=True, frozen=True)
class UploadResult:
    key: str
    url: str
    uploaded: bool


def date_partition(captured_at: datetime) -> str:
    """Return the ``YYYY/MM/`` partition used in object keys."""
    timestamp = format_timestamp(captured_at)
    return f"{timestamp[0:4]}/{timestamp[5:7]}/"


def object_key(role: AssetRole, captured_at: datetime, content_hash: str, ext: str) -> str:
    """Derive the storage key for one asset of a piece of content.

    The key depends only on role, capture month and content hash, so the same
    content always lands on the same key and re-uploads are skipped.

    Args:
        role: original, thumb or preview.
        captured_at: Capture time of the original.
        content_hash: SHA256 of the original's bytes.
        ext: Extension of the stored asset, including the dot.

    Returns:
        ``<role prefix>/<YYYY>/<MM>/<content_hash><ext>``.
    """
    return f"{ROLE_PREFIXES[role]}/{date_partition(captured_at)}{content_hash}{ext.lower()}"


def content_type_for(path_or_ext: str) -> str:
    ext = (path_or_ext if path_or_ext.startswith(".") else Path(path_or_ext).suffix).lower()
    if ext in CONTENT_TYPES:
        return CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(f"asset{ext}")
    return guessed or "application/octet-stream"


class MediaUploader:
    """Existence-checked uploads of originals and derivatives."""

    def __init__(self, storage: Storage):
        self.storage = storage
        self.logger = get_logger(component="uploader")

    def exists(self, key: str) -> bool:
        try:
            return self.storage.exists(key)
        except Exception as exc:
            raise UploadError(f"existence check failed for {key}: {exc}") from exc

    def url_for(self, key: str) -> str:
        return self.storage.public_url(key)

    def ensure_uploaded(self, payload_path: Path, key: str, *, content_type: str | None = None) -> UploadResult:
        """Upload ``payload_path`` to ``key`` unless an object is already there.

        Args:
            payload_path: Local file holding the bytes to store.
            key: Content-derived destination key.
            content_type: MIME type; guessed from the key when omitted.

        Returns:
            The key, its public address, and whether bytes were transferred.

        Raises:
            UploadError: On transport or authentication failure.
        """
        if self.exists(key):
            self.logger.debug("upload_skipped", key=key)
            return UploadResult(key=key, url=self.url_for(key), uploaded=False)
        try:
            url = self.storage.put_file(key, payload_path, content_type=content_type or content_type_for(key))
        except Exception as exc:
            raise UploadError(f"upload failed for {key}: {exc}") from exc
        self.logger.info("upload_completed", key=key, size_bytes=payload_path.stat().st_size)
        return UploadResult(key=key, url=url, uploaded=True)


__all__ = [
    "AssetRole",
    "MediaUploader",
    "PREVIEW_EXT",
    "ROLE_PREFIXES",
    "THUMB_EXT",
    "UploadResult",
    "content_type_for",
    "date_partition",
    "object_key",
]
