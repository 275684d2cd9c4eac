from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from photoshelf.core.errors import UploadError
from photoshelf.core.storage import LocalStorage
from photoshelf.services.uploader import MediaUploader, content_type_for, date_partition, object_key

HASH = "f" * 64


def test_object_key_layout():
    captured = datetime(2024, 3, 9, 23, 59, 59)
    assert object_key("original", captured, HASH, ".JPG") == f"originals/2024/03/{HASH}.jpg"
    assert object_key("thumb", captured, HASH, ".jpg") == f"thumbs/2024/03/{HASH}.jpg"
    assert object_key("preview", captured, HASH, ".mp4") == f"previews/2024/03/{HASH}.mp4"


def test_date_partition_uses_utc_for_aware_times():
    captured = datetime(2024, 4, 1, 3, 0, tzinfo=timezone(timedelta(hours=9)))
    assert date_partition(captured) == "2024/03/"


def test_content_types():
    assert content_type_for(".webp") == "image/webp"
    assert content_type_for("clip.MOV") == "video/quicktime"
    assert content_type_for("thumbs/2024/01/x.jpg") == "image/jpeg"


def test_upload_is_skipped_when_key_exists(storage, tmp_path: Path):
    payload = tmp_path / "a.jpg"
    payload.write_bytes(b"bytes")
    uploader = MediaUploader(storage)
    key = f"originals/2024/01/{HASH}.jpg"

    first = uploader.ensure_uploaded(payload, key)
    second = uploader.ensure_uploaded(payload, key)

    assert first.uploaded is True
    assert second.uploaded is False
    assert first.url == second.url == storage.public_url(key)
    assert storage.get(key) == b"bytes"


class _BrokenStorage(LocalStorage):
    def put_file(self, key, path, *, content_type):
        raise PermissionError("access denied")


def test_transport_failure_is_an_upload_error(tmp_path: Path):
    payload = tmp_path / "a.jpg"
    payload.write_bytes(b"bytes")
    uploader = MediaUploader(_BrokenStorage(tmp_path / "store"))
    with pytest.raises(UploadError) as excinfo:
        uploader.ensure_uploaded(payload, f"originals/2024/01/{HASH}.jpg")
    assert excinfo.value.stage == "upload"
