from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .config import Settings
from .errors import ConfigurationError
from .logging import get_logger

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_DELETE_BATCH = 1000


class Storage(ABC):
    """Key/value blob store. Every write replaces a whole object."""

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def put(self, key: str, payload: bytes, *, content_type: str) -> str: ...

    @abstractmethod
    def put_file(self, key: str, path: Path, *, content_type: str) -> str: ...

    @abstractmethod
    def get(self, key: str) -> bytes: ...

    @abstractmethod
    def list(self, prefix: str) -> list[str]: ...

    @abstractmethod
    def delete(self, keys: Iterable[str]) -> int: ...

    @abstractmethod
    def public_url(self, key: str) -> str: ...

    @abstractmethod
    def check(self) -> None: ...


class LocalStorage(Storage):
    """Filesystem-backed storage abstraction suitable for development."""

    def __init__(self, base_path: Path, *, public_base_url: Optional[str] = None):
        self.base_path = base_path.resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url

    def _resolve(self, key: str) -> Path:
        target = (self.base_path / key).resolve()
        if self.base_path not in target.parents:
            raise ValueError(f"Key escapes the storage root: {key}")
        return target

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def put(self, key: str, payload: bytes, *, content_type: str) -> str:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".part-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return self.public_url(key)

    def put_file(self, key: str, path: Path, *, content_type: str) -> str:
        return self.put(key, path.read_bytes(), content_type=content_type)

    def get(self, key: str) -> bytes:
        path = self._resolve(key)
        if not path.is_file():
            raise FileNotFoundError(key)
        return path.read_bytes()

    def list(self, prefix: str) -> list[str]:
        base = self.base_path / prefix
        root = base if base.is_dir() else base.parent
        if not root.exists():
            return []
        keys = []
        for item in root.rglob("*"):
            if not item.is_file() or item.name.startswith(".part-"):
                continue
            key = item.relative_to(self.base_path).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def delete(self, keys: Iterable[str]) -> int:
        removed = 0
        for key in keys:
            path = self._resolve(key)
            if path.is_file():
                path.unlink()
                removed += 1
        return removed

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return (self.base_path / key).as_uri()

    def check(self) -> None:
        if not os.access(self.base_path, os.W_OK):
            raise ConfigurationError(f"Local storage path is not writable: {self.base_path}")


class S3Storage(Storage):
    """S3-compatible object store (AWS S3, Cloudflare R2, MinIO) via boto3."""

    def __init__(
        self,
        *,
        endpoint_url: str,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        region: str = "auto",
        public_base_url: Optional[str] = None,
        timeout_s: float = 60.0,
        client=None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.bucket = bucket
        self.public_base_url = public_base_url
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            config=BotoConfig(
                connect_timeout=timeout_s,
                read_timeout=timeout_s,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                return False
            raise
        return True

    def put(self, key: str, payload: bytes, *, content_type: str) -> str:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=payload, ContentType=content_type)
        return self.public_url(key)

    def put_file(self, key: str, path: Path, *, content_type: str) -> str:
        with path.open("rb") as handle:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=handle, ContentType=content_type)
        return self.public_url(key)

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                raise FileNotFoundError(key) from exc
            raise
        return response["Body"].read()

    def list(self, prefix: str) -> list[str]:
        keys: list[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return sorted(keys)

    def delete(self, keys: Iterable[str]) -> int:
        pending = list(keys)
        removed = 0
        for start in range(0, len(pending), _DELETE_BATCH):
            batch = pending[start : start + _DELETE_BATCH]
            response = self.client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
            errors = response.get("Errors", [])
            for error in errors:
                get_logger(component="storage").warning(
                    "delete_failed", key=error.get("Key"), code=error.get("Code"), message=error.get("Message")
                )
            removed += len(batch) - len(errors)
        return removed

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"

    def check(self) -> None:
        self.client.head_bucket(Bucket=self.bucket)


def get_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "local":
        return LocalStorage(Path(settings.local_storage_path), public_base_url=settings.public_base_url)
    if settings.storage_backend == "s3":
        settings.require_store_credentials()
        return S3Storage(
            endpoint_url=settings.s3_endpoint or "",
            bucket=settings.s3_bucket or "",
            access_key_id=settings.access_key_id or "",
            secret_access_key=settings.secret_access_key or "",
            region=settings.s3_region,
            public_base_url=settings.public_base_url,
            timeout_s=settings.request_timeout_s,
        )
    raise ConfigurationError(f"Unsupported storage backend: {settings.storage_backend}")


__all__ = [
    "Storage",
    "LocalStorage",
    "S3Storage",
    "get_storage",
]
