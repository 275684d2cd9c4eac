from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


def _default_source_root() -> Path:
    return Path.home() / "Pictures" / "photoshelf"


class Settings(BaseSettings):
    """Centralised runtime configuration for the photoshelf ingest pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="PHOTOSHELF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="info")

    source_root: Path = Field(default_factory=_default_source_root, description="Root of the source media tree.")

    storage_backend: Literal["s3", "local"] = Field(default="s3", description="Active object store implementation.")
    s3_endpoint: Optional[str] = Field(default=None, description="S3-compatible endpoint URL (e.g. Cloudflare R2).")
    s3_bucket: Optional[str] = Field(default="photos", description="Bucket holding originals, derivatives and metadata.")
    s3_region: str = Field(default="auto")
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    public_base_url: Optional[str] = Field(
        default=None,
        description="Public URL prefix for stored objects; defaults to the endpoint/bucket path.",
    )
    local_storage_path: Path = Field(
        default_factory=lambda: Path("published"),
        description="Base directory for the local storage backend.",
    )
    request_timeout_s: float = Field(default=60.0, description="Per-request transport timeout.")

    max_workers: int = Field(default=4, ge=1, description="Bounded worker pool size for per-file processing.")
    thumbnail_width: int = Field(default=800, ge=16)
    thumbnail_quality: int = Field(default=85, ge=1, le=100)
    video_thumbnail_offset_s: float = Field(default=1.0, ge=0.0)
    preview_seconds: float = Field(default=3.0, gt=0.0)
    preview_height: int = Field(default=480, ge=16)

    def require_store_credentials(self) -> None:
        """Raise when the selected backend cannot be constructed from this configuration."""
        if self.storage_backend != "s3":
            return
        missing = [
            name
            for name, value in (
                ("S3_ENDPOINT", self.s3_endpoint),
                ("S3_BUCKET", self.s3_bucket),
                ("ACCESS_KEY_ID", self.access_key_id),
                ("SECRET_ACCESS_KEY", self.secret_access_key),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"object store is not configured; missing {', '.join(missing)}")


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "S3_ENDPOINT": "PHOTOSHELF_S3_ENDPOINT",
        "ACCESS_KEY_ID": "PHOTOSHELF_ACCESS_KEY_ID",
        "SECRET_ACCESS_KEY": "PHOTOSHELF_SECRET_ACCESS_KEY",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value and not os.getenv(target):
            os.environ[target] = value

    try:
        return Settings()
    except ValidationError as exc:
        problems = "; ".join(f"{error['loc'][0]}: {error['msg']}" for error in exc.errors())
        raise ConfigurationError(f"invalid configuration: {problems}") from exc


__all__ = ["Settings", "get_settings"]
