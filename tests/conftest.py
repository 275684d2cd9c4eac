from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import cv2
import numpy as np
import pytest

from photoshelf.core.config import get_settings
from photoshelf.core.storage import LocalStorage

FIXED_MTIME = datetime(2023, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default photoshelf environment fixture for tests that manage their own env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()
        return

    monkeypatch.setenv("PHOTOSHELF_LOG_LEVEL", "warning")
    monkeypatch.setenv("PHOTOSHELF_STORAGE_BACKEND", "local")
    monkeypatch.setenv("PHOTOSHELF_LOCAL_STORAGE_PATH", str(tmp_path / "store"))
    monkeypatch.setenv("PHOTOSHELF_SOURCE_ROOT", str(tmp_path / "source"))
    monkeypatch.setenv("PHOTOSHELF_PUBLIC_BASE_URL", "https://cdn.example.test")
    monkeypatch.setenv("PHOTOSHELF_MAX_WORKERS", "2")

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings(configure_environment):
    return get_settings()


@pytest.fixture()
def storage(settings) -> LocalStorage:
    return LocalStorage(Path(settings.local_storage_path), public_base_url=settings.public_base_url)


@pytest.fixture()
def source_root(settings) -> Path:
    root = Path(settings.source_root)
    root.mkdir(parents=True, exist_ok=True)
    return root


def write_image(path: Path, *, width: int = 64, height: int = 48, color=(0, 128, 255), when: datetime = FIXED_MTIME) -> Path:
    """Write a solid-colour image and pin its modification time."""
    path.parent.mkdir(parents=True, exist_ok=True)
    pixels = np.full((height, width, 3), color, dtype=np.uint8)
    assert cv2.imwrite(str(path), pixels)
    set_mtime(path, when)
    return path


def set_mtime(path: Path, when: datetime) -> None:
    stamp = when.timestamp()
    os.utime(path, (stamp, stamp))
