"""Capture-time resolution for source media.

A capture time is resolved by trying an ordered list of resolvers, each of
which returns a datetime or ``None``. The first hit wins; the wall clock is the
final fallback so resolution never fails.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal, Optional, Sequence, Tuple

import exifread

from ..core.logging import get_logger
from .ffprobe_parser import VideoProbe

__all__ = [
    "CaptureSource",
    "CaptureTime",
    "EXIF_DATE_TAGS",
    "Resolver",
    "default_resolvers",
    "exif_capture_time",
    "filesystem_capture_time",
    "resolve_capture_time",
]

CaptureSource = Literal["exif", "container", "filesystem", "clock"]
Resolver = Callable[[Path], Optional[datetime]]

EXIF_DATE_TAGS = (
    "EXIF DateTimeOriginal",
    "EXIF DateTimeDigitized",
    "Image DateTime",
)

@dataclass(slots=True, frozen=True)
class CaptureTime:
    value: datetime
    source: CaptureSource


def exif_capture_time(path: Path) -> Optional[datetime]:
    """Read the original capture time from embedded EXIF tags.

    EXIF stores local wall-clock time without a zone, so the result is naive.

    Args:
        path: The image to inspect.

    Returns:
        The capture time, or None when no parseable date tag is present.
    """
    with path.open("rb") as handle:
        tags = exifread.process_file(handle, details=False)
    for tag in EXIF_DATE_TAGS:
        if tag not in tags:
            continue
        raw = str(tags[tag]).strip()
        if not raw or raw.startswith("0000"):
            continue
        try:
            return datetime.strptime(raw.replace(":", "-", 2)[:19], "%Y-%m-%d %H:%M:%S")
        except ValueError:
            continue
    return None


def filesystem_capture_time(path: Path) -> Optional[datetime]:
    """Return the file's creation time, or its modification time where the
    platform does not record creation."""
    stat_result = path.stat()
    timestamp = getattr(stat_result, "st_birthtime", None)
    if timestamp is None:
        timestamp = stat_result.st_mtime
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def default_resolvers(kind: str, probe: Optional[VideoProbe] = None) -> Sequence[Tuple[CaptureSource, Resolver]]:
    """Return the resolver chain for a media kind.

    Videos read the container creation time from ``probe``, which the caller
    has already run; without a probe that step yields nothing.
    """
    if kind == "video":
        created = probe.created_time if probe is not None else None
        return (("container", lambda _path: created), ("filesystem", filesystem_capture_time))
    return (("exif", exif_capture_time), ("filesystem", filesystem_capture_time))


def resolve_capture_time(
    path: Path,
    resolvers: Sequence[Tuple[CaptureSource, Resolver]],
    *,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> CaptureTime:
    """Resolve the capture time of ``path``.

    Args:
        path: The source file.
        resolvers: Ordered ``(source, resolver)`` pairs.
        clock: Last-resort time source.

    Returns:
        The first timestamp any resolver produced, tagged with its source.
    """
    for source, resolver in resolvers:
        try:
            value = resolver(path)
        except Exception as exc:  # resolvers are best-effort
            get_logger(component="capture_date").debug(
                "capture_time_resolver_failed", path=str(path), source=source, error=str(exc)
            )
            continue
        if value is not None:
            return CaptureTime(value=value, source=source)
    return CaptureTime(value=clock(), source="clock")
