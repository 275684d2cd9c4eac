from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import ProbeError

CREATION_TAG_KEYS = (
    "com.apple.quicktime.creationdate",
    "creation_time",
    "date",
)


@dataclass(slots=True)
class VideoProbe:
    """Display-oriented summary of a video container."""

    width: int
    height: int
    rotation: int
    duration_s: float
    created_time: Optional[datetime]
    codec: str = "unknown"

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


def run_ffprobe(target: Path) -> Dict[str, Any]:
    """Run ffprobe on a media file.

    Args:
        target: The path to the media file.

    Returns:
        The ffprobe output as a dictionary.

    Raises:
        ProbeError: If ffprobe is missing, fails, or prints invalid JSON.
    """
    command = [
        "ffprobe",
        "-v",
        "error",
        "-show_format",
        "-show_streams",
        "-print_format",
        "json",
        str(target),
    ]
    try:
        proc = subprocess.run(command, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as exc:
        raise ProbeError("ffprobe executable not found") from exc
    except subprocess.CalledProcessError as exc:
        raise ProbeError(f"ffprobe failed: {(exc.stderr or '').strip()}") from exc
    try:
        return json.loads(proc.stdout)
    except json.JSONDecodeError as exc:
        raise ProbeError("ffprobe returned invalid JSON") from exc


def probe_video(target: Path) -> VideoProbe:
    """Probe ``target`` with ffprobe and return its display dimensions."""
    return parse_ffprobe_json(run_ffprobe(target))


def parse_ffprobe_json(raw: Dict[str, Any]) -> VideoProbe:
    """Normalise ffprobe JSON into a :class:`VideoProbe`.

    Width and height are reported as displayed: when the selected stream carries
    a 90 or 270 degree rotation, the raw stream dimensions are swapped.

    Args:
        raw: The raw ffprobe JSON.

    Returns:
        The probe summary.

    Raises:
        ProbeError: If there is no usable video stream.
    """
    format_info = raw.get("format") or {}
    format_tags = _normalise_tags(format_info.get("tags"))

    video_streams = [
        stream for stream in raw.get("streams") or [] if str(stream.get("codec_type", "")).lower() == "video"
    ]
    if not video_streams:
        raise ProbeError("no video stream found")

    selected = _select_video_stream(video_streams)
    width = _int_or_none(selected.get("width")) or 0
    height = _int_or_none(selected.get("height")) or 0
    if width <= 0 or height <= 0:
        raise ProbeError("video stream has no dimensions")

    rotation = stream_rotation(selected)
    if rotation in (90, 270):
        width, height = height, width

    return VideoProbe(
        width=width,
        height=height,
        rotation=rotation,
        duration_s=_parse_duration(format_info.get("duration")),
        created_time=_determine_created_time(format_tags, video_streams),
        codec=selected.get("codec_name") or "unknown",
    )


def stream_rotation(stream: Dict[str, Any]) -> int:
    """Return the clockwise rotation of a stream, normalised to 0/90/180/270.

    Older muxers write ``tags.rotate``; newer ffprobe builds report a display
    matrix in ``side_data_list`` with a signed ``rotation``.

    Args:
        stream: A single ffprobe stream entry.

    Returns:
        The rotation in degrees.
    """
    candidates: List[Any] = []
    tags = stream.get("tags") or {}
    if isinstance(tags, dict) and tags.get("rotate") not in (None, ""):
        candidates.append(tags.get("rotate"))
    for side_data in stream.get("side_data_list") or []:
        if isinstance(side_data, dict) and side_data.get("rotation") not in (None, ""):
            candidates.append(side_data.get("rotation"))

    for value in candidates:
        try:
            degrees = int(round(float(value)))
        except (TypeError, ValueError):
            continue
        return (degrees % 360 + 360) % 360
    return 0


def _normalise_tags(tags: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not tags:
        return {}
    normalised: Dict[str, str] = {}
    for key, value in tags.items():
        if value is None:
            continue
        normalised[key] = value if isinstance(value, str) else str(value)
    return normalised


def _parse_duration(raw_value: Any) -> float:
    if raw_value in (None, "N/A", ""):
        return 0.0
    try:
        return float(raw_value)
    except (TypeError, ValueError):
        return 0.0


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, "N/A", ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _disposition_default(disposition: Any) -> Optional[bool]:
    if not isinstance(disposition, dict):
        return None
    default_value = disposition.get("default")
    if default_value is None:
        return None
    return bool(default_value)


def _select_video_stream(streams: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Select the video stream to use.

    Args:
        streams: The video streams.

    Returns:
        The first default stream, else the one with the most pixels.
    """
    default_streams = [
        stream for stream in streams if _disposition_default(stream.get("disposition")) is True
    ]
    if default_streams:
        return default_streams[0]

    def score(item: Dict[str, Any]) -> Tuple[int, int]:
        width = _int_or_none(item.get("width")) or 0
        height = _int_or_none(item.get("height")) or 0
        return width * height, -(_int_or_none(item.get("index")) or 0)

    return max(streams, key=score)


def _determine_created_time(format_tags: Dict[str, str], streams: List[Dict[str, Any]]) -> Optional[datetime]:
    """Return the earliest creation timestamp found in container or stream tags."""
    candidates: List[datetime] = []
    tag_sets = [format_tags] + [_normalise_tags(stream.get("tags")) for stream in streams]
    for tags in tag_sets:
        for key in CREATION_TAG_KEYS:
            value = tags.get(key)
            if value:
                candidate = parse_datetime(value)
                if candidate:
                    candidates.append(candidate)
    if not candidates:
        return None
    return sorted(candidates)[0]


def parse_datetime(value: str) -> Optional[datetime]:
    """Parse a container datetime string into an aware UTC datetime.

    Args:
        value: The datetime string.

    Returns:
        The parsed datetime, or None if it's not a valid datetime.
    """
    value = value.strip()
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        pass

    known_formats = [
        "%Y-%m-%d %H:%M:%S%z",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f%z",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y:%m:%d %H:%M:%S",
    ]
    for fmt in known_formats:
        try:
            dt = datetime.strptime(value, fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        except ValueError:
            continue
    return None


__all__ = [
    "CREATION_TAG_KEYS",
    "VideoProbe",
    "parse_datetime",
    "parse_ffprobe_json",
    "probe_video",
    "run_ffprobe",
    "stream_rotation",
]
