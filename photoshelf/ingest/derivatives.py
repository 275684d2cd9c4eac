from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

import cv2  # type: ignore
import numpy as np

from ..core.config import Settings
from ..core.errors import DerivativeError, ProbeError

THUMB_WIDTH = 800
THUMB_QUALITY = 85


@dataclass(slots=True, frozen=True)
class DerivativeOptions:
    thumbnail_width: int = THUMB_WIDTH
    thumbnail_quality: int = THUMB_QUALITY
    video_thumbnail_offset_s: float = 1.0
    preview_seconds: float = 3.0
    preview_height: int = 480

    @classmethod
    def from_settings(cls, settings: Settings) -> "DerivativeOptions":
        return cls(
            thumbnail_width=settings.thumbnail_width,
            thumbnail_quality=settings.thumbnail_quality,
            video_thumbnail_offset_s=settings.video_thumbnail_offset_s,
            preview_seconds=settings.preview_seconds,
            preview_height=settings.preview_height,
        )


def load_image(image_path: Path) -> np.ndarray:
    """Decode an image, retrying from an in-memory buffer if the direct read fails.

    ``cv2.imread`` gives up silently on some paths (non-ASCII names on Windows,
    odd extensions); decoding the raw bytes sidesteps the filename handling.

    Args:
        image_path: The image to decode.

    Returns:
        The decoded BGR pixel array.

    Raises:
        ProbeError: If neither strategy can decode the file.
    """
    try:
        image = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
    except cv2.error:
        image = None
    if image is not None:
        return image
    try:
        buffer = np.frombuffer(image_path.read_bytes(), dtype=np.uint8)
    except OSError as exc:
        raise ProbeError(f"cannot read image: {exc}") from exc
    try:
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
    except cv2.error:
        image = None
    if image is None:
        raise ProbeError(f"failed to decode image at {image_path.name}")
    return image


def image_dimensions(image: np.ndarray) -> Tuple[int, int]:
    height, width = image.shape[:2]
    return width, height


def render_image_thumbnail(image: np.ndarray, output_path: Path, options: DerivativeOptions) -> Tuple[int, int]:
    """Write a JPEG thumbnail no wider than ``options.thumbnail_width``.

    Smaller originals are re-encoded at their own size, never enlarged.

    Args:
        image: The decoded original.
        output_path: Destination JPEG path.
        options: Size and quality settings.

    Returns:
        The thumbnail's ``(width, height)``.
    """
    width, height = image_dimensions(image)
    try:
        if width > options.thumbnail_width:
            target_height = max(1, int(round(height * options.thumbnail_width / width)))
            image = cv2.resize(image, (options.thumbnail_width, target_height), interpolation=cv2.INTER_AREA)
        ok, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), options.thumbnail_quality])
        if not ok:
            raise DerivativeError(f"failed to encode thumbnail {output_path.name}")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(encoded.tobytes())
    except (cv2.error, OSError) as exc:
        raise DerivativeError(f"thumbnail generation failed: {exc}") from exc
    return image_dimensions(image)


def video_dimensions_fallback(video_path: Path) -> Tuple[int, int]:
    """Read frame size through OpenCV when ffprobe cannot describe the file."""
    capture = cv2.VideoCapture(str(video_path))
    try:
        width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
    finally:
        capture.release()
    if width <= 0 or height <= 0:
        raise ProbeError(f"failed to read video dimensions for {video_path.name}")
    return width, height


def render_video_thumbnail(video_path: Path, output_path: Path, options: DerivativeOptions) -> Path:
    """Extract a single still frame as the video's thumbnail.

    The frame is taken at ``video_thumbnail_offset_s``; clips shorter than the
    offset produce no frame there, so the start of the clip is tried next.

    Args:
        video_path: The source video.
        output_path: Destination JPEG path.
        options: Offset and width settings.

    Returns:
        ``output_path``.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    offsets = [options.video_thumbnail_offset_s]
    if options.video_thumbnail_offset_s > 0:
        offsets.append(0.0)

    last_error: DerivativeError | None = None
    for offset in offsets:
        command = [
            "ffmpeg",
            "-nostdin",
            "-v",
            "error",
            "-ss",
            f"{max(offset, 0.0):.3f}",
            "-i",
            str(video_path),
            "-frames:v",
            "1",
            "-vf",
            f"scale='min({options.thumbnail_width},iw)':-2",
            "-q:v",
            "2",
            "-y",
            str(output_path),
        ]
        try:
            _run_ffmpeg(command)
        except DerivativeError as exc:
            last_error = exc
            continue
        if output_path.exists() and output_path.stat().st_size > 0:
            return output_path
        last_error = DerivativeError(f"no frame at {offset:.1f}s")
    output_path.unlink(missing_ok=True)
    raise last_error or DerivativeError("thumbnail extraction failed")


def render_video_preview(video_path: Path, output_path: Path, options: DerivativeOptions) -> Path:
    """Encode a short, muted, reduced-resolution preview clip.

    Args:
        video_path: The source video.
        output_path: Destination MP4 path.
        options: Duration and height settings.

    Returns:
        ``output_path``.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    command = [
        "ffmpeg",
        "-nostdin",
        "-v",
        "error",
        "-i",
        str(video_path),
        "-t",
        f"{options.preview_seconds:.3f}",
        "-vf",
        f"scale=-2:'trunc(min({options.preview_height},ih)/2)*2'",
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-crf",
        "28",
        "-pix_fmt",
        "yuv420p",
        "-an",
        "-movflags",
        "+faststart",
        "-y",
        str(output_path),
    ]
    try:
        _run_ffmpeg(command)
    except DerivativeError:
        output_path.unlink(missing_ok=True)
        raise
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise DerivativeError(f"preview not created for {video_path.name}")
    return output_path


def _run_ffmpeg(command: List[str]) -> None:
    try:
        subprocess.run(command, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except FileNotFoundError as exc:
        raise DerivativeError("ffmpeg executable not found") from exc
    except subprocess.CalledProcessError as exc:
        raise DerivativeError(f"ffmpeg failed: {(exc.stderr or '').strip()}") from exc


__all__ = [
    "DerivativeOptions",
    "image_dimensions",
    "load_image",
    "render_image_thumbnail",
    "render_video_preview",
    "render_video_thumbnail",
    "video_dimensions_fallback",
]
