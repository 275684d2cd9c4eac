"""Ingest orchestration.

A run is split into phases so that everything observable in the catalog is
decided in discovery order, independent of how the worker pool schedules work:

1. discover source files (sequential, sorted)
2. hash and date every file (parallel)
3. group by content hash; the first occurrence owns the content
4. derive and upload each owner's content (parallel)
5. allocate names and record in discovery order (sequential)
6. publish the catalog
"""

from __future__ import annotations

import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import repeat
from pathlib import Path
from typing import Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import ValidationError

from ..core.config import Settings
from ..core.errors import DuplicateOfFailedError, HashingError, ItemError, ProbeError, SourceRootError
from ..core.logging import get_logger
from ..core.storage import Storage
from ..ingest.capture_date import CaptureTime, default_resolvers, resolve_capture_time
from ..ingest.catalog_schema import ImageRecord, ImageUrls, MediaRecord, RootCatalog, VideoRecord, VideoUrls
from ..ingest.content_hash import compute_sha256
from ..ingest.derivatives import (
    DerivativeOptions,
    image_dimensions,
    load_image,
    render_image_thumbnail,
    render_video_preview,
    render_video_thumbnail,
    video_dimensions_fallback,
)
from ..ingest.ffprobe_parser import VideoProbe, probe_video
from ..ingest.naming import NameAllocator
from .catalog import CatalogBuilder
from .publisher import CatalogPublisher, PublishResult
from .uploader import PREVIEW_EXT, THUMB_EXT, MediaUploader, content_type_for, object_key

MediaKind = Literal["image", "video"]

IMAGE_EXTS = frozenset({".jpg", ".jpeg", ".png", ".webp"})
VIDEO_EXTS = frozenset({".mp4", ".mov"})


class FileState(str, Enum):
    DISCOVERED = "discovered"
    HASHED = "hashed"
    DUPLICATE = "duplicate"
    REFERENCED = "referenced"
    UPLOADED = "uploaded"
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class SourceFile:
    path: Path
    section: str
    kind: MediaKind

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def ext(self) -> str:
        return self.path.suffix.lower()


@dataclass(slots=True)
class Inspection:
    source: SourceFile
    content_hash: str
    captured: CaptureTime
    probe: Optional[VideoProbe] = None


@dataclass(slots=True, frozen=True)
class ProcessedContent:
    kind: MediaKind
    width: int
    height: int
    urls: Dict[str, str]
    uploaded: bool


@dataclass(slots=True, frozen=True)
class FailedItem:
    path: Path
    section: str
    stage: str
    reason: str


@dataclass(slots=True)
class RunSummary:
    source_root: Path
    discovered: int = 0
    uploaded: int = 0
    existing: int = 0
    duplicates: int = 0
    failures: List[FailedItem] = field(default_factory=list)
    states: Dict[Path, FileState] = field(default_factory=dict)
    catalog: Optional[RootCatalog] = None
    published: Optional[PublishResult] = None
    dry_run: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def skipped(self) -> int:
        return self.existing + self.duplicates

    @property
    def recorded(self) -> int:
        return self.uploaded + self.existing + self.duplicates


def media_kind(path: Path) -> Optional[MediaKind]:
    ext = path.suffix.lower()
    if ext in IMAGE_EXTS:
        return "image"
    if ext in VIDEO_EXTS:
        return "video"
    return None


def discover(source_root: Path) -> List[SourceFile]:
    """Walk ``source_root`` and return every supported media file in sorted order.

    Each first-level subdirectory is a section; deeper directories become
    sections named by their relative path joined with ``/``. Files directly in
    the root belong to no section and are ignored, as are hidden entries and
    unsupported extensions.

    Args:
        source_root: Directory holding one subdirectory per section.

    Returns:
        Source files ordered by relative path.

    Raises:
        SourceRootError: If the root is missing or any directory cannot be read.
    """
    if not source_root.is_dir():
        raise SourceRootError(f"source root {source_root} does not exist or is not a directory")

    def _on_error(exc: OSError) -> None:
        raise SourceRootError(f"cannot read {exc.filename}: {exc.strerror}") from exc

    found: List[SourceFile] = []
    for dirpath, dirnames, filenames in os.walk(source_root, onerror=_on_error):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        relative = Path(dirpath).relative_to(source_root)
        if not relative.parts:
            continue
        section = "/".join(relative.parts)
        for filename in sorted(filenames):
            if filename.startswith("."):
                continue
            path = Path(dirpath) / filename
            kind = media_kind(path)
            if kind is None:
                continue
            found.append(SourceFile(path=path, section=section, kind=kind))
    found.sort(key=lambda item: item.path.relative_to(source_root).as_posix())
    return found


def build_record(inspection: Inspection, content: ProcessedContent) -> MediaRecord:
    fields = dict(
        content_hash=inspection.content_hash,
        original_filename=inspection.source.name,
        width=content.width,
        height=content.height,
        aspect_ratio=content.width / content.height,
    )
    if content.kind == "video":
        return VideoRecord(urls=VideoUrls(**content.urls), **fields)
    return ImageRecord(urls=ImageUrls(**content.urls), **fields)


class IngestPipeline:
    """Turns a source tree into uploaded assets and a published catalog."""

    def __init__(
        self,
        settings: Settings,
        storage: Storage,
        *,
        max_workers: Optional[int] = None,
        options: Optional[DerivativeOptions] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings
        self.storage = storage
        self.max_workers = max(1, max_workers or settings.max_workers)
        self.options = options or DerivativeOptions.from_settings(settings)
        self.clock = clock
        self.uploader = MediaUploader(storage)
        self.publisher = CatalogPublisher(storage)
        self.logger = get_logger(component="pipeline")

    def run(self, source_root: Optional[Path] = None, *, dry_run: bool = False) -> RunSummary:
        """Ingest every supported file under ``source_root``.

        Per-file failures are recorded in the summary and never abort the run.

        Args:
            source_root: Tree to ingest; defaults to ``settings.source_root``.
            dry_run: Hash, probe and check the store without writing to it.

        Returns:
            Counts, failures and the catalog that was (or would be) published.

        Raises:
            SourceRootError: If the tree cannot be walked.
            PublishError: If the catalog snapshot cannot be written.
        """
        root = Path(source_root or self.settings.source_root).expanduser()
        sources = discover(root)
        previous_names = self._previous_names()
        summary = RunSummary(source_root=root, discovered=len(sources), dry_run=dry_run)
        for source in sources:
            summary.states[source.path] = FileState.DISCOVERED
        self.logger.info("ingest_started", source_root=str(root), files=len(sources), dry_run=dry_run)

        with tempfile.TemporaryDirectory(prefix="photoshelf-") as tmp:
            work_dir = Path(tmp)
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="photoshelf") as executor:
                inspected = list(executor.map(self._guarded_inspect, sources))

                owners: Dict[str, Inspection] = {}
                for result in inspected:
                    if isinstance(result, Inspection):
                        summary.states[result.source.path] = FileState.HASHED
                        if owners.setdefault(result.content_hash, result) is not result:
                            summary.states[result.source.path] = FileState.DUPLICATE

                processed = dict(
                    zip(
                        owners.keys(),
                        executor.map(self._guarded_process, owners.values(), repeat(work_dir), repeat(dry_run)),
                    )
                )

            for content_hash, content in processed.items():
                if isinstance(content, ProcessedContent) and content.uploaded and not dry_run:
                    summary.states[owners[content_hash].source.path] = FileState.UPLOADED

        recordable: List[Tuple[Inspection, ProcessedContent]] = []
        for source, result in zip(sources, inspected):
            if isinstance(result, ItemError):
                self._fail(summary, source, result)
                continue
            owner = owners[result.content_hash]
            content = processed[result.content_hash]
            if isinstance(content, ItemError):
                if owner is not result:
                    content = DuplicateOfFailedError(f"duplicate of {owner.source.path.name}, which failed: {content}")
                self._fail(summary, source, content)
                continue
            recordable.append((result, content))

        builder = CatalogBuilder()
        allocator = NameAllocator()
        kept_names: List[Optional[str]] = []
        for inspection, _ in recordable:
            queue = previous_names.get((inspection.source.section, inspection.content_hash))
            kept = queue.pop(0) if queue else None
            kept_names.append(kept)
            if kept is not None:
                allocator.reserve(inspection.source.section, [kept])
        for (inspection, content), kept in zip(recordable, kept_names):
            name = kept or allocator.allocate(
                inspection.source.section, inspection.captured.value, inspection.source.ext
            )
            is_owner = owners[inspection.content_hash] is inspection
            self._record(summary, builder, name, inspection, content, is_owner=is_owner)

        summary.catalog = builder.snapshot()
        if not dry_run:
            summary.published = self.publisher.publish(summary.catalog)
        self.logger.info(
            "ingest_finished",
            uploaded=summary.uploaded,
            existing=summary.existing,
            duplicates=summary.duplicates,
            failed=summary.failed,
        )
        return summary

    def _previous_names(self) -> Dict[Tuple[str, str], List[str]]:
        """Names per section and content hash in the last published catalog.

        Files whose content is unchanged keep their name, so adding a file never
        renumbers the ones already published.
        """
        try:
            previous = self.publisher.load_latest()
        except ValidationError as exc:
            self.logger.warning("previous_catalog_unreadable", error=str(exc))
            return {}
        if previous is None:
            return {}
        names: Dict[Tuple[str, str], List[str]] = {}
        for section, name, record in previous.records():
            names.setdefault((section, record.content_hash), []).append(name)
        for queue in names.values():
            queue.sort()
        return names

    def _record(
        self,
        summary: RunSummary,
        builder: CatalogBuilder,
        name: str,
        inspection: Inspection,
        content: ProcessedContent,
        *,
        is_owner: bool,
    ) -> None:
        source = inspection.source
        _, is_reference = builder.record_or_reference(
            source.section, name, inspection.content_hash, build_record(inspection, content)
        )
        if is_reference:
            summary.duplicates += 1
            summary.states[source.path] = FileState.REFERENCED
        elif content.uploaded:
            summary.uploaded += 1
            summary.states[source.path] = FileState.RECORDED
        else:
            summary.existing += 1
            summary.states[source.path] = FileState.RECORDED
        self.logger.debug(
            "file_recorded",
            path=str(source.path),
            section=source.section,
            name=name,
            reference=is_reference,
            owner=is_owner,
            capture_source=inspection.captured.source,
        )

    def _fail(self, summary: RunSummary, source: SourceFile, error: ItemError) -> None:
        item = FailedItem(path=source.path, section=source.section, stage=error.stage, reason=str(error))
        summary.failures.append(item)
        summary.states[source.path] = FileState.FAILED
        self.logger.warning("file_failed", path=str(source.path), section=source.section, stage=item.stage, reason=item.reason)

    def _guarded_inspect(self, source: SourceFile) -> Union[Inspection, ItemError]:
        try:
            return self.inspect(source)
        except ItemError as exc:
            return exc
        except Exception as exc:
            self.logger.exception("inspect_crashed", path=str(source.path))
            return ItemError(f"unexpected error: {exc}")

    def _guarded_process(self, inspection: Inspection, work_dir: Path, dry_run: bool) -> Union[ProcessedContent, ItemError]:
        try:
            return self.process(inspection, work_dir, dry_run=dry_run)
        except ItemError as exc:
            return exc
        except Exception as exc:
            self.logger.exception("process_crashed", path=str(inspection.source.path))
            return ItemError(f"unexpected error: {exc}")

    def inspect(self, source: SourceFile) -> Inspection:
        """Hash ``source`` and resolve its capture time."""
        try:
            content_hash = compute_sha256(source.path)
        except OSError as exc:
            raise HashingError(f"cannot read {source.name}: {exc}") from exc

        probe: Optional[VideoProbe] = None
        if source.kind == "video":
            try:
                probe = probe_video(source.path)
            except ProbeError as exc:
                self.logger.debug("video_probe_failed", path=str(source.path), error=str(exc))
        captured = resolve_capture_time(source.path, default_resolvers(source.kind, probe), clock=self.clock)
        return Inspection(source=source, content_hash=content_hash, captured=captured, probe=probe)

    def process(self, inspection: Inspection, work_dir: Path, *, dry_run: bool = False) -> ProcessedContent:
        """Derive and upload the assets of one distinct piece of content.

        Derivatives whose keys already exist are not rendered again.

        Args:
            inspection: The owning occurrence of the content.
            work_dir: Scratch directory for rendered derivatives.
            dry_run: Only check which keys exist.

        Returns:
            Dimensions, public URLs and whether anything was transferred.
        """
        source = inspection.source
        captured_at = inspection.captured.value
        content_hash = inspection.content_hash
        keys = {
            "original": object_key("original", captured_at, content_hash, source.ext),
            "thumb": object_key("thumb", captured_at, content_hash, THUMB_EXT),
        }
        if source.kind == "video":
            keys["preview"] = object_key("preview", captured_at, content_hash, PREVIEW_EXT)

        missing = {role for role, key in keys.items() if not self.uploader.exists(key)}
        rendered: Dict[str, Path] = {}

        if source.kind == "image":
            image = load_image(source.path)
            width, height = image_dimensions(image)
            if "thumb" in missing and not dry_run:
                rendered["thumb"] = work_dir / f"{content_hash}-thumb{THUMB_EXT}"
                render_image_thumbnail(image, rendered["thumb"], self.options)
        else:
            width, height = self._video_dimensions(inspection)
            if "thumb" in missing and not dry_run:
                rendered["thumb"] = render_video_thumbnail(
                    source.path, work_dir / f"{content_hash}-thumb{THUMB_EXT}", self.options
                )
            if "preview" in missing and not dry_run:
                rendered["preview"] = render_video_preview(
                    source.path, work_dir / f"{content_hash}-preview{PREVIEW_EXT}", self.options
                )

        uploaded = bool(missing)
        if not dry_run:
            results = [
                self.uploader.ensure_uploaded(source.path, keys["original"], content_type=content_type_for(source.ext))
            ]
            for role, path in rendered.items():
                results.append(self.uploader.ensure_uploaded(path, keys[role]))
            uploaded = any(result.uploaded for result in results)

        urls = {role: self.uploader.url_for(key) for role, key in keys.items()}
        return ProcessedContent(kind=source.kind, width=width, height=height, urls=urls, uploaded=uploaded)

    def _video_dimensions(self, inspection: Inspection) -> Tuple[int, int]:
        if inspection.probe is not None:
            return inspection.probe.width, inspection.probe.height
        return video_dimensions_fallback(inspection.source.path)


__all__ = [
    "FailedItem",
    "FileState",
    "IMAGE_EXTS",
    "IngestPipeline",
    "Inspection",
    "ProcessedContent",
    "RunSummary",
    "SourceFile",
    "VIDEO_EXTS",
    "build_record",
    "discover",
    "media_kind",
]
