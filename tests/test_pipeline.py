from __future__ import annotations

import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import FIXED_MTIME, set_mtime, write_image

from photoshelf.core.errors import ProbeError, PublishError, SourceRootError
from photoshelf.core.storage import LocalStorage
from photoshelf.ingest import capture_date
from photoshelf.ingest.capture_date import filesystem_capture_time
from photoshelf.ingest.content_hash import compute_sha256
from photoshelf.ingest.ffprobe_parser import VideoProbe
from photoshelf.ingest.naming import format_timestamp
from photoshelf.services import pipeline as pipeline_module
from photoshelf.services.pipeline import FileState, IngestPipeline, discover
from photoshelf.services.publisher import CatalogPublisher

CLOCK = datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.fixture()
def pipeline(settings, storage) -> IngestPipeline:
    return IngestPipeline(settings, storage, clock=lambda: CLOCK)


@pytest.fixture()
def trip_tree(source_root: Path) -> Path:
    write_image(source_root / "trip" / "IMG_0001.png", color=(255, 0, 0))
    write_image(source_root / "trip" / "IMG_0002.png", width=1600, height=900, color=(0, 255, 0))
    copy = source_root / "trip2" / "copy.png"
    copy.parent.mkdir(parents=True)
    shutil.copyfile(source_root / "trip" / "IMG_0001.png", copy)
    set_mtime(copy, FIXED_MTIME)
    return source_root


def _name(path: Path, serial: int) -> str:
    captured = filesystem_capture_time(path)
    assert captured is not None
    return f"{format_timestamp(captured)}-{serial:03d}{path.suffix.lower()}"


def test_discover_applies_section_rules(source_root: Path):
    write_image(source_root / "trip" / "b.JPG")
    write_image(source_root / "trip" / "a.png")
    write_image(source_root / "trip" / "day1" / "c.webp")
    write_image(source_root / "loose.png")
    write_image(source_root / "trip" / ".hidden.png")
    write_image(source_root / ".cache" / "x.png")
    (source_root / "trip" / "notes.txt").write_text("not media")
    (source_root / "trip" / "clip.MOV").write_bytes(b"video")

    found = discover(source_root)

    assert [(item.section, item.name) for item in found] == [
        ("trip", "a.png"),
        ("trip", "b.JPG"),
        ("trip", "clip.MOV"),
        ("trip/day1", "c.webp"),
    ]
    assert [item.kind for item in found] == ["image", "image", "video", "image"]


def test_missing_source_root_is_structural(pipeline, storage, tmp_path: Path):
    with pytest.raises(SourceRootError):
        pipeline.run(tmp_path / "does-not-exist")
    assert storage.list("") == []


def test_first_run_uploads_and_publishes(pipeline, storage, trip_tree: Path):
    summary = pipeline.run(trip_tree)

    counts = (summary.discovered, summary.uploaded, summary.existing, summary.duplicates, summary.failed)
    assert counts == (3, 2, 0, 1, 0)
    assert summary.skipped == 1
    assert summary.published is not None

    catalog = CatalogPublisher(storage).load_latest()
    assert catalog == summary.catalog
    trip = catalog.sections["trip"].images
    first = trip[_name(trip_tree / "trip" / "IMG_0001.png", 1)]
    second = trip[_name(trip_tree / "trip" / "IMG_0002.png", 2)]
    assert first.original_filename == "IMG_0001.png"
    assert (second.width, second.height) == (1600, 900)
    assert second.aspect_ratio == pytest.approx(16 / 9)

    content_hash = compute_sha256(trip_tree / "trip" / "IMG_0001.png")
    assert first.content_hash == content_hash
    assert first.urls.original.startswith("https://cdn.example.test/originals/")
    assert first.urls.original.endswith(f"/{content_hash}.png")
    assert first.urls.thumb.endswith(f"/{content_hash}.jpg")


def test_duplicate_across_sections_references_same_urls(pipeline, storage, trip_tree: Path):
    summary = pipeline.run(trip_tree)

    trip_record = summary.catalog.sections["trip"].images[_name(trip_tree / "trip" / "IMG_0001.png", 1)]
    copy_record = summary.catalog.sections["trip2"].images[_name(trip_tree / "trip2" / "copy.png", 1)]
    assert copy_record == trip_record
    assert summary.states[trip_tree / "trip2" / "copy.png"] is FileState.REFERENCED
    assert len(storage.list("originals/")) == 2
    assert len(storage.list("thumbs/")) == 2


def test_second_run_is_idempotent(pipeline, storage, trip_tree: Path):
    first = pipeline.run(trip_tree)
    stored = storage.list("originals/") + storage.list("thumbs/")

    second = pipeline.run(trip_tree)

    assert second.uploaded == 0
    assert second.existing == 2
    assert second.duplicates == 1
    assert second.catalog == first.catalog
    assert second.catalog.to_json() == first.catalog.to_json()
    assert storage.list("originals/") + storage.list("thumbs/") == stored
    assert len(CatalogPublisher(storage).list_versions()) == 2


def test_adding_a_file_uploads_only_that_file(pipeline, trip_tree: Path):
    first = pipeline.run(trip_tree)
    # sorts before the existing files and shares their timestamp
    write_image(trip_tree / "trip" / "IMG_0000.png", color=(0, 0, 255))

    second = pipeline.run(trip_tree)

    assert second.uploaded == 1
    assert second.existing == 2
    for section, name, record in first.catalog.records():
        assert second.catalog.sections[section].images[name] == record
    new_name = _name(trip_tree / "trip" / "IMG_0000.png", 3)
    assert second.catalog.sections["trip"].images[new_name].original_filename == "IMG_0000.png"


def test_corrupt_file_is_isolated(pipeline, trip_tree: Path):
    broken = trip_tree / "trip" / "IMG_0003.jpg"
    broken.write_bytes(b"definitely not a jpeg")

    summary = pipeline.run(trip_tree)

    assert summary.failed == 1
    assert summary.uploaded == 2
    failure = summary.failures[0]
    assert (failure.path, failure.section, failure.stage) == (broken, "trip", "probe")
    assert summary.states[broken] is FileState.FAILED
    assert all(record.original_filename != "IMG_0003.jpg" for _, _, record in summary.catalog.records())
    assert summary.published is not None


def test_duplicate_of_failed_file_fails_too(pipeline, source_root: Path):
    for section in ("trip", "trip2"):
        target = source_root / section / "broken.jpg"
        target.parent.mkdir(parents=True)
        target.write_bytes(b"truncated")

    summary = pipeline.run(source_root)

    assert [item.stage for item in summary.failures] == ["probe", "reference"]
    assert summary.catalog.sections == {}


def test_upload_failure_is_isolated(settings, tmp_path: Path, trip_tree: Path):
    class _FlakyStorage(LocalStorage):
        def put_file(self, key, path, *, content_type):
            if path.name == "IMG_0002.png":
                raise ConnectionError("connection reset by peer")
            return super().put_file(key, path, content_type=content_type)

    pipeline = IngestPipeline(settings, _FlakyStorage(tmp_path / "flaky"), clock=lambda: CLOCK)
    summary = pipeline.run(trip_tree)

    assert [(item.path.name, item.stage) for item in summary.failures] == [("IMG_0002.png", "upload")]
    assert summary.uploaded == 1
    assert summary.duplicates == 1


def test_publish_failure_is_structural(settings, tmp_path: Path, trip_tree: Path):
    class _ReadOnlyMetadata(LocalStorage):
        def put(self, key, payload, *, content_type):
            if key.startswith("metadata/"):
                raise PermissionError("bucket policy denies metadata writes")
            return super().put(key, payload, content_type=content_type)

    storage = _ReadOnlyMetadata(tmp_path / "store-ro")
    with pytest.raises(PublishError):
        IngestPipeline(settings, storage, clock=lambda: CLOCK).run(trip_tree)
    assert storage.list("metadata/") == []


def test_dry_run_writes_nothing(pipeline, storage, trip_tree: Path):
    summary = pipeline.run(trip_tree, dry_run=True)

    assert summary.published is None
    assert summary.uploaded == 2
    assert len(list(summary.catalog.records())) == 3
    assert storage.list("") == []


def test_video_is_probed_once_and_gets_a_preview(monkeypatch, pipeline, source_root: Path):
    clip = source_root / "trip" / "clip.mov"
    clip.parent.mkdir(parents=True)
    clip.write_bytes(b"not really a quicktime file")
    created = datetime(2022, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    probes = []

    def _probe(path):
        probes.append(path)
        return VideoProbe(width=1920, height=1080, rotation=90, duration_s=12.0, created_time=created)

    def _thumb(src, out, options):
        out.write_bytes(b"jpeg")
        return out

    def _preview(src, out, options):
        out.write_bytes(b"mp4")
        return out

    monkeypatch.setattr(pipeline_module, "probe_video", _probe)
    monkeypatch.setattr(pipeline_module, "render_video_thumbnail", _thumb)
    monkeypatch.setattr(pipeline_module, "render_video_preview", _preview)

    summary = pipeline.run(source_root)

    assert probes == [clip]
    record = summary.catalog.sections["trip"].images["2022-01-02-030405-001.mov"]
    assert record.type == "video"
    assert (record.width, record.height) == (1920, 1080)
    content_hash = compute_sha256(clip)
    assert record.urls.preview.endswith(f"previews/2022/01/{content_hash}.mp4")
    assert record.urls.original.endswith(f"originals/2022/01/{content_hash}.mov")


def test_unprobeable_video_uses_fallback_dimensions(monkeypatch, pipeline, source_root: Path):
    clip = source_root / "trip" / "clip.mp4"
    clip.parent.mkdir(parents=True)
    clip.write_bytes(b"fragmented")
    set_mtime(clip, FIXED_MTIME)

    def _no_probe(path):
        raise ProbeError("ffprobe failed")

    def _write(src, out, options):
        out.write_bytes(b"x")
        return out

    monkeypatch.setattr(pipeline_module, "probe_video", _no_probe)
    monkeypatch.setattr(pipeline_module, "video_dimensions_fallback", lambda path: (640, 360))
    monkeypatch.setattr(pipeline_module, "render_video_thumbnail", _write)
    monkeypatch.setattr(pipeline_module, "render_video_preview", _write)

    summary = pipeline.run(source_root)

    [(_, name, record)] = list(summary.catalog.records())
    assert name == _name(clip, 1)
    assert (record.width, record.height) == (640, 360)


def test_capture_time_falls_back_to_clock(monkeypatch, pipeline, source_root: Path):
    write_image(source_root / "trip" / "a.png")
    monkeypatch.setattr(capture_date, "filesystem_capture_time", lambda path: None)

    summary = pipeline.run(source_root)

    [(_, name, _)] = list(summary.catalog.records())
    assert name == "2030-01-01-000000-001.png"


def test_worker_count_does_not_change_the_catalog(settings, tmp_path: Path, source_root: Path):
    for index in range(12):
        when = FIXED_MTIME + timedelta(seconds=index % 2)
        write_image(source_root / f"s{index % 3}" / f"{index:02d}.png", color=(index * 20, 0, 0), when=when)

    serial = IngestPipeline(settings, LocalStorage(tmp_path / "one"), max_workers=1).run(source_root)
    parallel = IngestPipeline(settings, LocalStorage(tmp_path / "many"), max_workers=8).run(source_root)

    assert [name for _, name, _ in serial.catalog.records()] == [name for _, name, _ in parallel.catalog.records()]
    assert serial.uploaded == parallel.uploaded == 12

def test_owner_is_marked_uploaded_only_when_it_wrote_something(monkeypatch, pipeline, trip_tree: Path):
    owner = trip_tree / "trip" / "IMG_0001.png"
    seen = []
    record = pipeline._record

    def _spy(summary, builder, name, inspection, content, *, is_owner):
        if inspection.source.path == owner:
            seen.append(summary.states[owner])
        record(summary, builder, name, inspection, content, is_owner=is_owner)

    monkeypatch.setattr(pipeline, "_record", _spy)
    first = pipeline.run(trip_tree)
    second = pipeline.run(trip_tree)

    assert seen == [FileState.UPLOADED, FileState.HASHED]
    assert first.states[owner] is second.states[owner] is FileState.RECORDED


def test_video_capture_time_comes_from_container_metadata(monkeypatch, pipeline, source_root: Path):
    clip = source_root / "trip" / "clip.mp4"
    clip.parent.mkdir(parents=True)
    clip.write_bytes(b"mp4")
    set_mtime(clip, FIXED_MTIME)
    [source] = discover(source_root)
    created = datetime(2021, 7, 4, 9, 30, tzinfo=timezone.utc)

    def _probe(path):
        return VideoProbe(width=640, height=360, rotation=0, duration_s=1.0, created_time=created)

    def _no_probe(path):
        raise ProbeError("moov atom not found")

    monkeypatch.setattr(pipeline_module, "probe_video", _probe)
    inspection = pipeline.inspect(source)
    assert (inspection.captured.value, inspection.captured.source) == (created, "container")

    monkeypatch.setattr(pipeline_module, "probe_video", _no_probe)
    inspection = pipeline.inspect(source)
    assert inspection.probe is None
    assert inspection.captured.source == "filesystem"
