from __future__ import annotations

import subprocess
from datetime import datetime, timezone
from pathlib import Path

import pytest

from photoshelf.core.errors import ProbeError
from photoshelf.ingest import ffprobe_parser
from photoshelf.ingest.ffprobe_parser import parse_datetime, parse_ffprobe_json, run_ffprobe, stream_rotation


def _ffprobe_output(*streams: dict, format_tags: dict | None = None) -> dict:
    return {
        "streams": list(streams),
        "format": {"duration": "4.250000", "tags": format_tags or {}},
    }


def _video_stream(width: int, height: int, **extra) -> dict:
    stream = {"index": 0, "codec_type": "video", "codec_name": "h264", "width": width, "height": height}
    stream.update(extra)
    return stream


def test_parse_landscape_video():
    probe = parse_ffprobe_json(_ffprobe_output(_video_stream(1920, 1080)))
    assert (probe.width, probe.height) == (1920, 1080)
    assert probe.rotation == 0
    assert probe.duration_s == pytest.approx(4.25)
    assert probe.codec == "h264"
    assert probe.aspect_ratio == pytest.approx(1920 / 1080)


def test_rotate_tag_swaps_dimensions():
    probe = parse_ffprobe_json(_ffprobe_output(_video_stream(1080, 1920, tags={"rotate": "90"})))
    assert (probe.width, probe.height) == (1920, 1080)
    assert probe.rotation == 90


def test_display_matrix_rotation_is_normalised():
    stream = _video_stream(1920, 1080, side_data_list=[{"side_data_type": "Display Matrix", "rotation": -90}])
    probe = parse_ffprobe_json(_ffprobe_output(stream))
    assert probe.rotation == 270
    assert (probe.width, probe.height) == (1080, 1920)


def test_upside_down_keeps_dimensions():
    assert stream_rotation({"tags": {"rotate": "180"}}) == 180
    probe = parse_ffprobe_json(_ffprobe_output(_video_stream(640, 360, tags={"rotate": "180"})))
    assert (probe.width, probe.height) == (640, 360)


def test_default_stream_is_preferred():
    thumbnail_track = _video_stream(3840, 2160, index=1)
    main_track = _video_stream(1280, 720, index=0, disposition={"default": 1})
    probe = parse_ffprobe_json(_ffprobe_output(thumbnail_track, main_track))
    assert (probe.width, probe.height) == (1280, 720)


def test_earliest_creation_time_is_used():
    stream = _video_stream(1280, 720, tags={"creation_time": "2021-03-04T05:06:07.000000Z"})
    raw = _ffprobe_output(stream, format_tags={"com.apple.quicktime.creationdate": "2021-03-04T14:00:00+09:00"})
    probe = parse_ffprobe_json(raw)
    assert probe.created_time == datetime(2021, 3, 4, 5, 0, 0, tzinfo=timezone.utc)


def test_no_video_stream_raises():
    with pytest.raises(ProbeError):
        parse_ffprobe_json(_ffprobe_output({"codec_type": "audio", "codec_name": "aac"}))


def test_zero_dimensions_raise():
    with pytest.raises(ProbeError):
        parse_ffprobe_json(_ffprobe_output(_video_stream(0, 0)))


def test_parse_datetime_handles_naive_and_invalid():
    assert parse_datetime("2021-03-04T05:06:07") == datetime(2021, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    assert parse_datetime("not a date") is None


def test_missing_ffprobe_raises_probe_error(monkeypatch, tmp_path: Path):
    def _missing(*args, **kwargs):
        raise FileNotFoundError("ffprobe")

    monkeypatch.setattr(ffprobe_parser.subprocess, "run", _missing)
    with pytest.raises(ProbeError, match="not found"):
        run_ffprobe(tmp_path / "clip.mp4")


def test_failed_ffprobe_raises_probe_error(monkeypatch, tmp_path: Path):
    def _fail(command, **kwargs):
        raise subprocess.CalledProcessError(1, command, stderr="moov atom not found")

    monkeypatch.setattr(ffprobe_parser.subprocess, "run", _fail)
    with pytest.raises(ProbeError, match="moov atom"):
        run_ffprobe(tmp_path / "clip.mp4")
