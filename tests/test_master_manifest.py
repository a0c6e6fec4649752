from __future__ import annotations

from pathlib import Path

import pytest

from media.manifest import parse_bitrate_to_bps, render_master_manifest, write_master_manifest
from media.transcode import RENDITION_LADDERS, TIER_1080


def _touch_playlist(output_dir: Path, name: str) -> None:
    (output_dir / name).mkdir(parents=True, exist_ok=True)
    (output_dir / name / f"{name}.m3u8").write_text("#EXTM3U\n", encoding="utf-8")


def test_parse_bitrate_suffixes() -> None:
    assert parse_bitrate_to_bps("2500k") == 2_500_000
    assert parse_bitrate_to_bps("2M") == 2_000_000
    assert parse_bitrate_to_bps("800") == 800
    with pytest.raises(ValueError):
        parse_bitrate_to_bps("fast")


def test_render_master_manifest_format() -> None:
    text = render_master_manifest([("720p", "1280x720", "1200k")])

    assert text == (
        "#EXTM3U\n"
        "#EXT-X-VERSION:7\n"
        '#EXT-X-STREAM-INF:BANDWIDTH=1200000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2"\n'
        "720p/720p.m3u8\n"
    )


def test_write_master_manifest_skips_missing_renditions_in_order(tmp_path: Path) -> None:
    for name in ("1080p", "480p", "360p"):
        _touch_playlist(tmp_path, name)

    path = write_master_manifest(str(tmp_path), RENDITION_LADDERS[TIER_1080])

    lines = Path(path).read_text(encoding="utf-8").splitlines()
    playlists = [line for line in lines if line.endswith(".m3u8")]
    assert playlists == ["1080p/1080p.m3u8", "480p/480p.m3u8", "360p/360p.m3u8"]
    assert "BANDWIDTH=2500000,RESOLUTION=1920x1080" in lines[2]


def test_write_master_manifest_without_renditions_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        write_master_manifest(str(tmp_path), RENDITION_LADDERS[TIER_1080])
