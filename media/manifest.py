"""HLS master manifest synthesis for when ffmpeg does not write one."""

from __future__ import annotations

import os
import re

MASTER_MANIFEST_NAME = "master.m3u8"
DEFAULT_CODECS = "avc1.4d401f,mp4a.40.2"

_BITRATE_RE = re.compile(r"^(\d+)([kKmM]?)$")


def parse_bitrate_to_bps(bitrate: str) -> int:
    """``"2500k"`` -> 2_500_000, ``"2m"`` -> 2_000_000, ``"800"`` -> 800."""
    match = _BITRATE_RE.match(str(bitrate or "").strip())
    if not match:
        raise ValueError(f"Unparseable bitrate: {bitrate!r}")
    value = int(match.group(1))
    suffix = match.group(2).lower()
    if suffix == "k":
        return value * 1000
    if suffix == "m":
        return value * 1_000_000
    return value


def sub_manifest_relpath(name: str) -> str:
    return f"{name}/{name}.m3u8"


def render_master_manifest(entries, codecs=DEFAULT_CODECS) -> str:
    """``entries`` is an ordered iterable of (name, resolution, bitrate)."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:7"]
    for name, resolution, bitrate in entries:
        lines.append(
            f'#EXT-X-STREAM-INF:BANDWIDTH={parse_bitrate_to_bps(bitrate)},'
            f'RESOLUTION={resolution},CODECS="{codecs}"'
        )
        lines.append(sub_manifest_relpath(name))
    return "\n".join(lines) + "\n"


def write_master_manifest(output_dir, renditions, *, filename=MASTER_MANIFEST_NAME):
    """Write a master manifest covering only the renditions present on disk.

    Renditions are kept in the given order; any whose sub-manifest is missing
    is skipped. Raises ``FileNotFoundError`` when none is present.
    """
    present = []
    for rendition in renditions:
        if os.path.isfile(os.path.join(output_dir, rendition.name, f"{rendition.name}.m3u8")):
            present.append((rendition.name, rendition.resolution, rendition.bitrate))
    if not present:
        raise FileNotFoundError(f"No rendition playlists found in {output_dir}")
    path = os.path.join(output_dir, filename)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(render_master_manifest(present))
    return path
