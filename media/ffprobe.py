"""ffprobe queries for merged episode media."""

from __future__ import annotations

import json
from dataclasses import dataclass

from engine.process import run_process

PROBE_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class MediaProbe:
    duration: float | None
    has_video: bool
    has_audio: bool
    width: int | None = None
    height: int | None = None


def _as_float(value):
    if value in (None, "", "N/A"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def probe_media(file_path: str, *, ffprobe_path: str = "ffprobe", runner=run_process) -> MediaProbe:
    """Return container duration and stream layout for ``file_path``.

    Raises:
        RuntimeError: ffprobe is missing, timed out or rejected the file.
        ValueError: ffprobe output was not JSON.
    """
    argv = [
        ffprobe_path,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        file_path,
    ]
    output = runner(argv, timeout=PROBE_TIMEOUT_SECONDS)
    try:
        payload = json.loads(output or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"ffprobe returned invalid JSON for {file_path}") from exc

    streams = payload.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    return MediaProbe(
        duration=_as_float((payload.get("format") or {}).get("duration")),
        has_video=video is not None,
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
        width=video.get("width") if video else None,
        height=video.get("height") if video else None,
    )


def get_media_duration(file_path: str, *, ffprobe_path: str = "ffprobe", runner=run_process) -> float:
    """Duration in seconds, or ``ValueError`` when ffprobe reports none."""
    duration = probe_media(file_path, ffprobe_path=ffprobe_path, runner=runner).duration
    if duration is None:
        raise ValueError(f"ffprobe did not return a duration for {file_path}")
    return duration
