"""Parsers for the textual output of yt-dlp.

yt-dlp offers no structured channel while it downloads, so the orchestrator
only learns about progress and the final artifact path from these patterns.
All of them live here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

PROGRESS_MARKER = "download-status:"

# Passed to yt-dlp via --progress-template so every progress line is machine readable.
PROGRESS_TEMPLATE = (
    PROGRESS_MARKER
    + "%(progress._percent_str)s ETA %(progress._eta_str)s "
    "SPEED %(progress._speed_str)s TOTAL %(progress._total_bytes_str)s"
)

_TEMPLATE_RE = re.compile(r"([\d.]+)%\s+ETA\s+(.+?)\s+SPEED\s+(.+?)\s+TOTAL\s+(.+)$")
_DEFAULT_PROGRESS_RE = re.compile(
    r"^\[download\]\s+([\d.]+)%\s+of\s+~?\s*(\S+)(?:\s+in\s+\S+)?(?:\s+at\s+(.+?))?(?:\s+ETA\s+(\S+))?(?:\s+\(frag.*\))?\s*$"
)
_DESTINATION_RE = re.compile(r"Destination:\s*(.+?)\s*$")
_MERGER_RE = re.compile(r'Merging formats into "(.*)"')
_ALREADY_DOWNLOADED_RE = re.compile(r"^\[download\]\s+(.+?) has already been downloaded")

ARTIFACT_LINE_MARKERS = ("[ExtractAudio]", "[Merger]", "[download] Destination:", "has already been downloaded")


@dataclass(frozen=True)
class ProgressUpdate:
    percent: float
    eta: str | None = None
    speed: str | None = None
    total: str | None = None


class ProgressParser(Protocol):
    def parse_progress(self, line: str) -> ProgressUpdate | None: ...

    def parse_artifact_path(self, line: str) -> str | None: ...


def _clean(value):
    value = (value or "").strip()
    if not value or value.upper() in {"NA", "N/A", "UNKNOWN"}:
        return None
    return value


def _clamp_percent(raw):
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(100.0, value))


class YtDlpOutputParser:
    """Understands both the custom progress template and yt-dlp's default lines."""

    def parse_progress(self, line):
        if not line:
            return None
        text = line.strip()
        if PROGRESS_MARKER in text:
            payload = text.split(PROGRESS_MARKER, 1)[1].strip()
            match = _TEMPLATE_RE.search(payload)
            if not match:
                return None
            percent = _clamp_percent(match.group(1))
            if percent is None:
                return None
            return ProgressUpdate(
                percent=percent,
                eta=_clean(match.group(2)),
                speed=_clean(match.group(3)),
                total=_clean(match.group(4)),
            )
        match = _DEFAULT_PROGRESS_RE.match(text)
        if match:
            percent = _clamp_percent(match.group(1))
            if percent is None:
                return None
            return ProgressUpdate(
                percent=percent,
                total=_clean(match.group(2)),
                speed=_clean(match.group(3)),
                eta=_clean(match.group(4)),
            )
        return None

    def parse_artifact_path(self, line):
        if not line or not any(marker in line for marker in ARTIFACT_LINE_MARKERS):
            return None
        text = line.strip()
        match = _MERGER_RE.search(text)
        if match:
            return match.group(1).strip() or None
        match = _DESTINATION_RE.search(text)
        if match:
            return match.group(1).strip() or None
        match = _ALREADY_DOWNLOADED_RE.search(text)
        if match:
            return match.group(1).strip() or None
        return None


class OutputTracker:
    """Feeds lines through a parser, remembering the last artifact path seen."""

    def __init__(self, parser=None, progress_callback=None):
        self.parser = parser or YtDlpOutputParser()
        self.progress_callback = progress_callback
        self.artifact_path = None
        self.last_progress = None

    def __call__(self, line):
        update = self.parser.parse_progress(line)
        if update is not None:
            self.last_progress = update
            if callable(self.progress_callback):
                self.progress_callback(update)
            return
        path = self.parser.parse_artifact_path(line)
        if path:
            self.artifact_path = path
