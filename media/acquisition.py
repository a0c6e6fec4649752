"""yt-dlp backed metadata lookup and separate video/audio acquisition."""

from __future__ import annotations

import glob
import logging
import os
from dataclasses import dataclass, field

import requests
from yt_dlp import YoutubeDL

from engine.errors import ConfigurationError, ProcessFailedError
from engine.governor import RESOURCE_DISK, RESOURCE_NETWORK, RetryPolicy
from engine.json_utils import log_event
from engine.paths import ensure_dir
from engine.process import run_process
from media.progress import PROGRESS_TEMPLATE, OutputTracker, YtDlpOutputParser
from media.transcode import TIER_720, TIER_1080
from metadata.naming import sanitize_artifact_path

logger = logging.getLogger(__name__)

KIND_VIDEO = "video"
KIND_AUDIO = "audio"

AUDIO_FORMAT_SELECTORS = {
    "mp3": "bestaudio[ext=mp3]/bestaudio[acodec=mp3]/bestaudio",
    "m4a": "bestaudio[ext=m4a]/bestaudio[acodec^=mp4a]/bestaudio",
    "aac": "bestaudio[acodec^=mp4a]/bestaudio[ext=m4a]/bestaudio",
    "opus": "bestaudio[acodec=opus]/bestaudio[ext=webm]/bestaudio",
}

_THUMBNAIL_TIMEOUT = (10, 60)


class AcquisitionError(RuntimeError):
    pass


@dataclass(frozen=True)
class SourceMetadata:
    video_id: str
    title: str
    uploader: str | None = None
    channel_id: str | None = None
    description: str = ""
    duration: float | None = None
    filesize_approx: int | None = None
    thumbnail: str | None = None
    upload_date: str | None = None
    webpage_url: str | None = None
    raw: dict = field(default_factory=dict, repr=False, compare=False)


def metadata_from_info(info) -> SourceMetadata:
    if not isinstance(info, dict) or not info.get("id"):
        raise AcquisitionError("yt-dlp returned no usable metadata")
    filesize = info.get("filesize_approx") or info.get("filesize")
    duration = info.get("duration")
    return SourceMetadata(
        video_id=str(info["id"]),
        title=str(info.get("title") or info.get("fulltitle") or info["id"]),
        uploader=info.get("uploader") or info.get("channel"),
        channel_id=info.get("channel_id"),
        description=str(info.get("description") or ""),
        duration=float(duration) if isinstance(duration, (int, float)) else None,
        filesize_approx=int(filesize) if isinstance(filesize, (int, float)) else None,
        thumbnail=info.get("thumbnail"),
        upload_date=info.get("upload_date"),
        webpage_url=info.get("webpage_url"),
        raw=info,
    )


def select_quality_tier(metadata: SourceMetadata, threshold: int) -> str:
    """1080p only for sources whose approximate size is below ``threshold``."""
    size = metadata.filesize_approx
    if size is not None and size < threshold:
        return TIER_1080
    return TIER_720


def video_format_selector(tier) -> str:
    height = int(tier)
    return (
        f"bestvideo[height<={height}]/bestvideo[height<={height + 200}]/bestvideo/"
        f"best[height<={height}]/best"
    )


def audio_format_selector(preferred) -> str:
    return AUDIO_FORMAT_SELECTORS.get((preferred or "mp3").lower(), AUDIO_FORMAT_SELECTORS["mp3"])


def build_ytdlp_command(settings, url, output_template, format_selector, *, extract_audio=False):
    command = [
        settings.ytdlp_path,
        "-o",
        output_template,
        "-f",
        format_selector,
        "-N",
        str(settings.concurrent_fragments),
        "--no-part",
        "--no-continue",
        "--newline",
        "--no-warnings",
        "--progress-template",
        PROGRESS_TEMPLATE,
    ]
    for plugin_dir in settings.plugin_dirs:
        command.extend(["--plugin-dirs", plugin_dir])
    if settings.cookies_file:
        command.extend(["--cookies", settings.cookies_file])
    if settings.ffmpeg_path:
        command.extend(["--ffmpeg-location", settings.ffmpeg_path])
    if extract_audio:
        command.extend(["-x", "--audio-format", settings.preferred_audio_format or "mp3"])
    command.append(url)
    return command


def _is_retryable_acquisition_error(exc) -> bool:
    if isinstance(exc, ConfigurationError):
        return False
    if isinstance(exc, ProcessFailedError) and exc.returncode == 127:
        return False
    return True


def _find_template_output(output_template):
    matches = template_outputs(output_template)
    if not matches:
        return None
    return max(matches, key=os.path.getmtime)


class MediaAcquirer:
    def __init__(self, settings, governor, *, runner=run_process, parser_factory=YtDlpOutputParser, http=None):
        self.settings = settings
        self.governor = governor
        self.runner = runner
        self.parser_factory = parser_factory
        self.http = http or requests
        self.policy = RetryPolicy.from_settings(settings, is_retryable=_is_retryable_acquisition_error)

    def fetch_metadata(self, url) -> SourceMetadata:
        opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
        }
        if self.settings.cookies_file:
            opts["cookiefile"] = self.settings.cookies_file

        def _probe():
            with YoutubeDL(opts) as ydl:
                return metadata_from_info(ydl.extract_info(url, download=False))

        metadata = self.governor.call(RESOURCE_NETWORK, _probe, policy=self.policy, label="metadata fetch")
        log_event(
            logging.INFO,
            "metadata_fetched",
            url=url,
            video_id=metadata.video_id,
            filesize_approx=metadata.filesize_approx,
        )
        return metadata

    def _run_job(self, url, output_template, format_selector, *, kind, extract_audio):
        ensure_dir(os.path.dirname(os.path.abspath(output_template)))
        command = build_ytdlp_command(
            self.settings, url, output_template, format_selector, extract_audio=extract_audio
        )

        def _progress(update):
            logger.debug("%s progress %.1f%% eta=%s speed=%s", kind, update.percent, update.eta, update.speed)

        def _attempt():
            tracker = OutputTracker(self.parser_factory(), progress_callback=_progress)
            self.runner(command, timeout=self.settings.acquisition_timeout, line_callback=tracker)
            raw_path = tracker.artifact_path or _find_template_output(output_template)
            if not raw_path:
                raise AcquisitionError(f"{kind} download finished without reporting an output file")
            path = sanitize_artifact_path(raw_path)
            if path != raw_path and os.path.exists(raw_path):
                os.replace(raw_path, path)
            if not os.path.isfile(path):
                raise AcquisitionError(f"{kind} output missing after download: {path}")
            return path

        path = self.governor.call(RESOURCE_DISK, _attempt, policy=self.policy, label=f"{kind} acquisition")
        log_event(logging.INFO, "acquisition_completed", kind=kind, url=url, path=path)
        return path

    def acquire_video(self, url, output_template, tier):
        return self._run_job(url, output_template, video_format_selector(tier), kind=KIND_VIDEO, extract_audio=False)

    def acquire_audio(self, url, output_template):
        return self._run_job(
            url,
            output_template,
            audio_format_selector(self.settings.preferred_audio_format),
            kind=KIND_AUDIO,
            extract_audio=True,
        )

    def download_thumbnail(self, thumbnail_url, dest_path):
        if not thumbnail_url:
            return None

        def _fetch():
            response = self.http.get(thumbnail_url, timeout=_THUMBNAIL_TIMEOUT, stream=True)
            response.raise_for_status()
            ensure_dir(os.path.dirname(os.path.abspath(dest_path)))
            with open(dest_path, "wb") as handle:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        handle.write(chunk)
            return dest_path

        return self.governor.call(RESOURCE_NETWORK, _fetch, policy=self.policy, label="thumbnail fetch")


def template_outputs(output_template):
    """Every file (complete or partial) a job writing to ``output_template`` left behind."""
    prefix = output_template.split("%(ext)s", 1)[0]
    return sorted(path for path in glob.glob(glob.escape(prefix) + "*") if os.path.isfile(path))
