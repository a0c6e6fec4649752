"""Stream-copy merge of separately acquired video and audio tracks."""

from __future__ import annotations

import logging
import os

from engine.errors import MergeValidationError
from engine.paths import ensure_dir
from engine.process import run_process

logger = logging.getLogger(__name__)


def _require_non_empty(path, label):
    if not path or not os.path.isfile(path):
        raise MergeValidationError(f"{label} file missing: {path}")
    size = os.path.getsize(path)
    if size <= 0:
        raise MergeValidationError(f"{label} file is empty: {path}")
    return size


def build_merge_command(ffmpeg_path, video_path, audio_path, output_path):
    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        video_path,
        "-i",
        audio_path,
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-c",
        "copy",
        "-avoid_negative_ts",
        "make_zero",
        "-fflags",
        "+genpts",
        "-y",
        output_path,
    ]


def merge_video_audio(video_path, audio_path, output_path, *, ffmpeg_path="ffmpeg", timeout=None, runner=run_process):
    """Merge without re-encoding and verify the result.

    Both inputs must exist and be non-empty before ffmpeg is started. A zero
    exit code is not trusted on its own: the output must exist and be non-empty.
    """
    video_size = _require_non_empty(video_path, "Video")
    audio_size = _require_non_empty(audio_path, "Audio")

    ensure_dir(os.path.dirname(os.path.abspath(output_path)))
    command = build_merge_command(ffmpeg_path, video_path, audio_path, output_path)
    logger.info("Merging video (%s bytes) and audio (%s bytes) into %s", video_size, audio_size, output_path)
    runner(command, timeout=timeout)

    if not os.path.isfile(output_path):
        raise MergeValidationError(f"Merged output not created: {output_path}")
    output_size = os.path.getsize(output_path)
    if output_size <= 0:
        raise MergeValidationError(f"Merged output is empty: {output_path}")
    logger.info("Merged output ready: %s (%s bytes)", output_path, output_size)
    return output_path
