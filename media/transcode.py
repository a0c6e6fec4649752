"""Single-pass multi-rendition HLS transcoding.

One ffmpeg invocation decodes the merged source once, splits video and audio
into N branches and encodes every rendition in parallel. Encoder threads are
shared out so the sum matches the usable core count.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace

from engine.errors import ProcessFailedError, TranscodeError
from engine.governor import NO_RETRY, RESOURCE_DISK, RESOURCE_OBJECT_STORAGE, RetryPolicy
from engine.json_utils import log_event
from engine.process import run_process
from media.cleanup import remove_tree
from media.manifest import MASTER_MANIFEST_NAME, sub_manifest_relpath, write_master_manifest
from storage.object_store import stream_key, upload_or_raise

logger = logging.getLogger(__name__)

TIER_1080 = "1080"
TIER_720 = "720"

HLS_OUTPUT_DIRNAME = "hls_output"
AUDIO_BITRATE = "96k"
AUDIO_SAMPLE_RATE = 44100
SEGMENT_SECONDS = 6
KEYFRAME_INTERVAL = 48

AAC_ASSERTION_MARKERS = (
    "Assertion diff >= 0 && diff <= 120 failed at libavcodec/aacenc.c",
    "aacenc.c:684",
)


@dataclass(frozen=True)
class Rendition:
    name: str
    resolution: str
    bitrate: str
    threads: int = 0


RENDITION_LADDERS = {
    TIER_1080: (
        Rendition("1080p", "1920x1080", "2500k"),
        Rendition("720p", "1280x720", "1200k"),
        Rendition("480p", "854x480", "700k"),
        Rendition("360p", "640x360", "400k"),
    ),
    TIER_720: (
        Rendition("720p", "1280x720", "1200k"),
        Rendition("480p", "854x480", "700k"),
        Rendition("360p", "640x360", "400k"),
    ),
}


@dataclass
class TranscodeResult:
    master_location: str
    master_key: str
    renditions: list = field(default_factory=list)
    uploaded_keys: list = field(default_factory=list)
    used_audio_copy: bool = False
    synthesized_master: bool = False


def ladder_for_tier(tier) -> tuple:
    try:
        return RENDITION_LADDERS[str(tier)]
    except KeyError:
        raise ValueError(f"Unsupported top rendition: {tier!r}") from None


def allocate_threads(cpu_count: int, rendition_count: int) -> list[int]:
    """Per-rendition encoder threads: at least 2 each, the remainder spread front-first.

    For ``cpu_count >= 2 * rendition_count`` the result sums to ``cpu_count``.
    """
    if rendition_count <= 0:
        return []
    cores = max(1, int(cpu_count))
    base = max(2, cores // rendition_count)
    remainder = max(0, cores - base * rendition_count)
    return [base + (1 if index < remainder else 0) for index in range(rendition_count)]


def with_thread_allocation(renditions, cpu_count):
    threads = allocate_threads(cpu_count, len(renditions))
    return [replace(rendition, threads=count) for rendition, count in zip(renditions, threads)]


def build_filter_graph(renditions) -> str:
    count = len(renditions)
    video_labels = "".join(f"[v{i}]" for i in range(count))
    audio_labels = "".join(f"[a{i}]" for i in range(count))
    parts = [
        f"[0:v]split={count}{video_labels}",
        (
            f"[0:a]aresample={AUDIO_SAMPLE_RATE}:resampler=soxr,"
            f"aformat=channel_layouts=stereo:sample_fmts=fltp,asplit={count}{audio_labels}"
        ),
    ]
    for index, rendition in enumerate(renditions):
        width, height = rendition.resolution.split("x", 1)
        parts.append(f"[v{index}]scale={width}:{height}[outv{index}]")
    return ";".join(parts)


def _audio_args(audio_copy):
    if audio_copy:
        return ["-c:a", "copy"]
    return [
        "-c:a",
        "aac",
        "-b:a",
        AUDIO_BITRATE,
        "-ac",
        "2",
        "-ar",
        str(AUDIO_SAMPLE_RATE),
        "-aac_coder",
        "twoloop",
    ]


def build_transcode_command(ffmpeg_path, source_path, renditions, output_dir, cpu_count, *, audio_copy=False):
    """Full ffmpeg argv for one single-pass transcode of ``renditions``."""
    count = len(renditions)
    cores = max(1, int(cpu_count))
    command = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-threads",
        str(cores),
        "-filter_complex_threads",
        str(max(1, min(cores, count * 2))),
        "-filter_threads",
        str(max(1, cores // 2)),
        "-i",
        source_path,
        "-filter_complex",
        build_filter_graph(renditions),
    ]
    for index, rendition in enumerate(renditions):
        command.extend(["-map", f"[outv{index}]"])
        # With stream copy there is no filtered audio pad to map.
        command.extend(["-map", "0:a:0" if audio_copy else f"[a{index}]"])
        command.extend(
            [
                "-c:v",
                "libx264",
                "-preset",
                "veryfast",
                "-x264-params",
                f"threads={rendition.threads or 2}:keyint={KEYFRAME_INTERVAL}:min-keyint={KEYFRAME_INTERVAL}:scenecut=0",
                "-b:v",
                rendition.bitrate,
            ]
        )
        command.extend(_audio_args(audio_copy))
        command.extend(
            [
                "-avoid_negative_ts",
                "make_zero",
                "-f",
                "hls",
                "-hls_flags",
                "single_file",
                "-hls_time",
                str(SEGMENT_SECONDS),
                "-hls_playlist_type",
                "vod",
                "-hls_segment_type",
                "fmp4",
                os.path.join(output_dir, sub_manifest_relpath(rendition.name)),
            ]
        )
    command.extend(
        [
            "-var_stream_map",
            " ".join(f"v:{i},a:{i}" for i in range(count)),
            "-master_pl_name",
            MASTER_MANIFEST_NAME,
        ]
    )
    return command


def is_aac_assertion_failure(output: str) -> bool:
    text = output or ""
    return any(marker in text for marker in AAC_ASSERTION_MARKERS)


class HlsTranscoder:
    def __init__(self, settings, governor, object_store, *, runner=run_process, cpu_count=None):
        self.settings = settings
        self.governor = governor
        self.object_store = object_store
        self.runner = runner
        self.cpu_count = int(cpu_count or governor.cpu_count)
        self.upload_policy = RetryPolicy.from_settings(settings)

    def _encode(self, source_path, renditions, output_dir, *, audio_copy):
        for rendition in renditions:
            os.makedirs(os.path.join(output_dir, rendition.name), exist_ok=True)
        command = build_transcode_command(
            self.settings.ffmpeg_path,
            source_path,
            renditions,
            output_dir,
            self.cpu_count,
            audio_copy=audio_copy,
        )
        self.governor.call(
            RESOURCE_DISK,
            lambda: self.runner(command, timeout=self.settings.transcode_timeout, cwd=output_dir),
            policy=NO_RETRY,
            label="transcode",
        )

    def encode(self, source_path, renditions, output_dir):
        """Run the encode, falling back to audio stream copy on the AAC assertion. Returns True on fallback."""
        try:
            self._encode(source_path, renditions, output_dir, audio_copy=False)
            return False
        except ProcessFailedError as exc:
            if not is_aac_assertion_failure(exc.output):
                raise
            log_event(logging.WARNING, "transcode_aac_assertion_fallback", source=source_path)
        self._encode(source_path, renditions, output_dir, audio_copy=True)
        return True

    def _upload_outputs(self, output_dir, podcast_title, episode_title):
        uploaded = []
        for root, _dirs, files in os.walk(output_dir):
            for filename in sorted(files):
                local_path = os.path.join(root, filename)
                relpath = os.path.relpath(local_path, output_dir).replace(os.sep, "/")
                key = stream_key(podcast_title, episode_title, relpath, prefix=self.settings.s3_key_prefix)
                result = self.governor.call(
                    RESOURCE_OBJECT_STORAGE,
                    lambda p=local_path, k=key: upload_or_raise(self.object_store, p, k),
                    policy=self.upload_policy,
                    label=f"upload {relpath}",
                )
                uploaded.append(result)
        return uploaded

    def transcode(self, source_path, top_tier, podcast_title, episode_title) -> TranscodeResult:
        if not os.path.isfile(source_path):
            raise TranscodeError(f"Transcode source missing: {source_path}")
        renditions = with_thread_allocation(ladder_for_tier(top_tier), self.cpu_count)
        output_dir = os.path.join(os.path.dirname(os.path.abspath(source_path)), HLS_OUTPUT_DIRNAME)
        os.makedirs(output_dir, exist_ok=True)
        log_event(
            logging.INFO,
            "transcode_started",
            source=source_path,
            renditions=[r.name for r in renditions],
            threads=[r.threads for r in renditions],
        )
        try:
            used_audio_copy = self.encode(source_path, renditions, output_dir)

            synthesized = False
            master_path = os.path.join(output_dir, MASTER_MANIFEST_NAME)
            if not os.path.isfile(master_path):
                logger.warning("ffmpeg wrote no master manifest; synthesizing %s", master_path)
                write_master_manifest(output_dir, renditions)
                synthesized = True

            uploaded = self._upload_outputs(output_dir, podcast_title, episode_title)
            master_key = stream_key(
                podcast_title, episode_title, MASTER_MANIFEST_NAME, prefix=self.settings.s3_key_prefix
            )
            master = next((item for item in uploaded if item.key == master_key), None)
            if master is None:
                raise TranscodeError(f"Master manifest was not uploaded: {master_key}")
            log_event(logging.INFO, "transcode_completed", master=master.location, files=len(uploaded))
            return TranscodeResult(
                master_location=master.location,
                master_key=master_key,
                renditions=renditions,
                uploaded_keys=[item.key for item in uploaded],
                used_audio_copy=used_audio_copy,
                synthesized_master=synthesized,
            )
        finally:
            remove_tree(output_dir)
