"""Per-episode orchestration: acquire, merge, persist, transcode, record.

Video and audio are acquired as two concurrent tasks that join at the merge.
The audio task continues straight into a short sequential branch (upload,
resolve identity, persist) so the episode row exists before video finishes.
Everything after the merge runs sequentially for the episode.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

from db.episode_patch import UNSET, EpisodePatch
from db.models import CONTENT_TYPE_VIDEO, MASTER_MANIFEST_KEY, READY_NOTIFIED_KEY, VIDEO_LOCATION_KEY
from engine.errors import (
    ConfigurationError,
    DuplicateEpisodeError,
    PipelineStageError,
    ValidationFailureError,
)
from engine.enrichment import apply_enrichment
from engine.governor import RESOURCE_NETWORK, RESOURCE_OBJECT_STORAGE, RetryPolicy
from engine.json_utils import log_event
from engine.paths import build_pipeline_paths, merged_output_path, temp_output_template
from engine.resolver import PipelineAction, resolve_pipeline_state
from engine.validation import PostProcessValidator
from media.acquisition import MediaAcquirer, select_quality_tier, template_outputs
from media.cleanup import cleanup_artifacts
from media.ffprobe import get_media_duration
from media.merge import merge_video_audio
from media.transcode import HlsTranscoder
from metadata.episode_fields import build_new_episode
from storage.object_store import audio_key, thumbnail_key, upload_or_raise, video_key

logger = logging.getLogger(__name__)

STAGE_ACQUISITION = "acquisition"
STAGE_UPLOAD = "upload"
STAGE_PERSISTENCE = "persistence"
STAGE_NOTIFICATION = "notification"
STAGE_MERGE = "merge"
STAGE_TRANSCODE = "transcode"
STAGE_VALIDATION = "validation"

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"

_PASSTHROUGH_ERRORS = (DuplicateEpisodeError, PipelineStageError, ConfigurationError)


@dataclass(frozen=True)
class AudioBranchResult:
    audio_path: str
    audio_location: str
    episode_id: str
    is_new_episode: bool
    notified: bool
    thumbnail_location: str | None = None


@dataclass(frozen=True)
class PipelineOutcome:
    status: str
    action: PipelineAction
    episode_id: str | None
    audio_location: str | None = None
    media_location: str | None = None
    manifest_location: str | None = None
    notified: bool = False


def run_stage(stage, fn, *args, **kwargs):
    """Call ``fn`` and wrap any failure with the stage that produced it."""
    try:
        return fn(*args, **kwargs)
    except _PASSTHROUGH_ERRORS:
        raise
    except Exception as exc:
        raise PipelineStageError(stage, exc) from exc


class EpisodePipeline:
    def __init__(
        self,
        settings,
        governor,
        store,
        object_store,
        *,
        paths=None,
        acquirer=None,
        transcoder=None,
        notifier=None,
        enricher=None,
        validator=None,
        merger=merge_video_audio,
        duration_probe=get_media_duration,
    ):
        self.settings = settings
        self.governor = governor
        self.store = store
        self.object_store = object_store
        self.paths = paths or build_pipeline_paths(settings)
        self.acquirer = acquirer or MediaAcquirer(settings, governor)
        self.transcoder = transcoder or HlsTranscoder(settings, governor, object_store)
        self.notifier = notifier
        self.enricher = enricher
        self.upload_policy = RetryPolicy.from_settings(settings)
        self.validator = validator or PostProcessValidator(store, governor, object_store, policy=self.upload_policy)
        self.merger = merger
        self.duration_probe = duration_probe

    # helpers

    def _upload(self, local_path, key):
        return self.governor.call(
            RESOURCE_OBJECT_STORAGE,
            lambda: upload_or_raise(self.object_store, local_path, key),
            policy=self.upload_policy,
            label=f"upload {os.path.basename(local_path)}",
        )

    def _upload_thumbnail(self, message, metadata):
        if not getattr(metadata, "thumbnail", None):
            return None
        ext = os.path.splitext(metadata.thumbnail.split("?", 1)[0])[1].lstrip(".") or "jpg"
        local_path = os.path.join(self.paths.temp_dir, f"thumbnail_{message.video_id}.{ext}")
        try:
            self.acquirer.download_thumbnail(metadata.thumbnail, local_path)
            result = self._upload(
                local_path,
                thumbnail_key(message.channel_name, message.episode_title, ext, prefix=self.settings.s3_key_prefix),
            )
            return result.location
        except Exception as exc:
            # optional
            logger.warning("Thumbnail for %s not stored: %s", message.video_id, exc)
            return None
        finally:
            cleanup_artifacts([local_path], self.paths.temp_dir)

    def _notify(self, episode_id, media_uri):
        if self.notifier is None:
            return False
        self.governor.call(
            RESOURCE_NETWORK,
            lambda: self.notifier.notify_new_episode(episode_id, media_uri),
            policy=self.upload_policy,
            label="ready notification",
        )
        return True

    # audio branch

    def _audio_branch(self, message, metadata, audio_template):
        audio_path = run_stage(STAGE_ACQUISITION, self.acquirer.acquire_audio, message.original_uri, audio_template)
        thumbnail_location = self._upload_thumbnail(message, metadata)
        ext = os.path.splitext(audio_path)[1].lstrip(".") or "mp3"
        audio_upload = run_stage(
            STAGE_UPLOAD,
            self._upload,
            audio_path,
            audio_key(message.channel_name, message.episode_title, ext, prefix=self.settings.s3_key_prefix),
        )

        # re-resolve: the row may have been created during the download
        decision = run_stage(
            STAGE_PERSISTENCE,
            resolve_pipeline_state,
            self.store,
            message.video_id,
            episode_title=message.episode_title,
            channel_id=message.channel_id,
        )
        if decision.episode_id is None:
            new_episode = build_new_episode(
                message,
                metadata,
                audio_uri=audio_upload.location,
                thumbnail_uri=thumbnail_location,
            )
            episode_id = run_stage(STAGE_PERSISTENCE, self.store.store_new_episode, new_episode)
            is_new = True
            already_notified = False
        else:
            episode_id = decision.episode_id
            run_stage(
                STAGE_PERSISTENCE,
                self.store.update_episode,
                episode_id,
                EpisodePatch(episode_uri=audio_upload.location),
            )
            is_new = False
            already_notified = decision.ready_notified

        notified = False
        if not already_notified:
            notified = run_stage(STAGE_NOTIFICATION, self._notify, episode_id, audio_upload.location)
        if notified:
            run_stage(
                STAGE_PERSISTENCE,
                self.store.update_episode,
                episode_id,
                EpisodePatch(additional_data={READY_NOTIFIED_KEY: True}),
            )
        return AudioBranchResult(
            audio_path=audio_path,
            audio_location=audio_upload.location,
            episode_id=episode_id,
            is_new_episode=is_new,
            notified=notified,
            thumbnail_location=thumbnail_location,
        )

    # post-merge

    def _duration_millis(self, metadata, merged_path):
        if getattr(metadata, "duration", None):
            return int(metadata.duration * 1000)
        try:
            return int(self.duration_probe(merged_path, ffprobe_path=self.settings.ffprobe_path) * 1000)
        except (RuntimeError, ValueError) as exc:
            logger.warning("Could not probe duration of %s: %s", merged_path, exc)
            return UNSET

    def _transcode_and_record(self, episode_id, merged_path, tier, message, media_location):
        result = run_stage(
            STAGE_TRANSCODE,
            self.transcoder.transcode,
            merged_path,
            tier,
            message.channel_name,
            message.episode_title,
        )
        episode = run_stage(
            STAGE_PERSISTENCE,
            self.store.update_episode,
            episode_id,
            EpisodePatch(
                manifest_uri=result.master_location,
                processing_done=True,
                additional_data={MASTER_MANIFEST_KEY: result.master_location},
            ),
        )
        report = self.validator.validate(
            episode_id,
            expect_additional_data=(VIDEO_LOCATION_KEY, MASTER_MANIFEST_KEY),
            locations=(media_location, result.master_location),
            require_processing_done=True,
            require_video_content=True,
        )
        if not report.ok:
            raise PipelineStageError(
                STAGE_VALIDATION,
                ValidationFailureError("; ".join(report.errors)),
            )
        self._enrich(episode, message)
        return result.master_location

    def _enrich(self, episode, message):
        if self.enricher is None or episode is None:
            return
        try:
            apply_enrichment(self.store, self.enricher, episode, podcast_title=message.channel_name)
        except Exception:
            # best effort
            logger.exception("enrichment_failed episode_id=%s", episode.episode_id)

    # entry points

    def process(self, message, metadata=None) -> PipelineOutcome:
        decision = run_stage(
            STAGE_PERSISTENCE,
            resolve_pipeline_state,
            self.store,
            message.video_id,
            episode_title=message.episode_title,
            channel_id=message.channel_id,
        )
        if decision.action is PipelineAction.SKIP:
            log_event(logging.INFO, "pipeline_skipped", episode_id=decision.episode_id, video_id=message.video_id)
            return PipelineOutcome(
                status=STATUS_SKIPPED,
                action=decision.action,
                episode_id=decision.episode_id,
                media_location=decision.media_location,
                manifest_location=decision.manifest_location,
            )

        if metadata is None:
            metadata = run_stage(STAGE_ACQUISITION, self.acquirer.fetch_metadata, message.original_uri)
        tier = select_quality_tier(metadata, self.settings.hd_filesize_threshold)

        if decision.action is PipelineAction.REPROCESS_TRANSCODE:
            return self._reprocess_transcode(decision, message, tier)
        return self._run_full(message, metadata, tier)

    def _reprocess_transcode(self, decision, message, tier):
        merged_path = merged_output_path(self.paths, message.channel_name, message.episode_title)
        log_event(logging.INFO, "pipeline_reprocess_transcode", episode_id=decision.episode_id)
        try:
            run_stage(
                STAGE_ACQUISITION,
                self.governor.call,
                RESOURCE_OBJECT_STORAGE,
                lambda: self.object_store.download(decision.media_location, merged_path),
                policy=self.upload_policy,
                label="fetch merged media",
            )
            manifest = self._transcode_and_record(
                decision.episode_id, merged_path, tier, message, decision.media_location
            )
        finally:
            cleanup_artifacts([merged_path], self.paths.downloads_root)
        return PipelineOutcome(
            status=STATUS_COMPLETED,
            action=decision.action,
            episode_id=decision.episode_id,
            media_location=decision.media_location,
            manifest_location=manifest,
        )

    def _run_full(self, message, metadata, tier):
        video_template = temp_output_template(self.paths, "video", message.channel_name, message.episode_title)
        audio_template = temp_output_template(self.paths, "audio", message.channel_name, message.episode_title)
        merged_path = merged_output_path(self.paths, message.channel_name, message.episode_title)
        log_event(
            logging.INFO,
            "pipeline_started",
            video_id=message.video_id,
            tier=tier,
            merged_path=merged_path,
        )
        try:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"acquire-{message.video_id}") as pool:
                video_future = pool.submit(
                    run_stage,
                    STAGE_ACQUISITION,
                    self.acquirer.acquire_video,
                    message.original_uri,
                    video_template,
                    tier,
                )
                audio_future = pool.submit(self._audio_branch, message, metadata, audio_template)
                wait([video_future, audio_future])
            # Audio errors first: a duplicate must surface as a duplicate.
            audio = audio_future.result()
            video_path = video_future.result()

            run_stage(
                STAGE_MERGE,
                self.merger,
                video_path,
                audio.audio_path,
                merged_path,
                ffmpeg_path=self.settings.ffmpeg_path,
                timeout=self.settings.merge_timeout,
            )
            cleanup_artifacts([video_path, audio.audio_path], self.paths.temp_dir)

            video_upload = run_stage(
                STAGE_UPLOAD,
                self._upload,
                merged_path,
                video_key(message.channel_name, message.episode_title, prefix=self.settings.s3_key_prefix),
            )
            run_stage(
                STAGE_PERSISTENCE,
                self.store.update_episode,
                audio.episode_id,
                EpisodePatch(
                    original_media_uri=video_upload.location,
                    content_type=CONTENT_TYPE_VIDEO,
                    duration_millis=self._duration_millis(metadata, merged_path),
                    additional_data={VIDEO_LOCATION_KEY: video_upload.location},
                ),
            )
            manifest = self._transcode_and_record(
                audio.episode_id, merged_path, tier, message, video_upload.location
            )
        except BaseException:
            log_event(logging.ERROR, "pipeline_failed", video_id=message.video_id)
            raise
        finally:
            cleanup_artifacts(template_outputs(video_template) + template_outputs(audio_template), self.paths.temp_dir)
            cleanup_artifacts([merged_path], self.paths.downloads_root)

        log_event(logging.INFO, "pipeline_completed", episode_id=audio.episode_id, manifest=manifest)
        return PipelineOutcome(
            status=STATUS_COMPLETED,
            action=PipelineAction.FULL_PIPELINE,
            episode_id=audio.episode_id,
            audio_location=audio.audio_location,
            media_location=video_upload.location,
            manifest_location=manifest,
            notified=audio.notified,
        )
