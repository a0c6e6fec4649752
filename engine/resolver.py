"""Decide how much of the pipeline a work item still needs.

Repeated delivery of the same source (at-least-once queues) is safe because
the decision only depends on which milestones the stored episode already has.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from engine.json_utils import log_event


class PipelineAction(str, enum.Enum):
    FULL_PIPELINE = "full_pipeline"
    REPROCESS_TRANSCODE = "reprocess_transcode"
    SKIP = "skip"


@dataclass(frozen=True)
class PipelineDecision:
    action: PipelineAction
    episode_id: str | None = None
    media_location: str | None = None
    manifest_location: str | None = None
    ready_notified: bool = False

    @property
    def is_new_episode(self) -> bool:
        return self.action is PipelineAction.FULL_PIPELINE and self.episode_id is None


def classify_episode(episode) -> PipelineDecision:
    if episode is None:
        return PipelineDecision(PipelineAction.FULL_PIPELINE)
    media = episode.media_location
    manifest = episode.manifest_location
    if media and manifest:
        action = PipelineAction.SKIP
    elif media:
        action = PipelineAction.REPROCESS_TRANSCODE
    else:
        action = PipelineAction.FULL_PIPELINE
    return PipelineDecision(action, episode.episode_id, media, manifest, episode.ready_notified)


def resolve_pipeline_state(store, source_video_id, *, episode_title=None, channel_id=None) -> PipelineDecision:
    """Look the source up (by id, then by title/channel) and classify it."""
    episode = store.check_episode_exists_by_source_id(source_video_id)
    if episode is None and episode_title and channel_id:
        episode = store.check_episode_exists(episode_title, channel_id)
    decision = classify_episode(episode)
    log_event(
        logging.INFO,
        "pipeline_state_resolved",
        source_video_id=source_video_id,
        action=decision.action.value,
        episode_id=decision.episode_id,
    )
    return decision
