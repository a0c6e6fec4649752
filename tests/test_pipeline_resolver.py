from __future__ import annotations

from db.episode_patch import EpisodePatch
from db.models import NewEpisode
from engine.resolver import PipelineAction, classify_episode, resolve_pipeline_state


def _seed(store, title="Ep", source="vid-1"):
    return store.store_new_episode(
        NewEpisode(episode_title=title, channel_id="UC1", source_video_id=source, channel_name="Show")
    )


def test_unknown_source_needs_the_full_pipeline(make_store) -> None:
    decision = resolve_pipeline_state(make_store(), "vid-404", episode_title="Ep", channel_id="UC1")

    assert decision.action is PipelineAction.FULL_PIPELINE
    assert decision.episode_id is None
    assert decision.is_new_episode is True


def test_episode_without_media_reuses_its_id(make_store) -> None:
    store = make_store()
    episode_id = _seed(store)

    decision = resolve_pipeline_state(store, "vid-1")

    assert decision.action is PipelineAction.FULL_PIPELINE
    assert decision.episode_id == episode_id
    assert decision.is_new_episode is False


def test_media_without_manifest_reprocesses_transcode(make_store) -> None:
    store = make_store()
    episode_id = _seed(store)
    store.update_episode(episode_id, EpisodePatch(additional_data={"videoLocation": "s3://b/show/ep.mp4"}))

    decision = resolve_pipeline_state(store, "vid-1")

    assert decision.action is PipelineAction.REPROCESS_TRANSCODE
    assert decision.media_location == "s3://b/show/ep.mp4"


def test_media_and_manifest_present_skips(make_store) -> None:
    store = make_store()
    episode_id = _seed(store)
    store.update_episode(
        episode_id,
        EpisodePatch(
            original_media_uri="s3://b/show/ep.mp4",
            manifest_uri="s3://b/show/master.m3u8",
            processing_done=True,
        ),
    )

    decision = resolve_pipeline_state(store, "vid-1")

    assert decision.action is PipelineAction.SKIP
    assert decision.manifest_location == "s3://b/show/master.m3u8"


def test_title_and_channel_fallback_when_source_id_unknown(make_store) -> None:
    store = make_store()
    episode_id = _seed(store, source="old-id")

    decision = resolve_pipeline_state(store, "new-id", episode_title="Ep", channel_id="UC1")

    assert decision.episode_id == episode_id


def test_classify_none_is_full_pipeline() -> None:
    assert classify_episode(None).action is PipelineAction.FULL_PIPELINE
