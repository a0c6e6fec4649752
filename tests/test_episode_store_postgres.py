from __future__ import annotations

import os
import threading
import uuid

import pytest

from config.settings import PipelineSettings
from db.episode_patch import EpisodePatch
from db.episode_store import EpisodeStore
from db.models import NewEpisode
from engine.errors import DuplicateEpisodeError
from engine.governor import ResourceGovernor

_DATABASE_URL = os.environ.get("CASTFORGE_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not _DATABASE_URL, reason="CASTFORGE_TEST_DATABASE_URL is not set")


@pytest.fixture
def store():
    settings = PipelineSettings(database_url=_DATABASE_URL, db_pool_max=8, retry_base_delay=0.05)
    episode_store = EpisodeStore(settings, ResourceGovernor(cpu_count=4), ensure_schema=True).open()
    yield episode_store
    episode_store.close()


def test_concurrent_inserts_against_postgres(store) -> None:
    channel = f"it-{uuid.uuid4()}"
    barrier = threading.Barrier(5)
    created = []
    duplicates = []

    def _insert(index):
        barrier.wait()
        try:
            created.append(
                store.store_new_episode(
                    NewEpisode(episode_title="Same title", channel_id=channel, source_video_id=f"{channel}-{index}")
                )
            )
        except DuplicateEpisodeError:
            duplicates.append(index)

    threads = [threading.Thread(target=_insert, args=(i,)) for i in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created) == 1
    assert len(duplicates) == 4


def test_update_round_trip_against_postgres(store) -> None:
    channel = f"it-{uuid.uuid4()}"
    episode_id = store.store_new_episode(
        NewEpisode(
            episode_title="Round trip",
            channel_id=channel,
            source_video_id=channel,
            additional_data={"youtubeVideoId": channel},
        )
    )

    episode = store.update_episode(
        episode_id,
        EpisodePatch(
            original_media_uri="s3://b/ep.mp4",
            content_type="video",
            additional_data={"videoLocation": "s3://b/ep.mp4"},
        ),
    )

    assert episode.media_location == "s3://b/ep.mp4"
    assert episode.additional_data["youtubeVideoId"] == channel
    assert store.check_episode_exists_by_source_id(channel).episode_id == episode_id
