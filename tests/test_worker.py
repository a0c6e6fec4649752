from __future__ import annotations

import json
import threading
from types import SimpleNamespace

from engine.errors import DuplicateEpisodeError, PipelineStageError
from engine.pipeline import PipelineOutcome
from engine.resolver import PipelineAction
from engine.worker import EpisodeWorker


def _body(video_id="vid-1", **overrides):
    body = {
        "videoId": video_id,
        "episodeTitle": f"Episode {video_id}",
        "channelName": "The Show",
        "channelId": "UC1",
        "originalUri": f"https://www.youtube.com/watch?v={video_id}",
    }
    body.update(overrides)
    return body


class _Pipeline:
    def __init__(self, behaviours=None):
        self.governor = SimpleNamespace(cpu_count=4)
        self.behaviours = behaviours or {}
        self.seen = []
        self.lock = threading.Lock()

    def process(self, message):
        with self.lock:
            self.seen.append(message.video_id)
        behaviour = self.behaviours.get(message.video_id)
        if isinstance(behaviour, BaseException):
            raise behaviour
        if behaviour == "skip":
            return PipelineOutcome(status="skipped", action=PipelineAction.SKIP, episode_id=f"ep-{message.video_id}")
        return PipelineOutcome(
            status="completed",
            action=PipelineAction.FULL_PIPELINE,
            episode_id=f"ep-{message.video_id}",
            media_location="s3://b/ep.mp4",
            manifest_location="s3://b/master.m3u8",
            notified=True,
        )


def test_completed_message_reports_locations() -> None:
    worker = EpisodeWorker(_Pipeline())

    result = worker.process_message(json.dumps(_body()))

    assert result == {
        "status": "completed",
        "videoId": "vid-1",
        "episodeId": "ep-vid-1",
        "action": "full_pipeline",
        "mediaLocation": "s3://b/ep.mp4",
        "manifestLocation": "s3://b/master.m3u8",
        "notified": True,
    }


def test_malformed_message_fails_without_running_pipeline() -> None:
    pipeline = _Pipeline()

    result = EpisodeWorker(pipeline).process_message({"videoId": "vid-1"})

    assert result["status"] == "failed"
    assert result["stage"] == "parse"
    assert "episodeTitle" in result["error"]
    assert pipeline.seen == []


def test_duplicate_and_stage_failures_map_to_statuses() -> None:
    pipeline = _Pipeline(
        {
            "dup": DuplicateEpisodeError("exists", existing_episode_id="ep-old", reason="title_channel"),
            "bad": PipelineStageError("transcode", RuntimeError("ffmpeg exited with code 1")),
            "worse": KeyError("surprise"),
        }
    )
    worker = EpisodeWorker(pipeline)

    duplicate = worker.process_message(_body("dup"))
    failed = worker.process_message(_body("bad"))
    unexpected = worker.process_message(_body("worse"))

    assert duplicate["status"] == "duplicate"
    assert duplicate["episodeId"] == "ep-old"
    assert failed == {
        "status": "failed",
        "videoId": "bad",
        "stage": "transcode",
        "error": "transcode failed: ffmpeg exited with code 1",
    }
    assert unexpected["status"] == "failed"


def test_batch_isolates_failures_and_keeps_order() -> None:
    pipeline = _Pipeline({"b": PipelineStageError("merge", RuntimeError("empty")), "c": "skip"})
    worker = EpisodeWorker(pipeline, max_workers=3)

    results = worker.process_batch([_body("a"), _body("b"), _body("c"), "not json"])

    assert [result["status"] for result in results] == ["completed", "failed", "skipped", "failed"]
    assert sorted(pipeline.seen) == ["a", "b", "c"]


def test_batch_of_nothing() -> None:
    assert EpisodeWorker(_Pipeline()).process_batch([]) == []
