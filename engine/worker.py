"""Message-level entry point: parse job messages and run them through the pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from config.settings import load_settings, require_database, require_object_storage, verify_binaries
from db.episode_store import EpisodeStore
from engine.errors import DuplicateEpisodeError, PipelineStageError
from engine.governor import ResourceGovernor
from engine.json_utils import log_event
from engine.logging_setup import setup_logging
from engine.notifications import LoggingNotifier, SqsEpisodeNotifier
from engine.pipeline import EpisodePipeline
from metadata.episode_fields import JobMessage
from storage.object_store import S3ObjectStore

logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_DUPLICATE = "duplicate"
STATUS_FAILED = "failed"


class EpisodeWorker:
    def __init__(self, pipeline, *, max_workers=None):
        self.pipeline = pipeline
        cpu = getattr(pipeline.governor, "cpu_count", None) or 1
        self.max_workers = max(1, int(max_workers or cpu))

    def process_message(self, body) -> dict:
        try:
            message = JobMessage.from_body(body)
        except ValueError as exc:
            logger.error("Rejected job message: %s", exc)
            return {"status": STATUS_FAILED, "error": str(exc), "stage": "parse"}

        try:
            outcome = self.pipeline.process(message)
        except DuplicateEpisodeError as exc:
            log_event(
                logging.WARNING,
                "episode_duplicate",
                video_id=message.video_id,
                existing_episode_id=exc.existing_episode_id,
                reason=exc.reason,
            )
            return {
                "status": STATUS_DUPLICATE,
                "videoId": message.video_id,
                "episodeId": exc.existing_episode_id,
                "error": str(exc),
            }
        except PipelineStageError as exc:
            logger.exception("Pipeline failed for %s at %s", message.video_id, exc.stage)
            return {"status": STATUS_FAILED, "videoId": message.video_id, "stage": exc.stage, "error": str(exc)}
        except Exception as exc:
            logger.exception("Pipeline failed for %s", message.video_id)
            return {"status": STATUS_FAILED, "videoId": message.video_id, "error": str(exc)}

        return {
            "status": outcome.status,
            "videoId": message.video_id,
            "episodeId": outcome.episode_id,
            "action": outcome.action.value,
            "mediaLocation": outcome.media_location,
            "manifestLocation": outcome.manifest_location,
            "notified": outcome.notified,
        }

    def process_batch(self, bodies) -> list[dict]:
        """Run every message concurrently; results keep the input order."""
        bodies = list(bodies)
        if not bodies:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(bodies)), thread_name_prefix="episode") as pool:
            return list(pool.map(self.process_message, bodies))


def build_worker(settings, *, enricher=None):
    """Wire a worker from settings. The caller owns ``worker.pipeline.store``."""
    verify_binaries(settings)
    require_database(settings)
    require_object_storage(settings)
    governor = ResourceGovernor.from_settings(settings)
    store = EpisodeStore(settings, governor, ensure_schema=True).open()
    object_store = S3ObjectStore.from_settings(settings)
    if settings.notification_queue_url:
        notifier = SqsEpisodeNotifier.from_settings(settings)
    else:
        notifier = LoggingNotifier()
    pipeline = EpisodePipeline(settings, governor, store, object_store, notifier=notifier, enricher=enricher)
    return EpisodeWorker(pipeline)


def _load_messages(path):
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, list):
        return payload
    return [payload]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest source videos into HLS episodes.")
    parser.add_argument("messages", nargs="+", help="JSON files, each holding one job message or a list of them.")
    parser.add_argument("--log-level", default=None, help="Override CASTFORGE_LOG_LEVEL.")
    args = parser.parse_args(argv)

    settings = load_settings()
    setup_logging(settings.log_dir, args.log_level or settings.log_level)

    bodies = []
    for path in args.messages:
        bodies.extend(_load_messages(path))

    worker = build_worker(settings)
    try:
        results = worker.process_batch(bodies)
    finally:
        worker.pipeline.store.close()

    for result in results:
        print(json.dumps(result, sort_keys=True))
    return 1 if any(result["status"] == STATUS_FAILED for result in results) else 0


if __name__ == "__main__":
    sys.exit(main())
