"""Downstream "episode ready" notifications."""

from __future__ import annotations

import json
import logging
from typing import Protocol

import boto3

logger = logging.getLogger(__name__)


class EpisodeNotifier(Protocol):
    def notify_new_episode(self, episode_id: str, media_uri: str) -> None: ...


class SqsEpisodeNotifier:
    def __init__(self, queue_url, *, region="us-east-1", client=None):
        if not queue_url:
            raise ValueError("queue_url is required")
        self.queue_url = queue_url
        self._client = client or boto3.client("sqs", region_name=region)

    @classmethod
    def from_settings(cls, settings, client=None):
        return cls(settings.notification_queue_url, region=settings.s3_region, client=client)

    def notify_new_episode(self, episode_id, media_uri):
        body = json.dumps({"episodeId": episode_id, "mediaUri": media_uri})
        response = self._client.send_message(QueueUrl=self.queue_url, MessageBody=body)
        logger.info("Queued ready notification for episode %s (message %s)", episode_id, response.get("MessageId"))


class LoggingNotifier:
    """Used when no queue is configured; records the notification in the log only."""

    def notify_new_episode(self, episode_id, media_uri):
        logger.info("Episode %s ready at %s (no notification queue configured)", episode_id, media_uri)
