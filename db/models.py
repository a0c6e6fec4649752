"""Row types for the ``Episodes`` and ``Guests`` tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

EPISODES_TABLE = 'public."Episodes"'
GUESTS_TABLE = 'public."Guests"'

CONTENT_TYPE_VIDEO = "video"
CONTENT_TYPE_AUDIO = "audio"

# Milestone keys kept in ``additionalData``.
VIDEO_LOCATION_KEY = "videoLocation"
MASTER_MANIFEST_KEY = "master_m3u8"
SOURCE_VIDEO_ID_KEY = "youtubeVideoId"
READY_NOTIFIED_KEY = "readyNotified"

# (attribute, column) in insert order.
EPISODE_COLUMNS = (
    ("episode_id", "episodeId"),
    ("source_video_id", "sourceVideoId"),
    ("channel_id", "channelId"),
    ("channel_name", "channelName"),
    ("episode_title", "episodeTitle"),
    ("episode_description", "episodeDescription"),
    ("host_name", "hostName"),
    ("host_description", "hostDescription"),
    ("country", "country"),
    ("genre", "genre"),
    ("language_code", "languageCode"),
    ("published_date", "publishedDate"),
    ("episode_uri", "episodeUri"),
    ("original_uri", "originalUri"),
    ("original_media_uri", "originalMediaUri"),
    ("manifest_uri", "manifestUri"),
    ("episode_images", "episodeImages"),
    ("duration_millis", "durationMillis"),
    ("content_type", "contentType"),
    ("guests", "guests"),
    ("guest_descriptions", "guestDescriptions"),
    ("guest_image_urls", "guestImageUrls"),
    ("topics", "topics"),
    ("processing_done", "processingDone"),
    ("is_synced", "isSynced"),
    ("processing_info", "processingInfo"),
    ("additional_data", "additionalData"),
    ("created_at", "createdAt"),
    ("updated_at", "updatedAt"),
    ("deleted_at", "deletedAt"),
)

ATTRIBUTE_TO_COLUMN = dict(EPISODE_COLUMNS)
COLUMN_TO_ATTRIBUTE = {column: attr for attr, column in EPISODE_COLUMNS}
JSON_COLUMNS = frozenset({"processingInfo", "additionalData"})
ARRAY_COLUMNS = frozenset({"episodeImages", "guests", "guestDescriptions", "guestImageUrls", "topics"})
TIMESTAMP_COLUMNS = frozenset({"publishedDate", "createdAt", "updatedAt", "deletedAt"})


def default_processing_info() -> dict:
    return {
        "episodeTranscribingDone": False,
        "summaryTranscribingDone": False,
        "summarizingDone": False,
        "numChunks": 0,
        "numRemovedChunks": 0,
        "chunkingDone": False,
        "quotingDone": False,
    }


@dataclass(frozen=True)
class NewEpisode:
    """Business fields supplied when an episode row is first created."""

    episode_title: str
    channel_id: str
    source_video_id: str
    channel_name: str | None = None
    episode_description: str = ""
    host_name: str | None = None
    host_description: str | None = None
    country: str | None = None
    genre: str | None = None
    language_code: str | None = None
    published_date: Any = None
    episode_uri: str | None = None
    original_uri: str | None = None
    episode_images: list = field(default_factory=list)
    duration_millis: int | None = None
    content_type: str = CONTENT_TYPE_VIDEO
    additional_data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Episode:
    episode_id: str
    episode_title: str
    channel_id: str
    source_video_id: str | None = None
    channel_name: str | None = None
    episode_description: str | None = None
    host_name: str | None = None
    host_description: str | None = None
    country: str | None = None
    genre: str | None = None
    language_code: str | None = None
    published_date: datetime | None = None
    episode_uri: str | None = None
    original_uri: str | None = None
    original_media_uri: str | None = None
    manifest_uri: str | None = None
    episode_images: list = field(default_factory=list)
    duration_millis: int | None = None
    content_type: str | None = None
    guests: list = field(default_factory=list)
    guest_descriptions: list = field(default_factory=list)
    guest_image_urls: list = field(default_factory=list)
    topics: list = field(default_factory=list)
    processing_done: bool = False
    is_synced: bool = False
    processing_info: dict = field(default_factory=dict)
    additional_data: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def media_location(self):
        return (self.additional_data or {}).get(VIDEO_LOCATION_KEY) or self.original_media_uri

    @property
    def manifest_location(self):
        return (self.additional_data or {}).get(MASTER_MANIFEST_KEY) or self.manifest_uri

    @property
    def ready_notified(self) -> bool:
        return bool((self.additional_data or {}).get(READY_NOTIFIED_KEY))


@dataclass(frozen=True)
class Guest:
    guest_name: str
    guest_description: str | None = None
    guest_image: str | None = None
    guest_language: str | None = None
    guest_id: str | None = None


def row_to_episode(row) -> Episode | None:
    if row is None:
        return None
    values = {}
    for attr, column in EPISODE_COLUMNS:
        if column not in row:
            continue
        value = row[column]
        if column in ARRAY_COLUMNS and value is None:
            value = []
        elif column in JSON_COLUMNS and value is None:
            value = {}
        elif column in ("processingDone", "isSynced"):
            value = bool(value)
        values[attr] = value
    return Episode(**values)


def row_to_guest(row) -> Guest | None:
    if row is None:
        return None
    return Guest(
        guest_id=row.get("guestId"),
        guest_name=row.get("guestName"),
        guest_description=row.get("guestDescription"),
        guest_image=row.get("guestImage"),
        guest_language=row.get("guestLanguage"),
    )
