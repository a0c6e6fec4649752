"""Job message parsing and the field values a new episode row starts with."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from db.models import SOURCE_VIDEO_ID_KEY, NewEpisode
from metadata.naming import sanitize_description

_REQUIRED_MESSAGE_KEYS = ("videoId", "episodeTitle", "channelName", "channelId", "originalUri")


@dataclass(frozen=True)
class JobMessage:
    """One unit of work: which source to ingest and the channel it belongs to."""

    video_id: str
    episode_title: str
    channel_name: str
    channel_id: str
    original_uri: str
    published_date: str | None = None
    content_type: str = "video"
    host_name: str | None = None
    host_description: str | None = None
    language_code: str | None = None
    genre: str | None = None
    country: str | None = None
    website_link: str | None = None
    additional_data: dict = field(default_factory=dict)

    @classmethod
    def from_body(cls, body):
        """Parse a queue message body (dict or JSON text). Missing keys raise ``ValueError``."""
        if isinstance(body, (str, bytes)):
            try:
                body = json.loads(body)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Job message is not valid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise ValueError("Job message must be a JSON object")
        missing = [key for key in _REQUIRED_MESSAGE_KEYS if not str(body.get(key) or "").strip()]
        if missing:
            raise ValueError("Job message missing required field(s): " + ", ".join(missing))
        additional = body.get("additionalData") or {}
        if not isinstance(additional, dict):
            raise ValueError("additionalData must be an object")
        return cls(
            video_id=str(body["videoId"]).strip(),
            episode_title=str(body["episodeTitle"]).strip(),
            channel_name=str(body["channelName"]).strip(),
            channel_id=str(body["channelId"]).strip(),
            original_uri=str(body["originalUri"]).strip(),
            published_date=body.get("publishedDate"),
            content_type=str(body.get("contentType") or "video"),
            host_name=body.get("hostName"),
            host_description=body.get("hostDescription"),
            language_code=body.get("languageCode"),
            genre=body.get("genre"),
            country=body.get("country"),
            website_link=body.get("websiteLink"),
            additional_data=dict(additional),
        )


def parse_published_date(value):
    """Accept ISO-8601 text or yt-dlp's ``YYYYMMDD``; return an aware datetime or None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if re.fullmatch(r"\d{8}", text):
        return datetime.strptime(text, "%Y%m%d").replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_new_episode(message: JobMessage, metadata, *, audio_uri=None, thumbnail_uri=None):
    """Combine the job message and fetched metadata into a ``NewEpisode``."""
    additional = dict(message.additional_data)
    additional.setdefault(SOURCE_VIDEO_ID_KEY, message.video_id)
    additional.setdefault("youtubeChannelId", message.channel_id)
    additional.setdefault("youtubeUrl", message.original_uri)
    duration = getattr(metadata, "duration", None)
    return NewEpisode(
        episode_title=message.episode_title,
        channel_id=message.channel_id,
        source_video_id=message.video_id,
        channel_name=message.channel_name,
        episode_description=sanitize_description(getattr(metadata, "description", "")),
        host_name=message.host_name,
        host_description=message.host_description,
        country=message.country,
        genre=message.genre,
        language_code=message.language_code,
        published_date=parse_published_date(message.published_date or getattr(metadata, "upload_date", None)),
        episode_uri=audio_uri,
        original_uri=message.original_uri,
        episode_images=[thumbnail_uri] if thumbnail_uri else [],
        duration_millis=int(duration * 1000) if duration else 0,
        content_type=message.content_type or "video",
        additional_data=additional,
    )
