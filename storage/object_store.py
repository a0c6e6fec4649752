"""S3-backed durable storage for audio, merged video, thumbnails and HLS output."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from metadata.naming import create_slug

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".m4s": "video/iso.segment",
    ".m4a": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".aac": "audio/aac",
    ".opus": "audio/opus",
    ".webm": "video/webm",
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".json": "application/json",
}

_VIRTUAL_HOST_RE = re.compile(r"^(?P<bucket>[^.]+)\.s3(?:[.-](?P<region>[a-z0-9-]+))?\.amazonaws\.com$")


class UploadFailedError(RuntimeError):
    pass


@dataclass(frozen=True)
class UploadResult:
    success: bool
    key: str
    bucket: str
    location: str | None = None
    uri: str | None = None
    error: str | None = None


def content_type_for(path) -> str:
    return CONTENT_TYPES.get(os.path.splitext(str(path))[1].lower(), "application/octet-stream")


def _with_prefix(prefix, key):
    prefix = (prefix or "").strip("/")
    return f"{prefix}/{key}" if prefix else key


def audio_key(podcast_title, episode_title, ext="mp3", prefix=""):
    return _with_prefix(prefix, f"{create_slug(podcast_title)}/{create_slug(episode_title)}.{ext.lstrip('.')}")


def video_key(podcast_title, episode_title, ext="mp4", prefix=""):
    episode_slug = create_slug(episode_title)
    return _with_prefix(
        prefix, f"{create_slug(podcast_title)}/{episode_slug}/original/{episode_slug}.{ext.lstrip('.')}"
    )


def thumbnail_key(podcast_title, episode_title, ext="jpg", prefix=""):
    return _with_prefix(
        prefix, f"{create_slug(podcast_title)}/{create_slug(episode_title)}/thumbnail.{ext.lstrip('.')}"
    )


def stream_key(podcast_title, episode_title, relpath, prefix=""):
    episode_slug = create_slug(episode_title)
    return _with_prefix(
        prefix, f"{create_slug(podcast_title)}/{episode_slug}/original/video_stream/{relpath.lstrip('/')}"
    )


def upload_or_raise(store, local_path, key):
    """Upload and turn an unsuccessful result into an exception the retry wrapper sees."""
    result = store.upload(local_path, key)
    if not result.success:
        raise UploadFailedError(f"Upload of {local_path} to {key} failed: {result.error}")
    return result


class S3ObjectStore:
    def __init__(self, bucket, *, region="us-east-1", endpoint_url=None, client=None):
        if not bucket:
            raise ValueError("bucket is required")
        self.bucket = bucket
        self.region = region or "us-east-1"
        self.endpoint_url = endpoint_url
        self._client = client or boto3.client("s3", region_name=self.region, endpoint_url=endpoint_url)

    @classmethod
    def from_settings(cls, settings, client=None):
        return cls(
            settings.s3_bucket,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            client=client,
        )

    def public_url(self, key):
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def parse_location(self, location):
        """Return ``(bucket, key)`` for an ``s3://`` URI or a public URL, else None."""
        if not location:
            return None
        parsed = urlparse(location)
        if parsed.scheme == "s3":
            return parsed.netloc, unquote(parsed.path.lstrip("/"))
        if parsed.scheme not in ("http", "https"):
            return None
        match = _VIRTUAL_HOST_RE.match(parsed.netloc)
        if match:
            return match.group("bucket"), unquote(parsed.path.lstrip("/"))
        path = unquote(parsed.path.lstrip("/"))
        if "/" in path:
            bucket, key = path.split("/", 1)
            return bucket, key
        return None

    def upload(self, local_path, key) -> UploadResult:
        if not os.path.isfile(local_path):
            return UploadResult(False, key, self.bucket, error=f"File not found: {local_path}")
        try:
            self._client.upload_file(
                local_path,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type_for(local_path)},
            )
        except (Boto3Error, BotoCoreError, ClientError, OSError) as exc:
            logger.error("S3 upload failed for %s -> s3://%s/%s: %s", local_path, self.bucket, key, exc)
            return UploadResult(False, key, self.bucket, error=str(exc))
        location = self.public_url(key)
        logger.info("Uploaded %s to %s", local_path, location)
        return UploadResult(True, key, self.bucket, location=location, uri=f"s3://{self.bucket}/{key}")

    def delete(self, local_path) -> bool:
        """Remove a local file once its upload is no longer needed."""
        try:
            os.remove(local_path)
            return True
        except FileNotFoundError:
            return False

    def download(self, location, local_path):
        parsed = self.parse_location(location)
        if parsed is None:
            raise ValueError(f"Not an object storage location: {location}")
        bucket, key = parsed
        os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
        self._client.download_file(bucket, key, local_path)
        return local_path

    def object_exists(self, location) -> bool:
        parsed = self.parse_location(location)
        if parsed is None:
            return False
        bucket, key = parsed
        try:
            self._client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as exc:
            code = str((exc.response or {}).get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
