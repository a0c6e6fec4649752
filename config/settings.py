"""Pipeline settings, built once at process start and passed down explicitly."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import Mapping

from engine.errors import ConfigurationError

# Source files smaller than this (bytes, yt-dlp ``filesize_approx``) get the 1080p ladder.
HD_FILESIZE_THRESHOLD = 1_000_000

DEFAULT_ACQUISITION_TIMEOUT_SECONDS = 2 * 60 * 60
DEFAULT_MERGE_TIMEOUT_SECONDS = 30 * 60
DEFAULT_TRANSCODE_TIMEOUT_SECONDS = 4 * 60 * 60

CONNECTION_MODE_SINGLE = "single"
CONNECTION_MODE_POOL = "pool"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class PipelineSettings:
    ytdlp_path: str = "yt-dlp"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    downloads_dir: str = "downloads"
    log_dir: str = "logs"
    log_level: str = "INFO"
    cookies_file: str | None = None
    plugin_dirs: tuple[str, ...] = ()
    concurrent_fragments: int = 4
    preferred_audio_format: str = "mp3"
    hd_filesize_threshold: int = HD_FILESIZE_THRESHOLD

    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_key_prefix: str = ""
    s3_endpoint_url: str | None = None
    notification_queue_url: str | None = None

    database_url: str | None = None
    db_host: str | None = None
    db_port: int = 5432
    db_name: str | None = None
    db_user: str | None = None
    db_password: str | None = None
    db_sslmode: str | None = None
    db_connection_mode: str = CONNECTION_MODE_POOL
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_lock_timeout_ms: int = 5000
    db_transaction_attempts: int = 5

    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_multiplier: float = 2.0
    validation_attempts: int = 3

    acquisition_timeout: float = DEFAULT_ACQUISITION_TIMEOUT_SECONDS
    merge_timeout: float = DEFAULT_MERGE_TIMEOUT_SECONDS
    transcode_timeout: float = DEFAULT_TRANSCODE_TIMEOUT_SECONDS

    # Per-pool permit overrides, keyed by governor resource name.
    concurrency_overrides: Mapping[str, int] = field(default_factory=dict)

    def database_dsn_kwargs(self) -> dict:
        if self.database_url:
            return {"dsn": self.database_url}
        kwargs = {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
        }
        if self.db_sslmode:
            kwargs["sslmode"] = self.db_sslmode
        return kwargs


def _env_str(env, key, default=None):
    value = env.get(key)
    if value is None:
        return default
    value = str(value).strip()
    return value or default


def _env_int(env, key, default):
    raw = _env_str(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc


def _env_float(env, key, default):
    raw = _env_str(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc


def _env_positive_int(env, key):
    raw = _env_str(env, key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _concurrency_overrides(env) -> dict[str, int]:
    overrides = {}
    disk = _env_positive_int(env, "DISK_CONCURRENCY") or _env_positive_int(env, "SEMAPHORE_MAX_CONCURRENCY")
    if disk:
        overrides["disk"] = disk
    network = _env_positive_int(env, "HTTP_CONCURRENCY")
    if network:
        overrides["network"] = network
    upload = _env_positive_int(env, "S3_UPLOAD_CONCURRENCY")
    if upload:
        overrides["object-storage"] = upload
    db = _env_positive_int(env, "DB_MAX_INFLIGHT")
    if db:
        overrides["database-write"] = db
    return overrides


def load_settings(environ: Mapping[str, str] | None = None) -> PipelineSettings:
    """Build settings from environment variables.

    This is the only place environment variables are read; everything below it
    receives the resulting ``PipelineSettings``.
    """
    env = os.environ if environ is None else environ

    mode = (_env_str(env, "CASTFORGE_DB_CONNECTION_MODE", CONNECTION_MODE_POOL) or "").lower()
    if mode not in (CONNECTION_MODE_SINGLE, CONNECTION_MODE_POOL):
        raise ConfigurationError(f"CASTFORGE_DB_CONNECTION_MODE must be 'single' or 'pool', got {mode!r}")

    plugin_dirs_raw = _env_str(env, "CASTFORGE_YTDLP_PLUGIN_DIRS", "") or ""
    plugin_dirs = tuple(p for p in (part.strip() for part in plugin_dirs_raw.split(os.pathsep)) if p)

    retry_base_delay_ms = _env_int(env, "RETRY_BASE_DELAY_MS", 500)

    return PipelineSettings(
        ytdlp_path=_env_str(env, "CASTFORGE_YTDLP_PATH", "yt-dlp"),
        ffmpeg_path=_env_str(env, "CASTFORGE_FFMPEG_PATH", "ffmpeg"),
        ffprobe_path=_env_str(env, "CASTFORGE_FFPROBE_PATH", "ffprobe"),
        downloads_dir=_env_str(env, "CASTFORGE_DOWNLOADS_DIR", "downloads"),
        log_dir=_env_str(env, "CASTFORGE_LOG_DIR", "logs"),
        log_level=(_env_str(env, "CASTFORGE_LOG_LEVEL", "INFO") or "INFO").upper(),
        cookies_file=_env_str(env, "CASTFORGE_COOKIES_FILE"),
        plugin_dirs=plugin_dirs,
        concurrent_fragments=max(1, _env_int(env, "CASTFORGE_CONCURRENT_FRAGMENTS", 4)),
        preferred_audio_format=(_env_str(env, "CASTFORGE_AUDIO_FORMAT", "mp3") or "mp3").lower(),
        hd_filesize_threshold=_env_int(env, "CASTFORGE_HD_FILESIZE_THRESHOLD", HD_FILESIZE_THRESHOLD),
        s3_bucket=_env_str(env, "CASTFORGE_S3_BUCKET"),
        s3_region=_env_str(env, "AWS_REGION", "us-east-1"),
        s3_key_prefix=_env_str(env, "CASTFORGE_S3_KEY_PREFIX", ""),
        s3_endpoint_url=_env_str(env, "CASTFORGE_S3_ENDPOINT_URL"),
        notification_queue_url=_env_str(env, "CASTFORGE_NOTIFICATION_QUEUE_URL"),
        database_url=_env_str(env, "CASTFORGE_DATABASE_URL"),
        db_host=_env_str(env, "CASTFORGE_DB_HOST"),
        db_port=_env_int(env, "CASTFORGE_DB_PORT", 5432),
        db_name=_env_str(env, "CASTFORGE_DB_NAME"),
        db_user=_env_str(env, "CASTFORGE_DB_USER"),
        db_password=_env_str(env, "CASTFORGE_DB_PASSWORD"),
        db_sslmode=_env_str(env, "CASTFORGE_DB_SSLMODE"),
        db_connection_mode=mode,
        db_pool_min=max(1, _env_int(env, "CASTFORGE_DB_POOL_MIN", 1)),
        db_pool_max=max(1, _env_int(env, "CASTFORGE_DB_POOL_MAX", 10)),
        db_lock_timeout_ms=_env_int(env, "CASTFORGE_DB_LOCK_TIMEOUT_MS", 5000),
        db_transaction_attempts=max(1, _env_int(env, "CASTFORGE_DB_TRANSACTION_ATTEMPTS", 5)),
        retry_attempts=max(1, _env_int(env, "RETRY_ATTEMPTS", 3)),
        retry_base_delay=max(0, retry_base_delay_ms) / 1000.0,
        retry_multiplier=_env_float(env, "RETRY_MULTIPLIER", 2.0),
        validation_attempts=max(1, _env_int(env, "CASTFORGE_VALIDATION_ATTEMPTS", 3)),
        acquisition_timeout=_env_float(env, "CASTFORGE_ACQUISITION_TIMEOUT", DEFAULT_ACQUISITION_TIMEOUT_SECONDS),
        merge_timeout=_env_float(env, "CASTFORGE_MERGE_TIMEOUT", DEFAULT_MERGE_TIMEOUT_SECONDS),
        transcode_timeout=_env_float(env, "CASTFORGE_TRANSCODE_TIMEOUT", DEFAULT_TRANSCODE_TIMEOUT_SECONDS),
        concurrency_overrides=_concurrency_overrides(env),
    )


def verify_binaries(settings: PipelineSettings) -> None:
    """Fail fast when a required external tool cannot be resolved."""
    missing = []
    for label, path in (
        ("yt-dlp", settings.ytdlp_path),
        ("ffmpeg", settings.ffmpeg_path),
        ("ffprobe", settings.ffprobe_path),
    ):
        if not path or (shutil.which(path) is None and not os.path.isfile(path)):
            missing.append(f"{label} ({path})")
    if missing:
        raise ConfigurationError("Required binaries not found: " + ", ".join(missing))


def require_database(settings: PipelineSettings) -> None:
    if settings.database_url:
        return
    missing = [
        name
        for name, value in (
            ("CASTFORGE_DB_HOST", settings.db_host),
            ("CASTFORGE_DB_NAME", settings.db_name),
            ("CASTFORGE_DB_USER", settings.db_user),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError("Database credentials missing: " + ", ".join(missing))


def require_object_storage(settings: PipelineSettings) -> None:
    if not settings.s3_bucket:
        raise ConfigurationError("CASTFORGE_S3_BUCKET is required")
