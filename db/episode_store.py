"""Transactional persistence for episodes.

Every public operation runs inside its own transaction at SERIALIZABLE
isolation, under the governor's database-write permit, and is retried on
serialization failures, deadlocks and lock-not-available errors. Mutations are
followed by a read-back in a separate transaction; a disagreement retries the
whole write and, once attempts run out, raises ``ValidationFailureError``.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg2
from psycopg2 import errorcodes, errors
from psycopg2.extensions import ISOLATION_LEVEL_SERIALIZABLE
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from config.settings import CONNECTION_MODE_SINGLE
from db.episode_patch import UNSET, EpisodePatch, build_update_statement, find_mismatches
from db.migrations import ensure_episode_tables
from db.models import (
    EPISODE_COLUMNS,
    EPISODES_TABLE,
    GUESTS_TABLE,
    MASTER_MANIFEST_KEY,
    VIDEO_LOCATION_KEY,
    default_processing_info,
    row_to_episode,
    row_to_guest,
)
from engine.errors import (
    ConcurrentModificationError,
    DuplicateEpisodeError,
    EpisodeNotFoundError,
    StoreClosedError,
    ValidationFailureError,
)
from engine.governor import RESOURCE_DATABASE_WRITE, RetryPolicy, backoff_delay
from engine.json_utils import log_event
from metadata.naming import sanitize_description

logger = logging.getLogger(__name__)

DEFAULT_GUEST_DESCRIPTION = "No description available"

_RETRYABLE_PGCODES = {
    errorcodes.SERIALIZATION_FAILURE,
    errorcodes.DEADLOCK_DETECTED,
    errorcodes.LOCK_NOT_AVAILABLE,
}

_SET_LOCK_TIMEOUT = "SELECT set_config('lock_timeout', %s, true)"
_SELECT_EPISODE = f'SELECT * FROM {EPISODES_TABLE} WHERE "episodeId" = %s'
_LOCK_EPISODE = f'SELECT * FROM {EPISODES_TABLE} WHERE "episodeId" = %s FOR UPDATE NOWAIT'
_LOCK_BY_TITLE_CHANNEL = (
    f'SELECT "episodeId" FROM {EPISODES_TABLE} '
    'WHERE "episodeTitle" = %s AND "channelId" = %s AND "deletedAt" IS NULL FOR UPDATE NOWAIT'
)
_LOCK_BY_SOURCE_ID = (
    f'SELECT "episodeId" FROM {EPISODES_TABLE} '
    'WHERE "sourceVideoId" = %s AND "deletedAt" IS NULL FOR UPDATE NOWAIT'
)
_FIND_BY_TITLE_CHANNEL = (
    f'SELECT * FROM {EPISODES_TABLE} '
    'WHERE "episodeTitle" = %s AND "channelId" = %s AND "deletedAt" IS NULL '
    'ORDER BY "createdAt" ASC LIMIT 1'
)
_FIND_BY_SOURCE_ID = (
    f'SELECT * FROM {EPISODES_TABLE} '
    'WHERE "sourceVideoId" = %s AND "deletedAt" IS NULL '
    'ORDER BY "createdAt" ASC LIMIT 1'
)
_INSERT_EPISODE = (
    f'INSERT INTO {EPISODES_TABLE} ('
    + ", ".join(f'"{column}"' for _attr, column in EPISODE_COLUMNS)
    + ") VALUES ("
    + ", ".join("%s" for _ in EPISODE_COLUMNS)
    + ")"
)
_SELECT_GUEST_BY_NAME = f'SELECT * FROM {GUESTS_TABLE} WHERE lower("guestName") = lower(%s) LIMIT 1'
_INSERT_GUEST = (
    f'INSERT INTO {GUESTS_TABLE} ("guestId", "guestName", "guestDescription", "guestImage", '
    '"guestLanguage", "createdAt", "updatedAt") VALUES (%s, %s, %s, %s, %s, %s, %s) '
    'ON CONFLICT ("guestName") DO NOTHING'
)


def utc_now():
    return datetime.now(timezone.utc)


def is_retryable_db_error(exc) -> bool:
    if isinstance(exc, (DuplicateEpisodeError, EpisodeNotFoundError, ValueError)):
        return False
    if isinstance(exc, ConcurrentModificationError):
        return True
    if isinstance(exc, (errors.SerializationFailure, errors.DeadlockDetected, errors.LockNotAvailable)):
        return True
    if getattr(exc, "pgcode", None) in _RETRYABLE_PGCODES:
        return True
    return isinstance(exc, psycopg2.OperationalError)


def align_guest_arrays(names, descriptions=None, image_urls=None):
    """Return three equal-length lists, padding descriptions and images for each name."""
    names = [str(name).strip() for name in (names or [])]
    descriptions = list(descriptions or [])
    image_urls = list(image_urls or [])
    if len(descriptions) > len(names) or len(image_urls) > len(names):
        raise ValueError("guest descriptions/images must not outnumber guest names")
    descriptions = [
        (str(value).strip() if value and str(value).strip() else DEFAULT_GUEST_DESCRIPTION)
        for value in descriptions
    ]
    descriptions += [DEFAULT_GUEST_DESCRIPTION] * (len(names) - len(descriptions))
    image_urls = [str(value or "") for value in image_urls]
    image_urls += [""] * (len(names) - len(image_urls))
    return names, descriptions, image_urls


class EpisodeStore:
    def __init__(self, settings, governor, *, connect=None, pool_factory=None, sleep=time.sleep, ensure_schema=False):
        self.settings = settings
        self.governor = governor
        self._connect_fn = connect or psycopg2.connect
        self._pool_factory = pool_factory or ThreadedConnectionPool
        self._sleep = sleep
        self._ensure_schema = ensure_schema
        self._mode = settings.db_connection_mode
        self._state = "new"
        self._state_lock = threading.Lock()
        self._single_conn = None
        self._conn_kwargs = {}
        self._single_lock = threading.Lock()
        self._pool = None
        self._tx_policy = RetryPolicy(
            max_attempts=settings.db_transaction_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            is_retryable=is_retryable_db_error,
        )

    # lifecycle

    def open(self):
        with self._state_lock:
            if self._state == "open":
                raise RuntimeError("EpisodeStore is already open")
            if self._state == "closed":
                raise StoreClosedError("EpisodeStore cannot be reopened after close()")
            conn_kwargs = dict(self.settings.database_dsn_kwargs())
            conn_kwargs["cursor_factory"] = RealDictCursor
            conn_kwargs.setdefault("application_name", "castforge")
            self._conn_kwargs = conn_kwargs
            if self._mode == CONNECTION_MODE_SINGLE:
                self._single_conn = self._connect_fn(**conn_kwargs)
                self._single_conn.set_isolation_level(ISOLATION_LEVEL_SERIALIZABLE)
            else:
                self._pool = self._pool_factory(
                    self.settings.db_pool_min,
                    self.settings.db_pool_max,
                    **conn_kwargs,
                )
            self._state = "open"
        logger.info("Episode store opened (mode=%s)", self._mode)
        if self._ensure_schema:
            with self._connection() as conn:
                ensure_episode_tables(conn)
        return self

    def close(self):
        with self._state_lock:
            if self._state != "open":
                self._state = "closed"
                return
            self._state = "closed"
            if self._single_conn is not None:
                self._single_conn.close()
                self._single_conn = None
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
        logger.info("Episode store closed")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def is_open(self):
        return self._state == "open"

    def _require_open(self):
        if self._state != "open":
            raise StoreClosedError(f"EpisodeStore is {self._state}; call open() first")

    @contextmanager
    def _connection(self):
        self._require_open()
        if self._mode == CONNECTION_MODE_SINGLE:
            # One shared connection carries one transaction at a time.
            with self._single_lock:
                self._require_open()
                if getattr(self._single_conn, "closed", 0):
                    logger.warning("Episode store connection lost; reconnecting")
                    self._single_conn = self._connect_fn(**self._conn_kwargs)
                    self._single_conn.set_isolation_level(ISOLATION_LEVEL_SERIALIZABLE)
                yield self._single_conn
            return
        pool = self._pool
        conn = pool.getconn()
        try:
            conn.set_isolation_level(ISOLATION_LEVEL_SERIALIZABLE)
            yield conn
        finally:
            pool.putconn(conn, close=bool(getattr(conn, "closed", 0)))

    def _run_transaction(self, work, *, label):
        def _attempt():
            with self._connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(_SET_LOCK_TIMEOUT, (f"{int(self.settings.db_lock_timeout_ms)}ms",))
                        result = work(cur)
                    conn.commit()
                    return result
                except errors.LockNotAvailable as exc:
                    _rollback(conn)
                    raise ConcurrentModificationError(f"{label}: row is being modified concurrently") from exc
                except BaseException:
                    _rollback(conn)
                    raise

        return self.governor.call(RESOURCE_DATABASE_WRITE, _attempt, policy=self._tx_policy, label=label)

    # reads

    def _fetch_row(self, episode_id):
        return self._run_transaction(
            lambda cur: _fetchone(cur, _SELECT_EPISODE, (episode_id,)),
            label="get_episode",
        )

    def get_episode(self, episode_id):
        return row_to_episode(self._fetch_row(episode_id))

    def check_episode_exists(self, episode_title, channel_id):
        row = self._run_transaction(
            lambda cur: _fetchone(cur, _FIND_BY_TITLE_CHANNEL, (episode_title, channel_id)),
            label="check_episode_exists",
        )
        return row_to_episode(row)

    def check_episode_exists_by_source_id(self, source_video_id):
        if not source_video_id:
            return None
        row = self._run_transaction(
            lambda cur: _fetchone(cur, _FIND_BY_SOURCE_ID, (source_video_id,)),
            label="check_episode_exists_by_source_id",
        )
        return row_to_episode(row)

    def get_guest_by_name(self, guest_name):
        row = self._run_transaction(
            lambda cur: _fetchone(cur, _SELECT_GUEST_BY_NAME, ((guest_name or "").strip(),)),
            label="get_guest_by_name",
        )
        return row_to_guest(row)

    # writes

    def store_new_episode(self, new_episode) -> str:
        """Insert a new episode, refusing when its title/channel or source id is taken."""
        if not new_episode.episode_title or not new_episode.channel_id:
            raise ValueError("episode_title and channel_id are required")

        def _insert(cur):
            existing = _fetchone(cur, _LOCK_BY_TITLE_CHANNEL, (new_episode.episode_title, new_episode.channel_id))
            if existing:
                raise DuplicateEpisodeError(
                    f"Episode '{new_episode.episode_title}' already exists for channel {new_episode.channel_id}",
                    existing_episode_id=existing["episodeId"],
                    reason="title_channel",
                )
            if new_episode.source_video_id:
                existing = _fetchone(cur, _LOCK_BY_SOURCE_ID, (new_episode.source_video_id,))
                if existing:
                    raise DuplicateEpisodeError(
                        f"Episode for source {new_episode.source_video_id} already exists",
                        existing_episode_id=existing["episodeId"],
                        reason="source_id",
                    )
            episode_id = str(uuid.uuid4())
            try:
                cur.execute(_INSERT_EPISODE, self._insert_params(episode_id, new_episode))
            except errors.UniqueViolation as exc:
                raise DuplicateEpisodeError(
                    f"Episode '{new_episode.episode_title}' was created concurrently",
                    reason="unique_violation",
                ) from exc
            return episode_id

        episode_id = self._run_transaction(_insert, label="store_new_episode")
        log_event(
            logging.INFO,
            "episode_created",
            episode_id=episode_id,
            channel_id=new_episode.channel_id,
            source_video_id=new_episode.source_video_id,
        )
        return episode_id

    def _insert_params(self, episode_id, new_episode):
        now = utc_now()
        values = {
            "episode_id": episode_id,
            "source_video_id": new_episode.source_video_id,
            "channel_id": new_episode.channel_id,
            "channel_name": new_episode.channel_name,
            "episode_title": new_episode.episode_title,
            "episode_description": sanitize_description(new_episode.episode_description),
            "host_name": new_episode.host_name,
            "host_description": new_episode.host_description,
            "country": new_episode.country,
            "genre": new_episode.genre,
            "language_code": new_episode.language_code,
            "published_date": new_episode.published_date,
            "episode_uri": new_episode.episode_uri,
            "original_uri": new_episode.original_uri,
            "original_media_uri": None,
            "manifest_uri": None,
            "episode_images": list(new_episode.episode_images or []),
            "duration_millis": new_episode.duration_millis,
            "content_type": new_episode.content_type,
            "guests": [],
            "guest_descriptions": [],
            "guest_image_urls": [],
            "topics": [],
            "processing_done": False,
            "is_synced": False,
            "processing_info": Json(default_processing_info()),
            "additional_data": Json(dict(new_episode.additional_data or {})),
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        return tuple(values[attr] for attr, _column in EPISODE_COLUMNS)

    def _apply_patch(self, cur, episode_id, patch):
        current = _fetchone(cur, _LOCK_EPISODE, (episode_id,))
        if current is None:
            raise EpisodeNotFoundError(f"Episode not found: {episode_id}")
        supplied = patch.supplied()
        if supplied.get("manifestUri") or (supplied.get("additionalData") or {}).get(MASTER_MANIFEST_KEY):
            current_data = current.get("additionalData") or {}
            has_media = (
                supplied.get("originalMediaUri")
                or (supplied.get("additionalData") or {}).get(VIDEO_LOCATION_KEY)
                or current.get("originalMediaUri")
                or current_data.get(VIDEO_LOCATION_KEY)
            )
            if not has_media:
                raise ValueError(f"Episode {episode_id} has no media location; refusing to record a manifest")
        statement = build_update_statement(episode_id, patch, current.get("additionalData"), now=utc_now())
        if statement is None:
            return {}
        cur.execute(statement.sql, statement.params)
        return statement.expected

    def update_episode(self, episode_id, patch: EpisodePatch):
        """Apply ``patch`` and confirm it by reading the row back.

        Returns the re-read ``Episode``. Raises ``ValidationFailureError`` when
        the read-back still disagrees after every attempt.
        """
        if patch.is_empty():
            logger.info("No fields to update for episode %s", episode_id)
            return self.get_episode(episode_id)

        attempts = max(1, int(self.settings.validation_attempts))
        mismatches = {}
        for attempt in range(1, attempts + 1):
            expected = self._run_transaction(
                lambda cur: self._apply_patch(cur, episode_id, patch),
                label="update_episode",
            )
            row = self._fetch_row(episode_id)
            mismatches = find_mismatches(expected, row)
            if not mismatches:
                log_event(logging.INFO, "episode_updated", episode_id=episode_id, fields=sorted(expected))
                return row_to_episode(row)
            log_event(
                logging.WARNING,
                "episode_update_validation_mismatch",
                episode_id=episode_id,
                attempt=attempt,
                attempts=attempts,
                mismatches=sorted(mismatches),
            )
            if attempt < attempts:
                self._sleep(backoff_delay(attempt, self.settings.retry_base_delay, self.settings.retry_multiplier))
        raise ValidationFailureError(
            f"Episode {episode_id} update did not persist after {attempts} attempt(s)",
            mismatches=mismatches,
        )

    def update_episode_with_enrichment(
        self,
        episode_id,
        guest_names,
        guest_descriptions,
        guest_image_urls,
        topics,
        extra_metadata=None,
    ):
        names, descriptions, images = align_guest_arrays(guest_names, guest_descriptions, guest_image_urls)
        patch = EpisodePatch(
            guests=names,
            guest_descriptions=descriptions,
            guest_image_urls=images,
            topics=[str(topic).strip() for topic in (topics or []) if str(topic).strip()],
            additional_data=dict(extra_metadata) if extra_metadata else UNSET,
        )
        return self.update_episode(episode_id, patch)

    def insert_guest(self, guest):
        if not guest.guest_name or not guest.guest_name.strip():
            raise ValueError("guest_name is required")
        now = utc_now()
        guest_id = guest.guest_id or str(uuid.uuid4())
        params = (
            guest_id,
            guest.guest_name.strip(),
            guest.guest_description,
            guest.guest_image,
            guest.guest_language,
            now,
            now,
        )
        self._run_transaction(lambda cur: cur.execute(_INSERT_GUEST, params), label="insert_guest")
        return guest_id


def _rollback(conn):
    # closed by the server; nothing left to roll back
    if getattr(conn, "closed", 0):
        return
    conn.rollback()


def _fetchone(cur, sql, params):
    cur.execute(sql, params)
    return cur.fetchone()
