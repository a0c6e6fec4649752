"""Typed partial updates for episode rows and the single SQL builder for them."""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any

from psycopg2.extras import Json

from db.models import ATTRIBUTE_TO_COLUMN, EPISODES_TABLE, JSON_COLUMNS, TIMESTAMP_COLUMNS


class _Unset:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class EpisodePatch:
    """Fields to change on one episode; anything left ``UNSET`` is untouched.

    ``additional_data`` is merged into the stored map, never replacing it.
    """

    episode_title: Any = UNSET
    episode_description: Any = UNSET
    host_name: Any = UNSET
    host_description: Any = UNSET
    channel_name: Any = UNSET
    country: Any = UNSET
    genre: Any = UNSET
    language_code: Any = UNSET
    published_date: Any = UNSET
    episode_uri: Any = UNSET
    original_uri: Any = UNSET
    original_media_uri: Any = UNSET
    manifest_uri: Any = UNSET
    episode_images: Any = UNSET
    duration_millis: Any = UNSET
    content_type: Any = UNSET
    guests: Any = UNSET
    guest_descriptions: Any = UNSET
    guest_image_urls: Any = UNSET
    topics: Any = UNSET
    processing_done: Any = UNSET
    is_synced: Any = UNSET
    processing_info: Any = UNSET
    additional_data: Any = UNSET
    deleted_at: Any = UNSET

    def supplied(self) -> dict[str, Any]:
        """Column name -> value for every field that was set."""
        return {
            ATTRIBUTE_TO_COLUMN[f.name]: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.supplied()


@dataclass(frozen=True)
class UpdateStatement:
    sql: str
    params: tuple
    expected: dict


def merge_additional_data(existing, incoming) -> dict:
    """Shallow merge: keys in ``incoming`` win, every other existing key survives."""
    merged = dict(existing or {})
    merged.update(incoming or {})
    return merged


def _adapt(column, value):
    if column in JSON_COLUMNS and value is not None:
        return Json(value)
    if isinstance(value, tuple):
        return list(value)
    return value


def build_update_statement(episode_id, patch: EpisodePatch, current_additional_data=None, *, now=None):
    """Turn ``patch`` into one parameterized UPDATE, or None when it sets nothing.

    ``expected`` holds the values the row must show afterwards; for
    ``additionalData`` that is the merged map.
    """
    values = patch.supplied()
    if not values:
        return None
    if "additionalData" in values:
        values["additionalData"] = merge_additional_data(current_additional_data, values["additionalData"])

    assignments = []
    params = []
    expected = {}
    for column, value in values.items():
        if isinstance(value, tuple):
            value = list(value)
        assignments.append(f'"{column}" = %s')
        params.append(_adapt(column, value))
        expected[column] = value

    assignments.append('"updatedAt" = %s')
    params.append(now or datetime.now(timezone.utc))
    params.append(episode_id)
    sql = f'UPDATE {EPISODES_TABLE} SET {", ".join(assignments)} WHERE "episodeId" = %s'
    return UpdateStatement(sql=sql, params=tuple(params), expected=expected)


def _normalize(column, value):
    if column in TIMESTAMP_COLUMNS:
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return value
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
    if isinstance(value, tuple):
        return list(value)
    return value


def find_mismatches(expected: dict, row) -> dict:
    """Compare intended values with a freshly read row.

    Returns ``{column: (expected, actual)}`` for every disagreement. For
    ``additionalData`` only the intended keys are compared, so keys another
    writer added in the meantime do not count as a mismatch.
    """
    if row is None:
        return {"episodeId": ("<row>", None)}
    mismatches = {}
    for column, intended in expected.items():
        actual = row.get(column)
        if column == "additionalData":
            actual_map = actual or {}
            for key, value in (intended or {}).items():
                if actual_map.get(key) != value:
                    mismatches[f"additionalData.{key}"] = (value, actual_map.get(key))
            continue
        if _normalize(column, intended) != _normalize(column, actual):
            mismatches[column] = (intended, actual)
    return mismatches
