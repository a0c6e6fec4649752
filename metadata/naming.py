"""Slug and filename helpers used for storage keys and local artifact paths."""

from __future__ import annotations

import os
import re
import unicodedata
from typing import Any

_INVALID_FS_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_MULTISPACE_RE = re.compile(r"\s+")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
_QUOTES_RE = re.compile(r"[\"'`‘’“”]")
_DASHES_RE = re.compile(r"[–—]")
_SLUG_SEPARATORS_RE = re.compile(r"[\s_]+")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9-]")
_MULTIDASH_RE = re.compile(r"-{2,}")

_WINDOWS_RESERVED = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
}

SLUG_MAX_LENGTH = 100
FILENAME_MAX_LENGTH = 200


def create_slug(text: Any) -> str:
    """Return a URL/S3-safe slug, ``untitled`` when nothing survives."""
    value = unicodedata.normalize("NFD", str(text or "").lower())
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    value = _QUOTES_RE.sub("", value)
    value = _DASHES_RE.sub("-", value)
    value = _SLUG_SEPARATORS_RE.sub("-", value.strip())
    value = _SLUG_INVALID_RE.sub("", value)
    value = _MULTIDASH_RE.sub("-", value).strip("-")
    if not value:
        return "untitled"
    return value[:SLUG_MAX_LENGTH].rstrip("-") or "untitled"


def sanitize_filename(name: Any) -> str:
    sanitized = _INVALID_FS_CHARS_RE.sub("", str(name or ""))
    sanitized = _MULTISPACE_RE.sub(" ", sanitized).strip().strip(".").strip()
    if not sanitized:
        return "untitled"

    stem, ext = os.path.splitext(sanitized)
    if stem.upper() in _WINDOWS_RESERVED:
        sanitized = f"_{sanitized}"
        stem = f"_{stem}"

    if len(sanitized) > FILENAME_MAX_LENGTH:
        if ext and len(ext) < FILENAME_MAX_LENGTH:
            sanitized = stem[: FILENAME_MAX_LENGTH - len(ext)].rstrip() + ext
        else:
            sanitized = sanitized[:FILENAME_MAX_LENGTH]
    return sanitized


def sanitize_artifact_path(path: str) -> str:
    """Sanitize only the filename component; directories are ours already."""
    directory, filename = os.path.split(str(path or "").strip())
    return os.path.join(directory, sanitize_filename(filename)) if directory else sanitize_filename(filename)


def sanitize_description(text: Any) -> str:
    """NFC-normalize, replace control characters with spaces and collapse whitespace."""
    value = unicodedata.normalize("NFC", str(text or ""))
    value = _CONTROL_CHARS_RE.sub(" ", value)
    return _MULTISPACE_RE.sub(" ", value).strip()
