import os
import time
from dataclasses import dataclass

from metadata.naming import create_slug


@dataclass(frozen=True)
class PipelinePaths:
    downloads_root: str
    temp_dir: str
    log_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_dir(path, base_dir):
    if not path:
        return base_dir
    if os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(base_dir, path))
    if not _is_within_base(resolved, base_dir):
        # All pipeline writes stay under the downloads root.
        raise ValueError(f"Path must be within base directory: {base_dir}")
    return resolved


def build_pipeline_paths(settings):
    downloads_root = os.path.abspath(settings.downloads_dir)
    temp_dir = os.path.join(downloads_root, "temp")
    log_dir = os.path.abspath(settings.log_dir)
    for d in (downloads_root, temp_dir, log_dir):
        ensure_dir(d)
    return PipelinePaths(
        downloads_root=downloads_root,
        temp_dir=temp_dir,
        log_dir=log_dir,
    )


def temp_output_template(paths, kind, podcast_title, episode_title, *, timestamp=None):
    """yt-dlp ``-o`` template for one acquisition job (``kind`` is video or audio)."""
    ts = int(timestamp if timestamp is not None else time.time() * 1000)
    name = f"{kind}_{ts}_{create_slug(podcast_title)}_{create_slug(episode_title)}.%(ext)s"
    return os.path.join(paths.temp_dir, name)


def merged_output_path(paths, podcast_title, episode_title):
    podcast_slug = create_slug(podcast_title)
    episode_slug = create_slug(episode_title)
    return resolve_dir(
        os.path.join(podcast_slug, episode_slug, f"{episode_slug}.mp4"),
        paths.downloads_root,
    )
