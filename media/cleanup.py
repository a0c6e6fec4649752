"""Delete pipeline artifacts and prune directories they leave empty."""

from __future__ import annotations

import errno
import logging
import os
import shutil

logger = logging.getLogger(__name__)


def _is_within(path, root):
    real = os.path.realpath(path)
    base = os.path.realpath(root)
    return real != base and os.path.commonpath([real, base]) == base


def prune_empty_dirs(start_dir, stop_root):
    """Remove ``start_dir`` and its ancestors while empty, never ``stop_root`` itself.

    Returns the list of removed directories, innermost first.
    """
    removed = []
    current = os.path.abspath(start_dir)
    while current and _is_within(current, stop_root):
        try:
            os.rmdir(current)
        except FileNotFoundError:
            pass
        except OSError as exc:
            if exc.errno in (errno.ENOTEMPTY, errno.EEXIST):
                break
            raise
        else:
            removed.append(current)
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return removed


def remove_file(path) -> bool:
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


def cleanup_artifacts(paths, stop_root):
    """Delete each file, then prune the empty directories it leaves behind.

    Missing files are ignored. Other OS errors are logged per file so one bad
    path never prevents the rest from being cleaned.
    """
    removed = []
    for path in paths or ():
        if not path:
            continue
        try:
            if remove_file(path):
                removed.append(path)
            prune_empty_dirs(os.path.dirname(os.path.abspath(path)), stop_root)
        except OSError:
            logger.exception("cleanup_failed path=%s", path)
    return removed


def remove_tree(path):
    """Delete a working directory; failures are logged, never raised."""
    if not path or not os.path.isdir(path):
        return False
    try:
        shutil.rmtree(path)
    except OSError:
        logger.exception("cleanup_failed path=%s", path)
        return False
    return True
