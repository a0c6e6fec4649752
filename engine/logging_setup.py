from __future__ import annotations

import logging
import os

from engine.paths import ensure_dir

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_FILENAME = "castforge.log"


def setup_logging(log_dir, level="INFO"):
    """Attach one file handler and one console handler to the root logger.

    Safe to call more than once; handlers already pointing at the same file or
    stream are not duplicated.
    """
    ensure_dir(log_dir)
    numeric_level = logging.getLevelName(str(level).upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger("")
    root.setLevel(numeric_level)
    log_path = os.path.abspath(os.path.join(log_dir, LOG_FILENAME))

    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == log_path:
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True

    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(numeric_level)
        root.addHandler(file_handler)
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        console.setLevel(numeric_level)
        root.addHandler(console)
    return log_path
